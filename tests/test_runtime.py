"""
End-to-end tests: page documents loaded into a PageRuntime with a mocked
backend.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from pagekit import ConfigError, DataError, PageRuntime
from pagekit.actions import InvocationState

DASHBOARD = {
    "pageId": "dashboard",
    "title": "Sales",
    "widgets": [
        {"id": "header", "type": "Text", "props": {"text": "Sales overview"}},
        {"id": "kpis", "type": "Container", "children": [
            {
                "id": "revenue-kpi",
                "type": "KPI",
                "datasourceId": "revenue",
                "bindings": {"value": {"datasource": "revenue", "path": "total", "transforms": [
                    {"op": "format", "style": "currency"},
                ]}},
            },
            {"id": "churn-kpi", "type": "KPI", "datasourceId": "churn", "bindings": {"value": "churn.rate"}},
        ]},
    ],
    "datasources": [
        {"id": "revenue", "kind": "http", "http": {"url": "/api/revenue"}},
        {"id": "churn", "kind": "http", "http": {"url": "/api/churn"}},
    ],
    "actions": [
        {"id": "reload", "steps": [{"kind": "refreshDatasource", "params": {"datasource": "revenue"}}]},
    ],
}


class Backend:
    """Routes mocked HTTP calls by url; every call waits for `release()`."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []
        self.released = asyncio.Event()

    def release(self):
        self.released.set()

    async def __call__(self, method, url, **kwargs):
        self.calls.append((method, url))
        await self.released.wait()
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


class TestDashboard:
    @pytest.mark.asyncio
    async def test_kpis_load_then_succeed_or_fail_independently(self, runtime, http_client, settle):
        backend = Backend({
            "/api/revenue": {"total": 1250.5},
            "/api/churn": DataError("HTTP 503", kind="http", status=503),
        })
        http_client.request.side_effect = backend.__call__

        async with runtime:
            tree = runtime.load(DASHBOARD)

            assert tree.find("revenue-kpi").output["loading"] is True
            assert tree.find("churn-kpi").output["loading"] is True
            assert tree.find("header").output["text"] == "Sales overview"

            backend.release()
            await settle(10)

            tree = runtime.tree
            revenue = tree.find("revenue-kpi")
            assert revenue.status.is_success
            assert revenue.output["value"] == "$1,250.50"
            churn = tree.find("churn-kpi")
            assert churn.status.is_error
            assert churn.placeholder == "error"
            assert "503" in churn.output.message
            assert tree.find("header").output["text"] == "Sales overview"
            assert sorted(url for _, url in backend.calls) == ["/api/churn", "/api/revenue"]

    @pytest.mark.asyncio
    async def test_action_refresh_updates_the_bound_kpi(self, runtime, http_client, settle):
        backend = Backend({"/api/revenue": {"total": 1}, "/api/churn": {"rate": 0.1}})
        backend.release()
        http_client.request.side_effect = backend.__call__

        async with runtime:
            runtime.load(DASHBOARD)
            await settle(10)
            backend.responses["/api/revenue"] = {"total": 2}

            invocation = await runtime.dispatch("reload")
            await settle(10)

            assert invocation.state == InvocationState.SUCCEEDED
            assert runtime.tree.find("revenue-kpi").output["value"] == "$2.00"
            assert runtime.tree.find("churn-kpi").output["value"] == 0.1
            assert [url for _, url in backend.calls].count("/api/churn") == 1


class TestPageLifecycle:
    @pytest.mark.asyncio
    async def test_open_fetches_the_document(self, runtime, http_client):
        http_client.request.return_value = {"pageId": "about", "widgets": [{"id": "t", "type": "Text"}]}
        loaded = MagicMock()
        runtime.on_page_loaded.connect(loaded)

        async with runtime:
            tree = await runtime.open("about")

            assert tree.page_id == "about"
            http_client.request.assert_awaited_with("GET", "/ui/pages/about")
            page, diagnostics = loaded.call_args.args
            assert page.page_id == "about"
            assert diagnostics == []

            await runtime.reload()
            assert http_client.request.await_count == 2

    @pytest.mark.asyncio
    async def test_open_rejects_non_documents(self, runtime, http_client):
        http_client.request.return_value = None
        async with runtime:
            with pytest.raises(DataError):
                await runtime.open("missing")

    def test_load_rejects_documents_without_page_id(self, runtime):
        with pytest.raises(ConfigError):
            runtime.load({"widgets": []})

    @pytest.mark.asyncio
    async def test_navigating_away_cancels_running_actions(self, runtime):
        started = asyncio.Event()

        async def wait_forever(ctx):
            started.set()
            await asyncio.Event().wait()

        runtime.register_custom_step("wait", wait_forever)
        async with runtime:
            runtime.load({
                "pageId": "first",
                "actions": [{"id": "long", "steps": [
                    {"kind": "custom", "params": {"handler": "wait"}},
                    {"kind": "setState", "params": {"path": "finished", "value": True}},
                ]}],
            })
            invocation = runtime.engine.start("long")
            await started.wait()

            runtime.load({"pageId": "second"})
            await invocation.wait()

            assert invocation.state == InvocationState.CANCELLED
            assert runtime.state.get("finished", None) is None
            assert runtime.page.page_id == "second"

    @pytest.mark.asyncio
    async def test_initial_state_and_diagnostics(self, runtime):
        async with runtime:
            runtime.load({
                "pageId": "p",
                "initialState": {"filters": {"q": "x"}},
                "widgets": [{"id": "a", "type": "Text"}, {"id": "a", "type": "Text"}],
            })

            assert runtime.state.get("filters.q") == "x"
            assert len(runtime.diagnostics) == 1
            assert runtime.tree.find("a~2").placeholder == "config-error"

    @pytest.mark.asyncio
    async def test_unchanged_datasources_survive_page_reload(self, runtime, http_client, settle):
        http_client.request.return_value = {"total": 3, "rate": 0.2}
        async with runtime:
            runtime.load(DASHBOARD)
            await settle()
            runtime.load(DASHBOARD)
            await settle()

            assert http_client.request.await_count == 2
            assert runtime.tree.find("revenue-kpi").status.is_success

    @pytest.mark.asyncio
    async def test_unload_releases_streams(self, runtime, config, hub_factory, settle):
        config.data.websocket.url = "ws://example/stream"
        async with runtime:
            runtime.load({
                "pageId": "live",
                "widgets": [{"id": "ticker", "type": "KPI", "datasourceId": "prices", "bindings": {"value": "prices.last"}}],
                "datasources": [{"id": "prices", "kind": "websocket", "websocket": {"channel": "px"}}],
            })
            await settle()
            hub = hub_factory.hubs["ws://example/stream"]
            assert hub.channels == ["px"]

            runtime.unload()
            await settle()

            assert hub.channels == []
            assert runtime.tree is None

    @pytest.mark.asyncio
    async def test_stream_updates_reach_the_widget(self, runtime, config, transports, settle):
        config.data.websocket.url = "ws://example/stream"
        async with runtime:
            runtime.load({
                "pageId": "live",
                "widgets": [{"id": "ticker", "type": "KPI", "datasourceId": "prices", "bindings": {"value": "prices.last"}}],
                "datasources": [{"id": "prices", "kind": "websocket", "websocket": {"channel": "px"}}],
            })
            await settle()

            transports.current.feed({"datasourceId": "prices", "data": {"last": 101.5}})
            await settle()
            assert runtime.tree.find("ticker").output["value"] == 101.5

            transports.current.feed({"channel": "px", "data": {"last": 99}})
            await settle()
            assert runtime.tree.find("ticker").output["value"] == 99


def test_runtimes_do_not_share_state(registry):
    first, second = PageRuntime(registry), PageRuntime(registry)
    first.load({"pageId": "p", "initialState": {"x": 1}})
    assert second.state.get("x", None) is None
    assert first.resolver.cache is not second.resolver.cache


@pytest.mark.asyncio
async def test_single_kpi_page_reports_the_fetched_value(runtime, http_client, settle):
    backend = Backend({"/api/kpi/revenue": 4200})
    http_client.request.side_effect = backend.__call__
    async with runtime:
        tree = runtime.load({
            "pageId": "dashboard",
            "widgets": [{"id": "kpi1", "type": "KPI", "datasourceId": "revenue", "bindings": {"value": "revenue"}}],
            "datasources": [{"id": "revenue", "kind": "http", "http": {"method": "GET", "url": "/api/kpi/revenue"}}],
        })
        assert len(tree) == 1
        assert tree.find("kpi1").status.is_loading

        backend.release()
        await settle(10)

        kpi = runtime.tree.find("kpi1")
        assert kpi.status.is_success
        assert kpi.status.value == 4200
        assert kpi.output["value"] == 4200
        assert backend.calls == [("GET", "/api/kpi/revenue")]
