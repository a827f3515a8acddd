"""
Unit tests for the core building blocks: signals, config, paths, state,
cancellation and the service locator.
"""
import asyncio
import json
from unittest.mock import MagicMock

import pytest

from pagekit.core.base_system import BaseSystem
from pagekit.core.cancellation import CancellationScope, CancellationToken
from pagekit.core.config import ConfigManager
from pagekit.core.errors import ConfigError, EngineFault, OperationCancelled
from pagekit.core.events import Signal
from pagekit.core.locator import ServiceLocator
from pagekit.core.paths import UNSET, delete_path, get_path, set_path, split_path
from pagekit.core.state import FieldErrors, LocalStateStore


def test_signal_event():
    sig = Signal("test_signal")
    handler = MagicMock()

    sig.connect(handler)
    sig.emit("data", 123)
    handler.assert_called_once_with("data", 123)

    sig.disconnect(handler)
    sig.emit("data2")
    assert handler.call_count == 1


def test_signal_failing_subscriber_does_not_block_others():
    sig = Signal("err")
    results = []

    def bad(_):
        raise RuntimeError("boom")

    sig.connect(bad)
    sig.connect(results.append)
    sig.emit("x")

    assert results == ["x"]


class TestConfigManager:
    def test_defaults_in_memory(self):
        config = ConfigManager()
        assert config.data.cache.default_ttl == 300.0
        assert config.data.http.pages_path == "/ui/pages"

    def test_update_emits_and_persists(self, tmp_path):
        path = tmp_path / "pagekit.json"
        config = ConfigManager(str(path))
        handler = MagicMock()
        config.on_changed.connect(handler)

        config.update("cache", "max_entries", 5)

        handler.assert_called_once_with("cache", "max_entries", 5)
        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved["cache"]["max_entries"] == 5

    def test_update_rejects_unknown_key(self):
        config = ConfigManager()
        with pytest.raises(ValueError):
            config.update("cache", "nope", 1)
        with pytest.raises(ValueError):
            config.update("nope", "max_entries", 1)

    def test_update_validates_value(self):
        config = ConfigManager()
        with pytest.raises(Exception):
            config.update("cache", "max_entries", "many")
        assert config.data.cache.max_entries == 100

    def test_load_toml(self, tmp_path):
        path = tmp_path / "pagekit.toml"
        path.write_text('[http]\nbase_url = "https://api.example.com"\n', encoding="utf-8")
        config = ConfigManager(str(path))
        assert config.get("http", "base_url") == "https://api.example.com"

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "pagekit.json"
        path.write_text(json.dumps({"http": {"timeout": 5}}), encoding="utf-8")
        monkeypatch.setenv("PAGEKIT_HTTP__TIMEOUT", "12.5")
        monkeypatch.setenv("PAGEKIT_HTTP__HEADERS", '{"X-Tenant": "acme"}')
        monkeypatch.setenv("PAGEKIT_NOPE__X", "1")

        config = ConfigManager(str(path))

        assert config.data.http.timeout == 12.5
        assert config.data.http.headers == {"X-Tenant": "acme"}

    def test_environment_can_be_ignored(self, monkeypatch):
        monkeypatch.setenv("PAGEKIT_CACHE__MAX_ENTRIES", "7")
        assert ConfigManager().data.cache.max_entries == 7
        assert ConfigManager(env_prefix=None).data.cache.max_entries == 100


class TestPaths:
    def test_split(self):
        assert split_path("a.b[0].c") == ["a", "b", 0, "c"]
        assert split_path("") == []

    def test_get_missing_is_unset(self):
        data = {"a": {"b": [1, 2]}}
        assert get_path(data, "a.b[1]") == 2
        assert get_path(data, "a.x") is UNSET
        assert get_path(data, "a.b[5]") is UNSET
        assert get_path(None, "a") is UNSET

    def test_unset_is_distinct_from_none(self):
        assert UNSET is not None
        assert not UNSET
        assert get_path({"a": None}, "a") is None

    def test_set_and_delete(self):
        data = {}
        set_path(data, "form.email", "x@y.z")
        set_path(data, "form", {"name": "n"}, merge=True)
        assert data == {"form": {"email": "x@y.z", "name": "n"}}
        assert delete_path(data, "form.email")
        assert data == {"form": {"name": "n"}}


class TestLocalStateStore:
    def test_set_get_and_signal(self):
        store = LocalStateStore({"count": 1})
        handler = MagicMock()
        store.on_changed.connect(handler)

        store.set("form.email", "a@b.c")

        assert store.get("form.email") == "a@b.c"
        assert store.has("form.email")
        handler.assert_called_once_with("form.email", "a@b.c")

    def test_last_write_wins(self):
        store = LocalStateStore()
        store.set("selected", 1, writer="a#1")
        store.set("selected", 2, writer="b#2")
        assert store.get("selected") == 2

    def test_reset_paths_and_all(self):
        store = LocalStateStore({"filters": {"q": ""}})
        store.set("filters.q", "abc")
        store.set("extra", True)

        store.reset(["filters.q", "extra"])
        assert store.get("filters.q") == ""
        assert store.get("extra", None) is None

        store.set("filters.q", "zzz")
        store.reset()
        assert store.snapshot() == {"filters": {"q": ""}}

    def test_load_replaces_initial(self):
        store = LocalStateStore({"a": 1})
        store.load({"b": 2})
        assert store.get() == {"b": 2}
        store.set("b", 3)
        store.reset()
        assert store.get() == {"b": 2}


class TestFieldErrors:
    def test_publish_replaces_checked_only(self):
        errors = FieldErrors()
        errors.publish(["email", "name"], {"email": ["Invalid"], "name": ["Required"]})
        errors.publish(["email"], {})

        assert errors.get("email") == []
        assert errors.get("name") == ["Required"]

    def test_clear(self):
        errors = FieldErrors()
        errors.publish(["a"], {"a": ["x"]})
        errors.clear()
        assert errors.all() == {}


class TestCancellation:
    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        token = CancellationToken("t")

        async def work():
            return 42

        assert await token.run(work()) == 42

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_await(self):
        token = CancellationToken("t")
        gate = asyncio.get_running_loop().create_future()

        async def cancel_soon():
            await asyncio.sleep(0)
            token.cancel("navigated")

        asyncio.ensure_future(cancel_soon())
        with pytest.raises(OperationCancelled) as info:
            await token.run(gate)

        assert info.value.reason == "navigated"
        assert gate.cancelled()

    @pytest.mark.asyncio
    async def test_already_cancelled_raises_without_running(self):
        token = CancellationToken("t")
        token.cancel()
        ran = []

        async def work():
            ran.append(1)

        with pytest.raises(OperationCancelled):
            await token.run(work())
        assert ran == []

    def test_child_follows_parent(self):
        parent = CancellationToken("parent")
        child = parent.child("child")
        parent.cancel("stop")
        assert child.cancelled
        assert child.reason == "stop"

    def test_callbacks_fire_once(self):
        token = CancellationToken("t")
        callback = MagicMock()
        token.add_callback(callback)
        assert token.cancel() is True
        assert token.cancel() is False
        callback.assert_called_once_with(token)

    def test_scope_dispose_cancels_live_tokens(self):
        scope = CancellationScope("page:x")
        first = scope.create_token("a")
        second = scope.create_token("b")
        scope.release(second)

        scope.dispose("leaving")

        assert first.cancelled
        assert not second.cancelled
        assert scope.create_token("late").cancelled


class _Alpha(BaseSystem):
    async def initialize(self):
        self.locator.order.append("alpha")
        await super().initialize()

    async def shutdown(self):
        self.locator.order.append("~alpha")
        await super().shutdown()


class _Beta(BaseSystem):
    depends_on = [_Alpha]

    def __init__(self, locator, config, flag=False):
        super().__init__(locator, config)
        self.flag = flag

    async def initialize(self):
        self.locator.order.append("beta")
        await super().initialize()

    async def shutdown(self):
        self.locator.order.append("~beta")
        await super().shutdown()


class TestServiceLocator:
    @pytest.mark.asyncio
    async def test_dependency_order(self):
        locator = ServiceLocator(ConfigManager())
        locator.order = []
        beta = locator.register_system(_Beta, flag=True)
        locator.register_system(_Alpha)

        await locator.start_all()
        assert locator.order == ["alpha", "beta"]
        assert beta.flag and beta.is_ready

        await locator.stop_all()
        assert locator.order[2:] == ["~beta", "~alpha"]

    def test_register_twice_returns_same_instance(self):
        locator = ServiceLocator()
        assert locator.register_system(_Alpha) is locator.register_system(_Alpha)

    def test_get_unregistered_raises(self):
        with pytest.raises(KeyError):
            ServiceLocator().get_system(_Alpha)

    def test_instances_are_independent(self):
        first, second = ServiceLocator(), ServiceLocator()
        first.register_system(_Alpha)
        assert not second.has_system(_Alpha)

    def test_dependency_cycle_is_an_engine_fault(self):
        class _Left(BaseSystem):
            async def initialize(self):
                await super().initialize()

            async def shutdown(self):
                await super().shutdown()

        class _Right(_Left):
            depends_on = [_Left]

        _Left.depends_on = [_Right]
        locator = ServiceLocator()
        locator.register_system(_Left)
        locator.register_system(_Right)
        with pytest.raises(EngineFault):
            locator.start_order()


def test_config_error_mentions_node():
    assert str(ConfigError("bad", "kpi-1")) == "[kpi-1] bad"
