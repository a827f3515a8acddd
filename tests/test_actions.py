"""
Tests for the Action Engine, its step handlers and field validation.
"""
import asyncio

import pytest

from pagekit.actions import ActionEngine, ActionMessage, InvocationState, StepResult, check_rule
from pagekit.actions.validation import validate_widgets
from pagekit.core.cancellation import CancellationScope
from pagekit.core.errors import ActionError, ConfigError, DataError
from pagekit.core.paths import UNSET
from pagekit.datasources import DatasourceResolver
from pagekit.model import load_page
from pagekit.model.page import ActionDescriptor, ValidationRule, WidgetDescriptor


def _actions(*specs):
    return [ActionDescriptor.model_validate(spec) for spec in specs]


@pytest.fixture
def engine(locator, http_client, hub_factory):
    locator.register_system(DatasourceResolver, http_client=http_client, hub_factory=hub_factory)
    return locator.register_system(ActionEngine)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, engine, providers):
        engine.load_actions(_actions({
            "id": "save",
            "steps": [
                {"id": "set", "kind": "setState", "params": {"path": "form.saved", "value": "{{ payload.id }}"}},
                {"id": "go", "kind": "navigate", "params": {"target": "/orders/{{ state.form.saved }}"}},
            ],
        }))
        steps = []
        engine.on_step.connect(lambda inv, label, status: steps.append((label, status)))

        invocation = await engine.dispatch("save", {"id": 12})

        assert invocation.state == InvocationState.SUCCEEDED
        assert invocation.executed == ["set", "go"]
        assert engine.state.get("form.saved") == 12
        assert providers.navigation.current == "/orders/12"
        assert steps == [("set", "started"), ("set", "succeeded"), ("go", "started"), ("go", "succeeded")]
        assert engine.live_invocations == []

    @pytest.mark.asyncio
    async def test_false_guard_skips_only_its_step(self, engine):
        engine.load_actions(_actions({
            "id": "a",
            "steps": [
                {"id": "one", "kind": "setState", "params": {"path": "one", "value": 1}},
                {"id": "two", "kind": "setState", "guard": "{{ payload.flag }}", "params": {"path": "two", "value": 2}},
                {"id": "three", "kind": "setState", "guard": "state.one == 1", "params": {"path": "three", "value": 3}},
            ],
        }))

        invocation = await engine.dispatch("a", {"flag": False})

        assert invocation.state == InvocationState.SUCCEEDED
        assert invocation.skipped == ["two"]
        assert invocation.executed == ["one", "three"]
        assert engine.state.get("two") is UNSET

    @pytest.mark.asyncio
    async def test_failure_without_on_error_halts_and_notifies(self, engine, http_client, providers):
        http_client.request.side_effect = DataError("HTTP 500", kind="http", status=500)
        engine.load_actions(_actions({
            "id": "submit",
            "steps": [
                {"kind": "setState", "params": {"path": "submitting", "value": True}},
                {"id": "post", "kind": "httpCall", "params": {"method": "post", "url": "/api/orders", "body": {"a": 1}}},
                {"kind": "navigate", "params": {"target": "done"}},
            ],
        }))

        invocation = await engine.dispatch("submit")

        assert invocation.state == InvocationState.FAILED
        assert isinstance(invocation.error, ActionError)
        assert invocation.error.step == "post"
        assert engine.state.get("submitting") is True
        assert providers.navigation.history == []
        kind, message = providers.notifications.messages[-1]
        assert kind == "error"
        assert "submit" in message
        args, kwargs = http_client.request.call_args
        assert args[:2] == ("POST", "/api/orders")
        assert kwargs["body"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_on_error_reference_runs_instead_of_notifying(self, engine, http_client, providers):
        http_client.request.side_effect = DataError("down", kind="network")
        engine.load_actions(_actions({
            "id": "submit",
            "steps": [
                {"kind": "httpCall", "params": {"url": "/api/x"}, "onError": "recover"},
                {"kind": "navigate", "params": {"target": "done"}},
            ],
            "handlers": [
                {"id": "recover", "kind": "setState", "params": {"path": "lastError", "value": "{{ error.message }}"}},
            ],
        }))

        invocation = await engine.dispatch("submit")

        assert invocation.state == InvocationState.FAILED
        assert invocation.handled is True
        assert engine.state.get("lastError") == "down"
        assert providers.notifications.messages == []
        assert providers.navigation.history == []

    @pytest.mark.asyncio
    async def test_inline_on_error_step(self, engine, providers):
        engine.load_actions(_actions({
            "id": "a",
            "steps": [
                {"kind": "custom", "params": {"handler": "boom"}, "onError": {"kind": "showNotification", "params": {"kind": "warning", "message": "handled"}}},
            ],
        }))

        def boom(ctx):
            raise RuntimeError("nope")

        engine.register_custom("boom", boom)
        invocation = await engine.dispatch("a")

        assert invocation.state == InvocationState.FAILED
        assert providers.notifications.messages == [("warning", "handled")]

    @pytest.mark.asyncio
    async def test_unknown_action_fails(self, engine, providers):
        invocation = await engine.dispatch("ghost")
        assert invocation.state == InvocationState.FAILED
        assert len(providers.notifications.messages) == 1

    @pytest.mark.asyncio
    async def test_unknown_step_kind_fails(self, engine):
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "teleport"}]}))
        invocation = await engine.dispatch("a")
        assert invocation.state == InvocationState.FAILED
        assert "teleport" in str(invocation.error)

    @pytest.mark.asyncio
    async def test_failure_notification_can_be_disabled(self, engine, config, providers):
        config.update("actions", "notify_failures", False)
        await engine.dispatch("ghost")
        assert providers.notifications.messages == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_second_step_stops_the_rest(self, engine, providers, settle):
        gate = asyncio.get_running_loop().create_future()
        entered = asyncio.Event()

        async def slow(ctx):
            entered.set()
            return await gate

        engine.register_custom("slow", slow)
        engine.load_actions(_actions({
            "id": "wizard",
            "steps": [
                {"id": "s1", "kind": "setState", "params": {"path": "step1", "value": True}},
                {"id": "s2", "kind": "custom", "params": {"handler": "slow", "resultPath": "step2"}},
                {"id": "s3", "kind": "setState", "params": {"path": "step3", "value": True}},
                {"id": "s4", "kind": "navigate", "params": {"target": "end"}},
            ],
        }))

        invocation = engine.start("wizard")
        await entered.wait()
        assert engine.cancel(invocation.id, "user left")
        gate.set_result("late response")
        await invocation.wait()

        assert invocation.state == InvocationState.CANCELLED
        assert invocation.executed == ["s1"]
        assert engine.state.get("step1") is True
        assert engine.state.get("step2") is UNSET
        assert engine.state.get("step3") is UNSET
        assert providers.navigation.history == []
        assert providers.notifications.messages == []

    @pytest.mark.asyncio
    async def test_disposing_the_scope_cancels_live_invocations(self, engine):
        scope = CancellationScope("page:orders")
        engine.set_scope(scope)

        async def forever(ctx):
            await asyncio.Event().wait()

        engine.register_custom("forever", forever)
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "custom", "params": {"handler": "forever"}}]}))

        first = engine.start("a")
        second = engine.start("a")
        await asyncio.sleep(0)
        scope.dispose("navigated away")
        await asyncio.gather(first.wait(), second.wait())

        assert first.state == InvocationState.CANCELLED
        assert second.state == InvocationState.CANCELLED
        assert scope.active_tokens == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_invocation(self, engine):
        assert engine.cancel("nope#1") is False


class TestQueueing:
    @pytest.mark.asyncio
    async def test_posts_for_one_action_run_one_at_a_time(self, engine):
        order = []
        gates = {}

        async def record(ctx):
            n = ctx.invocation.payload["n"]
            order.append(f"start{n}")
            gates[n] = asyncio.get_running_loop().create_future()
            await gates[n]
            order.append(f"end{n}")

        engine.register_custom("record", record)
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "custom", "params": {"handler": "record"}}]}))

        first = engine.post(ActionMessage("a", {"n": 1}))
        second = engine.post(ActionMessage("a", {"n": 2}))
        while 1 not in gates:
            await asyncio.sleep(0)
        for _ in range(5):
            await asyncio.sleep(0)
        assert order == ["start1"]

        gates[1].set_result(None)
        while 2 not in gates:
            await asyncio.sleep(0)
        gates[2].set_result(None)
        results = await asyncio.gather(first, second)

        assert order == ["start1", "end1", "start2", "end2"]
        assert all(r.state == InvocationState.SUCCEEDED for r in results)

    @pytest.mark.asyncio
    async def test_distinct_invocations_overlap_and_last_write_wins(self, engine):
        gates = {"a": asyncio.get_running_loop().create_future(), "b": asyncio.get_running_loop().create_future()}

        async def wait_gate(ctx):
            await gates[ctx.params["gate"]]
            return ctx.params["gate"]

        engine.register_custom("wait", wait_gate)
        engine.load_actions(_actions(
            {"id": "a", "steps": [{"kind": "custom", "params": {"handler": "wait", "gate": "a", "resultPath": "selected"}}]},
            {"id": "b", "steps": [{"kind": "custom", "params": {"handler": "wait", "gate": "b", "resultPath": "selected"}}]},
        ))

        first = engine.start("a")
        second = engine.start("b")
        await asyncio.sleep(0)
        assert len(engine.live_invocations) == 2

        gates["b"].set_result(None)
        await second.wait()
        gates["a"].set_result(None)
        await first.wait()

        assert engine.state.get("selected") == "a"


class TestSteps:
    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, engine):
        calls = []

        def flaky(ctx):
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("flaky")
            return "ok"

        engine.register_custom("flaky", flaky)
        engine.load_actions(_actions({"id": "a", "steps": [
            {"id": "f", "kind": "custom", "params": {"handler": "flaky"}, "retry": {"attempts": 3, "delay": 0}},
        ]}))

        invocation = await engine.dispatch("a")

        assert invocation.state == InvocationState.SUCCEEDED
        assert invocation.outputs["f"] == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_fails_the_step(self, engine):
        async def slow(ctx):
            await asyncio.sleep(1)

        engine.register_custom("slow", slow)
        engine.load_actions(_actions({"id": "a", "steps": [
            {"id": "s", "kind": "custom", "params": {"handler": "slow"}, "timeout": 0.01},
        ]}))

        invocation = await engine.dispatch("a")

        assert invocation.state == InvocationState.FAILED
        assert "timed out" in str(invocation.error)

    @pytest.mark.asyncio
    async def test_http_result_is_stored(self, engine, http_client):
        http_client.request.return_value = {"id": 99}
        engine.load_actions(_actions({"id": "a", "steps": [
            {"id": "create", "kind": "httpCall", "params": {"url": "/api/x", "resultPath": "created"}},
            {"kind": "setState", "params": {"path": "createdId", "value": "{{ steps.create.id }}"}},
        ]}))

        await engine.dispatch("a")

        assert engine.state.get("created") == {"id": 99}
        assert engine.state.get("createdId") == 99

    @pytest.mark.asyncio
    async def test_dialog_result(self, engine, providers):
        providers.dialogs.results["confirm"] = True
        engine.load_actions(_actions({"id": "a", "steps": [
            {"kind": "openDialog", "params": {"dialog": "confirm", "params": {"title": "Sure?"}, "resultPath": "confirmed"}},
            {"kind": "navigate", "guard": "state.confirmed", "params": {"target": "next"}},
        ]}))

        await engine.dispatch("a")

        assert providers.dialogs.opened == [("confirm", {"title": "Sure?"})]
        assert providers.navigation.current == "next"

    @pytest.mark.asyncio
    async def test_reset_and_merge_state(self, engine):
        engine.state.load({"filters": {"q": "", "page": 1}})
        engine.load_actions(_actions(
            {"id": "set", "steps": [{"kind": "setState", "params": {"path": "filters", "value": {"q": "x"}, "merge": True}}]},
            {"id": "reset", "steps": [{"kind": "resetState", "params": {"paths": ["filters"]}}]},
        ))

        await engine.dispatch("set")
        assert engine.state.get("filters") == {"q": "x", "page": 1}
        await engine.dispatch("reset")
        assert engine.state.get("filters") == {"q": "", "page": 1}

    @pytest.mark.asyncio
    async def test_refresh_datasource(self, engine, http_client):
        http_client.request.return_value = {"total": 1}
        resolver = engine.resolver
        resolver.load_page(load_page({
            "pageId": "p",
            "datasources": [{"id": "revenue", "kind": "http", "http": {"url": "/api/revenue"}}],
        }).page.datasources)
        await resolver.fetch("revenue")
        http_client.request.return_value = {"total": 2}
        engine.load_actions(_actions({"id": "a", "steps": [
            {"id": "r", "kind": "refreshDatasource", "params": {"datasource": "revenue"}},
        ]}))

        invocation = await engine.dispatch("a")

        assert invocation.outputs["r"] == {"total": 2}
        assert resolver.resolve("revenue").value == {"total": 2}

    @pytest.mark.asyncio
    async def test_refresh_failure_is_a_step_failure(self, engine, http_client):
        http_client.request.side_effect = DataError("down")
        engine.resolver.load_page(load_page({
            "pageId": "p",
            "datasources": [{"id": "revenue", "kind": "http", "http": {"url": "/api/revenue"}}],
        }).page.datasources)
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "refreshDatasource", "params": {"datasource": "revenue"}}]}))

        invocation = await engine.dispatch("a")

        assert invocation.state == InvocationState.FAILED

    @pytest.mark.asyncio
    async def test_custom_step_result_commits(self, engine):
        def handler(ctx):
            return StepResult("done", [lambda: ctx.engine.state.set("flag", ctx.params["value"])])

        engine.register_custom("flag", handler)
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "custom", "params": {"handler": "flag", "value": 3}}]}))

        invocation = await engine.dispatch("a")

        assert invocation.last_output == "done"
        assert engine.state.get("flag") == 3

    @pytest.mark.asyncio
    async def test_missing_required_param(self, engine):
        engine.load_actions(_actions({"id": "a", "steps": [{"kind": "navigate"}]}))
        invocation = await engine.dispatch("a")
        assert "target" in str(invocation.error)


FORM_PAGE = {
    "pageId": "signup",
    "widgets": [{
        "id": "form",
        "type": "Container",
        "children": [
            {"id": "email", "type": "Input", "validation": [{"rule": "required"}, {"rule": "email"}]},
            {"id": "password", "type": "Input", "field": "form.pw", "validation": [{"rule": "minLength", "value": 8}]},
            {"id": "confirm", "type": "Input", "validation": [{"rule": "compare", "other": "password", "message": "Passwords differ"}]},
        ],
    }],
    "actions": [{
        "id": "register",
        "steps": [
            {"kind": "validate", "params": {"form": "form"}, "onError": "never"},
            {"kind": "httpCall", "params": {"method": "POST", "url": "/api/register", "body": "{{ state.form }}"}},
        ],
        "handlers": [{"id": "never", "kind": "navigate", "params": {"target": "error"}}],
    }],
}


class TestValidation:
    @pytest.mark.asyncio
    async def test_validation_failure_blocks_and_shows_inline(self, engine, http_client, providers):
        engine.load_actions(load_page(FORM_PAGE).page)
        engine.state.set("form.email", "not-an-email")
        engine.state.set("form.pw", "short")
        engine.state.set("form.confirm", "other")

        invocation = await engine.dispatch("register")

        assert invocation.state == InvocationState.FAILED
        assert engine.field_errors.get("email") == ["Invalid email address"]
        assert engine.field_errors.get("password") == ["Must be at least 8 characters"]
        assert engine.field_errors.get("confirm") == ["Passwords differ"]
        http_client.request.assert_not_called()
        assert providers.navigation.history == []
        assert providers.notifications.messages == []

    @pytest.mark.asyncio
    async def test_valid_form_proceeds_and_clears_errors(self, engine, http_client):
        engine.load_actions(load_page(FORM_PAGE).page)
        engine.field_errors.publish(["email"], {"email": ["old"]})
        engine.state.set("form", {"email": "ada@example.com", "pw": "long-enough", "confirm": "long-enough"})

        invocation = await engine.dispatch("register")

        assert invocation.state == InvocationState.SUCCEEDED
        assert engine.field_errors.all() == {}
        body = http_client.request.call_args.kwargs["body"]
        assert body["email"] == "ada@example.com"


class TestRules:
    def _check(self, value, /, **rule):
        return check_rule(ValidationRule(**rule), value, lambda widget_id: UNSET)

    def test_required(self):
        assert self._check("", rule="required") == "This field is required"
        assert self._check("  ", rule="required") is not None
        assert self._check([], rule="required") is not None
        assert self._check(0, rule="required") is None

    def test_empty_values_pass_other_rules(self):
        assert self._check("", rule="email") is None
        assert self._check(None, rule="min", value=3) is None

    def test_pattern(self):
        assert self._check("AB-12", rule="pattern", value=r"[A-Z]{2}-\d+") is None
        assert self._check("ab", rule="pattern", value=r"[A-Z]+", message="Caps") == "Caps"
        with pytest.raises(ConfigError):
            self._check("x", rule="pattern", value="(")

    def test_numeric_bounds(self):
        assert self._check("5", rule="min", value=3) is None
        assert self._check(2, rule="min", value=3) == "Must be at least 3"
        assert self._check(11, rule="max", value=10) == "Must be at most 10"
        assert self._check("abc", rule="max", value=10) == "Must be a number"

    def test_compare_operators(self):
        rule = ValidationRule(rule="compare", other="start", operator="gt")
        assert check_rule(rule, 5, lambda _: 3) is None
        assert check_rule(rule, 2, lambda _: 3) is not None

    def test_validate_widgets_reports_only_failures(self):
        widgets = [
            WidgetDescriptor(id="a", type="Input", validation=[ValidationRule(rule="required")]),
            WidgetDescriptor(id="b", type="Input", validation=[ValidationRule(rule="required")]),
        ]
        values = {"a": "x", "b": ""}
        errors = validate_widgets(widgets, lambda w: values[w.id], lambda _: None)
        assert errors == {"b": ["This field is required"]}


@pytest.mark.asyncio
async def test_signal_reports_state_transitions(engine):
    seen = []
    engine.on_state_changed.connect(lambda invocation: seen.append(invocation.state))
    engine.load_actions(_actions({"id": "a", "steps": []}))

    await engine.dispatch("a")

    assert seen == [InvocationState.RUNNING, InvocationState.SUCCEEDED]
