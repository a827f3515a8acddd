"""
Step Handlers - executors for each action step kind.

A handler performs the step's external effect and returns a StepResult. Local
state changes are returned as `commits` and applied by the engine only after
it has confirmed the invocation was not cancelled meanwhile, so a late
response never mutates shared state.
"""
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from loguru import logger

from ..core.cancellation import CancellationToken
from ..core.errors import ActionError, ValidationError
from ..model.page import ActionDescriptor, Step

if TYPE_CHECKING:
    from .engine import ActionEngine, ActionInvocation


@dataclass
class StepContext:
    engine: 'ActionEngine'
    action: ActionDescriptor
    step: Step
    invocation: 'ActionInvocation'
    params: Dict[str, Any]
    token: CancellationToken
    scope: Dict[str, Any] = field(default_factory=dict)

    def param(self, name: str, default: Any = None, required: bool = False) -> Any:
        value = self.params.get(name, default)
        if required and (value is None or value == ""):
            raise ActionError(
                f"Step '{self.step.label}' requires param '{name}'",
                self.action.id,
                self.step.label,
            )
        return value


@dataclass
class StepResult:
    output: Any = None
    commits: List[Callable[[], None]] = field(default_factory=list)


class StepHandler(ABC):
    """
    Base class for step executors.
    """
    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepResult:
        pass


async def _maybe_await(ctx: StepContext, value: Any) -> Any:
    if inspect.isawaitable(value):
        return await ctx.token.run(value)
    return value


def _store_result(ctx: StepContext, output: Any) -> List[Callable[[], None]]:
    path = ctx.params.get("resultPath")
    if not path:
        return []
    writer = ctx.invocation.id
    return [lambda: ctx.engine.state.set(path, output, writer=writer)]


# =============================================================================
# Built-in steps
# =============================================================================

class HttpCallStep(StepHandler):
    """
    params: method, url, params, body, headers, timeout, resultPath
    """
    async def execute(self, ctx):
        url = ctx.param("url", required=True)
        response = await ctx.token.run(ctx.engine.http_client.request(
            str(ctx.param("method", "GET")).upper(),
            str(url),
            params=ctx.param("params"),
            body=ctx.param("body"),
            headers=ctx.param("headers"),
            timeout=ctx.param("timeout"),
        ))
        return StepResult(response, _store_result(ctx, response))


class NavigateStep(StepHandler):
    """
    params: target, params
    """
    async def execute(self, ctx):
        target = ctx.param("target", required=True)
        params = ctx.param("params") or {}
        ctx.engine.providers.navigation.navigate(str(target), params)
        return StepResult({"target": target, "params": params})


class SetStateStep(StepHandler):
    """
    params: path + value, or values {path: value}; merge shallow-merges dicts
    """
    async def execute(self, ctx):
        values = dict(ctx.param("values") or {})
        if "path" in ctx.params:
            values[ctx.params["path"]] = ctx.params.get("value")
        if not values:
            raise ActionError(f"Step '{ctx.step.label}' has nothing to set", ctx.action.id, ctx.step.label)
        merge = bool(ctx.param("merge", False))
        state = ctx.engine.state
        writer = ctx.invocation.id

        def commit(path, value):
            return lambda: state.set(path, value, merge=merge, writer=writer)

        return StepResult(values, [commit(p, v) for p, v in values.items()])


class ResetStateStep(StepHandler):
    """
    params: paths (list); absent resets the whole page state
    """
    async def execute(self, ctx):
        paths = ctx.param("paths")
        if isinstance(paths, str):
            paths = [paths]
        state = ctx.engine.state
        return StepResult(paths, [lambda: state.reset(paths)])


class ValidateStep(StepHandler):
    """
    params: widgets (ids) or form (container id); absent validates the page
    """
    async def execute(self, ctx):
        checked = ctx.engine.validation_targets(ctx.param("widgets"), ctx.param("form"))
        errors = ctx.engine.validate(checked)
        ctx.engine.field_errors.publish([w.id for w in checked], errors)
        if errors:
            raise ValidationError(errors)
        return StepResult(True)


class ShowNotificationStep(StepHandler):
    """
    params: kind (info | success | warning | error), message
    """
    async def execute(self, ctx):
        message = ctx.param("message", required=True)
        kind = ctx.param("kind", "info")
        ctx.engine.providers.notifications.notify(kind, str(message))
        return StepResult({"kind": kind, "message": message})


class OpenDialogStep(StepHandler):
    """
    params: dialog, params, resultPath
    """
    async def execute(self, ctx):
        dialog = ctx.param("dialog", required=True)
        result = await _maybe_await(ctx, ctx.engine.providers.dialogs.open_dialog(str(dialog), ctx.param("params") or {}))
        return StepResult(result, _store_result(ctx, result))


class RefreshDatasourceStep(StepHandler):
    """
    params: datasource, params (absent refreshes every cached variant)
    """
    async def execute(self, ctx):
        datasource_id = ctx.param("datasource", required=True)
        resolver = ctx.engine.resolver
        if resolver is None:
            raise ActionError("No datasource resolver available", ctx.action.id, ctx.step.label)
        if ctx.params.get("params") is not None:
            states = [await ctx.token.run(resolver.refresh(datasource_id, ctx.params["params"]))]
        else:
            states = await ctx.token.run(resolver.refresh_all(datasource_id))
        failed = [s for s in states if s.is_error]
        if failed:
            raise ActionError(
                f"Refreshing '{datasource_id}' failed: {failed[0].error}",
                ctx.action.id,
                ctx.step.label,
                cause=failed[0].error,
            )
        return StepResult([s.value for s in states] if len(states) > 1 else states[0].value)


class CustomStep(StepHandler):
    """
    params: handler (name registered on the engine); the rest is passed along.

    Custom functions receive the StepContext and may be sync or async. A
    returned StepResult is used as is; any other value becomes the output.
    """
    async def execute(self, ctx):
        name = ctx.param("handler", required=True)
        func = ctx.engine.custom_handler(name)
        if func is None:
            raise ActionError(f"Unknown custom handler '{name}'", ctx.action.id, ctx.step.label)
        result = await _maybe_await(ctx, func(ctx))
        if isinstance(result, StepResult):
            return result
        return StepResult(result, _store_result(ctx, result))


class StepRegistry:
    """
    Step kind -> handler.
    """
    def __init__(self):
        self._handlers: Dict[str, StepHandler] = {}

    def register(self, kind: str, handler: StepHandler):
        if kind in self._handlers:
            logger.debug(f"Replacing step handler for '{kind}'")
        self._handlers[kind] = handler

    def get(self, kind: str) -> Optional[StepHandler]:
        return self._handlers.get(kind)

    def kinds(self) -> List[str]:
        return list(self._handlers)


def default_step_registry() -> StepRegistry:
    registry = StepRegistry()
    registry.register("httpCall", HttpCallStep())
    registry.register("navigate", NavigateStep())
    registry.register("setState", SetStateStep())
    registry.register("resetState", ResetStateStep())
    registry.register("validate", ValidateStep())
    registry.register("showNotification", ShowNotificationStep())
    registry.register("openDialog", OpenDialogStep())
    registry.register("refreshDatasource", RefreshDatasourceStep())
    registry.register("custom", CustomStep())
    return registry
