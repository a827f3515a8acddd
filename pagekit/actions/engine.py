"""
Action Engine System.

Runs declarative step graphs triggered by UI events.

- Steps of one invocation run strictly in order; distinct invocations run
  concurrently. Messages posted for the same action id are queued and
  processed one at a time.
- A false guard skips only its step.
- A failed step runs its onError step and halts; without onError the engine
  halts and notifies. Committed side effects are not rolled back.
- Validation failures are shown inline and never routed to onError.
- Cancelling an invocation stops scheduling further steps and discards the
  in-flight step's result.

Signals:
    on_state_changed(invocation): Running, Succeeded, Failed, Cancelled
    on_step(invocation, step_label, status): started | succeeded | skipped | failed
"""
import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from ..core.base_system import BaseSystem
from ..core.cancellation import CancellationScope, CancellationToken
from ..core.errors import ActionError, OperationCancelled, PagekitError, ValidationError
from ..core.events import Signal
from ..core.state import FieldErrors, LocalStateStore
from ..datasources.resolver import DatasourceResolver
from ..expressions import evaluate_condition, resolve_templates
from ..model.page import ActionDescriptor, PageConfig, RetryPolicy, Step, WidgetDescriptor
from ..providers import Providers, auth_functions
from .steps import StepContext, StepHandler, StepResult, default_step_registry
from .validation import validate_widgets


class InvocationState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


_invocation_ids = itertools.count(1)


@dataclass
class ActionMessage:
    """A UI event addressed to an action."""
    action_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    source_widget: Optional[str] = None
    event: Optional[str] = None


class ActionInvocation:
    """
    One dispatch of an action. Lives in the engine's live table until it ends.
    """
    def __init__(self, action_id: str, payload: Dict[str, Any], token: CancellationToken, source_widget: Optional[str] = None):
        self.id = f"{action_id}#{next(_invocation_ids)}"
        self.action_id = action_id
        self.payload = dict(payload or {})
        self.token = token
        self.source_widget = source_widget
        self.state = InvocationState.IDLE
        self.outputs: Dict[str, Any] = {}
        self.last_output: Any = None
        self.executed: List[str] = []
        self.skipped: List[str] = []
        self.error: Optional[PagekitError] = None
        self.handled = False
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> 'ActionInvocation':
        await self._done.wait()
        return self

    def record(self, step: Step, output: Any):
        self.executed.append(step.label)
        self.outputs[step.label] = output
        self.last_output = output

    def error_info(self) -> Optional[Dict[str, Any]]:
        if self.error is None:
            return None
        return {
            "message": str(self.error),
            "type": type(self.error).__name__,
            "step": getattr(self.error, "step", None),
        }

    def __repr__(self) -> str:
        return f"ActionInvocation({self.id!r}, {self.state.value})"


class ActionEngine(BaseSystem):
    depends_on = [DatasourceResolver]

    def __init__(
        self,
        locator,
        config,
        state: Optional[LocalStateStore] = None,
        field_errors: Optional[FieldErrors] = None,
        http_client=None,
    ):
        super().__init__(locator, config)
        if locator.providers is None:
            locator.providers = Providers()
        self.state = state or LocalStateStore()
        self.field_errors = field_errors or FieldErrors()
        self._http_client = http_client
        self.steps = default_step_registry()
        self.page: Optional[PageConfig] = None
        self.scope = CancellationScope("engine")
        self._actions: Dict[str, ActionDescriptor] = {}
        self._custom: Dict[str, Callable[[StepContext], Any]] = {}
        self._live: Dict[str, ActionInvocation] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self.on_state_changed = Signal("ActionStateChanged")
        self.on_step = Signal("ActionStep")

    async def initialize(self):
        logger.info("ActionEngine initializing...")
        await super().initialize()

    async def shutdown(self):
        logger.info("ActionEngine shutting down...")
        self.cancel_all("engine shutdown")
        for task in self._workers.values():
            task.cancel()
        for task in list(self._workers.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._queues.clear()
        await super().shutdown()

    # -- collaborators ---------------------------------------------------------

    @property
    def providers(self):
        return self.locator.providers

    @property
    def resolver(self) -> Optional[DatasourceResolver]:
        if self.locator.has_system(DatasourceResolver):
            return self.locator.get_system(DatasourceResolver)
        return None

    @property
    def http_client(self):
        if self._http_client is not None:
            return self._http_client
        resolver = self.resolver
        if resolver is None:
            raise ActionError("No HTTP client configured")
        return resolver.http_client

    def register_step(self, kind: str, handler: StepHandler):
        self.steps.register(kind, handler)

    def register_custom(self, name: str, func: Callable[[StepContext], Any]):
        """Register a handler for `custom` steps with `params.handler == name`."""
        self._custom[name] = func

    def custom_handler(self, name: str) -> Optional[Callable[[StepContext], Any]]:
        return self._custom.get(name)

    # -- page ------------------------------------------------------------------

    def load_actions(self, source: Union[PageConfig, Iterable[ActionDescriptor]]):
        if isinstance(source, PageConfig):
            self.page = source
            actions = source.actions
        else:
            actions = list(source)
        self._actions = {action.id: action for action in actions}
        logger.debug(f"Loaded {len(self._actions)} actions")

    def set_scope(self, scope: CancellationScope):
        """Tokens for new dispatches come from `scope` (the current page)."""
        self.scope = scope

    def action(self, action_id: str) -> Optional[ActionDescriptor]:
        return self._actions.get(action_id)

    @property
    def live_invocations(self) -> List[ActionInvocation]:
        return list(self._live.values())

    # -- dispatch --------------------------------------------------------------

    async def dispatch(
        self,
        action_id: str,
        payload: Optional[Dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        source_widget: Optional[str] = None,
    ) -> ActionInvocation:
        """
        Run an action to completion. Step failures end in the Failed state
        rather than raising.
        """
        invocation = self.start(action_id, payload, token, source_widget)
        return await invocation.wait()

    def start(
        self,
        action_id: str,
        payload: Optional[Dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        source_widget: Optional[str] = None,
    ) -> ActionInvocation:
        """Schedule an action and return its invocation immediately."""
        owned = token is None
        token = token or self.scope.create_token(f"action:{action_id}")
        invocation = ActionInvocation(action_id, payload or {}, token, source_widget)
        self._live[invocation.id] = invocation
        task = asyncio.ensure_future(self._execute(invocation, owned))
        task.add_done_callback(self._log_crash)
        return invocation

    def post(self, message: ActionMessage) -> asyncio.Future:
        """
        Queue a UI event. Messages for the same action run one after another.

        Returns:
            Future resolved with the finished ActionInvocation
        """
        future = asyncio.get_running_loop().create_future()
        queue = self._queues.get(message.action_id)
        if queue is None:
            queue = self._queues[message.action_id] = asyncio.Queue()
        queue.put_nowait((message, future))
        worker = self._workers.get(message.action_id)
        if worker is None or worker.done():
            self._workers[message.action_id] = asyncio.ensure_future(self._drain(message.action_id, queue))
        return future

    async def _drain(self, action_id: str, queue: asyncio.Queue):
        while not queue.empty():
            message, future = queue.get_nowait()
            try:
                payload = dict(message.payload)
                if message.event:
                    payload.setdefault("event", message.event)
                invocation = await self.dispatch(message.action_id, payload, source_widget=message.source_widget)
                if not future.done():
                    future.set_result(invocation)
            except Exception as e:
                logger.error(f"Action queue '{action_id}' failed: {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                queue.task_done()
        self._workers.pop(action_id, None)

    def cancel(self, invocation_id: str, reason: str = "cancelled") -> bool:
        invocation = self._live.get(invocation_id)
        if invocation is None:
            return False
        return invocation.token.cancel(reason)

    def cancel_all(self, reason: str = "cancelled"):
        for invocation in list(self._live.values()):
            invocation.token.cancel(reason)

    # -- execution -------------------------------------------------------------

    def _set_state(self, invocation: ActionInvocation, state: InvocationState):
        invocation.state = state
        self.on_state_changed.emit(invocation)

    async def _execute(self, invocation: ActionInvocation, owned_token: bool):
        action = self._actions.get(invocation.action_id)
        invocation.started_at = time.monotonic()
        self._set_state(invocation, InvocationState.RUNNING)
        try:
            if action is None:
                error = ActionError(f"Unknown action '{invocation.action_id}'", invocation.action_id)
                invocation.error = error
                self.notify_failure(invocation.action_id, error)
                self._set_state(invocation, InvocationState.FAILED)
                return

            logger.debug(f"Action {invocation.id} started ({len(action.steps)} steps)")
            for step in action.steps:
                invocation.token.raise_if_cancelled()
                if not await self._run_step(action, step, invocation):
                    self._set_state(invocation, InvocationState.FAILED)
                    return
            self._set_state(invocation, InvocationState.SUCCEEDED)
            logger.debug(f"Action {invocation.id} succeeded")
        except OperationCancelled as e:
            logger.info(f"Action {invocation.id} cancelled: {e.reason}")
            self._set_state(invocation, InvocationState.CANCELLED)
        except Exception as e:
            logger.exception(f"Action {invocation.id} aborted: {e}")
            invocation.error = e if isinstance(e, PagekitError) else ActionError(str(e), invocation.action_id, cause=e)
            self._set_state(invocation, InvocationState.FAILED)
        finally:
            invocation.finished_at = time.monotonic()
            self._live.pop(invocation.id, None)
            if owned_token:
                self.scope.release(invocation.token)
            invocation._done.set()

    def _scope(self, invocation: ActionInvocation) -> Dict[str, Any]:
        return {
            "payload": invocation.payload,
            "event": invocation.payload,
            "state": self.state.get(),
            "steps": dict(invocation.outputs),
            "result": invocation.last_output,
            "error": invocation.error_info(),
            "user": self.providers.auth.context().as_scope(),
        }

    def _functions(self) -> Dict[str, Callable]:
        return auth_functions(self.providers.auth.context())

    async def _run_step(self, action: ActionDescriptor, step: Step, invocation: ActionInvocation, route_errors: bool = True) -> bool:
        """
        Run one step. Returns False when the action must halt.

        Raises:
            OperationCancelled: The invocation was cancelled
        """
        scope = self._scope(invocation)
        functions = self._functions()
        try:
            if not evaluate_condition(step.guard, scope, functions):
                invocation.skipped.append(step.label)
                self.on_step.emit(invocation, step.label, "skipped")
                logger.debug(f"Action {invocation.id}: step '{step.label}' skipped by guard")
                return True

            handler = self.steps.get(step.kind)
            if handler is None:
                raise ActionError(f"Unknown step kind '{step.kind}'", action.id, step.label)

            self.on_step.emit(invocation, step.label, "started")
            params = resolve_templates(step.params, scope, functions)
            ctx = StepContext(self, action, step, invocation, params, invocation.token, scope)
            result = await self._execute_step(handler, ctx)

            # response of a cancelled invocation is dropped here
            invocation.token.raise_if_cancelled()
            for commit in result.commits:
                commit()
            invocation.record(step, result.output)
            self.on_step.emit(invocation, step.label, "succeeded")
            return True

        except OperationCancelled:
            raise
        except ValidationError as e:
            logger.info(f"Action {invocation.id}: validation failed ({', '.join(e.errors)})")
            invocation.error = e
            self.on_step.emit(invocation, step.label, "failed")
            return False
        except Exception as e:
            error = e if isinstance(e, ActionError) else ActionError(str(e), action.id, step.label, cause=e)
            if error.action_id is None:
                error.action_id = action.id
            if error.step is None:
                error.step = step.label
            logger.warning(f"Action {invocation.id}: step '{step.label}' failed: {error}")
            invocation.error = error
            invocation.handled = False
            self.on_step.emit(invocation, step.label, "failed")

            if route_errors and step.on_error is not None:
                fallback = step.on_error if isinstance(step.on_error, Step) else action.find_step(step.on_error)
                if fallback is not None:
                    invocation.token.raise_if_cancelled()
                    invocation.handled = await self._run_step(action, fallback, invocation, route_errors=False)
                    return False
                logger.error(f"Action '{action.id}': onError step '{step.on_error}' not found")

            self.notify_failure(action.id, error)
            return False

    async def _execute_step(self, handler: StepHandler, ctx: StepContext) -> StepResult:
        """Run a handler with the step's timeout and retry policy."""
        step = ctx.step
        retry = step.retry or RetryPolicy()
        timeout = step.timeout if step.timeout is not None else self.config.data.actions.default_timeout
        error: Optional[BaseException] = None

        for attempt in range(retry.attempts):
            call = handler.execute(ctx)
            if timeout:
                call = asyncio.wait_for(call, timeout)
            try:
                return await ctx.token.run(call)
            except (OperationCancelled, ValidationError):
                raise
            except asyncio.TimeoutError as e:
                error = ActionError(f"Step '{step.label}' timed out after {timeout}s", ctx.action.id, step.label, cause=e)
            except Exception as e:
                error = e
            if attempt + 1 < retry.attempts:
                delay = retry.delay_for(attempt)
                logger.info(f"Retrying step '{step.label}' in {delay}s ({attempt + 1}/{retry.attempts - 1}): {error}")
                await ctx.token.sleep(delay)
        raise error

    def notify_failure(self, action_id: str, error: PagekitError):
        settings = self.config.data.actions
        if not settings.notify_failures:
            return
        message = settings.failure_message.format(action=action_id, error=error)
        try:
            self.providers.notifications.notify("error", message)
        except Exception as e:
            logger.error(f"Notification provider failed: {e}")

    def _log_crash(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Action execution crashed: {task.exception()}")

    # -- validation ------------------------------------------------------------

    def validation_targets(self, widget_ids: Optional[List[str]] = None, form: Optional[str] = None) -> List[WidgetDescriptor]:
        if self.page is None:
            return []
        if widget_ids:
            targets = []
            for widget_id in widget_ids:
                widget = self.page.widget(widget_id)
                if widget is None:
                    raise ActionError(f"Cannot validate unknown widget '{widget_id}'")
                targets.append(widget)
            return targets
        if form:
            container = self.page.widget(form)
            if container is None:
                raise ActionError(f"Cannot validate unknown form '{form}'")
            return [w for w in container.walk() if w.validation]
        return [w for w in self.page.iter_widgets() if w.validation]

    def validate(self, widgets: List[WidgetDescriptor]) -> Dict[str, List[str]]:
        return validate_widgets(
            widgets,
            lambda w: self.state.get(w.state_path),
            lambda widget_id: self.page.widget(widget_id) if self.page else None,
        )
