"""
Page Document Loader.

Parses a backend page document into a PageConfig without letting one bad
descriptor reject the whole page:
- a malformed widget becomes an `__invalid__` node (rendered as a config-error
  placeholder) and its children are still loaded
- a malformed datasource or action is dropped; widgets or events that point to
  it fail at their own node / dispatch
- unknown step kinds and unsupported schema versions only produce diagnostics

Only a document without a usable `pageId` is rejected.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ConfigError
from .page import (
    STEP_KINDS,
    SUPPORTED_SCHEMA_VERSIONS,
    ActionDescriptor,
    DatasourceDescriptor,
    PageConfig,
    WidgetDescriptor,
)

INVALID_WIDGET_TYPE = "__invalid__"


@dataclass
class PageLoadResult:
    page: PageConfig
    diagnostics: List[ConfigError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


class PageLoader:
    def __init__(self):
        self.diagnostics: List[ConfigError] = []

    def load(self, document: Union[str, bytes, Mapping[str, Any]]) -> PageLoadResult:
        self.diagnostics = []
        raw = self._decode(document)

        page_id = raw.get("pageId", raw.get("page_id"))
        if not isinstance(page_id, str) or not page_id:
            raise ConfigError("Page document has no 'pageId'")

        version = str(raw.get("schemaVersion", raw.get("schema_version", "1")))
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            self._diag(f"Unsupported schemaVersion '{version}', interpreting as {SUPPORTED_SCHEMA_VERSIONS[-1]}")

        widgets = [self._load_widget(item, f"widgets[{i}]") for i, item in enumerate(self._list(raw, "widgets"))]
        self._check_widget_ids(widgets)

        page = PageConfig(
            page_id=page_id,
            title=str(raw.get("title", "")),
            schema_version=version,
            widgets=widgets,
            datasources=self._load_datasources(self._list(raw, "datasources")),
            actions=self._load_actions(self._list(raw, "actions")),
            initial_state=raw.get("initialState", raw.get("initial_state")) or {},
        )
        if self.diagnostics:
            logger.warning(f"Page '{page_id}' loaded with {len(self.diagnostics)} diagnostics")
        else:
            logger.debug(f"Page '{page_id}' loaded")
        return PageLoadResult(page, list(self.diagnostics))

    # -- helpers --------------------------------------------------------------

    def _decode(self, document) -> Dict[str, Any]:
        if isinstance(document, (str, bytes)):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Page document is not valid JSON: {e}") from e
        if not isinstance(document, Mapping):
            raise ConfigError("Page document must be a JSON object")
        return dict(document)

    def _list(self, raw: Dict[str, Any], key: str) -> List[Any]:
        value = raw.get(key) or []
        if not isinstance(value, list):
            self._diag(f"'{key}' must be a list, ignoring it")
            return []
        return value

    def _diag(self, message: str, node_id: str = None):
        error = ConfigError(message, node_id)
        logger.warning(f"Config: {error}")
        self.diagnostics.append(error)

    def _load_widget(self, raw: Any, location: str) -> WidgetDescriptor:
        if not isinstance(raw, Mapping):
            return self._invalid_widget(f"invalid:{location}", f"{location} is not an object")

        children_raw = raw.get("children") or []
        node_raw = {k: v for k, v in raw.items() if k != "children"}
        widget_id = raw.get("id") if isinstance(raw.get("id"), str) else f"invalid:{location}"

        try:
            widget = WidgetDescriptor.model_validate(node_raw)
        except PydanticValidationError as e:
            widget = self._invalid_widget(widget_id, f"{location}: {_first_error(e)}")

        if not isinstance(children_raw, list):
            self._diag(f"{location}.children must be a list", widget_id)
            children_raw = []
        children = [self._load_widget(child, f"{location}.children[{i}]") for i, child in enumerate(children_raw)]
        return widget.model_copy(update={"children": children})

    def _invalid_widget(self, widget_id: str, message: str) -> WidgetDescriptor:
        self._diag(message, widget_id)
        return WidgetDescriptor(id=widget_id, type=INVALID_WIDGET_TYPE, props={"error": message})

    def _check_widget_ids(self, widgets: List[WidgetDescriptor]):
        seen = set()
        for root in widgets:
            for widget in root.walk():
                if widget.id in seen:
                    self._diag(f"Duplicate widget id '{widget.id}'", widget.id)
                seen.add(widget.id)
                dupes = widget.duplicate_binding_props()
                if dupes:
                    self._diag(f"Ambiguous bindings for props {dupes}", widget.id)

    def _load_datasources(self, items: List[Any]) -> List[DatasourceDescriptor]:
        result: Dict[str, DatasourceDescriptor] = {}
        for i, raw in enumerate(items):
            try:
                descriptor = DatasourceDescriptor.model_validate(raw)
            except PydanticValidationError as e:
                self._diag(f"datasources[{i}] dropped: {_first_error(e)}")
                continue
            if descriptor.id in result:
                self._diag(f"Duplicate datasource id '{descriptor.id}', keeping the first")
                continue
            result[descriptor.id] = descriptor
        return list(result.values())

    def _load_actions(self, items: List[Any]) -> List[ActionDescriptor]:
        result: Dict[str, ActionDescriptor] = {}
        for i, raw in enumerate(items):
            try:
                action = ActionDescriptor.model_validate(raw)
            except PydanticValidationError as e:
                self._diag(f"actions[{i}] dropped: {_first_error(e)}")
                continue
            if action.id in result:
                self._diag(f"Duplicate action id '{action.id}', keeping the first")
                continue
            for step in (*action.steps, *action.handlers):
                if step.kind not in STEP_KINDS:
                    self._diag(f"Action '{action.id}' uses unknown step kind '{step.kind}'")
                if isinstance(step.on_error, str) and action.find_step(step.on_error) is None:
                    self._diag(f"Action '{action.id}' step '{step.label}' references missing onError step '{step.on_error}'")
            result[action.id] = action
        return list(result.values())


def load_page(document: Union[str, bytes, Mapping[str, Any]]) -> PageLoadResult:
    """
    Parse a page document.

    Raises:
        ConfigError: If the document is not a JSON object with a pageId
    """
    return PageLoader().load(document)
