from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar, List, Type

if TYPE_CHECKING:
    from .config import ConfigManager
    from .locator import ServiceLocator


class BaseSystem(ABC):
    """
    A long-lived part of a PageRuntime (resolver, action engine, renderer).

    Every system is built by its runtime's ServiceLocator as
    `cls(locator, config, *extra)` and reaches its peers through that locator.
    Subclasses list the systems they need started first:

        class Renderer(BaseSystem):
            depends_on = [DatasourceResolver, ActionEngine]

    Overrides of initialize()/shutdown() must call super() last so is_ready
    reflects the finished transition.
    """
    depends_on: ClassVar[List[Type['BaseSystem']]] = []

    def __init__(self, locator: 'ServiceLocator', config: 'ConfigManager'):
        self.locator = locator
        self.config = config
        self._is_ready = False

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @abstractmethod
    async def initialize(self):
        """Connect signals, open sessions."""
        self._is_ready = True

    @abstractmethod
    async def shutdown(self):
        """Cancel workers, close sessions."""
        self._is_ready = False

    async def __aenter__(self):
        if not self._is_ready:
            await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._is_ready:
            await self.shutdown()
