from typing import Any, Dict, List, Optional, Type, TypeVar

from loguru import logger

from .base_system import BaseSystem
from .config import ConfigManager
from .errors import EngineFault

T = TypeVar('T', bound=BaseSystem)


class ServiceLocator:
    """
    Owns the systems of one PageRuntime.

    A locator is constructed per runtime and passed to every system it
    creates, so two runtimes never see each other's resolver, engine or
    renderer. Systems start in `depends_on` order and stop in the reverse of
    the order they actually started.
    """

    def __init__(self, config: Optional[ConfigManager] = None, providers: Any = None):
        self.config = config or ConfigManager()
        self.providers = providers
        self._systems: Dict[Type[BaseSystem], BaseSystem] = {}
        self._started: List[BaseSystem] = []

    def register_system(self, system_cls: Type[T], *args, **kwargs) -> T:
        """
        Construct `system_cls(locator, config, *args, **kwargs)` once.

        A second registration of the same class returns the existing instance
        and ignores the new arguments.
        """
        existing = self._systems.get(system_cls)
        if existing is not None:
            return existing
        instance = system_cls(self, self.config, *args, **kwargs)
        self._systems[system_cls] = instance
        logger.debug(f"Registered {system_cls.__name__}")
        return instance

    def get_system(self, system_cls: Type[T]) -> T:
        try:
            return self._systems[system_cls]
        except KeyError:
            raise KeyError(f"{system_cls.__name__} is not registered with this runtime") from None

    def has_system(self, system_cls: Type[BaseSystem]) -> bool:
        return system_cls in self._systems

    @property
    def systems(self) -> List[BaseSystem]:
        return list(self._systems.values())

    def start_order(self) -> List[BaseSystem]:
        """
        Systems ordered so each comes after the registered systems it depends on.

        Raises:
            EngineFault: The dependency declarations form a cycle
        """
        ordered: List[BaseSystem] = []
        visiting: set = set()

        def visit(cls: Type[BaseSystem]):
            system = self._systems[cls]
            if system in ordered:
                return
            if cls in visiting:
                raise EngineFault(f"Circular system dependency through {cls.__name__}")
            visiting.add(cls)
            for dependency in cls.depends_on:
                if dependency in self._systems:
                    visit(dependency)
            visiting.discard(cls)
            ordered.append(system)

        for cls in list(self._systems):
            visit(cls)
        return ordered

    async def start_all(self):
        for system in self.start_order():
            if system.is_ready:
                continue
            name = type(system).__name__
            try:
                await system.initialize()
            except Exception as e:
                logger.error(f"{name} failed to start: {e}")
                raise
            self._started.append(system)
            logger.debug(f"{name} started")
        logger.info(f"Runtime systems ready ({len(self._started)})")

    async def stop_all(self):
        """Shut down started systems newest-first; one failure does not stop the rest."""
        while self._started:
            system = self._started.pop()
            if not system.is_ready:
                continue
            try:
                await system.shutdown()
                logger.debug(f"{type(system).__name__} stopped")
            except Exception as e:
                logger.error(f"{type(system).__name__} failed to stop: {e}")
