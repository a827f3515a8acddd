from typing import Callable, List

from loguru import logger


class Signal:
    """
    Synchronous observer used between runtime systems.

    Datasource changes, state writes and invocation transitions are all
    broadcast through Signals. Slots run in connection order on the emitting
    call stack; an exception in one slot is logged and the next slot still runs.
    """
    def __init__(self, name: str = "Signal"):
        self.name = name
        self._slots: List[Callable] = []

    def connect(self, slot: Callable):
        if slot not in self._slots:
            self._slots.append(slot)

    def disconnect(self, slot: Callable):
        if slot in self._slots:
            self._slots.remove(slot)

    def clear(self):
        self._slots.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._slots)

    def emit(self, *args, **kwargs):
        # Slots may disconnect themselves while running.
        for slot in tuple(self._slots):
            try:
                slot(*args, **kwargs)
            except Exception as e:
                logger.error(f"{self.name}: slot {getattr(slot, '__qualname__', slot)} raised {e!r}")
