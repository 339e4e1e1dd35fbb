"""
Change notification for engine consumers.

Listeners receive a ``ChangeEvent`` carrying the aggregate views recomputed
for the entity set right after the change, never raw entity lists.
"""

import logging
from enum import Enum
from typing import Callable, Dict

from schemas.common import EntityId, StrictResponse
from schemas.pipeline import FunnelSnapshot

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    """What happened to the entity set."""

    OPTIMISTIC = "optimistic"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DELETED = "deleted"
    RESTORED = "restored"
    ADDED = "added"
    REFRESHED = "refreshed"


class ChangeEvent(StrictResponse):
    """One notification delivered to subscribers."""

    kind: ChangeKind
    entity_ids: list[EntityId]
    snapshot: FunnelSnapshot


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Synchronous fan-out to subscribed listeners."""

    def __init__(self):
        self._listeners: Dict[int, Listener] = {}
        self._next_key = 0

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener; calling it twice is harmless
        """
        key = self._next_key
        self._next_key += 1
        self._listeners[key] = listener

        def unsubscribe() -> None:
            self._listeners.pop(key, None)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        # listener failures are logged and fan-out continues
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Change listener failed on '{event.kind.value}' event")

    def clear(self) -> None:
        self._listeners.clear()
