"""Change notification bus.

A per-kind registry of zero-argument callbacks. Publishing carries no payload:
subscribers re-read the current state from the :class:`~FirstMillion.core.store.RecordStore`.

"""
import logging
from typing import Callable, Dict, List, Optional

from PySide6 import QtCore


class ChangeBus(QtCore.QObject):
    """Invalidation signal per entity kind.

    Callbacks run synchronously in registration order. After the callbacks the
    Qt ``changed`` signal is emitted with the kind so Qt views can connect to it
    directly.
    """
    changed = QtCore.Signal(str)

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        # One-element list per subscription, so equal callbacks stay distinct entries
        self._subscribers: Dict[str, List[List[Callable[[], None]]]] = {}

    def subscribe(self, kind: str, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback for kind.

        Args:
            kind: The entity kind to observe.
            callback: Called with no arguments after every mutation of kind.

        Returns:
            A function that removes the subscription. Calling it more than once is safe.
        """
        if not callable(callback):
            raise TypeError(f'Callback must be callable, got {type(callback)}.')

        kind = str(kind)
        entry = [callback]
        self._subscribers.setdefault(kind, []).append(entry)

        def unsubscribe() -> None:
            subscribers = self._subscribers.get(kind, [])
            # Identity match: the same callback subscribed twice has two entries
            for i, e in enumerate(subscribers):
                if e is entry:
                    del subscribers[i]
                    break

        return unsubscribe

    def publish(self, kind: str) -> None:
        """Invoke every current subscriber of kind.

        A failing subscriber is logged and does not prevent the others from running.
        """
        kind = str(kind)
        # Copy so subscribers may unsubscribe while being called
        for entry in list(self._subscribers.get(kind, [])):
            try:
                entry[0]()
            except Exception:
                logging.exception(f'Subscriber for "{kind}" failed')

        self.changed.emit(kind)

    def subscriber_count(self, kind: str) -> int:
        return len(self._subscribers.get(str(kind), []))

    def clear(self) -> None:
        """Remove every subscription."""
        self._subscribers.clear()
