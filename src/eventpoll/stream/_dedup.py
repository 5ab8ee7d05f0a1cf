"""
Bounded deduplication window for event ids.
"""

from collections import OrderedDict

DEFAULT_DEDUP_WINDOW_SIZE = 5000


class DedupWindow:
    """
    Fixed-capacity membership cache of recently observed event ids.

    Ids are kept in insertion order. When recording an id pushes the size
    past `capacity`, the oldest inserted id is evicted (FIFO, not LRU:
    `seen()` does not refresh an id). Recording an id that is already
    present is a no-op, so the window never holds duplicates.

    The events API often returns the same events at several subsequent
    stream positions; the stream uses the window as "check, then record":

        >>> window = DedupWindow(capacity=2)
        >>> window.seen("e1")
        False
        >>> window.record("e1")
        >>> window.seen("e1")
        True

    Not thread-safe: owned by a single polling loop.
    """

    def __init__(self, capacity: int = DEFAULT_DEDUP_WINDOW_SIZE) -> None:
        assert capacity > 0, f"capacity must be > 0, got {capacity}"
        self.capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()

    def seen(self, event_id: str) -> bool:
        """Return whether `event_id` is in the window, without mutating it."""
        return event_id in self._ids

    def record(self, event_id: str) -> None:
        """Insert `event_id`, evicting the oldest id if capacity is exceeded."""
        if event_id in self._ids:
            return
        self._ids[event_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"DedupWindow(size={len(self._ids)}, capacity={self.capacity})"
