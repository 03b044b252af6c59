import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any


@dataclass(order=True)
class TimerEntry:
    due: float
    seq: int
    name: str = field(compare=False)
    payload: Any = field(default=None, compare=False)
    repeat: float | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class TimerQueue:
    """Delayed events keyed by name. One live entry per name; rescheduling replaces it.

    Time is whatever monotonic clock the caller passes in, so the queue never
    sleeps and can be driven by a fake clock.
    """

    def __init__(self):
        self._heap: list[TimerEntry] = []
        self._live: dict[str, TimerEntry] = {}
        self._seq = itertools.count()

    def schedule(self, name: str, delay: float, now: float, payload: Any = None,
                 repeat: float | None = None) -> TimerEntry:
        self.cancel(name)
        entry = TimerEntry(due=now + delay, seq=next(self._seq), name=name,
                           payload=payload, repeat=repeat)
        heapq.heappush(self._heap, entry)
        self._live[name] = entry
        return entry

    def cancel(self, name: str) -> bool:
        entry = self._live.pop(name, None)
        if entry is None:
            return False
        entry.cancelled = True
        return True

    def cancel_all(self):
        for entry in self._live.values():
            entry.cancelled = True
        self._live.clear()
        self._heap.clear()

    def pending(self, name: str) -> bool:
        return name in self._live

    def next_due(self) -> float | None:
        self._drop_cancelled()
        return self._heap[0].due if self._heap else None

    def pop_due(self, now: float) -> TimerEntry | None:
        """Pop the earliest entry due at `now`, re-arming it if it repeats."""
        self._drop_cancelled()
        if not self._heap or self._heap[0].due > now:
            return None
        entry = heapq.heappop(self._heap)
        if entry.repeat is not None:
            # Missed periods are skipped, not replayed.
            due = entry.due + entry.repeat
            if due <= now:
                due = now + entry.repeat
            nxt = TimerEntry(due=due, seq=next(self._seq), name=entry.name,
                             payload=entry.payload, repeat=entry.repeat)
            heapq.heappush(self._heap, nxt)
            self._live[entry.name] = nxt
        else:
            self._live.pop(entry.name, None)
        return entry

    def _drop_cancelled(self):
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
