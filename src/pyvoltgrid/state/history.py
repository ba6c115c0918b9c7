"""Bounded, deduplicated observation history.

The log keeps what the dashboard actually showed: optimistic and confirmed
entries for the same edit are both retained, re-deliveries are absorbed.
"""

from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import Callable, Collection, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime

from pyvoltgrid._constants import MAX_HISTORY
from pyvoltgrid.state.events import DedupKey, Observation

Predicate = Callable[[Observation], bool]


@dataclass(frozen=True, slots=True)
class RecordResult:
    """Outcome of :meth:`HistoryLog.record`."""

    recorded: bool


def window_predicate(
    *,
    since: datetime | None = None,
    node_ids: Collection[str] | None = None,
) -> Predicate:
    """Build a predicate matching entries at/after *since* for the given nodes.

    ``None`` for either argument means "no restriction".
    """
    allowed = frozenset(node_ids) if node_ids is not None else None

    def _matches(entry: Observation) -> bool:
        if allowed is not None and entry.id not in allowed:
            return False
        return since is None or entry.observed_at >= since

    return _matches


class HistoryQuery:
    """Lazy, restartable view over matching history entries.

    Each iteration walks a fresh copy of the log taken when iteration starts,
    so recording while a consumer iterates never raises.
    """

    def __init__(self, source: Callable[[], tuple[Observation, ...]], predicate: Predicate) -> None:
        self._source = source
        self._predicate = predicate

    def __iter__(self) -> Iterator[Observation]:
        for entry in self._source():
            if self._predicate(entry):
                yield entry


class HistoryLog:
    """Ring buffer of observations, unique on ``(id, observed_at, value)``."""

    def __init__(self, *, max_history: int = MAX_HISTORY) -> None:
        if max_history <= 0:
            raise ValueError("max_history must be positive")
        self._max_history = max_history
        self._entries: deque[Observation] = deque()
        # Keys seen recently, including ones already evicted from the ring, so a
        # late re-delivery of an evicted entry is not appended out of order.
        self._seen: OrderedDict[DedupKey, None] = OrderedDict()
        self._seen_capacity = max_history * 4
        self._version = 0

    @classmethod
    def from_entries(cls, entries: Iterable[Observation], *, max_history: int = MAX_HISTORY) -> HistoryLog:
        """Rebuild a log from persisted entries, re-applying dedup and the cap."""
        log = cls(max_history=max_history)
        for entry in entries:
            log.record(entry)
        return log

    @property
    def max_history(self) -> int:
        return self._max_history

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every structural change."""
        return self._version

    def record(self, observation: Observation) -> RecordResult:
        key = observation.dedup_key
        if key in self._seen:
            return RecordResult(recorded=False)

        self._entries.append(observation)
        self._seen[key] = None
        while len(self._entries) > self._max_history:
            self._entries.popleft()
        while len(self._seen) > self._seen_capacity:
            self._seen.popitem(last=False)
        self._version += 1
        return RecordResult(recorded=True)

    def purge(self, node_id: str) -> int:
        """Remove every entry for *node_id*. Returns the number removed."""
        kept = [entry for entry in self._entries if entry.id != node_id]
        removed = len(self._entries) - len(kept)
        for key in [key for key in self._seen if key[0] == node_id]:
            del self._seen[key]
        if removed:
            self._entries = deque(kept)
            self._version += 1
        return removed

    def query(self, predicate: Predicate | None = None) -> HistoryQuery:
        return HistoryQuery(self.entries, predicate or (lambda _entry: True))

    def entries(self) -> tuple[Observation, ...]:
        """Immutable copy of the log, oldest first."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
