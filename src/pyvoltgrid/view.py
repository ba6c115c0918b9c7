"""View projection.

Pure, memoized derivations of renderable data from the entity store and the
history log. Results are recomputed only when the inputs' structural
versions (or the query arguments) change; a cache hit returns the very same
object.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pyvoltgrid._constants import HIGHLIGHT_TTL_SECONDS, SAFE_MAX, SAFE_MIN, is_safe_voltage
from pyvoltgrid.state.alerts import Cancelable, Scheduler, loop_scheduler
from pyvoltgrid.state.events import Observation
from pyvoltgrid.state.history import HistoryLog, window_predicate
from pyvoltgrid.state.store import EntityStore

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TimeFrame(StrEnum):
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ALL = "all"

    @property
    def limit(self) -> timedelta | None:
        if self is TimeFrame.FIVE_MINUTES:
            return timedelta(minutes=5)
        if self is TimeFrame.FIFTEEN_MINUTES:
            return timedelta(minutes=15)
        return None


def node_sort_key(node_id: str) -> tuple[int, int, str]:
    """Numeric ids first in numeric order, then everything else lexically."""
    if node_id.isdigit():
        return (0, int(node_id), node_id)
    return (1, 0, node_id)


@dataclass(frozen=True, slots=True)
class ChartSeries:
    """Chart-ready projection of a history slice.

    ``values[node_id][i]`` is the node's value at ``labels[i]``, carried
    forward between observations and ``None`` before the node's first real
    observation.
    """

    labels: tuple[datetime, ...]
    values: dict[str, tuple[int | None, ...]]
    in_safe_range: dict[str, tuple[bool | None, ...]]


def build_chart_series(
    entries: Iterable[Observation],
    *,
    safe_min: int = SAFE_MIN,
    safe_max: int = SAFE_MAX,
) -> ChartSeries:
    history = list(entries)
    labels = tuple(sorted({entry.observed_at for entry in history}))

    by_node: dict[str, dict[datetime, int]] = {}
    for entry in history:
        by_node.setdefault(entry.id, {})[entry.observed_at] = entry.value

    values: dict[str, tuple[int | None, ...]] = {}
    flags: dict[str, tuple[bool | None, ...]] = {}
    for node_id in sorted(by_node, key=node_sort_key):
        points = by_node[node_id]
        last: int | None = None
        row: list[int | None] = []
        for label in labels:
            if label in points:
                last = points[label]
            row.append(last)
        values[node_id] = tuple(row)
        flags[node_id] = tuple(
            None if value is None else is_safe_voltage(value, low=safe_min, high=safe_max) for value in row
        )
    return ChartSeries(labels=labels, values=values, in_safe_range=flags)


class ViewProjector:
    """Read-only projections consumed by the UI layer."""

    def __init__(
        self,
        store: EntityStore,
        history: HistoryLog,
        *,
        scheduler: Scheduler = loop_scheduler,
        highlight_ttl: float = HIGHLIGHT_TTL_SECONDS,
        safe_min: int = SAFE_MIN,
        safe_max: int = SAFE_MAX,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._history = history
        self._scheduler = scheduler
        self._highlight_ttl = highlight_ttl
        self._safe_min = safe_min
        self._safe_max = safe_max
        self._clock = clock
        self._selected: dict[str, None] = {}
        self._last_touched: str | None = None
        self._highlight_timer: Cancelable | None = None
        self._cache: dict[str, tuple[Any, Any]] = {}

    def _memo(self, name: str, key: Any, compute: Callable[[], Any]) -> Any:
        cached = self._cache.get(name)
        if cached is not None and cached[0] == key:
            return cached[1]
        value = compute()
        self._cache[name] = (key, value)
        return value

    # ------------------------------------------------------------------
    # Node list
    # ------------------------------------------------------------------

    def node_list(self) -> tuple[Observation, ...]:
        """Current observations ordered for display."""

        def _compute() -> tuple[Observation, ...]:
            snapshot = self._store.snapshot()
            return tuple(snapshot[node_id] for node_id in sorted(snapshot, key=node_sort_key))

        return self._memo("node_list", self._store.version, _compute)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def selected_nodes(self) -> tuple[str, ...]:
        return tuple(self._selected)

    def reset_selection(self, node_ids: Iterable[str]) -> None:
        self._selected = dict.fromkeys(node_ids)

    def select(self, node_id: str) -> None:
        self._selected.setdefault(node_id, None)

    def deselect(self, node_id: str) -> None:
        self._selected.pop(node_id, None)

    def toggle_node(self, node_id: str) -> bool:
        """Flip *node_id*'s selection. Returns the new state."""
        if node_id in self._selected:
            self.deselect(node_id)
            return False
        self.select(node_id)
        return True

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def visible_history(
        self,
        time_frame: TimeFrame | str = TimeFrame.FIVE_MINUTES,
        node_filter: Collection[str] | None = None,
        *,
        now: datetime | None = None,
    ) -> tuple[Observation, ...]:
        """History entries within *time_frame* of *now* for the filtered nodes.

        *node_filter* defaults to the current selection.
        """
        frame = TimeFrame(time_frame)
        nodes = frozenset(self._selected if node_filter is None else node_filter)
        key = (self._history.version, frame, nodes, now)

        def _compute() -> tuple[Observation, ...]:
            limit = frame.limit
            reference = now if now is not None else self._clock()
            since = reference - limit if limit is not None else None
            return tuple(self._history.query(window_predicate(since=since, node_ids=nodes)))

        return self._memo("visible_history", key, _compute)

    def chart_series(
        self,
        time_frame: TimeFrame | str = TimeFrame.FIVE_MINUTES,
        node_filter: Collection[str] | None = None,
        *,
        now: datetime | None = None,
    ) -> ChartSeries:
        entries = self.visible_history(time_frame, node_filter, now=now)
        return self._memo(
            "chart_series",
            entries,
            lambda: build_chart_series(entries, safe_min=self._safe_min, safe_max=self._safe_max),
        )

    # ------------------------------------------------------------------
    # Highlight
    # ------------------------------------------------------------------

    @property
    def last_touched_id(self) -> str | None:
        return self._last_touched

    def touch(self, node_id: str) -> None:
        """Highlight *node_id* for the configured short window."""
        if self._highlight_timer is not None:
            self._highlight_timer.cancel()
        self._last_touched = node_id
        self._highlight_timer = self._scheduler(self._highlight_ttl, self._clear_highlight)

    def _clear_highlight(self) -> None:
        self._highlight_timer = None
        self._last_touched = None

    def close(self) -> None:
        if self._highlight_timer is not None:
            self._highlight_timer.cancel()
            self._highlight_timer = None
        self._last_touched = None
