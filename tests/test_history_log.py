from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest

from pyvoltgrid.state.events import Observation, ObservationOrigin
from pyvoltgrid.state.history import HistoryLog, window_predicate


def _dt(seconds: int = 0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=seconds)


def _obs(
    node_id: str = "1",
    value: int = 230,
    seconds: int = 0,
    origin: ObservationOrigin = ObservationOrigin.PUSH,
) -> Observation:
    return Observation(id=node_id, value=value, observed_at=_dt(seconds), origin=origin)


def test_duplicate_key_is_absorbed() -> None:
    log = HistoryLog()

    assert log.record(_obs()).recorded
    version = log.version
    # Same (id, observed_at, value) from another source is still a duplicate.
    assert not log.record(_obs(origin=ObservationOrigin.SNAPSHOT)).recorded

    assert len(log) == 1
    assert log.version == version


def test_optimistic_and_confirmed_are_kept_separately() -> None:
    log = HistoryLog()

    log.record(_obs(value=239, seconds=1, origin=ObservationOrigin.OPTIMISTIC_MUTATION))
    log.record(_obs(value=239, seconds=2, origin=ObservationOrigin.CONFIRMED_MUTATION))

    assert [entry.origin for entry in log.entries()] == [
        ObservationOrigin.OPTIMISTIC_MUTATION,
        ObservationOrigin.CONFIRMED_MUTATION,
    ]


def test_oldest_entry_is_evicted_beyond_capacity() -> None:
    log = HistoryLog(max_history=3)

    for second in range(5):
        log.record(_obs(seconds=second))

    assert [entry.observed_at for entry in log.entries()] == [_dt(2), _dt(3), _dt(4)]


def test_evicted_entry_is_not_readded_on_redelivery() -> None:
    log = HistoryLog(max_history=2)
    for second in range(3):
        log.record(_obs(seconds=second))

    assert not log.record(_obs(seconds=0)).recorded
    assert [entry.observed_at for entry in log.entries()] == [_dt(1), _dt(2)]


def test_length_bounded_by_distinct_keys_and_capacity() -> None:
    log = HistoryLog(max_history=50)
    seen: set[tuple[str, datetime, int]] = set()

    for node_id, second, value in itertools.product(("1", "2", "3"), range(10), (229, 230, 230)):
        observation = _obs(node_id, value, second)
        seen.add(observation.dedup_key)
        log.record(observation)
        assert len(log) <= len(seen)
        assert len(log) <= 50

    keys = [entry.dedup_key for entry in log.entries()]
    assert len(keys) == len(set(keys))


def test_purge_removes_every_entry_for_node() -> None:
    log = HistoryLog()
    log.record(_obs("1", seconds=0))
    log.record(_obs("3", seconds=1))
    log.record(_obs("3", seconds=2))

    assert log.purge("3") == 2
    assert [entry.id for entry in log.entries()] == ["1"]
    assert log.purge("3") == 0


def test_query_is_lazy_and_restartable() -> None:
    log = HistoryLog()
    log.record(_obs("1", seconds=0))
    log.record(_obs("2", seconds=60))
    log.record(_obs("1", seconds=120))

    query = log.query(window_predicate(since=_dt(60), node_ids={"1"}))
    assert [entry.observed_at for entry in query] == [_dt(120)]

    log.record(_obs("1", seconds=180))
    # Iterating again sees the current log.
    assert [entry.observed_at for entry in query] == [_dt(120), _dt(180)]


def test_recording_while_iterating_does_not_raise() -> None:
    log = HistoryLog()
    log.record(_obs(seconds=0))
    log.record(_obs(seconds=1))

    visited = []
    for entry in log.query():
        visited.append(entry)
        log.record(_obs(seconds=100 + len(visited)))

    assert len(visited) == 2
    assert len(log) == 4


def test_from_entries_dedups_and_caps() -> None:
    entries = [_obs(seconds=second) for second in (0, 1, 1, 2, 3)]

    log = HistoryLog.from_entries(entries, max_history=3)

    assert [entry.observed_at for entry in log.entries()] == [_dt(1), _dt(2), _dt(3)]


def test_non_positive_capacity_rejected() -> None:
    with pytest.raises(ValueError):
        HistoryLog(max_history=0)
