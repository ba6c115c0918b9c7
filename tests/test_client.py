from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from pyvoltgrid.backend import InMemoryGridBackend, InMemoryTransport
from pyvoltgrid.client import GridClient
from pyvoltgrid.config import GridConfig
from pyvoltgrid.exceptions import GridError, GridPersistenceError, GridTransportError
from pyvoltgrid.models.node import NodeRecord
from pyvoltgrid.state.alerts import mutation_key, range_key, transport_key
from pyvoltgrid.state.events import Observation, ObservationOrigin
from pyvoltgrid.state.persistence import MemoryHistoryStorage

_START = datetime(2026, 1, 1, tzinfo=UTC)


class _TickingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self) -> None:
        self._ticks = 0

    def __call__(self) -> datetime:
        value = _START + timedelta(seconds=self._ticks)
        self._ticks += 1
        return value


class _Handle:
    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _FakeScheduler:
    def __init__(self) -> None:
        self.handles: list[_Handle] = []

    def __call__(self, _delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle(callback)
        self.handles.append(handle)
        return handle

    def fire_all(self) -> None:
        pending, self.handles = self.handles, []
        for handle in pending:
            if not handle.cancelled:
                handle.callback()


class _GatedTransport(InMemoryTransport):
    """Applies updates on the backend right away but holds the response until released."""

    def __init__(self, backend: InMemoryGridBackend) -> None:
        super().__init__(backend)
        self.gate = asyncio.Event()

    async def submit_update(self, node_id: str, value: int) -> NodeRecord:
        record = await super().submit_update(node_id, value)
        await self.gate.wait()
        return record


class _FailingStorage(MemoryHistoryStorage):
    def save(self, key: str, entries: list[Observation]) -> None:
        raise GridPersistenceError("disk full")


class _BlockingStorage(MemoryHistoryStorage):
    """Holds every save on a worker thread until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()
        self.saved_lengths: list[int] = []

    def save(self, key: str, entries: list[Observation]) -> None:
        self.release.wait(timeout=5)
        self.saved_lengths.append(len(entries))
        super().save(key, entries)


def _message(client: GridClient, key: str) -> str | None:
    alert = client.alerts.get(key)
    return alert.message if alert is not None else None


def _setup(
    nodes: list[tuple[str, int]],
    *,
    transport_cls: type[InMemoryTransport] = InMemoryTransport,
    storage: MemoryHistoryStorage | None = None,
) -> tuple[GridClient, InMemoryGridBackend, InMemoryTransport, _FakeScheduler]:
    clock = _TickingClock()
    backend = InMemoryGridBackend(nodes, clock=clock)
    transport = transport_cls(backend)
    scheduler = _FakeScheduler()
    client = GridClient(
        GridConfig(),
        transport=transport,
        storage=storage or MemoryHistoryStorage(),
        scheduler=scheduler,
        clock=clock,
    )
    return client, backend, transport, scheduler


@pytest.mark.asyncio
async def test_push_out_of_range_is_clamped_and_alerts() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    assert await client.start()

    backend.publish("1", 241, timestamp=_START + timedelta(minutes=1))

    assert client.get_snapshot()["1"].value == 239
    assert _message(client, range_key("1")) == "Node 1 voltage 239V out of safe range!"
    assert len(client.history) == 2
    assert client.view.last_touched_id == "1"


@pytest.mark.asyncio
async def test_history_saves_run_off_the_loop_and_coalesce() -> None:
    storage = _BlockingStorage()
    client, backend, _, _ = _setup([("1", 230)], storage=storage)

    assert await client.start()
    backend.publish("1", 231, timestamp=_START + timedelta(minutes=1))
    backend.publish("1", 232, timestamp=_START + timedelta(minutes=2))

    # Ingestion returned while the first save is still held.
    assert len(client.history) == 3
    assert storage.saved_lengths == []

    storage.release.set()
    await client.flush_history()

    assert storage.saved_lengths == [1, 3]
    assert len(storage.load(GridConfig().history_key)) == 3


@pytest.mark.asyncio
async def test_update_records_optimistic_and_confirmed_entries() -> None:
    client, backend, transport, _ = _setup([("1", 230), ("2", 230)], transport_cls=_GatedTransport)
    assert isinstance(transport, _GatedTransport)
    await client.start()
    before = len(client.history)

    task = asyncio.create_task(client.update_voltage("2", 300))
    await asyncio.sleep(0)

    optimistic = client.get_snapshot()["2"]
    assert optimistic.value == 239
    assert optimistic.origin is ObservationOrigin.OPTIMISTIC_MUTATION
    assert len(client.history) == before + 1
    assert client.pending_updates == frozenset({"2"})

    transport.gate.set()
    confirmed = await task

    assert confirmed is not None
    assert confirmed.origin is ObservationOrigin.CONFIRMED_MUTATION
    assert client.get_snapshot()["2"].value == 239
    assert client.get_snapshot()["2"].origin is ObservationOrigin.CONFIRMED_MUTATION
    assert len(client.history) == before + 2
    assert backend.read("2").voltage == 239  # type: ignore[union-attr]
    assert client.pending_updates == frozenset()


@pytest.mark.asyncio
async def test_delete_purges_entity_history_and_alerts() -> None:
    client, backend, _, _ = _setup([("1", 230), ("2", 230), ("3", 230)])
    await client.start()
    backend.publish("3", 245, timestamp=_START + timedelta(minutes=1))
    assert range_key("3") in client.alerts

    assert await client.delete_node("3")

    assert "3" not in client.get_snapshot()
    assert [entry for entry in client.history.entries() if entry.id == "3"] == []
    assert all(alert.node_id != "3" for alert in client.get_alerts())
    assert "3" not in client.view.selected_nodes
    assert not client.is_deleting


@pytest.mark.parametrize("requested", [-5, 0, 219, 220, 231, 239, 240, 1000])
@pytest.mark.asyncio
async def test_update_value_is_clamped(requested: int) -> None:
    client, backend, _, _ = _setup([("1", 230)])
    await client.start()

    await client.update_voltage("1", requested)

    expected = max(220, min(239, requested))
    assert client.get_snapshot()["1"].value == expected
    assert backend.read("1").voltage == expected  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_pause_drops_pushes_and_resume_does_not_replay() -> None:
    client, backend, transport, _ = _setup([("1", 230)])
    await client.start()
    assert backend.subscriber_count == 1

    client.pause()
    client.pause()
    assert client.is_paused
    assert backend.subscriber_count == 0

    backend.publish("1", 225, timestamp=_START + timedelta(minutes=1))
    assert client.get_snapshot()["1"].value == 230

    client.resume()
    client.resume()
    assert not client.is_paused
    assert backend.subscriber_count == 1
    assert transport.calls["subscribe"] == 2
    # Nothing missed during the pause is replayed.
    assert client.get_snapshot()["1"].value == 230

    backend.publish("1", 228, timestamp=_START + timedelta(minutes=2))
    assert client.get_snapshot()["1"].value == 228


@pytest.mark.asyncio
async def test_pause_does_not_gate_mutations_or_refresh() -> None:
    client, _, _, _ = _setup([("1", 230)])
    await client.start()
    client.pause()

    await client.update_voltage("1", 226)
    assert await client.refresh()

    assert client.get_snapshot()["1"].value == 226
    assert client.is_paused


@pytest.mark.asyncio
async def test_live_subscription_waits_for_initial_data() -> None:
    client, backend, transport, _ = _setup([("1", 230)])
    transport.fail_on["grid"] = "connection refused"

    assert not await client.start()

    assert backend.subscriber_count == 0
    assert _message(client, transport_key("refresh")) == "Refresh failed: connection refused"
    assert not client.is_refreshing


@pytest.mark.asyncio
async def test_refresh_redelivery_is_absorbed() -> None:
    client, _, _, _ = _setup([("1", 230), ("2", 231)])
    await client.start()
    entries = client.history.entries()
    version = client.store.version

    await client.refresh()

    assert client.history.entries() == entries
    assert client.store.version == version


@pytest.mark.asyncio
async def test_push_for_unknown_node_is_dropped() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    await client.start()

    backend.publish("99", 230)

    assert "99" not in client.get_snapshot()
    assert all(entry.id != "99" for entry in client.history.entries())


@pytest.mark.asyncio
async def test_range_alert_clears_when_value_returns_to_safe_range() -> None:
    client, backend, _, scheduler = _setup([("1", 230)])
    await client.start()

    backend.publish("1", 238, timestamp=_START + timedelta(minutes=1))
    assert range_key("1") in client.alerts

    backend.publish("1", 230, timestamp=_START + timedelta(minutes=2))
    assert range_key("1") not in client.alerts

    backend.publish("1", 221, timestamp=_START + timedelta(minutes=3))
    scheduler.fire_all()
    assert client.get_alerts() == []


@pytest.mark.asyncio
async def test_failed_update_keeps_optimistic_value_and_alerts() -> None:
    client, _, transport, _ = _setup([("2", 230)])
    await client.start()
    transport.fail_on["updateVoltage"] = "backend unavailable"

    assert await client.update_voltage("2", 236) is None

    current = client.get_snapshot()["2"]
    assert current.value == 236
    assert current.origin is ObservationOrigin.OPTIMISTIC_MUTATION
    alert = client.alerts.get(mutation_key("2"))
    assert alert is not None
    assert alert.message == "Failed to update Node 2: backend unavailable"


@pytest.mark.asyncio
async def test_late_confirmation_for_deleted_node_is_ignored() -> None:
    client, _, transport, _ = _setup([("1", 230), ("2", 230)], transport_cls=_GatedTransport)
    assert isinstance(transport, _GatedTransport)
    await client.start()

    task = asyncio.create_task(client.update_voltage("2", 233))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert await client.delete_node("2")

    transport.gate.set()
    assert await task is None

    assert "2" not in client.get_snapshot()
    assert all(entry.id != "2" for entry in client.history.entries())


@pytest.mark.asyncio
async def test_add_node_inserts_and_selects() -> None:
    client, _, _, _ = _setup([("1", 230)])
    await client.start()

    added = await client.add_node(" 4 ")

    assert added is not None
    assert added.id == "4"
    assert client.get_snapshot()["4"].value == 230
    assert [entry.id for entry in client.history.entries()].count("4") == 1
    assert "4" in client.view.selected_nodes
    assert not client.is_adding


@pytest.mark.asyncio
async def test_add_existing_node_surfaces_mutation_alert() -> None:
    client, _, _, _ = _setup([("1", 230)])
    await client.start()

    assert await client.add_node("1") is None
    assert _message(client, mutation_key("1")) == "Failed to add Node 1: Node 1 already exists"


@pytest.mark.asyncio
async def test_delete_failure_keeps_node() -> None:
    client, _, transport, _ = _setup([("1", 230)])
    await client.start()
    transport.fail_on["deleteNode"] = "forbidden"

    assert not await client.delete_node("1")

    assert "1" in client.get_snapshot()
    assert _message(client, mutation_key("1")) == "Failed to delete Node 1: forbidden"


@pytest.mark.asyncio
async def test_stream_failure_raises_alert_and_resubscribe_is_manual() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    await client.start()

    backend.fail_stream("socket closed")

    assert not client.is_live
    assert backend.subscriber_count == 0
    assert _message(client, transport_key("live")) == "Live updates failed: socket closed"

    client.pause()
    client.resume()
    assert client.is_live
    assert backend.subscriber_count == 1


@pytest.mark.asyncio
async def test_synchronous_subscribe_failure_becomes_alert() -> None:
    class _BrokenStream(InMemoryTransport):
        def subscribe_live(self, on_message, on_error=None):  # type: ignore[no-untyped-def]
            raise GridTransportError("broker unreachable", operation="gridUpdate")

    client, _, _, _ = _setup([("1", 230)], transport_cls=_BrokenStream)

    assert await client.start()
    assert not client.is_live
    assert _message(client, transport_key("live")) == "Live updates failed: broker unreachable"


@pytest.mark.asyncio
async def test_history_is_persisted_and_reloaded() -> None:
    storage = MemoryHistoryStorage()
    client, backend, _, _ = _setup([("1", 230), ("2", 231)], storage=storage)
    await client.start()
    backend.publish("1", 232, timestamp=_START + timedelta(minutes=1))
    await client.flush_history()

    reloaded = GridClient(GridConfig(), storage=storage, scheduler=_FakeScheduler())

    assert reloaded.history.entries() == client.history.entries()
    assert len(reloaded.history) == 3


@pytest.mark.asyncio
async def test_persistence_failure_is_not_fatal() -> None:
    client, backend, _, _ = _setup([("1", 230)], storage=_FailingStorage())

    assert await client.start()
    backend.publish("1", 231, timestamp=_START + timedelta(minutes=1))
    await client.flush_history()

    assert client.get_snapshot()["1"].value == 231
    assert len(client.history) == 2


@pytest.mark.asyncio
async def test_listeners_fire_on_change_and_failures_are_swallowed() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    calls: list[str] = []

    def _broken() -> None:
        raise RuntimeError("listener bug")

    client.add_listener(_broken)
    remove = client.add_listener(lambda: calls.append("changed"))
    await client.start()
    started = len(calls)
    assert started > 0

    backend.publish("1", 231, timestamp=_START + timedelta(minutes=1))
    assert len(calls) == started + 1

    remove()
    backend.publish("1", 232, timestamp=_START + timedelta(minutes=2))
    assert len(calls) == started + 1


@pytest.mark.asyncio
async def test_clear_and_dismiss_alerts() -> None:
    client, backend, _, _ = _setup([("1", 230), ("2", 230)])
    await client.start()
    backend.publish("1", 239, timestamp=_START + timedelta(minutes=1))
    backend.publish("2", 220, timestamp=_START + timedelta(minutes=1))

    assert client.dismiss_alert(range_key("1"))
    assert not client.dismiss_alert(range_key("1"))
    assert [alert.node_id for alert in client.get_alerts()] == ["2"]

    client.clear_alerts()
    assert client.get_alerts() == []


@pytest.mark.asyncio
async def test_get_history_defaults_to_selected_nodes() -> None:
    client, _, _, _ = _setup([("1", 230), ("2", 231)])
    await client.start()
    client.view.toggle_node("1")

    history = client.get_history("all")

    assert [entry.id for entry in history] == ["2"]


@pytest.mark.asyncio
async def test_operations_require_a_transport() -> None:
    client = GridClient(GridConfig(), scheduler=_FakeScheduler())

    with pytest.raises(GridError):
        await client.refresh()
    with pytest.raises(GridError):
        client.pause()


@pytest.mark.asyncio
async def test_close_stops_live_updates() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    async with client:
        await client.start()
        assert backend.subscriber_count == 1

    assert backend.subscriber_count == 0


@pytest.mark.asyncio
async def test_get_history_slides_with_explicit_now() -> None:
    client, backend, _, _ = _setup([("1", 230)])
    await client.start()
    backend.publish("1", 231, timestamp=_START + timedelta(minutes=10))

    recent = client.get_history("5m", {"1"}, now=_START + timedelta(minutes=11))
    later = client.get_history("5m", {"1"}, now=_START + timedelta(minutes=20))

    assert [entry.value for entry in recent] == [231]
    assert later == ()
