"""In-memory backing store and transport.

:class:`InMemoryGridBackend` is an explicit store object with create/read/
update/delete contracts plus a publish hook for live updates.
:class:`InMemoryTransport` adapts it to the :class:`pyvoltgrid._transport.Transport`
protocol so the client can run without a server (tests, demos).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from pyvoltgrid._constants import DEFAULT_NODE_VOLTAGE
from pyvoltgrid._transport import ErrorCallback, MessageCallback, Unsubscribe
from pyvoltgrid.exceptions import GridMutationError, GridTransportError
from pyvoltgrid.models.node import NodeRecord

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryGridBackend:
    """Authoritative node table held in memory."""

    def __init__(
        self,
        nodes: Iterable[tuple[str, int]] = (),
        *,
        clock: Callable[[], datetime] = _utcnow,
        default_voltage: int = DEFAULT_NODE_VOLTAGE,
    ) -> None:
        self._clock = clock
        self._default_voltage = default_voltage
        self._nodes: dict[str, NodeRecord] = {}
        self._subscribers: list[tuple[MessageCallback, ErrorCallback | None]] = []
        for node_id, voltage in nodes:
            self.create(node_id, voltage)

    def _record(self, node_id: str, voltage: int) -> NodeRecord:
        return NodeRecord(id=node_id, voltage=voltage, timestamp=self._clock())

    # CRUD -------------------------------------------------------------

    def create(self, node_id: str, voltage: int | None = None) -> NodeRecord:
        if node_id in self._nodes:
            raise GridMutationError(f"Node {node_id} already exists", node_id=node_id, operation="addNode")
        record = self._record(node_id, self._default_voltage if voltage is None else voltage)
        self._nodes[node_id] = record
        return record

    def read(self, node_id: str) -> NodeRecord | None:
        return self._nodes.get(node_id)

    def read_all(self) -> list[NodeRecord]:
        return list(self._nodes.values())

    def update(self, node_id: str, voltage: int) -> NodeRecord:
        if node_id not in self._nodes:
            raise GridMutationError(f"Node {node_id} not found", node_id=node_id, operation="updateVoltage")
        record = self._record(node_id, voltage)
        self._nodes[node_id] = record
        return record

    def delete(self, node_id: str) -> NodeRecord:
        record = self._nodes.pop(node_id, None)
        if record is None:
            raise GridMutationError(f"Node {node_id} not found", node_id=node_id, operation="deleteNode")
        return record

    # Live updates -----------------------------------------------------

    def subscribe(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe:
        entry = (on_message, on_error)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, node_id: str, voltage: int, *, timestamp: datetime | None = None) -> NodeRecord:
        """Store and broadcast a live reading. Unknown nodes are broadcast but not stored."""
        record = NodeRecord(id=node_id, voltage=voltage, timestamp=timestamp or self._clock())
        if node_id in self._nodes:
            self._nodes[node_id] = record
        for on_message, _ in list(self._subscribers):
            on_message(record)
        return record

    def fail_stream(self, message: str = "stream failed") -> None:
        """Report a live stream failure to every subscriber."""
        error = GridTransportError(message, operation="gridUpdate")
        for _, on_error in list(self._subscribers):
            if on_error is not None:
                on_error(error)


class InMemoryTransport:
    """Adapts :class:`InMemoryGridBackend` to the transport protocol.

    Parameters
    ----------
    latency
        Seconds each request awaits before touching the backend.
    fail_on
        Mapping of operation name (``grid``, ``updateVoltage``, ``addNode``,
        ``deleteNode``) to an error message the request fails with.
    """

    def __init__(
        self,
        backend: InMemoryGridBackend,
        *,
        latency: float = 0.0,
        fail_on: dict[str, str] | None = None,
    ) -> None:
        self.backend = backend
        self.latency = latency
        self.fail_on: dict[str, str] = dict(fail_on or {})
        self.calls: dict[str, int] = {}

    async def _begin(self, operation: str) -> str | None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        return self.fail_on.get(operation)

    async def fetch_snapshot(self) -> list[NodeRecord]:
        failure = await self._begin("grid")
        if failure is not None:
            raise GridTransportError(failure, operation="grid")
        return self.backend.read_all()

    def subscribe_live(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe:
        self.calls["subscribe"] = self.calls.get("subscribe", 0) + 1
        _logger.debug("In-memory live subscription opened")
        return self.backend.subscribe(on_message, on_error)

    async def submit_update(self, node_id: str, value: int) -> NodeRecord:
        failure = await self._begin("updateVoltage")
        if failure is not None:
            raise GridMutationError(failure, node_id=node_id, operation="updateVoltage")
        return self.backend.update(node_id, value)

    async def submit_add(self, node_id: str) -> NodeRecord:
        failure = await self._begin("addNode")
        if failure is not None:
            raise GridMutationError(failure, node_id=node_id, operation="addNode")
        return self.backend.create(node_id)

    async def submit_delete(self, node_id: str) -> NodeRecord:
        failure = await self._begin("deleteNode")
        if failure is not None:
            raise GridMutationError(failure, node_id=node_id, operation="deleteNode")
        return self.backend.delete(node_id)
