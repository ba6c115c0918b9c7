"""High-level async client: the stream controller behind a grid dashboard."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping
from datetime import UTC, datetime
from typing import Any

import aiohttp

from pyvoltgrid._client import mutations as _mutations
from pyvoltgrid._client import reads as _reads
from pyvoltgrid._client.live import LiveCoordinator
from pyvoltgrid._mqtt import MqttLiveFeed
from pyvoltgrid._transport import GraphQLTransport, LiveFeed, Transport
from pyvoltgrid.config import GridConfig
from pyvoltgrid.exceptions import GridError, GridPersistenceError, GridTransportError
from pyvoltgrid.ingestion.apply import observation_from_record
from pyvoltgrid.models.node import NodeRecord
from pyvoltgrid.state.alerts import Alert, AlertKind, AlertRegister, Scheduler, loop_scheduler, range_key, transport_key
from pyvoltgrid.state.events import Observation, ObservationOrigin
from pyvoltgrid.state.history import HistoryLog
from pyvoltgrid.state.persistence import HistorySaver, HistoryStorage, JsonFileHistoryStorage, MemoryHistoryStorage
from pyvoltgrid.state.store import EntityStore
from pyvoltgrid.view import TimeFrame, ViewProjector

_logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GridClient:
    """Async client for a live voltage grid.

    Merges the snapshot fetch, the live push stream and local edits into
    one current value per node (:attr:`store`), a deduplicated history
    (:attr:`history`) and transient alerts (:attr:`alerts`).

    Every merge happens synchronously on the event loop thread, so merges
    and records never interleave; the only suspension points are the
    transport awaits.

    Usage::

        async with GridClient(config) as client:
            await client.start()
            await client.update_voltage("2", 231)
    """

    def __init__(
        self,
        config: GridConfig | None = None,
        *,
        transport: Transport | None = None,
        session: aiohttp.ClientSession | None = None,
        storage: HistoryStorage | None = None,
        scheduler: Scheduler = loop_scheduler,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or GridConfig()
        self._external_session = session is not None
        self._http_session = session
        self._transport_override = transport
        self._transport: Transport | None = transport
        self._clock = clock

        if storage is not None:
            self._storage: HistoryStorage = storage
        elif self._config.history_dir:
            self._storage = JsonFileHistoryStorage(self._config.history_dir)
        else:
            self._storage = MemoryHistoryStorage()
        self._saver = HistorySaver(self._storage, self._config.history_key)

        self.store = EntityStore(hard_min=self._config.hard_min, hard_max=self._config.hard_max)
        self.history = HistoryLog.from_entries(self._load_history(), max_history=self._config.max_history)
        self.alerts = AlertRegister(
            scheduler=scheduler,
            ttl=self._config.alert_ttl,
            max_visible=self._config.max_visible_alerts,
            safe_min=self._config.safe_min,
            safe_max=self._config.safe_max,
        )
        self.view = ViewProjector(
            self.store,
            self.history,
            scheduler=scheduler,
            highlight_ttl=self._config.highlight_ttl,
            safe_min=self._config.safe_min,
            safe_max=self._config.safe_max,
            clock=clock,
        )

        self._live: LiveCoordinator | None = None
        if transport is not None:
            self._live = self._build_live(transport)

        self._listeners: list[ChangeListener] = []
        self._refreshing = False
        self._adding = 0
        self._deleting = 0
        self._pending_updates: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> GridClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            live_feed: LiveFeed | None = None
            if self._config.push_backend == "mqtt":
                live_feed = MqttLiveFeed(self._config, logger=_logger)
            self._transport = GraphQLTransport(self._config, self._http_session, live_feed=live_feed)
            self._live = self._build_live(self._transport)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the live subscription, cancel timers, finish saves and release the HTTP session."""
        if self._live is not None:
            self._live.stop()
        self.view.close()
        self.alerts.clear_all()
        await self._saver.flush()
        if self._transport_override is None:
            self._transport = None
            self._live = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _build_live(self, transport: Transport) -> LiveCoordinator:
        return LiveCoordinator(
            transport=transport,
            on_record=self._on_live_record,
            on_error=self._on_live_error,
            logger=_logger,
        )

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise GridError("Client not initialized. Use 'async with GridClient(...) as client:'")
        return self._transport

    @property
    def _live_coordinator(self) -> LiveCoordinator:
        if self._live is None:
            raise GridError("Client not initialized. Use 'async with GridClient(...) as client:'")
        return self._live

    # ------------------------------------------------------------------
    # Change listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: ChangeListener) -> Callable[[], None]:
        """Register *callback* to run after every state change. Returns a remover."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                _logger.debug("Change listener failed", exc_info=True)

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    def _ingest(self, observation: Observation) -> bool:
        """Merge, record and re-evaluate alerts for one observation.

        Returns ``True`` when the store or the history changed.
        """
        merged = self.store.merge(observation)
        recorded = self.history.record(observation).recorded
        if recorded:
            self._persist()
        if merged.applied:
            message = self.alerts.evaluate(observation.id, observation.value)
            if message is not None:
                self.alerts.register(range_key(observation.id), message, kind=AlertKind.RANGE, node_id=observation.id)
            else:
                self.alerts.expire(range_key(observation.id))
            self.view.touch(observation.id)
        _logger.debug(
            "Ingested node=%s value=%s origin=%s applied=%s recorded=%s",
            observation.id,
            observation.value,
            observation.origin,
            merged.applied,
            recorded,
        )
        return merged.applied or recorded

    def _forget_node(self, node_id: str) -> None:
        self.store.remove(node_id)
        if self.history.purge(node_id):
            self._persist()
        self.alerts.clear_node(node_id)
        self.view.deselect(node_id)

    def _on_live_record(self, record: NodeRecord) -> None:
        if record.id not in self.store:
            _logger.debug("Dropping live record for unknown node=%s", record.id)
            return
        try:
            observation = observation_from_record(
                record,
                origin=ObservationOrigin.PUSH,
                hard_min=self._config.hard_min,
                hard_max=self._config.hard_max,
            )
        except GridError:
            _logger.debug("Dropping malformed live record %r", record, exc_info=True)
            return
        if self._ingest(observation):
            self._notify()

    def _on_live_error(self, exc: GridTransportError) -> None:
        self.alerts.register(transport_key("live"), f"Live updates failed: {exc}", kind=AlertKind.TRANSPORT)
        self._notify()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_history(self) -> list[Observation]:
        try:
            return self._storage.load(self._config.history_key)
        except GridPersistenceError:
            _logger.debug("History load failed; starting empty", exc_info=True)
            return []

    def _persist(self) -> None:
        if self._config.persist_history:
            self._saver.submit(list(self.history.entries()))

    async def flush_history(self) -> None:
        """Wait for pending history saves to reach storage."""
        await self._saver.flush()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_snapshot(self) -> Mapping[str, Observation]:
        """Current observation per node (immutable copy)."""
        return self.store.snapshot()

    def get_history(
        self,
        window: TimeFrame | str = TimeFrame.FIVE_MINUTES,
        node_filter: Collection[str] | None = None,
        *,
        now: datetime | None = None,
    ) -> tuple[Observation, ...]:
        """History entries within *window*; *node_filter* defaults to the selection.

        Without *now* a cached 5m/15m window only moves when the history
        changes; pass *now* to slide it with the wall clock.
        """
        return self.view.visible_history(window, node_filter, now=now)

    def get_alerts(self) -> list[Alert]:
        """Visible alerts, most recent first."""
        return self.alerts.alerts()

    def clear_alerts(self) -> None:
        self.alerts.clear_all()
        self._notify()

    def dismiss_alert(self, key: str) -> bool:
        dismissed = self.alerts.expire(key)
        if dismissed:
            self._notify()
        return dismissed

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    @property
    def is_adding(self) -> bool:
        return self._adding > 0

    @property
    def is_deleting(self) -> bool:
        return self._deleting > 0

    @property
    def pending_updates(self) -> frozenset[str]:
        """Node ids with an update request in flight."""
        return frozenset(self._pending_updates)

    # ------------------------------------------------------------------
    # Live stream
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return self._live_coordinator.is_paused

    @property
    def is_live(self) -> bool:
        """Whether the push subscription is currently open."""
        return self._live is not None and self._live.is_subscribed

    def pause(self) -> None:
        """Stop receiving pushes. No-op when already paused."""
        if self._live_coordinator.pause():
            self._notify()

    def resume(self) -> None:
        """Resubscribe to pushes; missed updates are not replayed. No-op when active."""
        if self._live_coordinator.resume():
            self._notify()

    # ------------------------------------------------------------------
    # Snapshot + mutations
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Load the initial snapshot; the live subscription opens once it succeeds."""
        return await self.refresh()

    async def refresh(self) -> bool:
        """Fetch a full snapshot and merge it. Failures surface as alerts."""
        self._require_transport()
        return await _reads.refresh(self)

    async def update_voltage(self, node_id: str, value: int) -> Observation | None:
        """Set a node's voltage (clamped), applying it optimistically first."""
        self._require_transport()
        return await _mutations.update_voltage(self, node_id=node_id, value=value)

    async def add_node(self, node_id: str) -> Observation | None:
        """Create a node after the backing store confirms it."""
        self._require_transport()
        return await _mutations.add_node(self, node_id=node_id.strip())

    async def delete_node(self, node_id: str) -> bool:
        """Delete a node and purge its history and alerts after confirmation."""
        self._require_transport()
        return await _mutations.delete_node(self, node_id=node_id)
