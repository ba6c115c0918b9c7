"""Internal live-stream coordination for GridClient.

Owns:
- the pause/resume state machine
- opening/closing the push subscription on the transport
- dropping messages that arrive while paused or from a superseded subscription
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum

from pyvoltgrid._transport import Transport, Unsubscribe
from pyvoltgrid.exceptions import GridTransportError
from pyvoltgrid.models.node import NodeRecord


class LiveState(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"


class LiveCoordinator:
    """Gate the push subscription.

    The subscription is open iff the coordinator is enabled (initial data
    has been loaded) and the state is ``ACTIVE``. Resuming never replays
    anything published while paused.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        on_record: Callable[[NodeRecord], None],
        on_error: Callable[[GridTransportError], None],
        logger: logging.Logger,
    ) -> None:
        self._transport = transport
        self._on_record = on_record
        self._on_error = on_error
        self._logger = logger
        self._state = LiveState.ACTIVE
        self._enabled = False
        self._unsubscribe: Unsubscribe | None = None
        self._generation = 0

    @property
    def state(self) -> LiveState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state is LiveState.PAUSED

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    def enable(self) -> None:
        """Allow subscribing; called once initial data exists."""
        self._enabled = True
        if self._state is LiveState.ACTIVE:
            self._subscribe()

    def pause(self) -> bool:
        """Active -> Paused. Returns ``False`` when already paused."""
        if self._state is LiveState.PAUSED:
            return False
        self._state = LiveState.PAUSED
        self._close()
        self._logger.debug("Live updates paused")
        return True

    def resume(self) -> bool:
        """Paused -> Active. Returns ``False`` when already active."""
        if self._state is LiveState.ACTIVE:
            return False
        self._state = LiveState.ACTIVE
        if self._enabled:
            self._subscribe()
        self._logger.debug("Live updates resumed")
        return True

    def stop(self) -> None:
        self._enabled = False
        self._close()

    def _subscribe(self) -> None:
        if self._unsubscribe is not None:
            return
        self._generation += 1
        generation = self._generation

        def _deliver(record: NodeRecord) -> None:
            if generation != self._generation or self._state is not LiveState.ACTIVE:
                self._logger.debug("Dropping live record id=%s (paused or stale subscription)", record.id)
                return
            self._on_record(record)

        def _fail(exc: GridTransportError) -> None:
            if generation != self._generation:
                return
            # Resubscribing is manual (pause/resume).
            self._close()
            self._on_error(exc)

        try:
            self._unsubscribe = self._transport.subscribe_live(_deliver, _fail)
        except GridTransportError as exc:
            self._logger.warning("Live subscription failed: %s", exc)
            self._on_error(exc)
            return
        self._logger.debug("Live subscription opened generation=%d", generation)

    def _close(self) -> None:
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        # Invalidate callbacks still queued from the closed subscription.
        self._generation += 1
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            self._logger.debug("Live unsubscribe failed", exc_info=True)
