"""Internal snapshot refresh for :class:`pyvoltgrid.client.GridClient`.

Keeps `client.py` small without changing the public API.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pyvoltgrid.exceptions import GridError, GridValidationError
from pyvoltgrid.ingestion.apply import observation_from_record
from pyvoltgrid.state.alerts import AlertKind, transport_key
from pyvoltgrid.state.events import ObservationOrigin

if TYPE_CHECKING:
    from pyvoltgrid.client import GridClient

_logger = logging.getLogger(__name__)


async def refresh(client: GridClient) -> bool:
    """Pull a full snapshot and merge it. Returns ``False`` on failure.

    Most rows of a refresh re-deliver values already seen; the history log
    absorbs those silently.
    """
    config = client._config
    client._refreshing = True
    client._notify()
    try:
        records = await client._transport.fetch_snapshot()
    except GridError as exc:
        _logger.warning("Snapshot refresh failed: %s", exc)
        client.alerts.register(
            transport_key("refresh"),
            f"Refresh failed: {exc}",
            kind=AlertKind.TRANSPORT,
        )
        return False
    finally:
        client._refreshing = False
        client._notify()

    node_ids: list[str] = []
    applied = 0
    for record in records:
        try:
            observation = observation_from_record(
                record,
                origin=ObservationOrigin.SNAPSHOT,
                hard_min=config.hard_min,
                hard_max=config.hard_max,
            )
        except GridValidationError:
            _logger.debug("Skipping malformed snapshot row %r", record, exc_info=True)
            continue
        node_ids.append(observation.id)
        if client._ingest(observation):
            applied += 1

    _logger.debug("Snapshot refresh rows=%d changed=%d", len(node_ids), applied)
    client.view.reset_selection(node_ids)
    client._live.enable()
    client._notify()
    return True
