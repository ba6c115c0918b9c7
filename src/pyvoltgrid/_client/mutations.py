"""Internal update/add/delete operations for :class:`pyvoltgrid.client.GridClient`.

These functions keep `client.py` small without changing the public API.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pyvoltgrid._constants import clamp_voltage
from pyvoltgrid.exceptions import GridError
from pyvoltgrid.ingestion.apply import build_observation, observation_from_record
from pyvoltgrid.state.alerts import AlertKind, mutation_key
from pyvoltgrid.state.events import Observation, ObservationOrigin

if TYPE_CHECKING:
    from pyvoltgrid.client import GridClient

_logger = logging.getLogger(__name__)


def _mutation_failed(client: GridClient, node_id: str, message: str) -> None:
    _logger.warning("%s", message)
    client.alerts.register(mutation_key(node_id), message, kind=AlertKind.MUTATION, node_id=node_id)
    client._notify()


async def update_voltage(client: GridClient, *, node_id: str, value: int) -> Observation | None:
    """Optimistically apply *value*, then confirm it with the backing store.

    On failure the optimistic value stays in place; the next refresh
    corrects any divergence.
    """
    config = client._config
    clamped = clamp_voltage(value, low=config.hard_min, high=config.hard_max)

    if node_id in client.store:
        optimistic = build_observation(
            node_id=node_id,
            value=clamped,
            origin=ObservationOrigin.OPTIMISTIC_MUTATION,
            observed_at=client._clock(),
            hard_min=config.hard_min,
            hard_max=config.hard_max,
        )
        client._ingest(optimistic)
        client._notify()
    else:
        _logger.debug("No optimistic update for unknown node=%s", node_id)

    client._pending_updates[node_id] = client._pending_updates.get(node_id, 0) + 1
    try:
        record = await client._transport.submit_update(node_id, clamped)
        confirmed = observation_from_record(
            record,
            origin=ObservationOrigin.CONFIRMED_MUTATION,
            hard_min=config.hard_min,
            hard_max=config.hard_max,
        )
    except GridError as exc:
        _mutation_failed(client, node_id, f"Failed to update Node {node_id}: {exc}")
        return None
    finally:
        remaining = client._pending_updates.get(node_id, 1) - 1
        if remaining > 0:
            client._pending_updates[node_id] = remaining
        else:
            client._pending_updates.pop(node_id, None)

    if confirmed.id not in client.store:
        # Deleted while the request was in flight.
        _logger.debug("Ignoring late update confirmation for node=%s", confirmed.id)
        client._notify()
        return None

    client._ingest(confirmed)
    client._notify()
    return confirmed


async def add_node(client: GridClient, *, node_id: str) -> Observation | None:
    """Create a node once the backing store confirms it.

    There is no optimistic insert: the id may collide.
    """
    config = client._config
    client._adding += 1
    client._notify()
    try:
        record = await client._transport.submit_add(node_id)
        observation = observation_from_record(
            record,
            origin=ObservationOrigin.CONFIRMED_MUTATION,
            hard_min=config.hard_min,
            hard_max=config.hard_max,
        )
    except GridError as exc:
        _mutation_failed(client, node_id, f"Failed to add Node {node_id}: {exc}")
        return None
    finally:
        client._adding -= 1

    client._ingest(observation)
    client.view.select(observation.id)
    client._notify()
    return observation


async def delete_node(client: GridClient, *, node_id: str) -> bool:
    """Delete a node once the backing store confirms it.

    Entity, history entries and alerts for the node are removed together.
    """
    client._deleting += 1
    client._notify()
    try:
        await client._transport.submit_delete(node_id)
    except GridError as exc:
        _mutation_failed(client, node_id, f"Failed to delete Node {node_id}: {exc}")
        return False
    finally:
        client._deleting -= 1

    client._forget_node(node_id)
    client._notify()
    return True
