"""Ingestion application helpers.

This module centralizes the common pattern used across ingestion paths:

- parse a raw payload into a typed :class:`NodeRecord`
- clamp the value into the hard range
- create the :class:`pyvoltgrid.state.events.Observation`

Keeping this logic in one place keeps the snapshot, push and mutation
paths from drifting apart.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from pyvoltgrid._constants import HARD_MAX, HARD_MIN, clamp_voltage
from pyvoltgrid.exceptions import GridValidationError
from pyvoltgrid.models.node import NodeRecord
from pyvoltgrid.state.events import Observation, ObservationOrigin

_logger = logging.getLogger(__name__)


def parse_node_record(payload: Mapping[str, Any] | NodeRecord) -> NodeRecord:
    """Validate a wire payload, raising :class:`GridValidationError` on bad shapes."""
    if isinstance(payload, NodeRecord):
        return payload
    if not isinstance(payload, Mapping):
        raise GridValidationError(f"Node record must be an object, got {type(payload).__name__}")
    try:
        return NodeRecord.model_validate(dict(payload))
    except ValidationError as exc:
        raise GridValidationError(f"Invalid node record {dict(payload)!r}: {exc.error_count()} error(s)") from exc


def build_observation(
    *,
    node_id: str,
    value: int,
    origin: ObservationOrigin,
    observed_at: datetime | None = None,
    hard_min: int = HARD_MIN,
    hard_max: int = HARD_MAX,
) -> Observation:
    """Build a clamped observation. Out-of-range values are corrected, never reported."""
    clamped = clamp_voltage(value, low=hard_min, high=hard_max)
    if clamped != value:
        _logger.debug("Clamped node=%s value=%s -> %s origin=%s", node_id, value, clamped, origin)
    if observed_at is None:
        return Observation(id=node_id, value=clamped, origin=origin)
    return Observation(id=node_id, value=clamped, observed_at=observed_at, origin=origin)


def observation_from_record(
    record: Mapping[str, Any] | NodeRecord,
    *,
    origin: ObservationOrigin,
    hard_min: int = HARD_MIN,
    hard_max: int = HARD_MAX,
) -> Observation:
    """Turn a wire record into a clamped observation."""
    parsed = parse_node_record(record)
    return build_observation(
        node_id=parsed.id,
        value=parsed.voltage,
        origin=origin,
        observed_at=parsed.timestamp,
        hard_min=hard_min,
        hard_max=hard_max,
    )
