"""Deterministic merge policy.

This module contains *no* payload parsing. The ingestion boundary is
responsible for producing clamped observations with aware timestamps.
"""

from __future__ import annotations

from pyvoltgrid.state.events import Observation, ObservationOrigin


def supersedes_provisional(current: Observation, incoming: Observation) -> bool:
    """A confirmed mutation always replaces a stored optimistic guess."""
    return (
        incoming.origin == ObservationOrigin.CONFIRMED_MUTATION
        and current.origin == ObservationOrigin.OPTIMISTIC_MUTATION
    )


def should_accept_update(
    *,
    current: Observation | None,
    incoming: Observation,
    hard_min: int,
    hard_max: int,
) -> bool:
    """Decide whether an incoming observation replaces the stored one.

    Policy:
    - Values outside ``[hard_min, hard_max]`` are rejected.
    - Unknown ids are inserted.
    - Confirmed beats optimistic regardless of timestamps.
    - Otherwise the incoming timestamp must be strictly newer.
    """
    if not hard_min <= incoming.value <= hard_max:
        return False
    if current is None:
        return True
    if supersedes_provisional(current, incoming):
        return True
    return incoming.observed_at > current.observed_at


def range_alert_message(node_id: str, value: int, *, safe_min: int, safe_max: int) -> str | None:
    """Human-readable warning for a value outside the safe range, else ``None``."""
    if safe_min <= value <= safe_max:
        return None
    return f"Node {node_id} voltage {value}V out of safe range!"
