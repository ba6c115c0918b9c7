"""Grid node wire record."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from pyvoltgrid.ingestion.normalize import format_timestamp, parse_timestamp, safe_int, safe_str
from pyvoltgrid.models._base import GridBaseModel


class NodeRecord(GridBaseModel):
    """One ``{id, voltage, timestamp}`` record as returned by the backing store.

    Used for snapshot rows, live ``gridUpdate`` messages and mutation
    responses alike. Values are *not* clamped here; clamping happens when
    the record is turned into an observation.
    """

    id: str = Field(..., min_length=1)
    """Node identity."""

    voltage: int
    """Measured voltage in volts."""

    timestamp: datetime
    """Server-assigned observation time (UTC)."""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("id must be non-empty")
        return text

    @field_validator("voltage", mode="before")
    @classmethod
    def _coerce_voltage(cls, value: Any) -> int:
        parsed = safe_int(value)
        if parsed is None:
            raise ValueError(f"voltage is not numeric: {value!r}")
        return parsed

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> datetime:
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"timestamp is not a valid ISO-8601/epoch value: {value!r}")
        return parsed

    def to_wire(self) -> dict[str, Any]:
        """Serialize back into the wire shape."""
        return {"id": self.id, "voltage": self.voltage, "timestamp": format_timestamp(self.timestamp)}
