"""Normalized observations.

All ingestion paths (snapshot, push, mutations) convert their inputs
into these values. Only the state layer is allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ObservationOrigin(StrEnum):
    SNAPSHOT = "snapshot"
    PUSH = "push"
    OPTIMISTIC_MUTATION = "optimistic_mutation"
    CONFIRMED_MUTATION = "confirmed_mutation"


DedupKey = tuple[str, datetime, int]


class Observation(BaseModel):
    """One timestamped value for one node from a specific origin."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Node identity")
    value: int = Field(..., description="Voltage, already clamped to the hard range")
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    origin: ObservationOrigin

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        node_id = value.strip()
        if not node_id:
            raise ValueError("id must be non-empty")
        return node_id

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def dedup_key(self) -> DedupKey:
        """Composite key the history log deduplicates on."""
        return (self.id, self.observed_at, self.value)
