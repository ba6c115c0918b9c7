from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from pyvoltgrid._constants import clamp_voltage, is_safe_voltage
from pyvoltgrid.exceptions import GridValidationError
from pyvoltgrid.ingestion.apply import build_observation, observation_from_record, parse_node_record
from pyvoltgrid.ingestion.normalize import format_timestamp, parse_timestamp, safe_int, safe_str
from pyvoltgrid.state.events import ObservationOrigin


def test_parse_timestamp_accepts_z_suffix() -> None:
    assert parse_timestamp("2026-01-01T10:00:00.250Z") == datetime(2026, 1, 1, 10, 0, 0, 250000, tzinfo=UTC)


def test_parse_timestamp_converts_offsets_to_utc() -> None:
    parsed = parse_timestamp("2026-01-01T12:00:00+02:00")

    assert parsed == datetime(2026, 1, 1, 10, 0, tzinfo=UTC)
    assert parsed.tzinfo is UTC  # type: ignore[union-attr]


def test_parse_timestamp_epoch_seconds_and_milliseconds() -> None:
    expected = datetime.fromtimestamp(1_770_928_447, tz=UTC)

    assert parse_timestamp(1_770_928_447) == expected
    assert parse_timestamp(1_770_928_447_000) == expected
    assert parse_timestamp("1770928447") == expected


def test_parse_timestamp_naive_is_assumed_utc() -> None:
    assert parse_timestamp(datetime(2026, 1, 1)) == datetime(2026, 1, 1, tzinfo=UTC)


@pytest.mark.parametrize("value", [None, "", "   ", "not a date", 0, -5, [1]])
def test_parse_timestamp_rejects_garbage(value: object) -> None:
    assert parse_timestamp(value) is None


def test_format_timestamp_millisecond_precision() -> None:
    value = datetime(2026, 1, 1, 12, 0, 0, 123456, tzinfo=timezone(timedelta(hours=1)))

    assert format_timestamp(value) == "2026-01-01T11:00:00.123Z"


def test_safe_int_rounds_and_rejects_non_numeric() -> None:
    assert safe_int("230.6") == 231
    assert safe_int(229.4) == 229
    assert safe_int("abc") is None
    assert safe_int(True) is None
    assert safe_int(float("nan")) is None


def test_safe_str_strips_and_blanks_to_none() -> None:
    assert safe_str("  3 ") == "3"
    assert safe_str("   ") is None
    assert safe_str(4) == "4"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(-5, 220), (0, 220), (219, 220), (220, 220), (230, 230), (239, 239), (240, 239), (1000, 239)],
)
def test_clamp_voltage(value: int, expected: int) -> None:
    assert clamp_voltage(value) == expected


def test_is_safe_voltage_bounds_inclusive() -> None:
    assert is_safe_voltage(223)
    assert is_safe_voltage(237)
    assert not is_safe_voltage(222)
    assert not is_safe_voltage(238)


def test_build_observation_clamps_out_of_range_values() -> None:
    observation = build_observation(node_id="2", value=300, origin=ObservationOrigin.OPTIMISTIC_MUTATION)

    assert observation.value == 239
    assert observation.observed_at.tzinfo is not None


def test_observation_from_record_uses_server_timestamp() -> None:
    observation = observation_from_record(
        {"id": "1", "voltage": 241, "timestamp": "2026-01-01T00:00:05Z"},
        origin=ObservationOrigin.PUSH,
    )

    assert observation.value == 239
    assert observation.observed_at == datetime(2026, 1, 1, 0, 0, 5, tzinfo=UTC)
    assert observation.origin == ObservationOrigin.PUSH


@pytest.mark.parametrize(
    "payload",
    [
        {"voltage": 230, "timestamp": "2026-01-01T00:00:00Z"},
        {"id": "1", "voltage": "high", "timestamp": "2026-01-01T00:00:00Z"},
        {"id": "1", "voltage": 230, "timestamp": "yesterday"},
        ["1", 230],
    ],
)
def test_parse_node_record_rejects_malformed_payloads(payload: object) -> None:
    with pytest.raises(GridValidationError):
        parse_node_record(payload)  # type: ignore[arg-type]
