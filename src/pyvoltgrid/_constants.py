"""Internal constants shared across the library."""

GRAPHQL_ENDPOINT = "http://localhost:4000/graphql"
GRAPHQL_WS_ENDPOINT = "ws://localhost:4000/graphql"
USER_AGENT = "pyvoltgrid/0.1"

# ------------------------------------------------------------------
# Voltage ranges (volts)
# ------------------------------------------------------------------

#: Absolute clamp bounds every accepted value is constrained to.
HARD_MIN = 220
HARD_MAX = 239

#: Non-alerting sub-range.
SAFE_MIN = 223
SAFE_MAX = 237

# ------------------------------------------------------------------
# Caps and timings
# ------------------------------------------------------------------

MAX_HISTORY = 200
MAX_VISIBLE_ALERTS = 5
ALERT_TTL_SECONDS = 5.0
HIGHLIGHT_TTL_SECONDS = 0.5

#: Well-known key the history blob is persisted under.
HISTORY_STORAGE_KEY = "voltageHistory"

#: Voltage assigned by the in-memory backend to freshly added nodes.
DEFAULT_NODE_VOLTAGE = 230


def clamp_voltage(value: int, *, low: int = HARD_MIN, high: int = HARD_MAX) -> int:
    """Constrain *value* to ``[low, high]``."""
    return max(low, min(high, int(value)))


def is_safe_voltage(value: int, *, low: int = SAFE_MIN, high: int = SAFE_MAX) -> bool:
    """Return ``True`` when *value* lies inside the non-alerting range."""
    return low <= value <= high
