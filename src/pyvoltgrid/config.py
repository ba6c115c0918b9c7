"""Client configuration for pyvoltgrid."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyvoltgrid._constants import (
    ALERT_TTL_SECONDS,
    GRAPHQL_ENDPOINT,
    GRAPHQL_WS_ENDPOINT,
    HARD_MAX,
    HARD_MIN,
    HIGHLIGHT_TTL_SECONDS,
    HISTORY_STORAGE_KEY,
    MAX_HISTORY,
    MAX_VISIBLE_ALERTS,
    SAFE_MAX,
    SAFE_MIN,
)
from pyvoltgrid.exceptions import GridConfigError

PUSH_BACKENDS: frozenset[str] = frozenset({"graphql-ws", "mqtt"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class GridConfig:
    """Client configuration.

    Parameters
    ----------
    endpoint : str
        GraphQL HTTP endpoint used for snapshot fetches and mutations.
    ws_endpoint : str
        GraphQL websocket endpoint used for the live ``gridUpdate`` stream.
    push_backend : str
        ``"graphql-ws"`` (default) or ``"mqtt"``.
    mqtt_host : str or None
        Broker host, required when ``push_backend == "mqtt"``.
    mqtt_port : int
        Broker port.
    mqtt_topic : str
        Topic carrying JSON ``{id, voltage, timestamp}`` records.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    request_timeout : float
        Total timeout in seconds for a single HTTP request.
    hard_min, hard_max : int
        Clamp bounds applied to every inbound value.
    safe_min, safe_max : int
        Values outside this range raise an alert.
    max_history : int
        History log capacity.
    max_visible_alerts : int
        Number of alerts kept visible at once.
    alert_ttl : float
        Seconds before an alert auto-expires.
    highlight_ttl : float
        Seconds the last touched node id stays highlighted.
    persist_history : bool
        Save the history log after every recorded observation.
    history_dir : str or None
        Directory for the history blob. ``None`` keeps history in memory only.
    history_key : str
        Storage key the history blob is saved under.
    """

    endpoint: str = GRAPHQL_ENDPOINT
    ws_endpoint: str = GRAPHQL_WS_ENDPOINT
    push_backend: str = "graphql-ws"
    mqtt_host: str | None = None
    mqtt_port: int = 1883
    mqtt_topic: str = "grid/updates"
    mqtt_keepalive: int = 60
    request_timeout: float = 10.0
    hard_min: int = HARD_MIN
    hard_max: int = HARD_MAX
    safe_min: int = SAFE_MIN
    safe_max: int = SAFE_MAX
    max_history: int = MAX_HISTORY
    max_visible_alerts: int = MAX_VISIBLE_ALERTS
    alert_ttl: float = ALERT_TTL_SECONDS
    highlight_ttl: float = HIGHLIGHT_TTL_SECONDS
    persist_history: bool = True
    history_dir: str | None = None
    history_key: str = HISTORY_STORAGE_KEY

    def __post_init__(self) -> None:
        if self.hard_min > self.hard_max:
            raise GridConfigError(f"hard_min ({self.hard_min}) must not exceed hard_max ({self.hard_max})")
        if not self.hard_min <= self.safe_min <= self.safe_max <= self.hard_max:
            raise GridConfigError("safe range must lie inside the hard range")
        if self.max_history <= 0:
            raise GridConfigError("max_history must be positive")
        if self.max_visible_alerts <= 0:
            raise GridConfigError("max_visible_alerts must be positive")
        if self.push_backend not in PUSH_BACKENDS:
            raise GridConfigError(f"push_backend must be one of {sorted(PUSH_BACKENDS)}, got {self.push_backend!r}")
        if self.push_backend == "mqtt" and not self.mqtt_host:
            raise GridConfigError("mqtt_host is required when push_backend is 'mqtt'")

    @classmethod
    def from_env(cls, **overrides: Any) -> GridConfig:
        """Create configuration from environment variables.

        Reads optional ``GRID_*`` variables. Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        GridConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "GRID_ENDPOINT": "endpoint",
            "GRID_WS_ENDPOINT": "ws_endpoint",
            "GRID_PUSH_BACKEND": "push_backend",
            "GRID_MQTT_HOST": "mqtt_host",
            "GRID_MQTT_TOPIC": "mqtt_topic",
            "GRID_HISTORY_DIR": "history_dir",
            "GRID_HISTORY_KEY": "history_key",
        }
        _ENV_INT_MAP = {
            "GRID_MQTT_PORT": "mqtt_port",
            "GRID_MQTT_KEEPALIVE": "mqtt_keepalive",
            "GRID_MAX_HISTORY": "max_history",
            "GRID_MAX_VISIBLE_ALERTS": "max_visible_alerts",
        }
        _ENV_FLOAT_MAP = {
            "GRID_REQUEST_TIMEOUT": "request_timeout",
            "GRID_ALERT_TTL": "alert_ttl",
            "GRID_HIGHLIGHT_TTL": "highlight_ttl",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val.strip()

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise GridConfigError(f"Invalid numeric GRID_* environment value: {exc}") from exc

        if "persist_history" not in overrides:
            config_kwargs["persist_history"] = _env_bool(env.get("GRID_PERSIST_HISTORY"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
