"""Alert register.

Derives human-readable warnings and expires them after a fixed delay. The
visible list is capped; overflow drops the oldest alert without cancelling
its timer, which simply finds nothing to clear when it fires.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from pyvoltgrid._constants import ALERT_TTL_SECONDS, MAX_VISIBLE_ALERTS, SAFE_MAX, SAFE_MIN
from pyvoltgrid.state.policy import range_alert_message

_logger = logging.getLogger(__name__)


class Cancelable(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancelable]
"""``(delay_seconds, callback) -> handle``; matches ``loop.call_later``."""


def loop_scheduler(delay: float, callback: Callable[[], None]) -> Cancelable:
    """Schedule on the running asyncio loop."""
    return asyncio.get_running_loop().call_later(delay, callback)


class AlertKind(StrEnum):
    RANGE = "range"
    MUTATION = "mutation"
    TRANSPORT = "transport"


@dataclass(frozen=True, slots=True)
class Alert:
    key: str
    message: str
    kind: AlertKind
    node_id: str | None = None
    raised_at: float = field(default_factory=time.time)


def range_key(node_id: str) -> str:
    return node_id


def mutation_key(node_id: str) -> str:
    return f"mutation:{node_id}"


def transport_key(operation: str) -> str:
    return f"transport:{operation}"


class AlertRegister:
    """Mapping ``key -> Alert`` with per-alert expiry timers."""

    def __init__(
        self,
        *,
        scheduler: Scheduler = loop_scheduler,
        ttl: float = ALERT_TTL_SECONDS,
        max_visible: int = MAX_VISIBLE_ALERTS,
        safe_min: int = SAFE_MIN,
        safe_max: int = SAFE_MAX,
    ) -> None:
        self._scheduler = scheduler
        self._ttl = ttl
        self._max_visible = max_visible
        self._safe_min = safe_min
        self._safe_max = safe_max
        # Oldest first; most recent at the end.
        self._alerts: OrderedDict[str, tuple[Alert, int]] = OrderedDict()
        self._timers: dict[str, Cancelable] = {}
        self._tokens = itertools.count(1)
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def evaluate(self, node_id: str, value: int) -> str | None:
        """Pure check of *value* against the safe range."""
        return range_alert_message(node_id, value, safe_min=self._safe_min, safe_max=self._safe_max)

    def register(
        self,
        key: str,
        message: str,
        *,
        kind: AlertKind = AlertKind.RANGE,
        node_id: str | None = None,
    ) -> Alert:
        """Insert or overwrite *key* with a fresh expiry timer."""
        previous_timer = self._timers.pop(key, None)
        if previous_timer is not None:
            previous_timer.cancel()
        self._alerts.pop(key, None)

        alert = Alert(key=key, message=message, kind=kind, node_id=node_id)
        token = next(self._tokens)
        self._alerts[key] = (alert, token)
        self._timers[key] = self._scheduler(self._ttl, lambda: self._on_timer(key, token))

        while len(self._alerts) > self._max_visible:
            evicted_key, _ = self._alerts.popitem(last=False)
            # Timer intentionally left running; it becomes a no-op.
            self._timers.pop(evicted_key, None)
            _logger.debug("Alert evicted from visible list key=%s", evicted_key)

        self._version += 1
        return alert

    def _on_timer(self, key: str, token: int) -> None:
        current = self._alerts.get(key)
        if current is None or current[1] != token:
            return
        self._timers.pop(key, None)
        del self._alerts[key]
        self._version += 1
        _logger.debug("Alert expired key=%s", key)

    def expire(self, key: str) -> bool:
        """Clear *key* now. Returns ``False`` when it was not present."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if self._alerts.pop(key, None) is None:
            return False
        self._version += 1
        return True

    def clear_node(self, node_id: str) -> int:
        """Clear every alert tied to *node_id*."""
        keys = [key for key, (alert, _) in self._alerts.items() if alert.node_id == node_id]
        for key in keys:
            self.expire(key)
        return len(keys)

    def clear_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._alerts:
            self._alerts.clear()
            self._version += 1

    def get(self, key: str) -> Alert | None:
        entry = self._alerts.get(key)
        return entry[0] if entry is not None else None

    def alerts(self) -> list[Alert]:
        """Visible alerts, most recent first."""
        return [alert for alert, _ in reversed(self._alerts.values())]

    def messages(self) -> list[str]:
        return [alert.message for alert in self.alerts()]

    def __contains__(self, key: object) -> bool:
        return key in self._alerts

    def __len__(self) -> int:
        return len(self._alerts)
