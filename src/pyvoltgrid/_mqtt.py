"""MQTT push feed: parsing and threaded runtime helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyvoltgrid._transport import ErrorCallback, MessageCallback, Unsubscribe
from pyvoltgrid.config import GridConfig
from pyvoltgrid.exceptions import GridConfigError, GridTransportError, GridValidationError
from pyvoltgrid.ingestion.apply import parse_node_record
from pyvoltgrid.models.node import NodeRecord


@dataclass(frozen=True)
class MqttEndpoint:
    """Broker/topic data required to subscribe to grid updates."""

    broker_host: str
    broker_port: int
    topic: str
    client_id: str


def endpoint_from_config(config: GridConfig) -> MqttEndpoint:
    if not config.mqtt_host:
        raise GridConfigError("mqtt_host is not configured")
    return MqttEndpoint(
        broker_host=config.mqtt_host,
        broker_port=config.mqtt_port,
        topic=config.mqtt_topic,
        client_id=f"pyvoltgrid_{secrets.token_hex(6)}",
    )


def decode_mqtt_payload(payload: bytes) -> NodeRecord:
    """Parse MQTT payload bytes into a node record.

    Accepts either a bare ``{id, voltage, timestamp}`` object or the GraphQL
    style ``{"gridUpdate": {...}}`` envelope.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise GridValidationError(f"MQTT payload is not JSON: {exc}") from exc
    if isinstance(parsed, dict) and isinstance(parsed.get("gridUpdate"), dict):
        parsed = parsed["gridUpdate"]
    return parse_node_record(parsed)


class GridMqttRuntime:
    """Background paho-mqtt connection feeding grid records to an asyncio loop.

    paho runs its network loop on its own thread; every callback into the
    caller is marshalled with ``loop.call_soon_threadsafe`` so merges stay on
    the event loop thread.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_record: Callable[[NodeRecord], None],
        on_error: Callable[[GridTransportError], None] | None = None,
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_record = on_record
        self._on_error = on_error
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._endpoint: MqttEndpoint | None = None

    @property
    def is_running(self) -> bool:
        return self._client is not None

    def start(self, endpoint: MqttEndpoint) -> None:
        """Connect to *endpoint* and subscribe to its topic once connected."""
        self.stop()
        self._logger.debug(
            "Grid MQTT connecting host=%s port=%s topic=%s client_id=%s",
            endpoint.broker_host,
            endpoint.broker_port,
            endpoint.topic,
            endpoint.client_id,
        )
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=endpoint.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        client.on_connect = self._handle_connect
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        self._endpoint = endpoint
        client.connect(endpoint.broker_host, endpoint.broker_port, keepalive=self._keepalive)
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        """Disconnect and join the network thread. Safe to call repeatedly."""
        client, self._client = self._client, None
        self._endpoint = None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("Grid MQTT stopped")

    # paho callbacks (network thread) ----------------------------------

    def _handle_connect(
        self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("Grid MQTT connect refused: %s", reason_code)
            self._emit_error(GridTransportError(f"MQTT connect failed: {reason_code}", operation="gridUpdate"))
            return
        endpoint = self._endpoint
        if endpoint is not None:
            client.subscribe(endpoint.topic, qos=0)
            self._logger.debug("Grid MQTT subscribed topic=%s", endpoint.topic)

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            record = decode_mqtt_payload(msg.payload)
        except GridValidationError:
            self._logger.debug("Ignoring undecodable grid payload topic=%s", msg.topic, exc_info=True)
            return
        self._loop.call_soon_threadsafe(self._on_record, record)

    def _handle_disconnect(
        self, _client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        # A disconnect we asked for clears _client first.
        if self._client is None:
            return
        self._logger.debug("Grid MQTT connection lost: %s", reason_code)
        self._emit_error(GridTransportError(f"MQTT disconnected: {reason_code}", operation="gridUpdate"))

    def _emit_error(self, exc: GridTransportError) -> None:
        if self._on_error is not None:
            self._loop.call_soon_threadsafe(self._on_error, exc)


class _MqttSubscription:
    """One runtime whose blocking connect and stop run on the default executor."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        runtime: GridMqttRuntime,
        endpoint: MqttEndpoint,
        on_error: ErrorCallback | None,
        logger: logging.Logger,
    ) -> None:
        self._loop = loop
        self._runtime = runtime
        self._endpoint = endpoint
        self._on_error = on_error
        self._logger = logger
        self._closed = False
        self._starting: asyncio.Task[None] | None = None

    def open(self) -> None:
        self._starting = self._loop.create_task(self._start())

    async def _start(self) -> None:
        try:
            await self._loop.run_in_executor(None, self._runtime.start, self._endpoint)
        except (OSError, ValueError) as exc:
            self._logger.debug("Grid MQTT start failed", exc_info=True)
            if not self._closed and self._on_error is not None:
                self._on_error(GridTransportError(f"MQTT subscribe failed: {exc}", operation="gridUpdate"))
            return
        if self._closed:
            # Unsubscribed while connecting.
            await self._loop.run_in_executor(None, self._runtime.stop)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._starting is not None and not self._starting.done():
            return
        stopping = self._loop.run_in_executor(None, self._runtime.stop)
        stopping.add_done_callback(self._log_stop_failure)

    def _log_stop_failure(self, future: asyncio.Future[None]) -> None:
        if not future.cancelled() and future.exception() is not None:
            self._logger.debug("Grid MQTT stop failed", exc_info=future.exception())


class MqttLiveFeed:
    """:class:`pyvoltgrid._transport.LiveFeed` backed by an MQTT topic.

    ``subscribe`` returns at once; connect failures arrive through *on_error*.
    """

    def __init__(self, config: GridConfig, *, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)

    def subscribe(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe:
        loop = asyncio.get_running_loop()
        runtime = GridMqttRuntime(
            loop=loop,
            on_record=on_message,
            on_error=on_error,
            keepalive=self._config.mqtt_keepalive,
            logger=self._logger,
        )
        subscription = _MqttSubscription(
            loop=loop,
            runtime=runtime,
            endpoint=endpoint_from_config(self._config),
            on_error=on_error,
            logger=self._logger,
        )
        subscription.open()
        return subscription.close
