"""Transport interface and the GraphQL-over-HTTP/websocket implementation."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import aiohttp

from pyvoltgrid._constants import USER_AGENT
from pyvoltgrid.config import GridConfig
from pyvoltgrid.exceptions import GridError, GridMutationError, GridTransportError, GridValidationError
from pyvoltgrid.ingestion.apply import parse_node_record
from pyvoltgrid.models.node import NodeRecord

_logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
MessageCallback = Callable[[NodeRecord], None]
ErrorCallback = Callable[[GridTransportError], None]

GET_GRID_DATA = """
query GetGridData {
  grid {
    id
    voltage
    timestamp
  }
}
"""

GRID_SUBSCRIPTION = """
subscription OnGridUpdate {
  gridUpdate {
    id
    voltage
    timestamp
  }
}
"""

UPDATE_VOLTAGE = """
mutation UpdateVoltage($id: String!, $voltage: Int!) {
  updateVoltage(id: $id, voltage: $voltage) {
    id
    voltage
    timestamp
  }
}
"""

ADD_NODE = """
mutation AddNode($id: String!) {
  addNode(id: $id) {
    id
    voltage
    timestamp
  }
}
"""

DELETE_NODE = """
mutation DeleteNode($id: String!) {
  deleteNode(id: $id) {
    id
    voltage
    timestamp
  }
}
"""


class Transport(Protocol):
    """Structural transport interface consumed by the client.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`GraphQLTransport`) concrete.
    """

    async def fetch_snapshot(self) -> list[NodeRecord]: ...

    def subscribe_live(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe: ...

    async def submit_update(self, node_id: str, value: int) -> NodeRecord: ...

    async def submit_add(self, node_id: str) -> NodeRecord: ...

    async def submit_delete(self, node_id: str) -> NodeRecord: ...


class LiveFeed(Protocol):
    """A push source that can stand in for the transport's own live stream."""

    def subscribe(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe: ...


def _first_error_message(errors: Any) -> str:
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, Mapping):
            return str(first.get("message") or first)
        return str(first)
    return str(errors)


class GraphQLTransport:
    """GraphQL transport: queries/mutations over HTTP POST, live updates over websocket.

    The websocket stream speaks the ``graphql-ws`` subprotocol
    (``connection_init`` / ``start`` / ``data`` / ``stop``). A separate
    :class:`LiveFeed` (e.g. MQTT) may be injected to replace it.
    """

    def __init__(
        self,
        config: GridConfig,
        http_session: aiohttp.ClientSession,
        *,
        live_feed: LiveFeed | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._live_feed = live_feed

    async def _execute(self, query: str, *, operation: str, variables: Mapping[str, Any] | None = None) -> Any:
        """POST a GraphQL document and return the ``data[operation]`` field."""
        headers = {
            "content-type": "application/json",
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        body: dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = dict(variables)

        _logger.debug("POST %s operation=%s", self._config.endpoint, operation)
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout)

        try:
            async with self._http.post(
                self._config.endpoint,
                data=json.dumps(body),
                headers=headers,
                timeout=timeout,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise GridTransportError(
                        f"HTTP {resp.status} from {operation}: {text[:200]}",
                        status_code=resp.status,
                        operation=operation,
                    )
        except GridTransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise GridTransportError(f"Request {operation} failed: {exc}", operation=operation) from exc

        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise GridTransportError(f"Invalid JSON from {operation}: {text[:200]}", operation=operation) from exc

        if not isinstance(decoded, dict):
            raise GridTransportError(f"Unexpected response shape from {operation}", operation=operation)
        if decoded.get("errors"):
            raise GridTransportError(
                f"{operation} failed: {_first_error_message(decoded['errors'])}",
                operation=operation,
            )

        data = decoded.get("data")
        if not isinstance(data, dict) or data.get(operation) is None:
            raise GridTransportError(f"Missing data.{operation} in response", operation=operation)
        return data[operation]

    async def fetch_snapshot(self) -> list[NodeRecord]:
        rows = await self._execute(GET_GRID_DATA, operation="grid")
        if not isinstance(rows, list):
            raise GridTransportError("grid query did not return a list", operation="grid")
        try:
            return [parse_node_record(row) for row in rows]
        except GridValidationError as exc:
            raise GridTransportError(str(exc), operation="grid") from exc

    async def _mutate(self, query: str, *, operation: str, node_id: str, variables: Mapping[str, Any]) -> NodeRecord:
        try:
            payload = await self._execute(query, operation=operation, variables=variables)
            return parse_node_record(payload)
        except GridError as exc:
            raise GridMutationError(str(exc), node_id=node_id, operation=operation) from exc

    async def submit_update(self, node_id: str, value: int) -> NodeRecord:
        return await self._mutate(
            UPDATE_VOLTAGE,
            operation="updateVoltage",
            node_id=node_id,
            variables={"id": node_id, "voltage": value},
        )

    async def submit_add(self, node_id: str) -> NodeRecord:
        return await self._mutate(ADD_NODE, operation="addNode", node_id=node_id, variables={"id": node_id})

    async def submit_delete(self, node_id: str) -> NodeRecord:
        return await self._mutate(DELETE_NODE, operation="deleteNode", node_id=node_id, variables={"id": node_id})

    # ------------------------------------------------------------------
    # Live stream
    # ------------------------------------------------------------------

    def subscribe_live(self, on_message: MessageCallback, on_error: ErrorCallback | None = None) -> Unsubscribe:
        if self._live_feed is not None:
            return self._live_feed.subscribe(on_message, on_error)

        task = asyncio.get_running_loop().create_task(self._run_subscription(on_message, on_error))

        def _unsubscribe() -> None:
            if not task.done():
                task.cancel()

        return _unsubscribe

    async def _run_subscription(self, on_message: MessageCallback, on_error: ErrorCallback | None) -> None:
        url = self._config.ws_endpoint
        try:
            async with self._http.ws_connect(
                url,
                protocols=("graphql-ws",),
                headers={"user-agent": USER_AGENT},
            ) as ws:
                _logger.debug("Live stream connected url=%s", url)
                await ws.send_json({"type": "connection_init", "payload": {}})
                await ws.send_json({"id": "1", "type": "start", "payload": {"query": GRID_SUBSCRIPTION}})
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        if not self._handle_ws_message(msg.data, on_message):
                            break
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        raise GridTransportError(f"Live stream closed: {ws.exception()}", operation="gridUpdate")
            # Reached on a server CLOSE or a ``complete`` frame.
            raise GridTransportError("Live stream closed by server", operation="gridUpdate")
        except asyncio.CancelledError:
            _logger.debug("Live stream unsubscribed url=%s", url)
            raise
        except GridTransportError as exc:
            self._report(on_error, exc)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self._report(on_error, GridTransportError(f"Live stream failed: {exc}", operation="gridUpdate"))

    def _handle_ws_message(self, text: str, on_message: MessageCallback) -> bool:
        """Dispatch one websocket frame. Returns ``False`` when the server completed the stream."""
        message = json.loads(text)
        if not isinstance(message, dict):
            return True
        kind = message.get("type")
        if kind == "data":
            payload = message.get("payload")
            data = payload.get("data") if isinstance(payload, dict) else None
            raw = data.get("gridUpdate") if isinstance(data, dict) else None
            if raw is None:
                errors = payload.get("errors") if isinstance(payload, dict) else None
                if errors:
                    raise GridTransportError(
                        f"Live stream error: {_first_error_message(errors)}",
                        operation="gridUpdate",
                    )
                return True
            try:
                record = parse_node_record(raw)
            except GridValidationError:
                _logger.debug("Dropping malformed live record %r", raw, exc_info=True)
                return True
            on_message(record)
            return True
        if kind in ("error", "connection_error"):
            raise GridTransportError(
                f"Live stream rejected: {message.get('payload')}",
                operation="gridUpdate",
            )
        if kind == "complete":
            return False
        # connection_ack / ka (keep-alive) need no handling.
        return True

    @staticmethod
    def _report(on_error: ErrorCallback | None, exc: GridTransportError) -> None:
        _logger.warning("%s", exc)
        if on_error is None:
            return
        try:
            on_error(exc)
        except Exception:
            _logger.debug("Live stream error callback failed", exc_info=True)
