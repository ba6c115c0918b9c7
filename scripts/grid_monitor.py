#!/usr/bin/env python3
"""Tail a live voltage grid from the terminal.

Loads the initial snapshot, subscribes to live updates and prints the node
table plus any visible alerts whenever the client state changes.

Usage
-----
Point the script at a GraphQL grid server and run::

    export GRID_ENDPOINT="http://localhost:4000/graphql"
    export GRID_WS_ENDPOINT="ws://localhost:4000/graphql"
    python scripts/grid_monitor.py

Options::

    --duration SECONDS   Stop after SECONDS (default: run until Ctrl+C)
    --mqtt-host HOST     Take live updates from an MQTT broker instead
    --mqtt-topic TOPIC   MQTT topic carrying grid records
    --history-dir DIR    Persist the history log under DIR
    --json               Print one JSON line per change instead of a table
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyvoltgrid import GridClient, GridConfig  # noqa: E402
from pyvoltgrid.ingestion.normalize import format_timestamp  # noqa: E402

_LOG = logging.getLogger("grid_monitor")


def _render_table(client: GridClient) -> str:
    lines = ["", f"{'node':>8}  {'voltage':>7}  {'observed at':<24}  origin"]
    highlighted = client.view.last_touched_id
    for obs in client.view.node_list():
        marker = "*" if obs.id == highlighted else " "
        lines.append(
            f"{marker}{obs.id:>7}  {obs.value:>6}V  {format_timestamp(obs.observed_at):<24}  {obs.origin.value}"
        )
    for alert in client.get_alerts():
        lines.append(f"  ! {alert.message}")
    state = "paused" if client.is_paused else ("live" if client.is_live else "idle")
    lines.append(f"  [{state}] history={len(client.history)}")
    return "\n".join(lines)


def _render_json(client: GridClient) -> str:
    payload: dict[str, Any] = {
        "nodes": [
            {"id": obs.id, "voltage": obs.value, "timestamp": format_timestamp(obs.observed_at)}
            for obs in client.view.node_list()
        ],
        "alerts": client.alerts.messages(),
        "history": len(client.history),
        "paused": client.is_paused,
    }
    return json.dumps(payload, ensure_ascii=False)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tail a live voltage grid.")
    parser.add_argument("--duration", type=float, default=None, help="Stop after SECONDS")
    parser.add_argument("--mqtt-host", help="Take live updates from this MQTT broker")
    parser.add_argument("--mqtt-topic", help="MQTT topic carrying grid records")
    parser.add_argument("--history-dir", help="Persist the history log under DIR")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Print JSON lines")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def _build_config(args: argparse.Namespace) -> GridConfig:
    overrides: dict[str, Any] = {}
    if args.mqtt_host:
        overrides["push_backend"] = "mqtt"
        overrides["mqtt_host"] = args.mqtt_host
    if args.mqtt_topic:
        overrides["mqtt_topic"] = args.mqtt_topic
    if args.history_dir:
        overrides["history_dir"] = args.history_dir
    return GridConfig.from_env(**overrides)


async def run(args: argparse.Namespace) -> int:
    config = _build_config(args)
    render = _render_json if args.json_mode else _render_table

    async with GridClient(config) as client:
        client.add_listener(lambda: print(render(client), flush=True))
        if not await client.start():
            for alert in client.get_alerts():
                _LOG.error("%s", alert.message)
            return 1
        try:
            if args.duration is not None:
                await asyncio.sleep(args.duration)
            else:
                await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
    return 0


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nStopped.", file=sys.stderr)


if __name__ == "__main__":
    main()
