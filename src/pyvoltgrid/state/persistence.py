"""Best-effort local persistence of the history log.

The blob is a single JSON array of observations stored under one key. There
is no schema versioning: anything unreadable loads as an empty history.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from pyvoltgrid.exceptions import GridPersistenceError
from pyvoltgrid.state.events import Observation

_logger = logging.getLogger(__name__)

_OBSERVATIONS = TypeAdapter(list[Observation])


class HistoryStorage(Protocol):
    """Key/blob storage used for the history log."""

    def save(self, key: str, entries: list[Observation]) -> None: ...

    def load(self, key: str) -> list[Observation]: ...


def encode_history(entries: list[Observation]) -> bytes:
    return _OBSERVATIONS.dump_json(entries)


def decode_history(blob: bytes | str | None) -> list[Observation]:
    """Decode a history blob; empty, missing or corrupt blobs give ``[]``."""
    if blob is None:
        return []
    if isinstance(blob, bytes):
        blob = blob.decode("utf-8", errors="replace")
    if not blob.strip():
        return []
    try:
        return _OBSERVATIONS.validate_json(blob)
    except ValidationError:
        _logger.debug("Discarding unreadable history blob", exc_info=True)
        return []


class MemoryHistoryStorage:
    """Keeps encoded blobs in a dict. Used when no history directory is configured."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}

    def save(self, key: str, entries: list[Observation]) -> None:
        self.blobs[key] = encode_history(entries)

    def load(self, key: str) -> list[Observation]:
        return decode_history(self.blobs.get(key))


class JsonFileHistoryStorage:
    """One ``<key>.json`` file per key inside *directory*."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def save(self, key: str, entries: list[Observation]) -> None:
        target = self.path_for(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(encode_history(entries))
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise GridPersistenceError(f"Could not save history to {target}: {exc}") from exc

    def load(self, key: str) -> list[Observation]:
        target = self.path_for(key)
        try:
            blob = target.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            _logger.debug("History blob %s unreadable: %s", target, exc)
            return []
        return decode_history(blob)


class HistorySaver:
    """Write history snapshots through *storage* on the default executor.

    At most one save runs at a time. Snapshots submitted while a save is
    running collapse into one follow-up save of the newest snapshot.
    Failures are logged and dropped.
    """

    def __init__(self, storage: HistoryStorage, key: str) -> None:
        self._storage = storage
        self._key = key
        self._running: asyncio.Future[None] | None = None
        self._queued: list[Observation] | None = None

    @property
    def is_saving(self) -> bool:
        return self._running is not None

    def submit(self, entries: list[Observation]) -> None:
        if self._running is not None:
            self._queued = entries
            return
        self._start(asyncio.get_running_loop(), entries)

    def _start(self, loop: asyncio.AbstractEventLoop, entries: list[Observation]) -> None:
        running = loop.run_in_executor(None, self._storage.save, self._key, entries)
        running.add_done_callback(self._finished)
        self._running = running

    def _finished(self, future: asyncio.Future[None]) -> None:
        self._running = None
        if not future.cancelled() and future.exception() is not None:
            _logger.debug("History save skipped", exc_info=future.exception())
        queued, self._queued = self._queued, None
        if queued is not None:
            self._start(future.get_loop(), queued)

    async def flush(self) -> None:
        """Wait until the running save and any queued one have finished."""
        while self._running is not None:
            await asyncio.wait({self._running})
            # Let the done callback start the queued save.
            await asyncio.sleep(0)
