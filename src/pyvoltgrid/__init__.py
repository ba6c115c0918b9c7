"""pyvoltgrid - Async state reconciliation core for a live voltage-grid dashboard."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyvoltgrid")
except PackageNotFoundError:
    __version__ = "0+local"
from pyvoltgrid.backend import InMemoryGridBackend, InMemoryTransport
from pyvoltgrid.client import GridClient
from pyvoltgrid.config import GridConfig
from pyvoltgrid.exceptions import (
    GridConfigError,
    GridError,
    GridMutationError,
    GridPersistenceError,
    GridTransportError,
    GridValidationError,
)
from pyvoltgrid.models import NodeRecord
from pyvoltgrid.state.alerts import Alert, AlertKind, AlertRegister
from pyvoltgrid.state.events import Observation, ObservationOrigin
from pyvoltgrid.state.history import HistoryLog
from pyvoltgrid.state.persistence import JsonFileHistoryStorage, MemoryHistoryStorage
from pyvoltgrid.state.store import EntityStore, MergeResult
from pyvoltgrid.view import ChartSeries, TimeFrame, ViewProjector

__all__ = [
    "__version__",
    "Alert",
    "AlertKind",
    "AlertRegister",
    "ChartSeries",
    "EntityStore",
    "GridClient",
    "GridConfig",
    "GridConfigError",
    "GridError",
    "GridMutationError",
    "GridPersistenceError",
    "GridTransportError",
    "GridValidationError",
    "HistoryLog",
    "InMemoryGridBackend",
    "InMemoryTransport",
    "JsonFileHistoryStorage",
    "MemoryHistoryStorage",
    "MergeResult",
    "NodeRecord",
    "Observation",
    "ObservationOrigin",
    "TimeFrame",
    "ViewProjector",
]
