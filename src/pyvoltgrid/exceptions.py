"""Custom exception hierarchy for pyvoltgrid."""

from __future__ import annotations


class GridError(Exception):
    """Base exception for all pyvoltgrid errors."""


class GridConfigError(GridError):
    """Invalid or missing configuration."""


class GridValidationError(GridError):
    """A payload could not be normalized into an observation."""


class GridTransportError(GridError):
    """Snapshot fetch or live stream failure (network, non-200, invalid payload)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        operation: str = "",
    ) -> None:
        self.status_code = status_code
        self.operation = operation
        super().__init__(message)


class GridMutationError(GridError):
    """Backing store rejected an update/add/delete request."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str = "",
        operation: str = "",
    ) -> None:
        self.node_id = node_id
        self.operation = operation
        super().__init__(message)


class GridPersistenceError(GridError):
    """History blob could not be saved or loaded.

    Never fatal: the controller logs it and skips that save.
    """
