"""Data models for grid wire payloads."""

from pyvoltgrid.models._base import GridBaseModel
from pyvoltgrid.models.node import NodeRecord

__all__ = [
    "GridBaseModel",
    "NodeRecord",
]
