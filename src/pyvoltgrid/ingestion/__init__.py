"""Ingestion layer.

This package contains adapters that turn wire records from the snapshot
fetch, the live push stream and mutation responses into normalized
:class:`pyvoltgrid.state.events.Observation` objects.
"""

__all__: list[str] = []
