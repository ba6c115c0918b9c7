"""State/store layer.

This package is the single source of truth for how observations from the
snapshot fetch, the live push stream and local mutations are merged into
current per-node state, the deduplicated history log and the alert register.
"""
