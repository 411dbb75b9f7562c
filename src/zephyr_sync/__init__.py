"""Zephyr Sync - chat account synchronization engine.

This package provides the producer engine that keeps a local point-of-view
snapshot of a remote chat account (identity, workspaces, channels and
messages) up to date by polling its REST API with adaptive backoff.
"""

__version__ = "0.1.0"
