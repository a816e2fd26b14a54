"""HTTP API surface."""

from paperhands_tracker.api.server import create_app, start_site

__all__ = ["create_app", "start_site"]
