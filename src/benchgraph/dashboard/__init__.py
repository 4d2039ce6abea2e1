"""Read-only JSON API over a benchmark store."""

from benchgraph.dashboard.routes import create_app, setup_dashboard

__all__ = ["create_app", "setup_dashboard"]
