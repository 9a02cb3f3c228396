"""REST API for the enrollment engine."""

from enrollcore.api.app import app, create_app

__all__ = ["app", "create_app"]
