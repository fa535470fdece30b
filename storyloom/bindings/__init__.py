"""Transport bindings for the session engine."""

from .websocket import create_sync_app

__all__ = ["create_sync_app"]
