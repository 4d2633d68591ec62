"""HTTP and WebSocket interface."""

from bidroom.api.app import create_app

__all__ = ["create_app"]
