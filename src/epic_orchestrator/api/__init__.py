"""HTTP and WebSocket surface of the engine."""

from .main import create_app, serve

__all__ = ["create_app", "serve"]
