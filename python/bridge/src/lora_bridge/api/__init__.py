"""HTTP and WebSocket surface for Lora clients."""

from .server import create_app

__all__ = ["create_app"]
