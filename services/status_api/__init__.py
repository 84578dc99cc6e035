"""Read-only status API service."""

from .server import StatusApiServer

__all__ = ["StatusApiServer"]
