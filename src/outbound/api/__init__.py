"""Outbound domain API package."""

from outbound.api.routes import router

__all__ = ["router"]
