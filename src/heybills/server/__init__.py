"""ASGI application factory and dependencies for the Hey Bills server."""

from heybills.server.app import create_app

__all__ = ["create_app"]
