"""
HTTP API for the fulfillment service.

A single FastAPI application exposing orders, payments, shipping, carrier
webhooks and notification preferences. ``create_app`` builds one around a
given system (tests); ``app`` builds its own on startup.
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
