"""
HTTP surface for the realtime coordination core.

This package provides a single FastAPI application that exposes:
- Notification endpoints
- Messaging endpoints
- Appointment booking and lifecycle endpoints
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
