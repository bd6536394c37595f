"""
asgi.py -- ASGI entry point for CareGate.

Deployment tooling points at this module rather than at api/main.py so the
application object can later be composed with other routers without touching
the API layer.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
