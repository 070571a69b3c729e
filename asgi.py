"""
asgi.py -- ASGI entry point for AuthCore.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers and deployment configs
point at one stable module path regardless of how the api package is laid out.
"""

from api.main import app

__all__ = ["app"]
