"""
asgi.py -- ASGI entry point for the helpdesk API.

Run with:  uvicorn asgi:app --reload

The app object is assembled in api/main.py; this module only re-exports it
so process managers have one stable import path.
"""

from api.main import app

__all__ = ["app"]
