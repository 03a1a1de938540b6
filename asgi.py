"""
asgi.py -- Application assembly for ScopeGate.

The ASGI entry point for servers. api/main.py builds the app; this module is
what deployment tooling points at, so the import path stays stable if the
app grows more layers.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
