"""
asgi.py -- ASGI application object for the Helfy API.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
