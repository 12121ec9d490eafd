"""
ORTHRUS REST API.

FastAPI-based REST API for password login with a second factor.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
