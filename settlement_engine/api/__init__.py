"""
Settlement API.

FastAPI surface for webhooks, ledger confirmations and
settlement record queries.
"""

from .app import create_app

__all__ = ["create_app"]
