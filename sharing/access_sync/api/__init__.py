"""
API module for access-sync.

Provides the operator HTTP API (FastAPI): reconciliation trigger,
shared-experience read path, access-set inspection and health.
"""

from .http_server import create_app

__all__ = ["create_app"]
