"""API Package.

FastAPI server for the closing ledger.
"""

from api.server import create_app

__all__ = [
    "create_app",
]
