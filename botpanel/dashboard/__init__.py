"""botpanel dashboard package.

Exposes the FastAPI app factory used by `run.py` and the tests.
"""

from .app import create_app

__all__ = ("create_app",)
