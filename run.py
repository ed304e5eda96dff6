"""
Entry point:

    uvicorn run:app --reload
"""

from venue.app import app

__all__ = ["app"]
