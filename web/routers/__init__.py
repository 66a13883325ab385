"""FastAPI routers."""

from . import patronage

__all__ = ["patronage"]
