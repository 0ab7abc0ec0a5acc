"""SQLAlchemy ORM models."""

from background_runs.models.event import ProductEvent
from background_runs.models.run import BackgroundRun

__all__ = [
    "BackgroundRun",
    "ProductEvent",
]
