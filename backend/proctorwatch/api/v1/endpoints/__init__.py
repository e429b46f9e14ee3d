"""API endpoints package."""

from . import (
    flags,
    monitoring,
    overrides,
    sessions,
)

__all__ = [
    "flags",
    "monitoring",
    "overrides",
    "sessions",
]
