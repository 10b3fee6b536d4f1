"""Shared repository layer for the charging queue services."""

from .queue import QueueRepository, UsageSessionRepository
from .station import StationRepository

__all__ = [
    "QueueRepository",
    "StationRepository",
    "UsageSessionRepository",
]
