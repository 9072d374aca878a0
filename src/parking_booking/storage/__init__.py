"""Persistence for slots, completed sessions and users."""

from .base import HistorySink, SlotStore, UserDirectory
from .memory import InMemoryHistorySink, InMemorySlotStore, InMemoryUserDirectory
from .sql import SqlHistorySink, SqlSlotStore, SqlUserDirectory, build_engine, create_schema

__all__ = [
    "HistorySink",
    "SlotStore",
    "UserDirectory",
    "InMemoryHistorySink",
    "InMemorySlotStore",
    "InMemoryUserDirectory",
    "SqlHistorySink",
    "SqlSlotStore",
    "SqlUserDirectory",
    "build_engine",
    "create_schema",
]
