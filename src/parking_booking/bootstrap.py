"""Idempotent startup initialisation of slots and the admin account."""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import AppConfig
from .lifecycle.clock import Clock
from .lifecycle.engine import LifecycleEngine
from .lifecycle.models import User, UserRole, available_document
from .storage.base import HistorySink, SlotStore, UserDirectory
from .storage.memory import InMemoryHistorySink, InMemorySlotStore, InMemoryUserDirectory
from .storage.sql import (
    SqlHistorySink,
    SqlSlotStore,
    SqlUserDirectory,
    build_engine,
    create_schema,
)

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    slots: SlotStore
    history: HistorySink
    users: UserDirectory


def build_stores(config: AppConfig) -> Stores:
    """Create the stores selected by `database.url`."""
    if config.database.in_memory:
        logger.info("Using in-memory stores")
        return Stores(InMemorySlotStore(), InMemoryHistorySink(), InMemoryUserDirectory())

    engine = build_engine(config.database.url)
    create_schema(engine)
    logger.info(f"Using database at {engine.url.render_as_string(hide_password=True)}")
    return Stores(SqlSlotStore(engine), SqlHistorySink(engine), SqlUserDirectory(engine))


def initialize_slots(store: SlotStore, config: AppConfig) -> int:
    """Create any configured slot that does not exist yet; returns how many were created."""
    created = sum(1 for slot_id in config.layout.slot_ids() if store.insert(available_document(slot_id)))
    if created:
        logger.info(f"Initialized {created} parking slot(s)")
    return created


def ensure_admin(users: UserDirectory, config: AppConfig) -> bool:
    admin = User(
        id=config.admin.id,
        name=config.admin.name,
        email=config.admin.email,
        role=UserRole.ADMIN,
    )
    added = users.add(admin)
    if added:
        logger.info(f"Created admin account '{admin.id}'")
    return added


def initialize(config: AppConfig, stores: Stores, clock: Optional[Clock] = None) -> LifecycleEngine:
    """
    Seed slots and the admin account, then build the engine.

    Safe to call more than once against the same stores.
    """
    initialize_slots(stores.slots, config)
    ensure_admin(stores.users, config)
    return LifecycleEngine(
        store=stores.slots,
        history=stores.history,
        users=stores.users,
        clock=clock,
        price_per_hour=config.pricing.price_per_hour,
        window_minutes=config.reservation.window_minutes,
    )
