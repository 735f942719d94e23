from typing import Optional

from config import config
from monitoring.event_bus import NotificationBus
from store.base import AlertStore
from store.memory import MemoryStore


def create_store(bus: Optional[NotificationBus] = None, backend: Optional[str] = None) -> AlertStore:
    backend = (backend or config.section("database").get("backend", "memory")).lower()
    if backend == "memory":
        return MemoryStore(bus)
    if backend == "postgres":
        from store.postgres import PostgresStore
        return PostgresStore(bus)
    raise ValueError(f"Unknown database backend: {backend}")
