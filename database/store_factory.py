"""
Store Factory — build an enrollment store from the ``database`` settings block.

    database:
      url: "sqlite:///./stepflow.db"     # used by the "sql" backend only
      store_backend: "memory"            # "sql" | "memory"

Every call returns a new store. The caller owns it: ``build_engine`` keeps
the one it creates on ``StepEngine.store`` and the API lifespan drives
``open()`` / ``close()`` on it.
"""
from __future__ import annotations

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseEnrollmentStore

logger = structlog.get_logger()

BACKENDS = ("sql", "memory")


def create_store(database: DatabaseConfig, echo: bool = False) -> BaseEnrollmentStore:
    backend = (database.store_backend or "").strip().lower()

    if backend == "sql":
        from database.session import create_engine_for
        from database.store import SqlEnrollmentStore
        store = SqlEnrollmentStore(create_engine_for(database.url, echo=echo))
    elif backend == "memory":
        from database.store_memory import InMemoryEnrollmentStore
        store = InMemoryEnrollmentStore()
    else:
        raise ValueError(
            f"unknown store_backend {database.store_backend!r} (expected one of {', '.join(BACKENDS)})"
        )

    logger.info("store_created", backend=backend)
    return store
