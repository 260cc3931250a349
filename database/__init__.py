"""
Database layer — Multi-backend persistence for scenarios, enrollments and step logs.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.open()
  enrollment = await store.get_enrollment("e1")
  await store.close()
"""
from database.models import (
    Base, ScenarioRow, StepRow, EnrollmentRow, StepLogRow,
)
from database.session import create_engine_for, get_session, init_db, make_session_factory
from database.store_base import BaseEnrollmentStore
from database.store import SqlEnrollmentStore
from database.store_memory import InMemoryEnrollmentStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ScenarioRow", "StepRow", "EnrollmentRow", "StepLogRow",
    # Session management
    "create_engine_for", "get_session", "init_db", "make_session_factory",
    # Store interface
    "BaseEnrollmentStore",
    # Store backends
    "SqlEnrollmentStore", "InMemoryEnrollmentStore",
    # Factory
    "create_store",
]
