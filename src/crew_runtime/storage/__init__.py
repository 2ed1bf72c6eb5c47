"""SQLite storage layer: ORM tables, engine policy and migrations."""

from crew_runtime.storage.database import Database

__all__ = ["Database"]
