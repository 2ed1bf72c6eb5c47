"""Shared SQLite database handle used by queue, thread and agent repositories."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, select

from crew_runtime.storage.alembic_runner import upgrade_head
from crew_runtime.storage.common import build_sqlite_engine, utc_now
from crew_runtime.storage.sqlmodel_models import DEFAULT_USER_ID, AppUser


class Database:
    """Owns the SQLAlchemy engine and schema lifecycle for one SQLite file."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        self._ensure_actor_context()

    def session(self) -> Session:
        return Session(self.engine)

    def _ensure_actor_context(self) -> None:
        with Session(self.engine) as session:
            user = session.exec(
                select(AppUser).where(AppUser.user_id == self.user_id),
            ).one_or_none()
            if user is not None:
                return
            session.add(
                AppUser(
                    user_id=self.user_id,
                    display_name=self.user_name,
                    created_at=utc_now(),
                ),
            )
            session.commit()
