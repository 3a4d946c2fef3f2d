"""SQL implementation of the workflow repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from sqlalchemy import event, select, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, col

from ..models import Run, Step, Story
from ..states import RunStatus, StepStatus, StoryStatus
from .models import RunRow, StepRow, StoryRow

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Map plain driver URLs onto their async SQLAlchemy dialects."""
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return f"sqlite+aiosqlite:///{path}"
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


class WorkflowDB:
    """Async database helper persisting runs, steps and stories."""

    def __init__(self, database_url: str, busy_timeout: float = 30.0) -> None:
        self.database_url = normalize_database_url(database_url)
        self._is_sqlite = self.database_url.startswith("sqlite")
        connect_args = (
            {"check_same_thread": False, "timeout": busy_timeout}
            if self._is_sqlite
            else {}
        )
        self.engine = create_async_engine(
            self.database_url, echo=False, connect_args=connect_args
        )
        if self._is_sqlite:
            self._use_immediate_transactions()
        self._initialized = False

    def _use_immediate_transactions(self) -> None:
        # Writers take the database lock when the transaction starts, so two
        # claimers never both read a step as pending.
        @event.listens_for(self.engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):  # pragma: no cover
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine.sync_engine, "begin")
        def _on_begin(conn):  # pragma: no cover
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True
        logger.debug(f"Initialized workflow schema at {self.engine.url}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["SQLUnitOfWork"]:
        if not self._initialized:
            await self.init_db()
        async with self.session() as session:
            async with session.begin():
                yield SQLUnitOfWork(session)

    async def close(self) -> None:
        await self.engine.dispose()


class SQLUnitOfWork:
    """Unit of work bound to a single database transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Runs
    async def insert_run(self, run: Run) -> None:
        self._session.add(RunRow(**_plain(run.model_dump())))
        await self._session.flush()

    async def get_run(self, run_id: str) -> Optional[Run]:
        row = await self._session.get(RunRow, run_id, populate_existing=True)
        return _to_run(row) if row else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[Run]:
        stmt = select(RunRow).order_by(col(RunRow.created_at).desc())
        if status is not None:
            stmt = stmt.where(col(RunRow.status) == _plain_value(status))
        rows = await self._scalars(stmt)
        return [_to_run(r) for r in rows]

    async def update_run(
        self,
        run_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        stmt = update(RunRow).where(col(RunRow.id) == run_id)
        if status_in is not None:
            stmt = stmt.where(col(RunRow.status).in_(_plain_list(status_in)))
        return await self._conditional(stmt, values)

    # ------------------------------------------------------------------
    # Steps
    async def insert_steps(self, steps: Iterable[Step]) -> None:
        self._session.add_all([StepRow(**_plain(s.model_dump())) for s in steps])
        await self._session.flush()

    async def get_step(self, step_id: str) -> Optional[Step]:
        row = await self._session.get(StepRow, step_id, populate_existing=True)
        return _to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[Step]:
        stmt = (
            select(StepRow)
            .where(col(StepRow.run_id) == run_id)
            .order_by(col(StepRow.position))
        )
        rows = await self._scalars(stmt)
        return [_to_step(r) for r in rows]

    async def find_pending_steps(self, agent_id: str) -> list[Step]:
        stmt = (
            select(StepRow)
            .join(RunRow, col(RunRow.id) == col(StepRow.run_id))
            .where(
                col(StepRow.agent_id) == agent_id,
                col(StepRow.status) == StepStatus.PENDING.value,
                col(RunRow.status) == RunStatus.RUNNING.value,
            )
            .order_by(col(StepRow.created_at), col(StepRow.position))
        )
        rows = await self._scalars(stmt)
        return [_to_step(r) for r in rows]

    async def find_running_steps_before(self, cutoff: datetime) -> list[Step]:
        stmt = (
            select(StepRow)
            .where(
                col(StepRow.status) == StepStatus.RUNNING.value,
                col(StepRow.updated_at) < cutoff,
            )
            .order_by(col(StepRow.updated_at))
        )
        rows = await self._scalars(stmt)
        return [_to_step(r) for r in rows]

    async def update_step(
        self,
        step_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StepStatus]] = None,
        updated_at: Optional[datetime] = None,
    ) -> bool:
        stmt = update(StepRow).where(col(StepRow.id) == step_id)
        if status_in is not None:
            stmt = stmt.where(col(StepRow.status).in_(_plain_list(status_in)))
        if updated_at is not None:
            stmt = stmt.where(col(StepRow.updated_at) == updated_at)
        return await self._conditional(stmt, values)

    # ------------------------------------------------------------------
    # Stories
    async def insert_stories(self, stories: Iterable[Story]) -> None:
        self._session.add_all([StoryRow(**_plain(s.model_dump())) for s in stories])
        await self._session.flush()

    async def get_story(self, story_pk: str) -> Optional[Story]:
        row = await self._session.get(StoryRow, story_pk, populate_existing=True)
        return _to_story(row) if row else None

    async def list_stories(self, run_id: str) -> list[Story]:
        stmt = (
            select(StoryRow)
            .where(col(StoryRow.run_id) == run_id)
            .order_by(col(StoryRow.story_index), col(StoryRow.created_at))
        )
        rows = await self._scalars(stmt)
        return [_to_story(r) for r in rows]

    async def update_story(
        self,
        story_pk: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StoryStatus]] = None,
    ) -> bool:
        stmt = update(StoryRow).where(col(StoryRow.id) == story_pk)
        if status_in is not None:
            stmt = stmt.where(col(StoryRow.status).in_(_plain_list(status_in)))
        return await self._conditional(stmt, values)

    # ------------------------------------------------------------------
    async def _conditional(self, stmt: Any, values: Mapping[str, Any]) -> bool:
        stmt = stmt.values(**_plain(dict(values))).execution_options(
            synchronize_session=False
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def _scalars(self, stmt: Any) -> list[Any]:
        result = await self._session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return list(result.scalars().all())


def _plain_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _plain_list(values: Iterable[Any]) -> list[Any]:
    return [_plain_value(v) for v in values]


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    return {key: _plain_value(value) for key, value in values.items()}


def _to_run(row: RunRow) -> Run:
    return Run.model_validate(row, from_attributes=True)


def _to_step(row: StepRow) -> Step:
    return Step.model_validate(row, from_attributes=True)


def _to_story(row: StoryRow) -> Story:
    return Story.model_validate(row, from_attributes=True)
