"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional

from ..models import Run, Step, Story
from ..states import RunStatus, StepStatus, StoryStatus
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Units of work are serialised by a
    lock and roll back to a snapshot when the body raises.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, Step] = {}
        self._stories: Dict[str, Story] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["_InMemoryUnitOfWork"]:
        async with self._lock:
            snapshot = (dict(self._runs), dict(self._steps), dict(self._stories))
            try:
                yield _InMemoryUnitOfWork(self)
            except BaseException:
                self._runs, self._steps, self._stories = snapshot
                raise

    async def close(self) -> None:
        pass


class _InMemoryUnitOfWork:
    def __init__(self, repo: InMemoryWorkflowRepository) -> None:
        self._repo = repo

    # ------------------------------------------------------------------
    # Runs
    async def insert_run(self, run: Run) -> None:
        self._repo._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._repo._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[Run]:
        runs = [
            r for r in self._repo._runs.values() if status is None or r.status == status
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs]

    async def update_run(
        self,
        run_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        run = self._repo._runs.get(run_id)
        if run is None or not _status_matches(run.status, status_in):
            return False
        self._repo._runs[run_id] = run.model_copy(update=dict(values), deep=True)
        return True

    # ------------------------------------------------------------------
    # Steps
    async def insert_steps(self, steps: Iterable[Step]) -> None:
        for step in steps:
            self._repo._steps[step.id] = step.model_copy(deep=True)

    async def get_step(self, step_id: str) -> Optional[Step]:
        step = self._repo._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, run_id: str) -> list[Step]:
        steps = [s for s in self._repo._steps.values() if s.run_id == run_id]
        steps.sort(key=lambda s: s.position)
        return [s.model_copy(deep=True) for s in steps]

    async def find_pending_steps(self, agent_id: str) -> list[Step]:
        found = []
        for step in self._repo._steps.values():
            if step.agent_id != agent_id or step.status != StepStatus.PENDING:
                continue
            run = self._repo._runs.get(step.run_id)
            if run is None or run.status != RunStatus.RUNNING:
                continue
            found.append(step)
        found.sort(key=lambda s: (s.created_at, s.position))
        return [s.model_copy(deep=True) for s in found]

    async def find_running_steps_before(self, cutoff: datetime) -> list[Step]:
        stale = [
            s
            for s in self._repo._steps.values()
            if s.status == StepStatus.RUNNING and s.updated_at < cutoff
        ]
        stale.sort(key=lambda s: s.updated_at)
        return [s.model_copy(deep=True) for s in stale]

    async def update_step(
        self,
        step_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StepStatus]] = None,
        updated_at: Optional[datetime] = None,
    ) -> bool:
        step = self._repo._steps.get(step_id)
        if step is None or not _status_matches(step.status, status_in):
            return False
        if updated_at is not None and step.updated_at != updated_at:
            return False
        self._repo._steps[step_id] = step.model_copy(update=dict(values), deep=True)
        return True

    # ------------------------------------------------------------------
    # Stories
    async def insert_stories(self, stories: Iterable[Story]) -> None:
        for story in stories:
            self._repo._stories[story.id] = story.model_copy(deep=True)

    async def get_story(self, story_pk: str) -> Optional[Story]:
        story = self._repo._stories.get(story_pk)
        return story.model_copy(deep=True) if story else None

    async def list_stories(self, run_id: str) -> list[Story]:
        stories = [s for s in self._repo._stories.values() if s.run_id == run_id]
        stories.sort(key=lambda s: (s.story_index, s.created_at))
        return [s.model_copy(deep=True) for s in stories]

    async def update_story(
        self,
        story_pk: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StoryStatus]] = None,
    ) -> bool:
        story = self._repo._stories.get(story_pk)
        if story is None or not _status_matches(story.status, status_in):
            return False
        self._repo._stories[story_pk] = story.model_copy(update=dict(values), deep=True)
        return True


def _status_matches(current: Any, status_in: Optional[Iterable[Any]]) -> bool:
    return status_in is None or current in set(status_in)
