"""Repository abstraction for run, step and story persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Iterable, Mapping, Optional, Protocol

from ..models import Run, Step, Story
from ..states import RunStatus, StepStatus, StoryStatus


class UnitOfWork(Protocol):
    """Reads and writes that commit or roll back together.

    ``update_*`` methods are conditional: they only touch the row when its
    current status is one of ``status_in`` (and, for steps, when ``updated_at``
    matches) and return whether a row was changed. Callers rely on that
    return value rather than on a prior read.
    """

    async def insert_run(self, run: Run) -> None:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> Optional[Run]:
        """Return the run or None."""

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[Run]:
        """Return runs, newest first."""

    async def update_run(
        self,
        run_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[RunStatus]] = None,
    ) -> bool:
        """Conditionally update a run."""

    async def insert_steps(self, steps: Iterable[Step]) -> None:
        """Persist new steps."""

    async def get_step(self, step_id: str) -> Optional[Step]:
        """Return the step or None."""

    async def list_steps(self, run_id: str) -> list[Step]:
        """Return a run's steps ordered by position."""

    async def find_pending_steps(self, agent_id: str) -> list[Step]:
        """Pending steps for ``agent_id`` whose run is running, oldest first."""

    async def find_running_steps_before(self, cutoff: datetime) -> list[Step]:
        """Running steps last updated before ``cutoff``."""

    async def update_step(
        self,
        step_id: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StepStatus]] = None,
        updated_at: Optional[datetime] = None,
    ) -> bool:
        """Conditionally update a step."""

    async def insert_stories(self, stories: Iterable[Story]) -> None:
        """Persist new stories."""

    async def get_story(self, story_pk: str) -> Optional[Story]:
        """Return the story by primary key or None."""

    async def list_stories(self, run_id: str) -> list[Story]:
        """Return a run's stories ordered by story index."""

    async def update_story(
        self,
        story_pk: str,
        values: Mapping[str, Any],
        status_in: Optional[Iterable[StoryStatus]] = None,
    ) -> bool:
        """Conditionally update a story."""


class WorkflowRepository(Protocol):
    """Protocol for run state persistence backends."""

    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]:
        """Open an atomic unit of work."""

    async def close(self) -> None:
        """Release backend resources."""
