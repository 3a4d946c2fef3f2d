"""Story creation, lookup and formatting for loop steps."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from .clock import Clock, SystemClock
from .config import StepflowConfig
from .constants import NO_COMPLETED_STORIES
from .contracts import StoryInput
from .errors import InvalidTransitionError, NotFoundError, StoryValidationError
from .models import Story
from .persistence import UnitOfWork, WorkflowRepository
from .states import RunStatus, StepKind, StoryStatus

logger = logging.getLogger(__name__)


def format_story(story: Story) -> str:
    """Render a story with numbered acceptance criteria for an agent prompt."""
    criteria = "\n".join(
        f"  {i}. {criterion}"
        for i, criterion in enumerate(story.acceptance_criteria, start=1)
    )
    return (
        f"Story {story.story_id}: {story.title}\n\n"
        f"{story.description}\n\n"
        f"Acceptance Criteria:\n{criteria}"
    )


def format_completed_stories(stories: Sequence[Story]) -> str:
    done = [s for s in stories if s.status == StoryStatus.COMPLETED]
    if not done:
        return NO_COMPLETED_STORIES
    return "\n".join(f"- {s.story_id}: {s.title}" for s in done)


def build_story_context(
    context: Mapping[str, str], story: Story, stories: Sequence[Story]
) -> Dict[str, str]:
    """Layer the current story and loop progress over a run context."""
    remaining = sum(
        1 for s in stories if s.status == StoryStatus.PENDING and s.id != story.id
    )
    extended = dict(context)
    extended.update(
        {
            "current_story": format_story(story),
            "current_story_id": story.story_id,
            "current_story_title": story.title,
            "completed_stories": format_completed_stories(stories),
            "stories_remaining": str(remaining),
        }
    )
    return extended


class StoryManager:
    """Creates and reads the stories a run's loop step iterates over."""

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[StepflowConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._config = config or StepflowConfig()
        self._clock = clock or SystemClock()

    async def create_stories(
        self, run_id: str, stories: Sequence[StoryInput | Mapping[str, Any]]
    ) -> List[Story]:
        """Add ``stories`` to a running run that has a loop step."""
        async with self._repository.unit_of_work() as uow:
            return await self.create_in(uow, run_id, stories)

    async def create_in(
        self,
        uow: UnitOfWork,
        run_id: str,
        stories: Sequence[StoryInput | Mapping[str, Any]],
    ) -> List[Story]:
        """Create stories inside an already open unit of work."""
        run = await uow.get_run(run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        if run.status != RunStatus.RUNNING:
            raise InvalidTransitionError(
                "run", run.status.value, entity_id=run_id,
                reason="stories can only be added to a running run",
            )
        steps = await uow.list_steps(run_id)
        if not any(s.kind == StepKind.LOOP for s in steps):
            raise InvalidTransitionError(
                "run", run.status.value, entity_id=run_id,
                reason="run has no loop step",
            )

        inputs = [_coerce_input(item, i) for i, item in enumerate(stories)]
        existing = await uow.list_stories(run_id)
        total = len(existing) + len(inputs)
        if total > self._config.max_stories:
            raise StoryValidationError(
                f"Run {run_id} would have {total} stories, max is {self._config.max_stories}"
            )

        seen = {s.story_id for s in existing}
        next_index = max((s.story_index for s in existing), default=-1) + 1
        now = self._clock.now()
        created: List[Story] = []
        for offset, item in enumerate(inputs):
            if item.story_id in seen:
                raise StoryValidationError(
                    f"Duplicate story id {item.story_id!r} in run {run_id}"
                )
            seen.add(item.story_id)
            index = item.story_index if item.story_index is not None else next_index + offset
            created.append(
                Story(
                    id=str(uuid.uuid4()),
                    run_id=run_id,
                    story_index=index,
                    story_id=item.story_id,
                    title=item.title,
                    description=item.description,
                    acceptance_criteria=list(item.acceptance_criteria),
                    status=StoryStatus.PENDING,
                    retry_count=0,
                    max_retries=self._config.retries.story_max_retries,
                    created_at=now,
                    updated_at=now,
                )
            )

        await uow.insert_stories(created)
        logger.info(f"Created {len(created)} stories for run_id={run_id}")
        return created

    async def list_stories(self, run_id: str) -> List[Story]:
        async with self._repository.unit_of_work() as uow:
            if await uow.get_run(run_id) is None:
                raise NotFoundError("run", run_id)
            return await uow.list_stories(run_id)

    async def get_story(self, story_pk: str) -> Story:
        async with self._repository.unit_of_work() as uow:
            story = await uow.get_story(story_pk)
        if story is None:
            raise NotFoundError("story", story_pk)
        return story


def _coerce_input(item: StoryInput | Mapping[str, Any], index: int) -> StoryInput:
    if isinstance(item, StoryInput):
        return item
    try:
        return StoryInput.model_validate(dict(item))
    except ValidationError as e:
        raise StoryValidationError(f"Story at index {index} is invalid: {e}") from e
