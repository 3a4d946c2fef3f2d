from datetime import datetime

import pytest

from stepflow.config import StepflowConfig
from stepflow.contracts import StoryInput
from stepflow.engine import StepEngine
from stepflow.errors import InvalidTransitionError, NotFoundError, StoryValidationError
from stepflow.models import Story
from stepflow.states import StoryStatus
from stepflow.stories import format_completed_stories, format_story


def _story(story_id, status=StoryStatus.PENDING, **kwargs):
    now = datetime(2024, 1, 1)
    return Story(
        id=f"pk-{story_id}",
        run_id="run",
        story_index=0,
        story_id=story_id,
        title=kwargs.pop("title", f"Title {story_id}"),
        status=status,
        created_at=now,
        updated_at=now,
        **kwargs,
    )


def test_format_story():
    story = _story(
        "S-1",
        title="Login form",
        description="Users can sign in.",
        acceptance_criteria=["Shows errors", "Remembers email"],
    )
    assert format_story(story) == (
        "Story S-1: Login form\n\n"
        "Users can sign in.\n\n"
        "Acceptance Criteria:\n"
        "  1. Shows errors\n"
        "  2. Remembers email"
    )


def test_format_completed_stories():
    assert format_completed_stories([_story("S-1")]) == "(none yet)"
    stories = [
        _story("S-1", StoryStatus.COMPLETED),
        _story("S-2", StoryStatus.FAILED),
        _story("S-3", StoryStatus.COMPLETED),
    ]
    assert format_completed_stories(stories) == "- S-1: Title S-1\n- S-3: Title S-3"


@pytest.mark.asyncio
async def test_create_stories_assigns_indexes(engine):
    run = await engine.runs.create_run("stories", "dark mode")
    first = await engine.stories.create_stories(
        run.id,
        [
            StoryInput(story_id="A", title="Alpha"),
            {"id": "B", "title": "Beta", "acceptance_criteria": ["b"]},
        ],
    )
    assert [(s.story_id, s.story_index) for s in first] == [("A", 0), ("B", 1)]
    assert all(s.status == StoryStatus.PENDING for s in first)
    assert all(s.max_retries == 2 for s in first)

    more = await engine.stories.create_stories(run.id, [{"id": "C", "title": "Gamma"}])
    assert more[0].story_index == 2
    assert (await engine.stories.get_story(more[0].id)).title == "Gamma"


@pytest.mark.asyncio
async def test_create_stories_rejects_duplicates(engine):
    run = await engine.runs.create_run("stories", "dark mode")
    await engine.stories.create_stories(run.id, [{"id": "A", "title": "Alpha"}])

    with pytest.raises(StoryValidationError, match="Duplicate story id"):
        await engine.stories.create_stories(run.id, [{"id": "A", "title": "Again"}])
    with pytest.raises(StoryValidationError, match="invalid"):
        await engine.stories.create_stories(run.id, [{"id": "B"}])
    assert len(await engine.stories.list_stories(run.id)) == 1


@pytest.mark.asyncio
async def test_create_stories_enforces_limit(repo, templates, clock):
    engine = StepEngine(repo, templates, StepflowConfig(max_stories=2), clock)
    run = await engine.runs.create_run("stories", "dark mode")
    with pytest.raises(StoryValidationError, match="max is 2"):
        await engine.stories.create_stories(
            run.id, [{"id": str(i), "title": "t"} for i in range(3)]
        )


@pytest.mark.asyncio
async def test_create_stories_requires_running_loop_run(engine):
    with pytest.raises(NotFoundError):
        await engine.stories.create_stories("missing", [])

    plain = await engine.runs.create_run("two-step", "login")
    with pytest.raises(InvalidTransitionError, match="no loop step"):
        await engine.stories.create_stories(plain.id, [{"id": "A", "title": "t"}])

    looped = await engine.runs.create_run("stories", "dark mode")
    await engine.runs.cancel_run(looped.id)
    with pytest.raises(InvalidTransitionError, match="running run"):
        await engine.stories.create_stories(looped.id, [{"id": "A", "title": "t"}])
