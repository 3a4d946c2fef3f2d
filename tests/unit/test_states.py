from stepflow.states import (
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    STORY_TRANSITIONS,
    RunStatus,
    StepStatus,
    StoryStatus,
    can_transition,
    is_terminal,
    sources_for,
)


def test_terminal_statuses():
    assert is_terminal(RUN_TRANSITIONS, RunStatus.COMPLETED)
    assert is_terminal(RUN_TRANSITIONS, RunStatus.CANCELLED)
    assert not is_terminal(RUN_TRANSITIONS, RunStatus.RUNNING)
    assert is_terminal(STEP_TRANSITIONS, StepStatus.FAILED)
    assert is_terminal(STORY_TRANSITIONS, StoryStatus.COMPLETED)


def test_step_claim_only_from_pending():
    assert sources_for(STEP_TRANSITIONS, StepStatus.RUNNING) == {StepStatus.PENDING}
    assert not can_transition(STEP_TRANSITIONS, StepStatus.WAITING, StepStatus.RUNNING)


def test_approval_transitions():
    assert can_transition(
        STEP_TRANSITIONS, StepStatus.PENDING, StepStatus.AWAITING_APPROVAL
    )
    assert sources_for(STEP_TRANSITIONS, StepStatus.AWAITING_APPROVAL) == {
        StepStatus.PENDING
    }


def test_story_retry_and_verification():
    assert can_transition(STORY_TRANSITIONS, StoryStatus.RUNNING, StoryStatus.VERIFYING)
    assert can_transition(STORY_TRANSITIONS, StoryStatus.VERIFYING, StoryStatus.PENDING)
    assert not can_transition(
        STORY_TRANSITIONS, StoryStatus.PENDING, StoryStatus.COMPLETED
    )


def test_statuses_serialise_as_strings():
    assert StepStatus.AWAITING_APPROVAL.value == "awaiting_approval"
    assert StepStatus("waiting") is StepStatus.WAITING
