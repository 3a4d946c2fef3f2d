"""Closed status enums and transition tables for runs, steps and stories.

Step state diagram::

    waiting  -> pending            (pipeline advancement, verify gate opened)
    waiting  -> completed          (verify gate closed with its loop)
    waiting  -> failed             (loop step whose story failed its last
                                    verification)
    pending  -> running            (agent claim)
    pending  -> awaiting_approval  (approval step claimed)
    pending  -> completed          (loop step with every story done)
    running  -> completed | failed
    running  -> pending            (retry, or loop step between stories)
    running  -> waiting            (loop step while its story is verified,
                                    verify step after its verdict)
    awaiting_approval -> completed | failed

Stories move ``pending -> running -> (verifying ->) completed`` and go back to
``pending`` on a retry. Runs leave ``running`` exactly once.
"""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    WAITING = "waiting"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"


class StoryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class StepKind(str, Enum):
    SINGLE = "single"
    LOOP = "loop"
    APPROVAL = "approval"


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        [RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED]
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.WAITING: frozenset(
        [StepStatus.PENDING, StepStatus.COMPLETED, StepStatus.FAILED]
    ),
    StepStatus.PENDING: frozenset(
        [StepStatus.RUNNING, StepStatus.AWAITING_APPROVAL, StepStatus.COMPLETED]
    ),
    StepStatus.RUNNING: frozenset(
        [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.PENDING,
            StepStatus.WAITING,
        ]
    ),
    StepStatus.AWAITING_APPROVAL: frozenset(
        [StepStatus.COMPLETED, StepStatus.FAILED]
    ),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}

STORY_TRANSITIONS: dict[StoryStatus, frozenset[StoryStatus]] = {
    StoryStatus.PENDING: frozenset([StoryStatus.RUNNING]),
    StoryStatus.RUNNING: frozenset(
        [
            StoryStatus.COMPLETED,
            StoryStatus.VERIFYING,
            StoryStatus.PENDING,
            StoryStatus.FAILED,
        ]
    ),
    StoryStatus.VERIFYING: frozenset(
        [StoryStatus.COMPLETED, StoryStatus.PENDING, StoryStatus.FAILED]
    ),
    StoryStatus.COMPLETED: frozenset(),
    StoryStatus.FAILED: frozenset(),
}


def sources_for(table: dict, target: Enum) -> frozenset:
    """Return every status from which ``target`` may be entered."""
    return frozenset(src for src, targets in table.items() if target in targets)


def can_transition(table: dict, from_status: Enum, to_status: Enum) -> bool:
    return to_status in table.get(from_status, frozenset())


def is_terminal(table: dict, status: Enum) -> bool:
    return not table.get(status)
