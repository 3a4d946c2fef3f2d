"""Data models for persisted run, step and story state."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import LoopConfig
from .states import RunStatus, StepKind, StepStatus, StoryStatus


class Run(BaseModel):
    """One execution of a workflow template."""

    id: str
    template_id: str
    task: str
    status: RunStatus = RunStatus.RUNNING
    context: Dict[str, str] = Field(default_factory=dict)
    awaiting_approval: bool = False
    created_at: datetime
    updated_at: datetime


class Step(BaseModel):
    """Runtime instance of a template step within a run."""

    id: str
    run_id: str
    step_id: str
    agent_id: Optional[str] = None
    position: int
    kind: StepKind = StepKind.SINGLE
    status: StepStatus = StepStatus.WAITING
    input_template: str = ""
    expects: Optional[str] = None
    loop_config: Optional[LoopConfig] = None
    output: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    current_story_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def verifies_each_story(self) -> bool:
        return bool(
            self.kind == StepKind.LOOP
            and self.loop_config is not None
            and self.loop_config.verify_each
            and self.loop_config.verify_step
        )


class Story(BaseModel):
    """Iteration item processed by a loop step."""

    id: str
    run_id: str
    story_index: int
    story_id: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    status: StoryStatus = StoryStatus.PENDING
    output: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 2
    created_at: datetime
    updated_at: datetime
