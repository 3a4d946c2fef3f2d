"""Workflow template definitions and engine result contracts."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .states import StepKind


class LoopConfig(BaseModel):
    """Iteration settings for a ``loop`` step."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    over: Literal["stories"] = "stories"
    completion: Literal["all_done"] = "all_done"
    fresh_session: bool = Field(
        default=False, validation_alias=AliasChoices("fresh_session", "freshSession")
    )
    verify_each: bool = Field(
        default=False, validation_alias=AliasChoices("verify_each", "verifyEach")
    )
    verify_step: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("verify_step", "verifyStep", "verify_step_id"),
    )

    @model_validator(mode="after")
    def _verify_step_required(self) -> "LoopConfig":
        if self.verify_each and not self.verify_step:
            raise ValueError("verify_each requires verify_step")
        return self


class StepSpec(BaseModel):
    """Defines one step of a workflow template."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    step_id: str = Field(validation_alias=AliasChoices("step_id", "stepId"))
    agent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("agent_id", "agentId")
    )
    input_template: str = Field(
        default="", validation_alias=AliasChoices("input_template", "inputTemplate")
    )
    expects: Optional[str] = None
    kind: StepKind = Field(
        default=StepKind.SINGLE, validation_alias=AliasChoices("kind", "type")
    )
    loop_config: Optional[LoopConfig] = Field(
        default=None, validation_alias=AliasChoices("loop_config", "loopConfig", "loop")
    )
    position: int = 0
    max_retries: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("max_retries", "maxRetries")
    )


class WorkflowTemplate(BaseModel):
    """Immutable, ordered list of step specs."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)

    def ordered_steps(self) -> List[StepSpec]:
        return sorted(self.steps, key=lambda s: s.position)

    def get_step(self, step_id: str) -> Optional[StepSpec]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def has_loop(self) -> bool:
        return any(step.kind == StepKind.LOOP for step in self.steps)


class StoryInput(BaseModel):
    """One story as supplied by STORIES_JSON or a direct API call."""

    model_config = ConfigDict(populate_by_name=True)

    story_index: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("story_index", "storyIndex")
    )
    story_id: str = Field(validation_alias=AliasChoices("story_id", "storyId", "id"))
    title: str
    description: str = ""
    acceptance_criteria: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("acceptance_criteria", "acceptanceCriteria"),
    )


class ClaimResult(BaseModel):
    """Outcome of an agent's claim; ``found`` is False when no work is available."""

    found: bool
    step_id: Optional[str] = None
    run_id: Optional[str] = None
    resolved_input: Optional[str] = None
    story_id: Optional[str] = None

    @classmethod
    def empty(cls) -> "ClaimResult":
        return cls(found=False)


class CompleteResult(BaseModel):
    step_completed: bool
    run_completed: bool
    parse_error: Optional[str] = None


class FailResult(BaseModel):
    retrying: bool
    run_failed: bool


class ApprovalResult(BaseModel):
    step_id: str
    status: str
    run_completed: bool = False
    run_failed: bool = False
