from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class RunRow(SQLModel, table=True):
    """Represents an instance of a workflow execution."""

    __tablename__ = "runs"

    id: str = Field(primary_key=True)
    template_id: str = Field(index=True)
    task: str
    status: str = Field(default="running", index=True)
    context: dict = Field(sa_column=Column(JSON, nullable=False))
    awaiting_approval: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class StepRow(SQLModel, table=True):
    """Runtime state of one template step within a run."""

    __tablename__ = "steps"

    id: str = Field(primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)
    step_id: str
    agent_id: Optional[str] = Field(default=None, index=True)
    position: int
    kind: str = Field(default="single")
    status: str = Field(default="waiting", index=True)
    input_template: str = ""
    expects: Optional[str] = None
    loop_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    output: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    current_story_id: Optional[str] = None
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True)
    )


class StoryRow(SQLModel, table=True):
    """Loop iteration item belonging to a run."""

    __tablename__ = "stories"

    id: str = Field(primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)
    story_index: int
    story_id: str
    title: str
    description: str = ""
    acceptance_criteria: list = Field(sa_column=Column(JSON, nullable=False))
    status: str = Field(default="pending", index=True)
    output: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 2
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
