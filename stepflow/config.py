from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_ABANDONED_STEP_MINUTES,
    DEFAULT_MAX_STORIES,
    DEFAULT_REAPER_INTERVAL_SECONDS,
    DEFAULT_STEP_MAX_RETRIES,
    DEFAULT_STORY_MAX_RETRIES,
)


class ReaperConfig(BaseModel):
    """Settings for reclaiming abandoned steps."""

    max_age_minutes: float = Field(default=DEFAULT_ABANDONED_STEP_MINUTES, gt=0)
    interval_seconds: float = Field(default=DEFAULT_REAPER_INTERVAL_SECONDS, gt=0)


class RetryConfig(BaseModel):
    """Default retry budgets for steps and stories."""

    step_max_retries: int = Field(default=DEFAULT_STEP_MAX_RETRIES, ge=0)
    story_max_retries: int = Field(default=DEFAULT_STORY_MAX_RETRIES, ge=0)


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    templates_dir: str = "workflows"
    max_stories: int = Field(default=DEFAULT_MAX_STORIES, gt=0)
    log_level: str = "INFO"
    reaper: ReaperConfig = ReaperConfig()
    retries: RetryConfig = RetryConfig()


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'stepflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "stepflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_templates = os.getenv("STEPFLOW_TEMPLATES_DIR")
    if env_templates:
        config.templates_dir = env_templates
    return config
