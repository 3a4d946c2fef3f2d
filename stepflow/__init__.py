"""Stepflow: multi-agent workflow execution for a task tracker."""

from .config import StepflowConfig, load_config
from .contracts import (
    ApprovalResult,
    ClaimResult,
    CompleteResult,
    FailResult,
    StepSpec,
    StoryInput,
    WorkflowTemplate,
)
from .engine import StepEngine
from .errors import (
    InvalidTransitionError,
    NotFoundError,
    RecoverableParseError,
    StepflowError,
    StoryValidationError,
    TemplateError,
)
from .persistence import get_repository
from .reaper import Reaper
from .resolver import resolve_template
from .templates import DirectoryTemplateStore, InMemoryTemplateStore
from .worker import StepWorker

__version__ = "0.1.0"
__all__ = [
    "ApprovalResult",
    "ClaimResult",
    "CompleteResult",
    "FailResult",
    "StepSpec",
    "StoryInput",
    "WorkflowTemplate",
    "StepEngine",
    "StepWorker",
    "Reaper",
    "StepflowConfig",
    "load_config",
    "get_repository",
    "resolve_template",
    "DirectoryTemplateStore",
    "InMemoryTemplateStore",
    "StepflowError",
    "NotFoundError",
    "InvalidTransitionError",
    "RecoverableParseError",
    "StoryValidationError",
    "TemplateError",
]
