from .models import RunRow, StepRow, StoryRow
from .workflow_db import SQLUnitOfWork, WorkflowDB, normalize_database_url

__all__ = [
    "RunRow",
    "StepRow",
    "StoryRow",
    "SQLUnitOfWork",
    "WorkflowDB",
    "normalize_database_url",
]
