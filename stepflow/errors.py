"""Error taxonomy for the workflow engine.

Absence of work and retryable failures are reported through result values
(``ClaimResult.found``, ``FailResult.retrying``), never through exceptions.
"""

from __future__ import annotations

from typing import Optional


class StepflowError(Exception):
    """Base class for all errors raised by stepflow."""


class NotFoundError(StepflowError, LookupError):
    """Raised when a run, step, story or template id is unknown."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class InvalidTransitionError(StepflowError, ValueError):
    """Raised when an operation is not legal from the entity's current state."""

    def __init__(
        self,
        entity: str,
        from_status: str,
        to_status: Optional[str] = None,
        entity_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        self.entity_id = entity_id
        id_info = f" {entity_id}" if entity_id else ""
        if to_status is not None:
            message = f"Invalid {entity} transition{id_info}: '{from_status}' -> '{to_status}'"
        else:
            message = f"Invalid operation on {entity}{id_info} in status '{from_status}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class RecoverableParseError(StepflowError, ValueError):
    """Raised when a STORIES_JSON block in agent output cannot be used."""


class TemplateError(StepflowError, ValueError):
    """Raised when a workflow template definition is invalid."""


class StoryValidationError(StepflowError, ValueError):
    """Raised when stories cannot be added to a run as given."""
