"""Shared constants for the stepflow engine."""

DEFAULT_ABANDONED_STEP_MINUTES = 15
DEFAULT_REAPER_INTERVAL_SECONDS = 60.0
DEFAULT_STEP_MAX_RETRIES = 3
DEFAULT_STORY_MAX_RETRIES = 2
DEFAULT_MAX_STORIES = 20

STORIES_JSON_MARKER = "STORIES_JSON:"
RETRY_MARKER = "STATUS: retry"
ABANDONED_ERROR = "abandoned: exceeded time budget"
NO_COMPLETED_STORIES = "(none yet)"
