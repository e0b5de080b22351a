"""Shared constants for growthflow."""

START_LOCK_KEY = "workflow:{account_id}:start"
STEP_LOCK_KEY = "workflow:{account_id}:step"

DEFAULT_WORKFLOW_TYPE = "default"
DEFAULT_MAX_RETRIES = 3
DEFAULT_GOTO_MAX_ITERATIONS = 1000
MAX_ALERT_HISTORY = 100
