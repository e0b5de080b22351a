from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_GOTO_MAX_ITERATIONS, DEFAULT_MAX_RETRIES, MAX_ALERT_HISTORY


class SchedulerConfig(BaseModel):
    """Timers, cron polling and definition caching."""

    poll_interval_seconds: float = 60.0
    poll_batch_size: int = 100
    health_check_interval_seconds: float = 60.0
    definition_cache_ttl_seconds: float = 300.0


class RetryConfig(BaseModel):
    """Backoff settings for critical step retries."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_backoff_ms: int = 30_000
    max_backoff_ms: int = 300_000


class LockConfig(BaseModel):
    """Lock lifetimes and how long callers may queue for a lock."""

    start_ttl_seconds: int = 60
    step_ttl_seconds: int = 600
    step_wait_seconds: float = 5.0
    control_wait_seconds: float = 30.0
    poll_interval_seconds: float = 0.05


class TimeoutConfig(BaseModel):
    """Default collaborator timeouts per action kind, in milliseconds."""

    content_ms: int = 120_000
    batch_ms: int = 300_000
    toggle_ms: int = 60_000


class GotoConfig(BaseModel):
    default_max_iterations: int = DEFAULT_GOTO_MAX_ITERATIONS


class MonitoringConfig(BaseModel):
    """Health check thresholds."""

    max_failure_rate: float = 0.1
    min_success_rate: float = 0.9
    max_avg_execution_ms: float = 300_000
    max_queue_depth: int = 100
    min_executions_for_rates: int = 10
    max_alerts: int = MAX_ALERT_HISTORY


class ActionsConfig(BaseModel):
    """Which action collaborator the worker should load."""

    client: Optional[str] = None


class GrowthflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    locks: LockConfig = LockConfig()
    timeouts: TimeoutConfig = TimeoutConfig()
    goto: GotoConfig = GotoConfig()
    monitoring: MonitoringConfig = MonitoringConfig()
    actions: ActionsConfig = ActionsConfig()


def load_config(path: Optional[str] = None) -> GrowthflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GROWTHFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("GROWTHFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GrowthflowConfig(**data)
    else:
        config = GrowthflowConfig()

    env_db_url = os.getenv("GROWTHFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("GROWTHFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
