"""Configuration for the process orchestration core.

Configuration is loaded from:
- environment variables (prefixed with ``PROCESS_CORE_``)
- and a local `.env` file (if present)

Service constructors accept explicit keyword arguments that take precedence over
these values, so tests rarely need an environment at all.
"""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from process_orchestration.logging import configure_logging


class ProcessCoreSettings(BaseSettings):
    """Settings for the compensation engine and sub-process manager.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `ProcessCoreSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        description="Root logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging for the process_orchestration package",
    )

    continue_on_compensation_failure: bool = Field(
        default=True,
        description=(
            "If true, a failing compensation handler is logged and the rollback moves on "
            "to the next task. If false, the first failure aborts the rollback."
        ),
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Default number of attempts for execute_with_compensation",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay of the exponential backoff between retry attempts",
    )
    compensation_priority: int = Field(
        default=10,
        description="Priority stamped on compensation tasks handed to the agent manager",
    )

    subprocess_timeout_seconds: float = Field(
        default=600.0,
        gt=0.0,
        description="Default time to wait for a child process to complete",
    )
    symmetric_hierarchy_cleanup: bool = Field(
        default=False,
        description=(
            "If true, cleanup_hierarchy also removes the instance from its parent's "
            "child set. The default keeps the parent's membership untouched."
        ),
    )
    compensate_parent_on_subprocess_failure: bool = Field(
        default=True,
        description="Roll back the parent process when one of its sub-processes fails",
    )

    model_config = SettingsConfigDict(
        env_prefix="PROCESS_CORE_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("process_orchestration").setLevel(logging.DEBUG)
