"""
Configuration for the DocStore SDK.

ClientSettings reads from environment variables prefixed with DOCSTORE_
(e.g. DOCSTORE_PROJECT_ID, DOCSTORE_HOST, DOCSTORE_LOG_FORMAT=json) and can
also be constructed directly.

Example:
    >>> settings = ClientSettings(project_id="demo", port=8080)
    >>> setup_logging(settings)
"""

from __future__ import annotations

import logging

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings

from .retry import RetryPolicy


class ClientSettings(BaseSettings):
    """Client configuration."""

    # Database
    project_id: str = Field(default="")
    database_id: str = Field(default="(default)")

    # Transport
    host: str = Field(default="localhost")
    port: int = Field(default=50051)
    secure: bool = Field(default=False)
    max_message_size: int = Field(default=50 * 1024 * 1024)

    # Retries of transient failures
    retry_max_attempts: int = Field(default=5, ge=1)
    retry_initial_backoff: float = Field(default=0.1, ge=0)
    retry_max_backoff: float = Field(default=10.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1)

    # Reads and change feeds
    list_page_size: int = Field(default=100, ge=1)
    listen_retry_delay: float = Field(default=5.0, ge=0, description="Seconds before reconnecting")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", description="text or json")

    model_config = {"env_prefix": "DOCSTORE_"}

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            initial_backoff=self.retry_initial_backoff,
            max_backoff=self.retry_max_backoff,
            multiplier=self.retry_multiplier,
        )


def setup_logging(settings: ClientSettings) -> None:
    """Configure logging based on settings.

    Args:
        settings: Client settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("grpc").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
