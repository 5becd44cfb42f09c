"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, model_validator


class KeepaliveSettings(BaseModel):
    """Keepalive tuning for a single mailbox connection."""

    model_config = ConfigDict(frozen=True)

    command_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Transport timeout for IMAP commands"
    )
    idle_refresh_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a single IDLE command is held before re-issuing it",
    )
    force_noop: bool = Field(
        default=True, description="Send NOOP between IDLE refreshes"
    )


class AccountCredentials(BaseModel):
    """Connection parameters for one mailbox account."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(min_length=1, description="Operator chosen account key")
    host: str = Field(description="IMAP hostname")
    port: int = Field(default=993, gt=0, lt=65536, description="IMAP port")
    user: str = Field(description="Login name")
    secret: str = Field(repr=False, description="Password or app password")
    use_encryption: bool = Field(default=True, description="Connect over TLS")
    mailbox: str = Field(default="INBOX", description="Mailbox to listen on")
    keepalive: KeepaliveSettings = Field(default_factory=KeepaliveSettings)


class ImapSettings(BaseModel):
    """Settings for the default account started by the CLI."""

    account_id: str = Field(default="default", description="Account identifier")
    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(default=None, description="Account username")
    app_password: str | None = Field(default=None, description="App password")
    mailbox: str = Field(default="INBOX", description="Mailbox to monitor")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    keepalive: KeepaliveSettings = Field(default_factory=KeepaliveSettings)

    def to_credentials(self) -> AccountCredentials:
        """Return immutable credentials for the configured account."""
        if self.username is None or self.app_password is None:
            raise ValueError("IMAP credentials are not configured")
        return AccountCredentials(
            account_id=self.account_id,
            host=self.host,
            port=self.port,
            user=self.username,
            secret=self.app_password,
            use_encryption=self.use_ssl,
            mailbox=self.mailbox,
            keepalive=self.keepalive,
        )


class SyncSettings(BaseModel):
    """Timing and bounds for the mailbox synchronization manager."""

    watchdog_period_seconds: float = Field(
        default=29 * 60, gt=0, description="Interval between liveness probes"
    )
    idle_timeout_seconds: float = Field(
        default=30 * 60,
        gt=0,
        description="Server side ceiling after which idle sessions are dropped",
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=0, description="Reconnects tried before a session fails"
    )
    initial_reconnect_delay_seconds: float = Field(
        default=1.0, gt=0, description="Delay before the first reconnect"
    )
    fetch_limit: int = Field(
        default=10, ge=1, description="Most recent messages fetched per cycle"
    )
    resume_delay_seconds: float = Field(
        default=1.0, ge=0, description="Pause before re-entering IDLE after a fetch"
    )
    search_criteria: str = Field(
        default="UNSEEN", description="IMAP SEARCH criteria for new messages"
    )

    @model_validator(mode="after")
    def _check_watchdog_period(self) -> SyncSettings:
        if self.watchdog_period_seconds >= self.idle_timeout_seconds:
            raise ValueError(
                "watchdog_period_seconds must be shorter than idle_timeout_seconds"
            )
        return self


class LlmSettings(BaseModel):
    """Settings for the local LLM provider."""

    enabled: bool = Field(default=True, description="Use the LLM for classification")
    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=500,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    max_retries: int = Field(default=5, ge=1, description="Attempts per request")
    initial_retry_delay_seconds: float = Field(
        default=1.0, ge=0, description="Backoff before the second attempt"
    )
    max_retry_delay_seconds: float = Field(
        default=30.0, ge=0, description="Upper bound for a single backoff"
    )
    fallback_enabled: bool = Field(
        default=True, description="Use keyword classification when the LLM fails"
    )


class NotificationSettings(BaseModel):
    """Slack and generic webhook alerts for selected categories."""

    slack_webhook_url: str | None = Field(
        default=None, description="Slack incoming webhook URL"
    )
    webhook_url: str | None = Field(
        default=None, description="Generic webhook receiving a JSON payload"
    )
    notify_category: str = Field(
        default="Interested", description="Category that triggers an alert"
    )
    timeout_seconds: float = Field(
        default=10.0, gt=0, description="Request timeout for webhook calls"
    )
    max_retries: int = Field(default=3, ge=1, description="Attempts per target")
    initial_retry_delay_seconds: float = Field(
        default=1.0, ge=0, description="Backoff before the second attempt"
    )
    max_retry_delay_seconds: float = Field(
        default=10.0, ge=0, description="Upper bound for a single backoff"
    )


class StorageSettings(BaseModel):
    """Settings for the document sink."""

    backend: Literal["memory", "sqlite"] = Field(
        default="memory", description="Where normalized messages are indexed"
    )
    db_path: Path = Field(
        default=Path("./onebox.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


ENV_PREFIX = "ONEBOX_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AccountCredentials",
    "AppSettings",
    "ImapSettings",
    "KeepaliveSettings",
    "LlmSettings",
    "LoggingSettings",
    "NotificationSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
