"""
Configuration management for the Planner Command Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .commands import AuditSource

logger = logging.getLogger(__name__)


class AuthMode(Enum):
    """Supported token verification backends."""

    STATIC = "static"
    REMOTE = "remote"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        db_path: SQLite database file holding entities and the audit ledger
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "/var/lib/planner/planner.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("PLANNER_DB_PATH", "/var/lib/planner/planner.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class IdempotencyConfig:
    """Idempotency guard configuration.

    Attributes:
        retry_attempts: Lookups made after losing a reservation race
        retry_delay_ms: Delay between those lookups
    """

    retry_attempts: int = 20
    retry_delay_ms: int = 50

    @classmethod
    def from_env(cls) -> IdempotencyConfig:
        """Load configuration from environment variables."""
        return cls(
            retry_attempts=int(os.getenv("IDEMPOTENCY_RETRY_ATTEMPTS", "20")),
            retry_delay_ms=int(os.getenv("IDEMPOTENCY_RETRY_DELAY_MS", "50")),
        )


@dataclass(frozen=True)
class SchedulingConfig:
    """Handler business-rule configuration.

    Attributes:
        default_timezone: Timezone used when the owner has none stored
        semester_length_days: Span of a lazily created default semester
        audit_source: Source recorded when a command names none
    """

    default_timezone: str = "UTC"
    semester_length_days: int = 120
    audit_source: AuditSource = AuditSource.ADA_AI

    @classmethod
    def from_env(cls) -> SchedulingConfig:
        """Load configuration from environment variables."""
        source_str = os.getenv("AUDIT_SOURCE", AuditSource.ADA_AI.value)
        try:
            audit_source = AuditSource(source_str)
        except ValueError:
            raise ValueError(
                f"Invalid AUDIT_SOURCE '{source_str}'. "
                f"Must be one of: {', '.join(s.value for s in AuditSource)}"
            )

        return cls(
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
            semester_length_days=int(os.getenv("SEMESTER_LENGTH_DAYS", "120")),
            audit_source=audit_source,
        )


@dataclass(frozen=True)
class GenerationConfig:
    """External note-generation service configuration.

    Attributes:
        url: Endpoint of the generation service
        api_key: Bearer key sent to the service
        timeout_seconds: Request timeout
    """

    url: str = "http://localhost:54321/functions/v1/generate-notes-orchestrator"
    api_key: str | None = None
    timeout_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> GenerationConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv(
                "NOTES_SERVICE_URL",
                "http://localhost:54321/functions/v1/generate-notes-orchestrator",
            ),
            api_key=os.getenv("NOTES_SERVICE_KEY"),
            timeout_seconds=float(os.getenv("NOTES_SERVICE_TIMEOUT", "120")),
        )


@dataclass(frozen=True)
class AuthConfig:
    """Caller identity verification configuration.

    Attributes:
        mode: Verification backend
        static_tokens: token -> owner id map for STATIC mode
        url: Identity service base URL for REMOTE mode
        api_key: Identity service API key for REMOTE mode
        timeout_seconds: Identity service request timeout
    """

    mode: AuthMode = AuthMode.STATIC
    static_tokens: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> AuthConfig:
        """Load configuration from environment variables.

        AUTH_STATIC_TOKENS is a comma-separated list of token=owner_id pairs.
        """
        mode_str = os.getenv("AUTH_MODE", "static").lower()
        try:
            mode = AuthMode(mode_str)
        except ValueError:
            raise ValueError(f"Invalid AUTH_MODE '{mode_str}'. Must be one of: static, remote")

        tokens: dict[str, str] = {}
        for pair in os.getenv("AUTH_STATIC_TOKENS", "").split(","):
            if "=" in pair:
                token, owner = pair.split("=", 1)
                if token.strip() and owner.strip():
                    tokens[token.strip()] = owner.strip()

        return cls(
            mode=mode,
            static_tokens=tokens,
            url=os.getenv("AUTH_URL"),
            api_key=os.getenv("AUTH_API_KEY"),
            timeout_seconds=float(os.getenv("AUTH_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Local storage configuration
        idempotency: Idempotency guard configuration
        scheduling: Handler business-rule configuration
        generation: Note-generation service configuration
        auth: Identity verification configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            idempotency=IdempotencyConfig.from_env(),
            scheduling=SchedulingConfig.from_env(),
            generation=GenerationConfig.from_env(),
            auth=AuthConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.auth.mode == AuthMode.REMOTE and not self.auth.url:
            raise ValueError("AUTH_URL is required when AUTH_MODE=remote")
        if self.auth.mode == AuthMode.STATIC and not self.auth.static_tokens:
            logger.warning("AUTH_MODE=static with no AUTH_STATIC_TOKENS; every request will be rejected")

        if self.idempotency.retry_attempts < 1:
            raise ValueError("IDEMPOTENCY_RETRY_ATTEMPTS must be at least 1")
        if self.scheduling.semester_length_days < 1:
            raise ValueError("SEMESTER_LENGTH_DAYS must be at least 1")

        if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
            logger.warning(
                f"Database directory does not exist: {self.storage.db_path}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "auth_mode": self.auth.mode.value,
                "auth_url": self.auth.url,
                "static_token_count": len(self.auth.static_tokens),
                "generation_url": self.generation.url,
                "default_timezone": self.scheduling.default_timezone,
                "audit_source": self.scheduling.audit_source.value,
                "idempotency_retry_attempts": self.idempotency.retry_attempts,
                "log_level": self.observability.log_level,
            },
        )
