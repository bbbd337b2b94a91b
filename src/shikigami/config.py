"""Runtime configuration for the task graph and its CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_DB_PATH = ".shikigami/shiki.db"


@dataclass(slots=True)
class DocumentSettings:
    """Where requirement documents referenced by tasks are expected to live."""

    docs_dir: str = ".shikigami/prds"
    extension: str = "md"


@dataclass(slots=True)
class ActorSettings:
    """Identity recorded in the audit trail; unset disables audit entries."""

    actor_id: str | None = None


@dataclass(slots=True)
class ClaimSettings:
    allow_blocked_start: bool = True


@dataclass(slots=True)
class LoggingSettings:
    level: str = "WARNING"


@dataclass(slots=True)
class TraversalSettings:
    max_depth: int = 10


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    sqlite_busy_timeout_ms: int = 5000
    documents: DocumentSettings = field(default_factory=DocumentSettings)
    actor: ActorSettings = field(default_factory=ActorSettings)
    claims: ClaimSettings = field(default_factory=ClaimSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    traversal: TraversalSettings = field(default_factory=TraversalSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for a project-local database."""

        return cls(
            db_path=db_path or Path(os.getenv("SHIKIGAMI_DB_PATH", DEFAULT_DB_PATH)),
            sqlite_busy_timeout_ms=_env_int("SHIKIGAMI_SQLITE_BUSY_TIMEOUT_MS", 5000),
            documents=DocumentSettings(
                docs_dir=os.getenv("SHIKIGAMI_DOCS_DIR", ".shikigami/prds"),
                extension=os.getenv("SHIKIGAMI_DOC_EXTENSION", "md").strip().lstrip("."),
            ),
            actor=ActorSettings(actor_id=os.getenv("SHIKIGAMI_ACTOR", "").strip() or None),
            claims=ClaimSettings(
                allow_blocked_start=_env_bool("SHIKIGAMI_ALLOW_BLOCKED_START", default=True),
            ),
            logging=LoggingSettings(
                level=os.getenv("SHIKIGAMI_LOG_LEVEL", "WARNING").strip().upper(),
            ),
            traversal=TraversalSettings(max_depth=_env_int("SHIKIGAMI_TREE_MAX_DEPTH", 10)),
        )

    def validate(self) -> None:
        """Raise configuration error for values the core cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SHIKIGAMI_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.traversal.max_depth < 0:
            raise ValueError("SHIKIGAMI_TREE_MAX_DEPTH must be >= 0.")
        if not self.documents.extension:
            raise ValueError("SHIKIGAMI_DOC_EXTENSION must not be empty.")
        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ValueError(f"Unknown SHIKIGAMI_LOG_LEVEL: {self.logging.level!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
