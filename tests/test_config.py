from __future__ import annotations

from pathlib import Path

import allure
import pytest

from shikigami.config import DocumentSettings, Settings, TraversalSettings

pytestmark = [
    allure.epic("Platform"),
    allure.feature("Configuration"),
]


def test_defaults_without_environment(monkeypatch) -> None:
    for name in (
        "SHIKIGAMI_DB_PATH",
        "SHIKIGAMI_SQLITE_BUSY_TIMEOUT_MS",
        "SHIKIGAMI_DOCS_DIR",
        "SHIKIGAMI_DOC_EXTENSION",
        "SHIKIGAMI_ACTOR",
        "SHIKIGAMI_LOG_LEVEL",
        "SHIKIGAMI_TREE_MAX_DEPTH",
        "SHIKIGAMI_ALLOW_BLOCKED_START",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".shikigami/shiki.db")
    assert settings.sqlite_busy_timeout_ms == 5000
    assert settings.documents.docs_dir == ".shikigami/prds"
    assert settings.documents.extension == "md"
    assert settings.actor.actor_id is None
    assert settings.logging.level == "WARNING"
    assert settings.traversal.max_depth == 10
    assert settings.claims.allow_blocked_start is True
    settings.validate()


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHIKIGAMI_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SHIKIGAMI_SQLITE_BUSY_TIMEOUT_MS", "250")
    monkeypatch.setenv("SHIKIGAMI_DOC_EXTENSION", ".txt")
    monkeypatch.setenv("SHIKIGAMI_ACTOR", "agent-9")
    monkeypatch.setenv("SHIKIGAMI_LOG_LEVEL", "debug")
    monkeypatch.setenv("SHIKIGAMI_ALLOW_BLOCKED_START", "off")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.sqlite_busy_timeout_ms == 250
    assert settings.documents.extension == "txt"
    assert settings.actor.actor_id == "agent-9"
    assert settings.logging.level == "DEBUG"
    assert settings.claims.allow_blocked_start is False


def test_explicit_db_path_wins_over_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SHIKIGAMI_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SHIKIGAMI_SQLITE_BUSY_TIMEOUT_MS", "soon"),
        ("SHIKIGAMI_ALLOW_BLOCKED_START", "maybe"),
    ],
)
def test_malformed_values_name_the_variable(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT"),
        (Settings(traversal=TraversalSettings(max_depth=-1)), "TREE_MAX_DEPTH"),
        (Settings(documents=DocumentSettings(extension="")), "DOC_EXTENSION"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_unknown_log_level() -> None:
    settings = Settings()
    settings.logging.level = "CHATTY"

    with pytest.raises(ValueError, match="SHIKIGAMI_LOG_LEVEL"):
        settings.validate()
