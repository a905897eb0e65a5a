import logging

import pytest
from pydantic import ValidationError

from config import Settings, configure_logging


def test_defaults():
    settings = Settings()
    assert settings.workflows_repo == "Zie619/n8n-workflows"
    assert settings.workflows_branch == "main"
    assert settings.sync_batch_size == 10
    assert settings.embedding_flavor == "ollama"
    assert settings.search_threshold == 0.3
    assert settings.ai_api_key is None


def test_values_are_read_from_the_environment(monkeypatch):
    monkeypatch.setenv("WORKFLOWS_REPO", "acme/flows")
    monkeypatch.setenv("SYNC_BATCH_DELAY", "0.5")
    monkeypatch.setenv("search_threshold", "0.25")
    monkeypatch.setenv("AI_API_KEY", "")

    settings = Settings()
    assert settings.workflows_repo == "acme/flows"
    assert settings.sync_batch_delay == 0.5
    assert settings.search_threshold == 0.25
    assert settings.ai_api_key is None


def test_explicit_values_override_the_environment(monkeypatch):
    monkeypatch.setenv("WORKFLOW_DB_PATH", "/tmp/from-env.db")
    assert Settings(workflow_db_path="catalog.db").workflow_db_path == "catalog.db"


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("SYNC_BATCH_SIZE", "0")
    with pytest.raises(ValidationError):
        Settings()


def test_configure_logging_keeps_existing_handlers(monkeypatch):
    root = logging.getLogger()
    handler = logging.NullHandler()
    monkeypatch.setattr(root, "handlers", [handler])
    configure_logging("DEBUG")
    assert root.handlers == [handler]


def test_configure_logging_sets_up_root_logger(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", logging.WARNING)
    configure_logging("debug")
    try:
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
    finally:
        root.handlers[:] = []
