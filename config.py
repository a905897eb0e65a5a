"""Runtime configuration for the workflow catalog, read from the environment."""

import logging
import os
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

DEFAULT_CHAT_BASE_URL = "https://ai.gateway.lovable.dev"
DEFAULT_CHAT_MODEL = "google/gemini-2.5-flash"


class Settings(BaseSettings):
    """All settings the pipeline understands.

    Every field maps to an environment variable of the same name,
    e.g. ``workflows_repo`` is read from ``WORKFLOWS_REPO``. Empty values
    count as unset.
    """

    model_config = SettingsConfigDict(case_sensitive=False, env_ignore_empty=True, extra="ignore")

    workflow_db_path: str = "workflows.db"

    # Source repository
    workflows_repo: str = "Zie619/n8n-workflows"
    workflows_branch: str = "main"
    github_token: Optional[str] = None
    github_api_base: str = "https://api.github.com"
    github_raw_base: str = "https://raw.githubusercontent.com"
    github_timeout: float = 30.0
    sync_batch_size: int = Field(default=10, gt=0)
    sync_batch_delay: float = 0.1

    # Chat completions
    ai_api_key: Optional[str] = None
    ai_base_url: str = DEFAULT_CHAT_BASE_URL
    ai_chat_model: str = DEFAULT_CHAT_MODEL
    http_timeout: float = 60.0

    # Embeddings: "ollama", "openai" or "local"
    embedding_flavor: str = "ollama"
    embedding_base_url: Optional[str] = None
    embedding_api_key: Optional[str] = None
    embedding_model: str = "mxbai-embed-large"

    enrichment_request_delay: float = 0.0
    search_threshold: float = 0.3
    log_level: str = "INFO"


def configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )
