#!/usr/bin/env python3
"""
Initialize the workflow catalog database and download required NLTK data.
"""
from typing import Optional

import nltk

from config import Settings, configure_logging
from workflow_db import WorkflowDatabase

NLTK_PACKAGES = ('punkt', 'punkt_tab', 'stopwords')


def download_nltk_data():
    """Download the NLTK data used by the local embedding flavor."""
    print("Downloading NLTK data...")
    for package in NLTK_PACKAGES:
        nltk.download(package, quiet=True)
    print("NLTK data downloaded successfully.")


def init_database(settings: Optional[Settings] = None) -> WorkflowDatabase:
    """Create the catalog schema (idempotent)."""
    settings = settings or Settings()
    print(f"Initializing workflow catalog at {settings.workflow_db_path}...")
    db = WorkflowDatabase(settings.workflow_db_path)
    print("Database initialized successfully.")
    return db


if __name__ == "__main__":
    settings = Settings()
    configure_logging(settings.log_level)

    if settings.embedding_flavor.lower() == 'local':
        download_nltk_data()

    db = init_database(settings)
    db.close()

    print("\nSetup complete! Sync the catalog with:")
    print("  python catalog_sync.py")
    print("\nThen start the MCP server with:")
    print("  uvicorn mcp_server:app --reload")
