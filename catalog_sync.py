#!/usr/bin/env python3
"""
Catalog sync: GitHub tree -> parse & classify -> upsert into the catalog.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from exceptions import CatalogStoreError
from source_fetcher import GitHubSource
from workflow_db import WorkflowDatabase
from workflow_parser import classify

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


@dataclass
class SyncResult:
    repo: str
    branch: str
    total: int = 0
    processed: int = 0
    upserted: int = 0
    skipped: int = 0
    failed: int = 0
    offset: int = 0
    limit: Optional[int] = None
    next_offset: Optional[int] = None
    has_more: bool = False
    truncated: bool = False
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sync_catalog(db: WorkflowDatabase, source: GitHubSource, offset: int = 0,
                 limit: Optional[int] = None) -> SyncResult:
    """Sync one window of the repository's workflow files into the catalog.

    ``offset``/``limit`` select a slice of the listing so large repositories
    can be synced across several invocations; ``limit=None`` syncs the rest.
    A listing failure propagates (nothing is written); per-file failures are
    counted and the run continues.
    """
    if offset < 0:
        raise ValueError("offset must be >= 0")
    if limit is not None and limit <= 0:
        raise ValueError("limit must be > 0")

    listing = source.list_workflow_files()
    files = listing.files
    window = files[offset:] if limit is None else files[offset:offset + limit]
    end = offset + len(window)

    result = SyncResult(
        repo=source.repo,
        branch=source.branch,
        total=len(files),
        offset=offset,
        limit=limit,
        truncated=listing.truncated,
        has_more=end < len(files),
    )
    result.next_offset = end if result.has_more else None

    for _, batch in source.iter_downloads(window):
        for fetched in batch:
            result.processed += 1
            path = fetched.source.path

            if not fetched.ok:
                result.failed += 1
                result.add_error(fetched.error)
                continue

            record = classify(
                path,
                fetched.content,
                raw_url=fetched.source.raw_url,
                size_bytes=fetched.source.size or len(fetched.content),
                file_hash=fetched.source.sha,
            )
            if record is None:
                logger.info("Skipping %s: not an n8n workflow", path)
                result.skipped += 1
                continue

            try:
                db.upsert_workflow(record)
            except CatalogStoreError as e:
                logger.error("Failed to upsert workflow %s: %s", record.slug, e.message)
                result.failed += 1
                result.add_error(f"{path}: {e.message}")
                continue

            result.upserted += 1
            logger.debug("Upserted %s (%d nodes, %d connections, %s)", record.slug, record.node_count,
                         record.connection_count, record.complexity)

    logger.info(
        "Sync batch complete: %d upserted, %d skipped, %d failed (of %d listed)",
        result.upserted, result.skipped, result.failed, result.total,
    )
    return result


def main():
    """Command-line interface for syncing the catalog."""
    import argparse

    from config import Settings, configure_logging

    parser = argparse.ArgumentParser(description='Sync n8n workflows from GitHub into the catalog')
    parser.add_argument('--offset', type=int, default=0, help='Index of the first file to sync')
    parser.add_argument('--limit', type=int, default=None, help='Number of files to sync')

    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)

    db = WorkflowDatabase(settings.workflow_db_path)
    source = GitHubSource.from_settings(settings)
    try:
        result = sync_catalog(db, source, offset=args.offset, limit=args.limit)
    finally:
        source.close()
        db.close()

    print(f"Synced {result.upserted} workflows "
          f"(skipped: {result.skipped}, failed: {result.failed}, listed: {result.total})")
    if result.has_more:
        print(f"More files remain; continue with --offset {result.next_offset}")


if __name__ == "__main__":
    main()
