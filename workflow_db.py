#!/usr/bin/env python3
"""
N8N Workflow Catalog Database
SQLite-backed catalog of synced workflows and their generated artifacts.
"""

import datetime
import json
import logging
import os
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from exceptions import CatalogStoreError, SimilarityOperatorUnavailable
from workflow_parser import COMPLEXITY_TIERS, CatalogRecord

logger = logging.getLogger(__name__)

ARTIFACT_TABLES = {
    'description': 'workflow_descriptions',
    'seo': 'workflow_seo_metadata',
    'embedding': 'workflow_vectors',
}


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def vector_to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: Optional[bytes]) -> np.ndarray:
    if not blob:
        return np.zeros(0, dtype=np.float64)
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64)


def _sql_cosine_similarity(blob1: Optional[bytes], blob2: Optional[bytes]) -> Optional[float]:
    """SQL-callable cosine similarity over two float32 blobs."""
    if blob1 is None or blob2 is None:
        return None
    # Imported lazily: semantic_search imports this module.
    from semantic_search import cosine_similarity
    return cosine_similarity(blob_to_vector(blob1), blob_to_vector(blob2))


class WorkflowDatabase:
    """SQLite catalog of workflow metadata and generated artifacts."""

    def __init__(self, db_path: Optional[str] = None, vector_functions: bool = True):
        self.db_path = db_path or os.environ.get('WORKFLOW_DB_PATH', 'workflows.db')
        self.vector_functions = vector_functions
        self.conn = None
        self.timeout = 60
        self.retry_attempts = 5
        # One connection is shared by every thread; all use of it goes through this lock.
        self._lock = threading.RLock()
        self.init_database()

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with retry logic."""
        with self._lock:
            return self._connect()

    def _connect(self) -> sqlite3.Connection:
        if self.conn is not None:
            try:
                self.conn.execute('SELECT 1')
                return self.conn
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                self.conn = None

        for attempt in range(self.retry_attempts):
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=self.timeout,
                    isolation_level='IMMEDIATE',
                    check_same_thread=False,
                )
                conn.execute('PRAGMA journal_mode=WAL')
                conn.execute('PRAGMA busy_timeout=60000')
                conn.execute('PRAGMA synchronous=NORMAL')
                conn.execute('PRAGMA foreign_keys=ON')
                conn.row_factory = sqlite3.Row
                if self.vector_functions:
                    conn.create_function('cosine_similarity', 2, _sql_cosine_similarity, deterministic=True)
                self.conn = conn
                return conn
            except sqlite3.OperationalError as e:
                if 'locked' in str(e).lower() and attempt < self.retry_attempts - 1:
                    wait_time = (attempt + 1) * 2
                    logger.warning("Database locked, waiting %s seconds before retry...", wait_time)
                    time.sleep(wait_time)
                    continue
                logger.error("Failed to connect to database after %s attempts: %s", attempt + 1, e)
                raise

        raise sqlite3.OperationalError("Failed to establish database connection after multiple retries")

    def close(self) -> None:
        with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction, translating sqlite errors."""
        with self._lock:
            conn = self.get_connection()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise CatalogStoreError(f"Database error: {e}") from e

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.get_connection().execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.get_connection().execute(sql, params).fetchall()

    def init_database(self):
        """Create the catalog schema, full-text index and sync triggers."""
        conn = self.get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS workflows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slug TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                path TEXT NOT NULL,
                raw_url TEXT,
                size_bytes INTEGER DEFAULT 0,
                category TEXT NOT NULL DEFAULT 'General',
                tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
                node_count INTEGER DEFAULT 0,
                has_credentials BOOLEAN DEFAULT 0,
                complexity TEXT NOT NULL,
                file_hash TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_descriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id INTEGER UNIQUE NOT NULL REFERENCES workflows(id),
                description TEXT NOT NULL,
                use_cases TEXT,
                setup_guide TEXT,
                reliable BOOLEAN DEFAULT 1,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_seo_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id INTEGER UNIQUE NOT NULL REFERENCES workflows(id),
                seo_title TEXT,
                meta_description TEXT,
                keywords TEXT,      -- JSON array
                schema_type TEXT,
                schema_data TEXT,   -- JSON object
                faq_schema TEXT,    -- JSON array
                reliable BOOLEAN DEFAULT 1,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workflow_vectors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id INTEGER UNIQUE NOT NULL REFERENCES workflows(id),
                embedding BLOB NOT NULL,  -- float32 vector
                dimensions INTEGER NOT NULL,
                model TEXT,
                description_text TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_category ON workflows(category);
            CREATE INDEX IF NOT EXISTS idx_complexity ON workflows(complexity);
            CREATE INDEX IF NOT EXISTS idx_node_count ON workflows(node_count);

            CREATE VIRTUAL TABLE IF NOT EXISTS workflows_fts USING fts5(
                name,
                path,
                category,
                tags,
                content=workflows,
                content_rowid=id
            );

            CREATE TRIGGER IF NOT EXISTS workflows_ai AFTER INSERT ON workflows BEGIN
                INSERT INTO workflows_fts(rowid, name, path, category, tags)
                VALUES (new.id, new.name, new.path, new.category, new.tags);
            END;

            CREATE TRIGGER IF NOT EXISTS workflows_au AFTER UPDATE ON workflows BEGIN
                INSERT INTO workflows_fts(workflows_fts, rowid, name, path, category, tags)
                VALUES ('delete', old.id, old.name, old.path, old.category, old.tags);
                INSERT INTO workflows_fts(rowid, name, path, category, tags)
                VALUES (new.id, new.name, new.path, new.category, new.tags);
            END;
        """)
        conn.commit()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    @staticmethod
    def validate_record(record: Dict[str, Any]) -> None:
        for key in ('slug', 'name', 'path'):
            if not record.get(key):
                raise CatalogStoreError(f"Workflow record is missing '{key}'", 422)
        if record.get('complexity') not in COMPLEXITY_TIERS:
            raise CatalogStoreError(f"Invalid complexity: {record.get('complexity')!r}", 422)
        if int(record.get('node_count') or 0) < 0:
            raise CatalogStoreError("node_count must not be negative", 422)

    def upsert_workflow(self, record: Union[CatalogRecord, Dict[str, Any]]) -> int:
        """Insert a workflow or overwrite the row with the same slug.

        This is the only write path into the workflows table. Returns the row id.
        """
        if isinstance(record, CatalogRecord):
            record = record.to_dict()
        self.validate_record(record)

        params = (
            record['slug'],
            record['name'],
            record['path'],
            record.get('raw_url') or '',
            int(record.get('size_bytes') or 0),
            record.get('category') or 'General',
            json.dumps(sorted(set(record.get('tags') or []))),
            int(record.get('node_count') or 0),
            1 if record.get('has_credentials') else 0,
            record['complexity'],
            record.get('file_hash'),
            record.get('updated_at') or utc_now(),
        )
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO workflows (
                    slug, name, path, raw_url, size_bytes, category, tags,
                    node_count, has_credentials, complexity, file_hash, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    path = excluded.path,
                    raw_url = excluded.raw_url,
                    size_bytes = excluded.size_bytes,
                    category = excluded.category,
                    tags = excluded.tags,
                    node_count = excluded.node_count,
                    has_credentials = excluded.has_credentials,
                    complexity = excluded.complexity,
                    file_hash = excluded.file_hash,
                    updated_at = excluded.updated_at
            """, params)
            row = conn.execute("SELECT id FROM workflows WHERE slug = ?", (record['slug'],)).fetchone()
        if row is None:
            raise CatalogStoreError(f"Workflow {record['slug']!r} was not stored")
        return row['id']

    @staticmethod
    def _workflow_row(row: sqlite3.Row) -> Dict[str, Any]:
        workflow = dict(row)
        try:
            workflow['tags'] = json.loads(workflow.get('tags') or '[]')
        except (json.JSONDecodeError, TypeError):
            workflow['tags'] = []
        workflow['has_credentials'] = bool(workflow.get('has_credentials'))
        return workflow

    def get_workflow(self, key: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Fetch one workflow by row id or slug."""
        column = 'id' if isinstance(key, int) else 'slug'
        row = self._fetchone(
            f"SELECT * FROM workflows WHERE {column} = ?", (key,)
        )
        return self._workflow_row(row) if row else None

    def list_workflows(self, offset: int = 0, limit: int = 50) -> List[Dict[str, Any]]:
        """Position-based page of workflows in id order."""
        rows = self._fetchall(
            "SELECT * FROM workflows ORDER BY id LIMIT ? OFFSET ?", (limit, offset)
        )
        return [self._workflow_row(row) for row in rows]

    def count_workflows(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM workflows")[0]

    def search_workflows(self, query: str = "", category: str = "all",
                         complexity: str = "all", limit: int = 50,
                         offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Keyword search with filters and pagination."""
        where_conditions = []
        params: List[Any] = []

        if category != "all":
            where_conditions.append("w.category = ?")
            params.append(category)

        if complexity != "all":
            where_conditions.append("w.complexity = ?")
            params.append(complexity)

        terms = re.findall(r'\w+', query or '')
        if terms:
            base_query = """
                SELECT w.*, fts.rank AS rank
                FROM workflows_fts fts
                JOIN workflows w ON w.id = fts.rowid
                WHERE workflows_fts MATCH ?
            """
            params.insert(0, ' '.join(f'"{term}"*' for term in terms))
        else:
            base_query = """
                SELECT w.*, 0 AS rank
                FROM workflows w
                WHERE 1=1
            """

        if where_conditions:
            base_query += " AND " + " AND ".join(where_conditions)

        count_query = f"SELECT COUNT(*) AS total FROM ({base_query}) t"
        base_query += " ORDER BY rank, w.id" if terms else " ORDER BY w.updated_at DESC, w.id"
        base_query += " LIMIT ? OFFSET ?"
        with self._lock:
            total = self._fetchone(count_query, params)['total']
            rows = self._fetchall(base_query, params + [limit, offset])

        results = []
        for row in rows:
            workflow = self._workflow_row(row)
            workflow.pop('rank', None)
            results.append(workflow)
        return results, total

    def get_stats(self) -> Dict[str, Any]:
        """Get catalog statistics."""
        with self._lock:
            conn = self.get_connection()

            total = conn.execute("SELECT COUNT(*) AS total FROM workflows").fetchone()['total']

            cursor = conn.execute("SELECT category, COUNT(*) AS count FROM workflows GROUP BY category")
            categories = {row['category']: row['count'] for row in cursor.fetchall()}

            cursor = conn.execute("SELECT complexity, COUNT(*) AS count FROM workflows GROUP BY complexity")
            complexity = {row['complexity']: row['count'] for row in cursor.fetchall()}

            total_nodes = conn.execute("SELECT SUM(node_count) AS n FROM workflows").fetchone()['n'] or 0
            with_credentials = conn.execute(
                "SELECT COUNT(*) AS n FROM workflows WHERE has_credentials = 1"
            ).fetchone()['n']

            all_tags = set()
            for row in conn.execute("SELECT tags FROM workflows WHERE tags != '[]'").fetchall():
                all_tags.update(json.loads(row['tags']))

            enriched = {
                kind: conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']
                for kind, table in ARTIFACT_TABLES.items()
            }

        return {
            'total': total,
            'categories': categories,
            'complexity': complexity,
            'total_nodes': total_nodes,
            'with_credentials': with_credentials,
            'unique_tags': len(all_tags),
            'enriched': enriched,
            'generated_at': utc_now(),
        }

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def enriched_ids(self, kind: str) -> Set[int]:
        """Ids of workflows that already have an artifact of ``kind``."""
        table = ARTIFACT_TABLES[kind]
        rows = self._fetchall(f"SELECT workflow_id FROM {table}")
        return {row['workflow_id'] for row in rows}

    def get_description(self, workflow_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            "SELECT * FROM workflow_descriptions WHERE workflow_id = ?", (workflow_id,)
        )
        if not row:
            return None
        description = dict(row)
        description['reliable'] = bool(description['reliable'])
        return description

    def upsert_description(self, workflow_id: int, description: str, use_cases: Optional[str] = None,
                           setup_guide: Optional[str] = None, reliable: bool = True) -> None:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO workflow_descriptions
                    (workflow_id, description, use_cases, setup_guide, reliable, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    description = excluded.description,
                    use_cases = excluded.use_cases,
                    setup_guide = excluded.setup_guide,
                    reliable = excluded.reliable,
                    updated_at = excluded.updated_at
            """, (workflow_id, description, use_cases, setup_guide, 1 if reliable else 0, utc_now()))

    def get_seo_metadata(self, workflow_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            "SELECT * FROM workflow_seo_metadata WHERE workflow_id = ?", (workflow_id,)
        )
        if not row:
            return None
        seo = dict(row)
        for key in ('keywords', 'schema_data', 'faq_schema'):
            seo[key] = json.loads(seo[key]) if seo[key] else None
        seo['reliable'] = bool(seo['reliable'])
        return seo

    def upsert_seo_metadata(self, workflow_id: int, seo: Dict[str, Any], reliable: bool = True) -> None:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO workflow_seo_metadata (
                    workflow_id, seo_title, meta_description, keywords, schema_type,
                    schema_data, faq_schema, reliable, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    seo_title = excluded.seo_title,
                    meta_description = excluded.meta_description,
                    keywords = excluded.keywords,
                    schema_type = excluded.schema_type,
                    schema_data = excluded.schema_data,
                    faq_schema = excluded.faq_schema,
                    reliable = excluded.reliable,
                    updated_at = excluded.updated_at
            """, (
                workflow_id,
                seo.get('seo_title'),
                seo.get('meta_description'),
                json.dumps(seo.get('keywords') or []),
                seo.get('schema_type') or 'SoftwareApplication',
                json.dumps(seo.get('schema_data')) if seo.get('schema_data') is not None else None,
                json.dumps(seo.get('faq_schema')) if seo.get('faq_schema') is not None else None,
                1 if reliable else 0,
                utc_now(),
            ))

    def get_embedding(self, workflow_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            "SELECT * FROM workflow_vectors WHERE workflow_id = ?", (workflow_id,)
        )
        if not row:
            return None
        vector = dict(row)
        vector['embedding'] = blob_to_vector(vector['embedding'])
        return vector

    def upsert_embedding(self, workflow_id: int, embedding: Sequence[float], model: Optional[str] = None,
                         description_text: Optional[str] = None) -> None:
        blob = vector_to_blob(embedding)
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO workflow_vectors
                    (workflow_id, embedding, dimensions, model, description_text, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    embedding = excluded.embedding,
                    dimensions = excluded.dimensions,
                    model = excluded.model,
                    description_text = excluded.description_text,
                    updated_at = excluded.updated_at
            """, (workflow_id, blob, len(embedding), model,
                  (description_text or '')[:1000], utc_now()))

    def described_workflows(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Workflows joined with their description, for auditing."""
        rows = self._fetchall("""
            SELECT w.id, w.name, w.category, w.raw_url,
                   d.description, d.use_cases, d.setup_guide
            FROM workflows w
            JOIN workflow_descriptions d ON d.workflow_id = w.id
            ORDER BY w.id
            LIMIT ?
        """, (limit,))
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Vector ranking
    # ------------------------------------------------------------------

    def match_workflows(self, query_embedding: Sequence[float], threshold: float = 0.3,
                        limit: int = 20) -> List[Dict[str, Any]]:
        """Rank stored embeddings against a query vector inside SQLite.

        Raises SimilarityOperatorUnavailable when the connection has no
        ``cosine_similarity`` SQL function.
        """
        try:
            rows = self._fetchall("""
                SELECT * FROM (
                    SELECT v.workflow_id, w.slug, w.name, w.category, w.complexity,
                           v.description_text,
                           cosine_similarity(v.embedding, ?) AS similarity
                    FROM workflow_vectors v
                    JOIN workflows w ON w.id = v.workflow_id
                )
                WHERE similarity >= ?
                ORDER BY similarity DESC, workflow_id ASC
                LIMIT ?
            """, (vector_to_blob(query_embedding), threshold, limit))
        except sqlite3.OperationalError as e:
            if 'no such function' in str(e).lower():
                raise SimilarityOperatorUnavailable(str(e)) from e
            raise CatalogStoreError(f"Similarity query failed: {e}") from e
        return [dict(row) for row in rows]

    def fetch_embeddings(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """Stored embeddings with the owning workflow's summary fields."""
        rows = self._fetchall("""
            SELECT v.workflow_id, w.slug, w.name, w.category, w.complexity,
                   v.description_text, v.embedding
            FROM workflow_vectors v
            JOIN workflows w ON w.id = v.workflow_id
            ORDER BY v.workflow_id
            LIMIT ?
        """, (limit,))
        results = []
        for row in rows:
            item = dict(row)
            item['embedding'] = blob_to_vector(item['embedding'])
            results.append(item)
        return results


def main():
    """Command-line interface for the workflow catalog."""
    import argparse

    parser = argparse.ArgumentParser(description='N8N Workflow Catalog')
    parser.add_argument('--search', help='Keyword search')
    parser.add_argument('--stats', action='store_true', help='Show catalog statistics')

    args = parser.parse_args()

    db = WorkflowDatabase()

    if args.search:
        results, total = db.search_workflows(args.search, limit=10)
        print(f"Found {total} workflows:")
        for workflow in results:
            print(f"  - {workflow['name']} ({workflow['category']}, {workflow['complexity']}, "
                  f"{workflow['node_count']} nodes)")

    elif args.stats:
        stats = db.get_stats()
        print("Catalog Statistics:")
        print(f"  Total workflows: {stats['total']}")
        print(f"  Total nodes: {stats['total_nodes']}")
        print(f"  Needing credentials: {stats['with_credentials']}")
        print(f"  Unique tags: {stats['unique_tags']}")
        print(f"  Categories: {stats['categories']}")
        print(f"  Complexity: {stats['complexity']}")
        print(f"  Enriched: {stats['enriched']}")

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
