"""
Semantic search over stored workflow embeddings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Union

import numpy as np

from exceptions import SimilarityOperatorUnavailable

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.3
FALLBACK_SCAN_LIMIT = 1000

Vector = Union[Sequence[float], np.ndarray]


def cosine_similarity(vec1: Vector, vec2: Vector) -> float:
    """Calculate cosine similarity between two vectors.

    Returns 0.0 for missing, empty, mismatched-length or zero vectors.
    """
    if vec1 is None or vec2 is None:
        return 0.0

    a = np.asarray(vec1, dtype=np.float64).ravel()
    b = np.asarray(vec2, dtype=np.float64).ravel()
    if a.size == 0 or a.shape != b.shape:
        return 0.0

    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0 or not np.isfinite(norm1 * norm2):
        return 0.0

    return float(np.dot(a, b) / (norm1 * norm2))


def rank_embeddings(query_embedding: Vector, rows: List[Dict[str, Any]],
                    threshold: float = DEFAULT_THRESHOLD, limit: int = 20) -> List[Dict[str, Any]]:
    """Score ``rows`` (each with an ``embedding``) and keep the best ``limit``.

    Ordering matches the SQL ranking: similarity descending, then workflow id.
    """
    scored = []
    for row in rows:
        similarity = cosine_similarity(query_embedding, row['embedding'])
        if similarity >= threshold:
            result = {key: value for key, value in row.items() if key != 'embedding'}
            result['similarity'] = similarity
            scored.append(result)

    scored.sort(key=lambda item: (-item['similarity'], item['workflow_id']))
    return scored[:limit]


@dataclass
class SearchResult:
    query: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    fallback: bool = False

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'query': self.query,
            'results': self.results,
            'count': self.count,
            'fallback': self.fallback,
        }


class SemanticSearch:
    """Rank catalog workflows against a free-text query."""

    def __init__(self, db, embedder, threshold: float = DEFAULT_THRESHOLD):
        self.db = db
        self.embedder = embedder
        self.threshold = threshold

    def search(self, query: str, limit: int = 20) -> SearchResult:
        """
        Search workflows using semantic similarity.

        Args:
            query: The search query
            limit: Maximum number of results to return

        Returns:
            SearchResult with matches sorted by similarity
        """
        if not query or not query.strip():
            raise ValueError("Search query is required")
        if limit <= 0:
            raise ValueError("limit must be > 0")

        self.embedder.ensure_configured()
        logger.info("Generating embedding for query: %s", query)
        query_embedding = self.embedder.embed(query)

        try:
            results = self.db.match_workflows(query_embedding, threshold=self.threshold, limit=limit)
            return SearchResult(query=query, results=results)
        except SimilarityOperatorUnavailable as e:
            logger.info("Database similarity ranking unavailable (%s), ranking in-process", e.message)

        # Stored vectors are float32; quantize the query the same way the SQL path does.
        query_vector = np.asarray(query_embedding, dtype=np.float32).astype(np.float64)
        rows = self.db.fetch_embeddings(limit=FALLBACK_SCAN_LIMIT)
        results = rank_embeddings(query_vector, rows, threshold=self.threshold, limit=limit)
        return SearchResult(query=query, results=results, fallback=True)
