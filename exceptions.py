"""Exceptions raised by the workflow catalog pipeline."""

from typing import Optional


class CatalogError(Exception):
    """Base exception for the catalog pipeline."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ConfigurationError(CatalogError):
    """A required API key, endpoint or credential is missing."""

    def __init__(self, message: str = "Missing required configuration"):
        super().__init__(message, 500)


class SourceListingError(CatalogError):
    """The repository tree could not be listed. Fatal for a sync run."""

    def __init__(self, message: str = "Repository listing failed"):
        super().__init__(message, 502)


class RateLimitExceeded(SourceListingError):
    """GitHub reported an exhausted rate-limit quota."""

    def __init__(self, reset_at: Optional[str] = None):
        self.reset_at = reset_at
        message = "GitHub API rate limit exceeded"
        if reset_at:
            message += f", retry after {reset_at}"
        super().__init__(message)
        self.status_code = 429


class FileFetchError(CatalogError):
    """A single raw file could not be downloaded."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Failed to fetch {path}: {reason}", 502)


class AIServiceError(CatalogError):
    """The completion or embedding service returned an unusable response."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code)


class CatalogStoreError(CatalogError):
    """A catalog read or write failed."""


class SimilarityOperatorUnavailable(CatalogStoreError):
    """The database cannot rank by vector similarity on this connection."""

    def __init__(self, message: str = "Similarity operator unavailable"):
        super().__init__(message, 503)
