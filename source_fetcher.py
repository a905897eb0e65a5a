"""
GitHub source for n8n workflow files.

Lists candidate workflow blobs with one Git Trees API call and downloads
their content from the raw-content host in small concurrent batches.
"""

import datetime
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

import httpx

from config import Settings
from exceptions import FileFetchError, RateLimitExceeded, SourceListingError

logger = logging.getLogger(__name__)

EXCLUDED_PATH_PARTS = ('package', 'manifest')


@dataclass
class SourceFile:
    """A workflow candidate from the repository tree."""
    path: str
    size: int
    sha: Optional[str]
    raw_url: str


@dataclass
class FetchedFile:
    """Outcome of one download: ``content`` on success, ``error`` otherwise."""
    source: SourceFile
    content: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SourceListing:
    files: List[SourceFile]
    truncated: bool = False


def is_workflow_candidate(item: dict) -> bool:
    path = item.get('path') or ''
    return (
        item.get('type') == 'blob'
        and path.endswith('.json')
        and not any(part in path for part in EXCLUDED_PATH_PARTS)
    )


def _format_reset(reset: Optional[str]) -> Optional[str]:
    if not reset:
        return None
    try:
        moment = datetime.datetime.fromtimestamp(int(reset), tz=datetime.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return reset
    return moment.isoformat()


class GitHubSource:
    """Read-only access to a GitHub repository of workflow definitions."""

    def __init__(self, repo: str, branch: str = 'main', token: Optional[str] = None,
                 api_base: str = 'https://api.github.com',
                 raw_base: str = 'https://raw.githubusercontent.com',
                 timeout: float = 30.0, batch_size: int = 10, batch_delay: float = 0.1,
                 client: Optional[httpx.Client] = None):
        self.repo = repo
        self.branch = branch
        self.api_base = api_base.rstrip('/')
        self.raw_base = raw_base.rstrip('/')
        self.batch_size = batch_size
        self.batch_delay = batch_delay

        self.api_headers = {
            'Accept': 'application/vnd.github.v3+json',
            'User-Agent': 'n8n-workflows-sync',
        }
        if token:
            self.api_headers['Authorization'] = f'token {token}'

        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.Client] = None) -> 'GitHubSource':
        return cls(
            repo=settings.workflows_repo,
            branch=settings.workflows_branch,
            token=settings.github_token,
            api_base=settings.github_api_base,
            raw_base=settings.github_raw_base,
            timeout=settings.github_timeout,
            batch_size=settings.sync_batch_size,
            batch_delay=settings.sync_batch_delay,
            client=client,
        )

    def raw_url(self, path: str) -> str:
        return f"{self.raw_base}/{self.repo}/{self.branch}/{path}"

    def list_workflow_files(self) -> SourceListing:
        """List workflow candidates in the branch tree.

        All-or-nothing: any failure raises instead of returning a partial list.
        """
        url = f"{self.api_base}/repos/{self.repo}/git/trees/{self.branch}"
        try:
            response = self.client.get(url, params={'recursive': '1'}, headers=self.api_headers)
        except httpx.HTTPError as e:
            raise SourceListingError(f"GitHub API unreachable: {e}") from e

        if response.status_code == 403 and response.headers.get('x-ratelimit-remaining') == '0':
            raise RateLimitExceeded(_format_reset(response.headers.get('x-ratelimit-reset')))

        if not response.is_success:
            raise SourceListingError(
                f"GitHub API error: {response.status_code} {response.reason_phrase}"
            )

        try:
            tree = response.json()
        except ValueError as e:
            raise SourceListingError(f"GitHub API returned invalid JSON: {e}") from e

        files = [
            SourceFile(
                path=item['path'],
                size=int(item.get('size') or 0),
                sha=item.get('sha'),
                raw_url=self.raw_url(item['path']),
            )
            for item in tree.get('tree') or []
            if is_workflow_candidate(item)
        ]
        truncated = bool(tree.get('truncated'))
        if truncated:
            logger.warning("GitHub tree listing for %s was truncated", self.repo)
        logger.info("Found %d potential workflow files in %s@%s", len(files), self.repo, self.branch)
        return SourceListing(files=files, truncated=truncated)

    def download(self, url: str, label: Optional[str] = None) -> bytes:
        """Download raw content without API credentials."""
        label = label or url
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            raise FileFetchError(label, str(e) or type(e).__name__) from e
        if not response.is_success:
            raise FileFetchError(label, f"HTTP {response.status_code}")
        return response.content

    def _fetch(self, source: SourceFile) -> FetchedFile:
        try:
            return FetchedFile(source, content=self.download(source.raw_url, source.path))
        except FileFetchError as e:
            logger.warning(e.message)
            return FetchedFile(source, error=e.message)

    def iter_downloads(self, files: Iterable[SourceFile]) -> Iterator[Tuple[int, List[FetchedFile]]]:
        """Download ``files`` in fixed-size concurrent batches.

        Yields ``(batch_number, results)`` per batch with results in input
        order. Sleeps ``batch_delay`` between batches to stay under the
        remote rate limit.
        """
        files = list(files)
        total_batches = (len(files) + self.batch_size - 1) // self.batch_size
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(files), self.batch_size):
                batch_number = start // self.batch_size + 1
                batch = files[start:start + self.batch_size]
                logger.info("Processing batch %d/%d...", batch_number, total_batches)
                yield batch_number, list(pool.map(self._fetch, batch))

                if start + self.batch_size < len(files) and self.batch_delay > 0:
                    time.sleep(self.batch_delay)

    def close(self) -> None:
        self.client.close()
