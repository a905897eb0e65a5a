import pytest

from conftest import RAW_BASE, build_workflow
from exceptions import FileFetchError, RateLimitExceeded, SourceListingError
from source_fetcher import SourceFile, is_workflow_candidate


def test_listing_keeps_only_workflow_candidates(github_factory):
    tree = [
        {"path": "hubspot/sync.json", "type": "blob", "size": 120, "sha": "abc"},
        {"path": "package.json", "type": "blob", "size": 10, "sha": "p"},
        {"path": "docs/manifest.json", "type": "blob", "size": 10, "sha": "m"},
        {"path": "notes.txt", "type": "blob", "size": 10, "sha": "n"},
        {"path": "folder.json", "type": "tree", "sha": "t"},
    ]
    source = github_factory(tree=tree, truncated=True)

    listing = source.list_workflow_files()

    assert [f.path for f in listing.files] == ["hubspot/sync.json"]
    assert listing.files[0] == SourceFile(
        path="hubspot/sync.json", size=120, sha="abc",
        raw_url=f"{RAW_BASE}/owner/repo/main/hubspot/sync.json",
    )
    assert listing.truncated is True


def test_listing_sends_api_headers(github_factory):
    source = github_factory(files={}, token="secret")
    source.list_workflow_files()

    request = source.requests[0]
    assert request.url.path == "/repos/owner/repo/git/trees/main"
    assert request.url.params["recursive"] == "1"
    assert request.headers["Accept"] == "application/vnd.github.v3+json"
    assert request.headers["Authorization"] == "token secret"
    assert request.headers["User-Agent"]


def test_rate_limit_is_reported_with_reset_time(github_factory):
    source = github_factory(
        listing_status=403,
        listing_headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"},
    )

    with pytest.raises(RateLimitExceeded) as excinfo:
        source.list_workflow_files()

    assert excinfo.value.status_code == 429
    assert excinfo.value.reset_at == "2023-11-14T22:13:20+00:00"
    assert "rate limit" in excinfo.value.message


@pytest.mark.parametrize("status, headers", [
    (500, {}),
    (404, {}),
    (403, {"x-ratelimit-remaining": "12"}),
])
def test_listing_failure_is_fatal(github_factory, status, headers):
    source = github_factory(listing_status=status, listing_headers=headers)

    with pytest.raises(SourceListingError) as excinfo:
        source.list_workflow_files()

    assert not isinstance(excinfo.value, RateLimitExceeded)
    assert excinfo.value.status_code == 502


def test_download_failure_raises_file_fetch_error(github_factory):
    source = github_factory(files={"broken.json": 500})
    with pytest.raises(FileFetchError) as excinfo:
        source.download(f"{RAW_BASE}/owner/repo/main/broken.json", "broken.json")
    assert "HTTP 500" in excinfo.value.message


def test_downloads_run_in_batches_and_isolate_failures(github_factory):
    files = {f"flows/{i:02d}.json": build_workflow("n8n-nodes-base.set") for i in range(25)}
    files["flows/07.json"] = 404
    source = github_factory(files=files, batch_size=10)

    listing = source.list_workflow_files()
    batches = list(source.iter_downloads(listing.files))

    assert [number for number, _ in batches] == [1, 2, 3]
    assert [len(results) for _, results in batches] == [10, 10, 5]

    results = [fetched for _, batch in batches for fetched in batch]
    assert [f.source.path for f in results] == sorted(files)
    failed = [f for f in results if not f.ok]
    assert [f.source.path for f in failed] == ["flows/07.json"]
    assert "flows/07.json" in failed[0].error
    assert sum(1 for f in results if f.ok) == 24


def test_raw_downloads_do_not_send_api_credentials(github_factory):
    source = github_factory(files={"a.json": build_workflow("n8n-nodes-base.set")}, token="secret")
    listing = source.list_workflow_files()
    list(source.iter_downloads(listing.files))

    raw_requests = [r for r in source.requests if r.url.host == "raw.example.test"]
    assert len(raw_requests) == 1
    assert "Authorization" not in raw_requests[0].headers


def test_candidate_filter():
    assert is_workflow_candidate({"path": "x/y.json", "type": "blob"})
    assert not is_workflow_candidate({"path": "x/package-lock.json", "type": "blob"})
    assert not is_workflow_candidate({"path": "x/y.JSON.bak", "type": "blob"})
    assert not is_workflow_candidate({"type": "blob"})
