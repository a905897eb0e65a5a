import json
import pathlib
import sys

import httpx
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai_client import ChatClient  # noqa: E402
from config import Settings  # noqa: E402
from source_fetcher import GitHubSource  # noqa: E402
from workflow_db import WorkflowDatabase  # noqa: E402
from workflow_parser import classify  # noqa: E402

API_BASE = "https://api.example.test"
RAW_BASE = "https://raw.example.test"
AI_BASE = "https://ai.example.test"
REPO = "owner/repo"
BRANCH = "main"


def raw_url(path):
    return f"{RAW_BASE}/{REPO}/{BRANCH}/{path}"


def build_workflow(*node_types, name=None, credentials=False, **extra):
    """An n8n workflow document with one node per type."""
    nodes = []
    for index, node_type in enumerate(node_types):
        node = {
            "id": str(index),
            "name": f"Node {index}",
            "type": node_type,
            "position": [index * 200, 0],
            "parameters": {},
        }
        if credentials and index == 0:
            node["credentials"] = {"api": {"id": "1", "name": "Account"}}
        nodes.append(node)
    workflow = {"nodes": nodes, "connections": {}}
    if name is not None:
        workflow["name"] = name
    workflow.update(extra)
    return workflow


class FakeEmbedder:
    """Embedder that maps keywords in the text to fixed vectors."""

    flavor = "fake"
    model = "fake-embed"

    def __init__(self, vectors=None, default=(0.0, 0.0, 1.0), configured=True):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.configured = configured
        self.calls = []

    def ensure_configured(self):
        if not self.configured:
            from exceptions import ConfigurationError
            raise ConfigurationError("Missing required environment variables: EMBEDDING_BASE_URL")

    def embed(self, text):
        self.calls.append(text)
        for keyword, vector in self.vectors.items():
            if keyword in text:
                return list(vector)
        return list(self.default)

    def close(self):
        pass


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep settings from the host environment out of every test."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture()
def db():
    database = WorkflowDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture()
def fallback_db():
    """A catalog whose connection has no SQL similarity function."""
    database = WorkflowDatabase(":memory:", vector_functions=False)
    yield database
    database.close()


@pytest.fixture()
def github_factory():
    """Build a GitHubSource backed by an in-memory fake of GitHub.

    ``files`` maps repository paths to workflow dicts, raw bytes, or an int
    HTTP status to answer with.
    """
    clients = []

    def factory(files=None, tree=None, listing_status=200, listing_headers=None,
                truncated=False, token=None, batch_size=10):
        files = dict(files or {})
        requests = []
        prefix = f"/{REPO}/{BRANCH}/"

        def handler(request):
            requests.append(request)
            if request.url.host == "api.example.test":
                if listing_status != 200:
                    return httpx.Response(listing_status, headers=listing_headers or {},
                                          json={"message": "error"})
                items = tree if tree is not None else [
                    {"path": path, "type": "blob", "size": 100, "sha": f"sha-{path}"} for path in files
                ]
                return httpx.Response(200, json={"sha": "root", "tree": items, "truncated": truncated})

            body = files.get(request.url.path[len(prefix):])
            if body is None:
                return httpx.Response(404)
            if isinstance(body, int):
                return httpx.Response(body)
            if isinstance(body, dict):
                body = json.dumps(body).encode()
            elif isinstance(body, str):
                body = body.encode()
            return httpx.Response(200, content=body)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        clients.append(client)
        source = GitHubSource(REPO, BRANCH, token=token, api_base=API_BASE, raw_base=RAW_BASE,
                              batch_size=batch_size, batch_delay=0, client=client)
        source.requests = requests
        return source

    yield factory
    for client in clients:
        client.close()


@pytest.fixture()
def chat_factory():
    """Build a ChatClient against a fake completion endpoint.

    ``responder(messages)`` returns the reply content, or None to answer
    with HTTP 500.
    """
    clients = []

    def factory(responder=None, api_key="test-key"):
        calls = []

        def handler(request):
            payload = json.loads(request.content)
            calls.append(payload)
            content = responder(payload["messages"]) if responder else "{}"
            if content is None:
                return httpx.Response(500, text="upstream failure")
            return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        clients.append(client)
        chat = ChatClient(api_key, AI_BASE, "test-model", client=client)
        chat.calls = calls
        return chat

    yield factory
    for client in clients:
        client.close()


@pytest.fixture()
def seed():
    """Insert workflows into a catalog; returns their ids in order."""

    def seed_catalog(database, workflows):
        ids = []
        for path, workflow in workflows.items():
            record = classify(path, json.dumps(workflow), raw_url=raw_url(path))
            ids.append(database.upsert_workflow(record))
        return ids

    return seed_catalog
