import json

import httpx
import pytest

from conftest import FakeEmbedder, build_workflow
from enrichment import (DescriptionTask, EmbeddingTask, EnrichmentScheduler, PaginationStrategy,
                        SeoTask, heuristic_description)
from exceptions import CatalogStoreError, ConfigurationError

PROSE_REPLY = (
    "This workflow syncs HubSpot contacts to Slack.\n\n"
    "Use cases: Keep the sales team informed\n\n"
    "Setup: Add HubSpot and Slack credentials"
)


def _flows(count):
    return {f"flows/flow-{i}.json": build_workflow("n8n-nodes-base.set", name=f"Flow {i}")
            for i in range(1, count + 1)}


def _description_reply(messages):
    prompt = messages[-1]["content"]
    name = prompt.split("Workflow Name: ")[1].split("\n")[0]
    return json.dumps({
        "description": f"{name} does useful things.",
        "use_cases": ["One", "Two"],
        "setup_guide": "Import it.",
    })


@pytest.fixture()
def catalog(db, seed, github_factory):
    flows = _flows(5)
    ids = seed(db, flows)
    return db, ids, github_factory(files=flows)


def test_prose_reply_is_persisted_as_heuristic(db, seed, github_factory, chat_factory):
    flows = {"hubspot/sync.json": build_workflow("n8n-nodes-base.hubspot", name="HubSpot Sync")}
    [workflow_id] = seed(db, flows)
    chat = chat_factory(lambda messages: PROSE_REPLY)

    result = EnrichmentScheduler(db, DescriptionTask(chat, github_factory(files=flows))).run()

    assert result.succeeded == 1
    description = db.get_description(workflow_id)
    assert description["description"] == "This workflow syncs HubSpot contacts to Slack."
    assert description["use_cases"] == "Keep the sales team informed"
    assert description["setup_guide"] == "Add HubSpot and Slack credentials"
    assert description["reliable"] is False


def test_structured_reply_is_reliable(catalog, chat_factory):
    db, ids, source = catalog
    chat = chat_factory(_description_reply)

    result = EnrichmentScheduler(db, DescriptionTask(chat, source)).run(limit=1)

    description = db.get_description(ids[0])
    assert description["description"] == "Flow 1 does useful things."
    assert description["use_cases"] == "- One\n- Two"
    assert description["reliable"] is True
    assert result.has_more is True
    # workflow JSON is sent to the model
    assert '"n8n-nodes-base.set"' in chat.calls[0]["messages"][-1]["content"]


def test_per_record_failures_are_counted(catalog, chat_factory):
    db, ids, source = catalog

    def reply(messages):
        return None if "Workflow Name: Flow 2\n" in messages[-1]["content"] else _description_reply(messages)

    result = EnrichmentScheduler(db, DescriptionTask(chat_factory(reply), source)).run(limit=3)

    assert result.processed == 3
    assert result.succeeded == 2
    assert result.failed == 1
    assert len(result.errors) == 1
    assert "Flow 2" in result.errors[0]
    assert db.enriched_ids("description") == {ids[0], ids[2]}


def test_missing_configuration_touches_no_record(catalog, chat_factory):
    db, _, source = catalog
    chat = chat_factory(api_key=None)

    with pytest.raises(ConfigurationError):
        EnrichmentScheduler(db, DescriptionTask(chat, source)).run()

    assert chat.calls == []
    assert db.enriched_ids("description") == set()


def test_prefiltered_resumes_past_failures(catalog, chat_factory):
    db, ids, source = catalog

    def reply(messages):
        return None if "Workflow Name: Flow 1\n" in messages[-1]["content"] else _description_reply(messages)

    scheduler = EnrichmentScheduler(db, DescriptionTask(chat_factory(reply), source),
                                    strategy=PaginationStrategy.PREFILTERED)

    first = scheduler.run(offset=0, limit=2)
    assert (first.succeeded, first.failed) == (1, 1)
    assert first.next_offset == 1
    assert first.has_more is True
    assert first.state == "partial"

    second = scheduler.run(offset=first.next_offset, limit=2)
    assert (second.succeeded, second.failed) == (2, 0)
    assert second.next_offset == 1
    assert second.has_more is True

    third = scheduler.run(offset=second.next_offset, limit=2)
    assert (third.processed, third.succeeded) == (1, 1)
    assert third.has_more is False
    assert third.state == "done"

    assert db.enriched_ids("description") == set(ids[1:])


def test_window_counts_enriched_rows_against_the_page(catalog, chat_factory):
    db, ids, source = catalog
    db.upsert_description(ids[0], "Already done")
    db.upsert_description(ids[1], "Already done")
    chat = chat_factory(_description_reply)
    scheduler = EnrichmentScheduler(db, DescriptionTask(chat, source), strategy=PaginationStrategy.WINDOW)

    first = scheduler.run(offset=0, limit=3)
    assert first.processed == 1
    assert first.skipped == 2
    assert first.next_offset == 3
    assert first.has_more is True

    second = scheduler.run(offset=3, limit=3)
    assert second.processed == 2
    assert second.has_more is False
    assert db.enriched_ids("description") == set(ids)


def test_rerun_keeps_one_artifact_row(catalog, chat_factory):
    db, ids, source = catalog
    chat = chat_factory(_description_reply)
    scheduler = EnrichmentScheduler(db, DescriptionTask(chat, source), strategy=PaginationStrategy.WINDOW)

    scheduler.run(offset=0, limit=5)
    with db.transaction() as conn:
        conn.execute("DELETE FROM workflow_descriptions WHERE workflow_id = ?", (ids[0],))
    scheduler.run(offset=0, limit=5)

    count = db.get_connection().execute("SELECT COUNT(*) FROM workflow_descriptions").fetchone()[0]
    assert count == 5


def test_timed_out_record_fails_without_stopping_the_batch(catalog, chat_factory):
    db, ids, source = catalog

    def reply(messages):
        if "Workflow Name: Flow 3\n" in messages[-1]["content"]:
            raise httpx.ReadTimeout("timed out")
        return _description_reply(messages)

    result = EnrichmentScheduler(db, DescriptionTask(chat_factory(reply), source)).run(limit=5)

    assert result.processed == 5
    assert result.succeeded == 4
    assert result.failed == 1
    assert "Flow 3" in result.errors[0]
    assert "timed out" in result.errors[0]
    assert db.enriched_ids("description") == set(ids) - {ids[2]}


def test_targeted_run_regenerates_existing_artifact(catalog, chat_factory):
    db, ids, source = catalog
    replies = iter(["First take.", json.dumps({"description": "Second take.", "use_cases": "Reports",
                                               "setup_guide": "Import it."})])
    scheduler = EnrichmentScheduler(db, DescriptionTask(chat_factory(lambda messages: next(replies)), source))

    first = scheduler.run_one(ids[1])
    assert (first.processed, first.succeeded) == (1, 1)
    assert db.get_description(ids[1])["reliable"] is False

    second = scheduler.run_one("flows-flow-2-json")
    assert second.succeeded == 1
    assert second.strategy == "targeted"
    assert second.has_more is False

    description = db.get_description(ids[1])
    assert description["description"] == "Second take."
    assert description["reliable"] is True
    count = db.get_connection().execute("SELECT COUNT(*) FROM workflow_descriptions").fetchone()[0]
    assert count == 1


def test_targeted_run_for_unknown_workflow(catalog, chat_factory):
    db, _, source = catalog
    scheduler = EnrichmentScheduler(db, DescriptionTask(chat_factory(_description_reply), source))

    with pytest.raises(CatalogStoreError) as excinfo:
        scheduler.run_one("no-such-slug")
    assert excinfo.value.status_code == 404


def test_targeted_seo_still_needs_a_description(catalog, chat_factory):
    db, ids, _ = catalog
    chat = chat_factory(lambda messages: "{}")

    result = EnrichmentScheduler(db, SeoTask(chat)).run_one(ids[0])

    assert result.failed == 1
    assert chat.calls == []
    assert db.get_seo_metadata(ids[0]) is None


def test_seo_only_for_described_workflows(catalog, chat_factory):
    db, ids, _ = catalog
    db.upsert_description(ids[0], "Flow 1 does useful things.")
    db.upsert_description(ids[1], "Flow 2 does useful things.")

    def reply(messages):
        if "Name: Flow 1\n" in messages[-1]["content"]:
            return '```json\n{"seo_title": "Flow 1 Template", "meta_description": "Automate it", ' \
                   '"keywords": ["n8n workflow"], "schema_type": "HowTo"}\n```'
        return "Great workflow for automation fans."

    chat = chat_factory(reply)
    result = EnrichmentScheduler(db, SeoTask(chat)).run()

    assert result.processed == 2
    assert result.succeeded == 2
    assert all(call["temperature"] == 0.7 for call in chat.calls)

    structured = db.get_seo_metadata(ids[0])
    assert structured["seo_title"] == "Flow 1 Template"
    assert structured["schema_type"] == "HowTo"
    assert structured["reliable"] is True

    heuristic = db.get_seo_metadata(ids[1])
    assert heuristic["seo_title"] == "Flow 2 | n8n Workflow"
    assert heuristic["meta_description"] == "Great workflow for automation fans."
    assert heuristic["reliable"] is False
    assert db.get_seo_metadata(ids[2]) is None


def test_embeddings_for_described_workflows(catalog):
    db, ids, _ = catalog
    db.upsert_description(ids[0], "Sends Slack alerts.", "Alerting", "Add a Slack token")
    embedder = FakeEmbedder({"Slack": [1.0, 0.0, 0.0]})

    result = EnrichmentScheduler(db, EmbeddingTask(embedder)).run()

    assert (result.processed, result.succeeded) == (1, 1)
    vector = db.get_embedding(ids[0])
    assert vector["embedding"].tolist() == [1.0, 0.0, 0.0]
    assert vector["dimensions"] == 3
    assert vector["model"] == "fake-embed"
    assert vector["description_text"].startswith("Flow 1\n\nSends Slack alerts.")
    assert "Use Cases:\nAlerting" in embedder.calls[0]


def test_embedding_configuration_error(catalog):
    db, ids, _ = catalog
    db.upsert_description(ids[0], "Described")
    embedder = FakeEmbedder(configured=False)

    with pytest.raises(ConfigurationError):
        EnrichmentScheduler(db, EmbeddingTask(embedder)).run()
    assert embedder.calls == []
    assert db.enriched_ids("embedding") == set()


def test_invalid_window(catalog, chat_factory):
    db, _, source = catalog
    scheduler = EnrichmentScheduler(db, DescriptionTask(chat_factory(), source))
    with pytest.raises(ValueError):
        scheduler.run(offset=-1)
    with pytest.raises(ValueError):
        scheduler.run(limit=0)


def test_heuristic_description_defaults():
    fields = heuristic_description("Just one paragraph about the flow.")
    assert fields["description"] == "Just one paragraph about the flow."
    assert fields["use_cases"] == "General automation tasks"
    assert fields["setup_guide"].startswith("Import the workflow")
