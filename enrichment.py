#!/usr/bin/env python3
"""
Enrichment schedulers.

A single ``EnrichmentScheduler`` pages through catalog workflows that lack
an artifact, generates the artifact with an external AI service one record
at a time, and upserts it. What is generated is defined by a task object
(``DescriptionTask``, ``SeoTask``, ``EmbeddingTask``); how candidates are
paged is a ``PaginationStrategy``.

Resumption state is held by the caller: every run takes ``offset``/``limit``
and returns the ``next_offset`` to pass on the following call.
"""

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ai_client import ChatClient, Embedder, Heuristic, ParsedResponse, parse_json_response
from exceptions import AIServiceError, CatalogError, CatalogStoreError
from source_fetcher import GitHubSource
from workflow_db import WorkflowDatabase
from workflow_parser import parse_workflow

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10
BACKING_PAGE_SIZE = 1000

DEFAULT_USE_CASES = 'General automation tasks'
DEFAULT_SETUP_GUIDE = 'Import the workflow and configure the required credentials.'


class PaginationStrategy(str, Enum):
    """How a run picks its candidates.

    WINDOW: the catalog page ``[offset, offset+limit)``; rows that are
    already enriched still occupy the window. Cheap, but a run may process
    fewer than ``limit`` records while work remains.

    PREFILTERED: ``limit`` records taken from the set of not-yet-enriched
    workflows, starting ``offset`` records into that set. Reads every
    enriched id and may scan several catalog pages.
    """
    WINDOW = "window"
    PREFILTERED = "prefiltered"


@dataclass
class EnrichmentResult:
    kind: str
    strategy: str
    offset: int
    limit: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    next_offset: int = 0
    has_more: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def state(self) -> str:
        return 'partial' if self.has_more else 'done'

    def record_failure(self, message: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['state'] = self.state
        return data


def _as_text(value: Any) -> Optional[str]:
    """Normalize an AI-supplied field to text."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return '\n'.join(f"- {item}" for item in value)
    return json.dumps(value)


def _first_paragraph(text: str) -> str:
    text = text.strip()
    return text.split('\n\n')[0].strip() or text[:300]


def heuristic_description(content: str) -> Dict[str, str]:
    """Split free-form AI prose into description fields."""
    content = content.strip()
    lower = content.lower()

    use_cases = DEFAULT_USE_CASES
    if 'use case' in lower:
        after = content[lower.index('use case') + len('use case'):]
        use_cases = after.lstrip('s:').strip().split('\n\n')[0].strip() or DEFAULT_USE_CASES

    setup_guide = DEFAULT_SETUP_GUIDE
    parts = re.split(r'setup', content, maxsplit=1, flags=re.IGNORECASE)
    if len(parts) == 2:
        setup_guide = parts[1].lstrip(' :').strip().split('\n\n')[0].strip() or DEFAULT_SETUP_GUIDE

    return {
        'description': _first_paragraph(content),
        'use_cases': use_cases,
        'setup_guide': setup_guide,
    }


def default_seo(workflow: Dict[str, Any], description: Optional[Dict[str, Any]],
                content: str = '') -> Dict[str, Any]:
    """SEO metadata derived from catalog fields when the AI gave no usable JSON."""
    name = workflow['name']
    summary = _first_paragraph(content) if content.strip() else ''
    if not summary and description:
        summary = description.get('description') or ''

    keywords = []
    for keyword in ('n8n workflow', 'automation', workflow.get('category'),
                    f"{workflow.get('complexity')} automation", name):
        if keyword and keyword.lower() not in keywords:
            keywords.append(keyword.lower())

    return {
        'seo_title': f"{name} | n8n Workflow"[:60],
        'meta_description': (summary or f"{name}: a ready-to-import n8n automation workflow.")[:160],
        'keywords': keywords,
        'schema_type': 'SoftwareApplication',
        'schema_data': {
            'name': name,
            'applicationCategory': 'BusinessApplication',
            'operatingSystem': 'Web',
            'offers': {'@type': 'Offer', 'price': '0', 'priceCurrency': 'USD'},
        },
        'faq_schema': [
            {'question': 'What does this workflow do?', 'answer': summary or name},
            {'question': 'How complex is this workflow?',
             'answer': f"{workflow.get('complexity')} ({workflow.get('node_count')} nodes)."},
        ],
    }


def embedding_text(workflow: Dict[str, Any], description: Dict[str, Any]) -> str:
    return (
        f"{workflow['name']}\n\n{description.get('description') or ''}"
        f"\n\nUse Cases:\n{description.get('use_cases') or ''}"
        f"\n\nSetup:\n{description.get('setup_guide') or ''}"
    )


# ─── Tasks ─────────────────────────────────────────────────────

class EnrichmentTask:
    """What one scheduler generates. Subclasses fill in the stages."""

    kind = ''
    requires: Optional[str] = None  # artifact a candidate must already have
    default_limit = 10

    def ensure_configured(self) -> None:
        raise NotImplementedError

    def fetch_context(self, db: WorkflowDatabase, workflow: Dict[str, Any]) -> Any:
        return None

    def generate(self, workflow: Dict[str, Any], context: Any) -> Any:
        raise NotImplementedError

    def persist(self, db: WorkflowDatabase, workflow: Dict[str, Any], artifact: Any) -> None:
        raise NotImplementedError


def _require_description(db: WorkflowDatabase, workflow: Dict[str, Any]) -> Dict[str, Any]:
    description = db.get_description(workflow['id'])
    if not description:
        raise CatalogStoreError(f"No description found for workflow {workflow['id']}", 404)
    return description


class DescriptionTask(EnrichmentTask):
    """Description, use cases and setup guide from the workflow JSON."""

    kind = 'description'
    default_limit = 10
    system_prompt = ('You are an expert at analyzing n8n automation workflows. '
                     'Provide clear, practical descriptions and guides.')

    def __init__(self, chat: ChatClient, source: GitHubSource):
        self.chat = chat
        self.source = source

    def ensure_configured(self) -> None:
        self.chat.ensure_configured()

    def fetch_context(self, db, workflow):
        raw = self.source.download(workflow['raw_url'], workflow['path'])
        parsed = parse_workflow(raw)
        if parsed is None:
            return raw.decode('utf-8', errors='replace')
        return json.dumps(parsed, indent=2)

    def build_prompt(self, workflow: Dict[str, Any], workflow_json: str) -> str:
        return f"""Analyze this n8n workflow and provide:
1. A clear, concise description (2-3 sentences) explaining what this workflow does
2. 3-5 practical use cases for this workflow
3. A step-by-step setup guide with any required credentials or configuration

Workflow Name: {workflow['name']}
Category: {workflow['category']}
Node Count: {workflow['node_count']}
Has Credentials: {str(workflow['has_credentials']).lower()}
Complexity: {workflow['complexity']}

Workflow JSON:
{workflow_json}

Format your response as JSON with these keys:
{{
  "description": "clear description here",
  "use_cases": "bullet points of use cases",
  "setup_guide": "step-by-step setup instructions"
}}"""

    def generate(self, workflow, context) -> ParsedResponse:
        content = self.chat.complete([
            {'role': 'system', 'content': self.system_prompt},
            {'role': 'user', 'content': self.build_prompt(workflow, context)},
        ])
        if not content or not content.strip():
            raise AIServiceError("Empty AI response")

        parsed = parse_json_response(content, heuristic_description)
        if not _as_text(parsed.data.get('description')):
            parsed = Heuristic(heuristic_description(content))
        return parsed

    def persist(self, db, workflow, artifact: ParsedResponse) -> None:
        db.upsert_description(
            workflow['id'],
            description=_as_text(artifact.data.get('description')),
            use_cases=_as_text(artifact.data.get('use_cases')) or DEFAULT_USE_CASES,
            setup_guide=_as_text(artifact.data.get('setup_guide')) or DEFAULT_SETUP_GUIDE,
            reliable=artifact.reliable,
        )


class SeoTask(EnrichmentTask):
    """SEO title, meta description, keywords and structured data."""

    kind = 'seo'
    requires = 'description'
    default_limit = 10
    temperature = 0.7
    system_prompt = 'You are an SEO expert. Return only valid JSON.'

    def __init__(self, chat: ChatClient):
        self.chat = chat

    def ensure_configured(self) -> None:
        self.chat.ensure_configured()

    def fetch_context(self, db, workflow):
        return _require_description(db, workflow)

    def build_prompt(self, workflow: Dict[str, Any], description: Dict[str, Any]) -> str:
        name = workflow['name']
        return f"""You are an SEO expert optimizing an n8n workflow automation template.

Workflow Details:
Name: {name}
Category: {workflow['category']}
Complexity: {workflow['complexity']}
Node Count: {workflow['node_count']}
Has Credentials: {str(workflow['has_credentials']).lower()}
Description: {description.get('description')}
Use Cases: {description.get('use_cases') or 'N/A'}
Setup Guide: {description.get('setup_guide') or 'N/A'}

Target Keywords: "n8n workflow", "automation", "{workflow['category']}", "{workflow['complexity']} automation", "workflow template", "{name}"

Generate comprehensive SEO metadata in the following JSON structure:
{{
  "seo_title": "Optimized title (max 60 chars, include workflow name + benefit)",
  "meta_description": "Compelling description (max 160 chars, clear value proposition)",
  "keywords": ["keyword1", "keyword2", "keyword3", "keyword4", "keyword5"],
  "schema_type": "SoftwareApplication or HowTo",
  "schema_data": {{
    "name": "{name}",
    "applicationCategory": "BusinessApplication",
    "operatingSystem": "Web",
    "offers": {{"@type": "Offer", "price": "0", "priceCurrency": "USD"}}
  }},
  "faq_schema": [
    {{"question": "What does this workflow do?", "answer": "Based on description"}},
    {{"question": "How complex is this workflow?", "answer": "Based on complexity"}}
  ]
}}

Return ONLY valid JSON."""

    def generate(self, workflow, context) -> ParsedResponse:
        content = self.chat.complete([
            {'role': 'system', 'content': self.system_prompt},
            {'role': 'user', 'content': self.build_prompt(workflow, context)},
        ], temperature=self.temperature)
        if not content or not content.strip():
            raise AIServiceError("Empty AI response")

        def fallback(text: str) -> Dict[str, Any]:
            return default_seo(workflow, context, text)

        parsed = parse_json_response(content, fallback)
        if not parsed.data.get('seo_title') or not parsed.data.get('meta_description'):
            parsed = Heuristic(fallback(content))
        return parsed

    def persist(self, db, workflow, artifact: ParsedResponse) -> None:
        db.upsert_seo_metadata(workflow['id'], artifact.data, reliable=artifact.reliable)


class EmbeddingTask(EnrichmentTask):
    """Vector embedding of the workflow's name and description."""

    kind = 'embedding'
    requires = 'description'
    default_limit = 50

    def __init__(self, embedder: Embedder):
        self.embedder = embedder

    def ensure_configured(self) -> None:
        self.embedder.ensure_configured()

    def fetch_context(self, db, workflow):
        return embedding_text(workflow, _require_description(db, workflow))

    def generate(self, workflow, context) -> Tuple[List[float], str]:
        return self.embedder.embed(context), context

    def persist(self, db, workflow, artifact) -> None:
        vector, text = artifact
        db.upsert_embedding(workflow['id'], vector, model=self.embedder.model, description_text=text)


# ─── Scheduler ─────────────────────────────────────────────────

class EnrichmentScheduler:
    """Runs one enrichment task over a caller-supplied window of the catalog."""

    def __init__(self, db: WorkflowDatabase, task: EnrichmentTask,
                 strategy: PaginationStrategy = PaginationStrategy.PREFILTERED,
                 request_delay: float = 0.0, backing_page_size: int = BACKING_PAGE_SIZE):
        self.db = db
        self.task = task
        self.strategy = PaginationStrategy(strategy)
        self.request_delay = request_delay
        self.backing_page_size = backing_page_size

    def _eligibility(self) -> Tuple[Set[int], Optional[Set[int]]]:
        done = self.db.enriched_ids(self.task.kind)
        required = self.db.enriched_ids(self.task.requires) if self.task.requires else None
        return done, required

    @staticmethod
    def _eligible(workflow: Dict[str, Any], done: Set[int], required: Optional[Set[int]]) -> bool:
        if workflow['id'] in done:
            return False
        return required is None or workflow['id'] in required

    def _window_page(self, offset: int, limit: int) -> Tuple[List[Dict[str, Any]], int, bool]:
        page = self.db.list_workflows(offset, limit)
        done, required = self._eligibility()
        candidates = [w for w in page if self._eligible(w, done, required)]
        return candidates, len(page) - len(candidates), len(page) == limit

    def _prefiltered_page(self, offset: int, limit: int) -> Tuple[List[Dict[str, Any]], bool]:
        done, required = self._eligibility()
        collected: List[Dict[str, Any]] = []
        position = 0
        backing_offset = 0

        # Collect one extra candidate to learn whether more remain.
        while len(collected) <= limit:
            page = self.db.list_workflows(backing_offset, self.backing_page_size)
            for workflow in page:
                if not self._eligible(workflow, done, required):
                    continue
                if position >= offset:
                    collected.append(workflow)
                    if len(collected) > limit:
                        break
                position += 1
            if len(page) < self.backing_page_size:
                break
            backing_offset += self.backing_page_size

        return collected[:limit], len(collected) > limit

    def run(self, offset: int = 0, limit: Optional[int] = None) -> EnrichmentResult:
        """Enrich up to ``limit`` workflows starting at ``offset``.

        Raises ConfigurationError before touching any record if the task's
        service is not configured. Per-record failures are counted in the
        result and never raised.
        """
        self.task.ensure_configured()

        limit = self.task.default_limit if limit is None else limit
        if offset < 0:
            raise ValueError("offset must be >= 0")
        if limit <= 0:
            raise ValueError("limit must be > 0")

        result = EnrichmentResult(kind=self.task.kind, strategy=self.strategy.value,
                                  offset=offset, limit=limit)

        if self.strategy is PaginationStrategy.WINDOW:
            candidates, result.skipped, result.has_more = self._window_page(offset, limit)
        else:
            candidates, result.has_more = self._prefiltered_page(offset, limit)

        logger.info("Processing %d %s candidates (offset=%d, limit=%d, strategy=%s)",
                    len(candidates), self.task.kind, offset, limit, self.strategy.value)

        for index, workflow in enumerate(candidates):
            if index and self.request_delay > 0:
                time.sleep(self.request_delay)
            self._process(workflow, result)

        if self.strategy is PaginationStrategy.WINDOW:
            result.next_offset = offset + limit
        else:
            # Succeeded records left the unenriched set; failed ones are still ahead.
            result.next_offset = offset + result.failed

        logger.info("%s enrichment: %d succeeded, %d failed, has_more=%s",
                    self.task.kind, result.succeeded, result.failed, result.has_more)
        return result

    def run_one(self, key: Union[int, str]) -> EnrichmentResult:
        """Regenerate the artifact for one workflow, given its id or slug.

        The workflow is processed even if it already has an artifact; the
        stored one is overwritten. Prerequisites still apply per record.
        """
        self.task.ensure_configured()

        workflow = self.db.get_workflow(key)
        if workflow is None:
            raise CatalogStoreError(f"Workflow not found: {key}", 404)

        result = EnrichmentResult(kind=self.task.kind, strategy='targeted', offset=0, limit=1)
        logger.info("Regenerating %s for %s", self.task.kind, workflow['slug'])
        self._process(workflow, result)
        return result

    def _process(self, workflow: Dict[str, Any], result: EnrichmentResult) -> None:
        result.processed += 1
        label = workflow.get('name') or workflow['id']
        try:
            context = self.task.fetch_context(self.db, workflow)
            artifact = self.task.generate(workflow, context)
            self.task.persist(self.db, workflow, artifact)
        except CatalogError as e:
            logger.warning("Failed to generate %s for %s: %s", self.task.kind, label, e.message)
            result.record_failure(f"{label}: {e.message}")
            return
        except Exception as e:
            logger.exception("Unexpected error generating %s for %s", self.task.kind, label)
            result.record_failure(f"{label}: {e}")
            return

        result.succeeded += 1
        if isinstance(artifact, Heuristic):
            logger.info("Generated %s for %s (heuristic parse)", self.task.kind, label)
        else:
            logger.info("Generated %s for %s", self.task.kind, label)


def enrich(db: WorkflowDatabase, task: EnrichmentTask, offset: int = 0, limit: Optional[int] = None,
           strategy: PaginationStrategy = PaginationStrategy.PREFILTERED,
           request_delay: float = 0.0) -> EnrichmentResult:
    """Run one enrichment batch."""
    return EnrichmentScheduler(db, task, strategy=strategy, request_delay=request_delay).run(offset, limit)


def main():
    """Command-line interface for enrichment batches."""
    import argparse

    from ai_client import build_embedder
    from config import Settings, configure_logging

    parser = argparse.ArgumentParser(description='Generate workflow artifacts with AI services')
    parser.add_argument('kind', choices=['description', 'seo', 'embedding'])
    parser.add_argument('--offset', type=int, default=0)
    parser.add_argument('--limit', type=int, default=None)
    parser.add_argument('--strategy', choices=[s.value for s in PaginationStrategy],
                        default=PaginationStrategy.PREFILTERED.value)
    parser.add_argument('--all', action='store_true', help='Keep running batches until done')
    target = parser.add_mutually_exclusive_group()
    target.add_argument('--id', type=int, help='Regenerate the artifact of one workflow by id')
    target.add_argument('--slug', help='Regenerate the artifact of one workflow by slug')

    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    db = WorkflowDatabase(settings.workflow_db_path)

    if args.kind == 'embedding':
        task = EmbeddingTask(build_embedder(settings))
    elif args.kind == 'seo':
        task = SeoTask(ChatClient.from_settings(settings))
    else:
        task = DescriptionTask(ChatClient.from_settings(settings), GitHubSource.from_settings(settings))

    scheduler = EnrichmentScheduler(db, task, strategy=PaginationStrategy(args.strategy),
                                    request_delay=settings.enrichment_request_delay)

    if args.id is not None or args.slug:
        result = scheduler.run_one(args.id if args.id is not None else args.slug)
        print(f"Regenerated {result.kind}: succeeded {result.succeeded}, failed {result.failed}")
        for error in result.errors:
            print(f"  ! {error}")
        db.close()
        return

    offset = args.offset
    while True:
        result = scheduler.run(offset, args.limit)
        print(f"Processed {result.processed} (succeeded: {result.succeeded}, failed: {result.failed})")
        for error in result.errors:
            print(f"  ! {error}")
        if not (args.all and result.has_more):
            break
        offset = result.next_offset

    if result.has_more:
        print(f"More workflows remain; continue with --offset {result.next_offset}")
    db.close()


if __name__ == "__main__":
    main()
