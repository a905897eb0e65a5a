#!/usr/bin/env python3
"""
Workflow parser and classifier.
Turns a raw n8n workflow file into the metadata stored in the catalog.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

COMPLEXITY_TIERS = ("Easy", "Medium", "Advanced")
EASY_MAX_NODES = 8
MEDIUM_MAX_NODES = 20

DEFAULT_CATEGORY = "General"

# Matched against the containing folder name. First match in this order wins.
CATEGORY_RULES: Tuple[Tuple[str, str], ...] = (
    ("hubspot", "CRM & Sales"),
    ("salesforce", "CRM & Sales"),
    ("pipedrive", "CRM & Sales"),
    ("zoho", "CRM & Sales"),
    ("mailchimp", "Marketing"),
    ("activecampaign", "Marketing"),
    ("facebook", "Marketing"),
    ("googleads", "Marketing"),
    ("slack", "Communication"),
    ("discord", "Communication"),
    ("telegram", "Communication"),
    ("twitter", "Social Media"),
    ("instagram", "Social Media"),
    ("linkedin", "Social Media"),
    ("airtable", "Business Operations"),
    ("googlesheets", "Business Operations"),
    ("asana", "Business Operations"),
    ("trello", "Business Operations"),
    ("shopify", "E-commerce"),
    ("stripe", "E-commerce"),
    ("openai", "AI-Powered"),
    ("chatgpt", "AI-Powered"),
    ("anthropic", "AI-Powered"),
    ("googledrive", "File Management"),
    ("aws", "Cloud Services"),
)

# Service names looked for in lower-cased node types; each becomes its own tag.
SERVICE_TAGS: Tuple[str, ...] = (
    "hubspot", "salesforce", "pipedrive", "zoho", "mailchimp",
    "activecampaign", "slack", "telegram", "discord", "twitter",
    "instagram", "facebook", "linkedin", "google", "gmail",
    "airtable", "notion", "trello", "asana", "github",
    "shopify", "stripe", "openai", "anthropic", "webhook",
)

# (node type substrings, tag)
CAPABILITY_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("http", "webhook"), "api"),
    (("email",), "email"),
    (("schedule",), "scheduling"),
    (("code", "function"), "custom-code"),
)

# (path substring, tag)
PATH_TAG_RULES: Tuple[Tuple[str, str], ...] = (
    ("automation", "automation"),
    ("crm", "crm"),
    ("lead", "leads"),
    ("marketing", "marketing"),
    ("social", "social-media"),
)

# Words kept upper-case when formatting a file name for display
DISPLAY_ACRONYMS = {"http": "HTTP", "api": "API", "ai": "AI", "crm": "CRM", "rss": "RSS", "seo": "SEO"}


@dataclass
class CatalogRecord:
    """A classified workflow, ready to be upserted into the catalog."""
    slug: str
    name: str
    path: str
    raw_url: str
    size_bytes: int
    category: str
    tags: List[str]
    node_count: int
    has_credentials: bool
    complexity: str
    file_hash: Optional[str] = None
    connection_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slug': self.slug,
            'name': self.name,
            'path': self.path,
            'raw_url': self.raw_url,
            'size_bytes': self.size_bytes,
            'category': self.category,
            'tags': list(self.tags),
            'node_count': self.node_count,
            'has_credentials': self.has_credentials,
            'complexity': self.complexity,
            'file_hash': self.file_hash,
        }


def parse_workflow(raw: Union[bytes, str, None]) -> Optional[Dict[str, Any]]:
    """Parse raw file content as an n8n workflow.

    Returns None when the content is not a workflow: undecodable bytes,
    invalid JSON, a non-object document, or no ``nodes`` list.
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8-sig')
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get('nodes'), list):
        return None
    return data


def _nodes(workflow: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [node for node in workflow.get('nodes') or [] if isinstance(node, dict)]


def _node_type(node: Dict[str, Any]) -> str:
    node_type = node.get('type')
    return node_type.lower() if isinstance(node_type, str) else ''


def folder_name(path: str) -> str:
    """Return the containing folder of ``path`` (the file name if there is none)."""
    segments = path.split('/')
    if len(segments) >= 2 and segments[-2]:
        return segments[-2]
    return segments[-1]


def detect_category(path: str, rules: Tuple[Tuple[str, str], ...] = CATEGORY_RULES) -> str:
    folder = folder_name(path).lower()
    for key, category in rules:
        if key in folder:
            return category
    return DEFAULT_CATEGORY


def extract_tags(workflow: Dict[str, Any], path: str) -> List[str]:
    """Collect integration, capability and path tags as a sorted set."""
    tags = set()

    for node in _nodes(workflow):
        node_type = _node_type(node)
        if not node_type:
            continue
        for service in SERVICE_TAGS:
            if service in node_type:
                tags.add(service)
        for needles, tag in CAPABILITY_RULES:
            if any(needle in node_type for needle in needles):
                tags.add(tag)

    path_lower = path.lower()
    for needle, tag in PATH_TAG_RULES:
        if needle in path_lower:
            tags.add(tag)

    return sorted(tags)


def has_credentials(workflow: Dict[str, Any]) -> bool:
    """Heuristic: does any node look like it needs credentials?"""
    for node in _nodes(workflow):
        if node.get('credentials'):
            return True
        if 'auth' in _node_type(node):
            return True
        parameters = node.get('parameters')
        if isinstance(parameters, dict) and 'authentication' in parameters:
            return True
    return False


def get_complexity(node_count: int) -> str:
    if node_count <= EASY_MAX_NODES:
        return 'Easy'
    if node_count <= MEDIUM_MAX_NODES:
        return 'Medium'
    return 'Advanced'


def make_slug(path: str) -> str:
    return re.sub(r'[^a-zA-Z0-9]', '-', path).lower()


def connection_count(workflow: Dict[str, Any]) -> int:
    """Count edges in the connections map, ignoring malformed entries."""
    connections = workflow.get('connections')
    if not isinstance(connections, dict):
        return 0

    total = 0
    for outputs in connections.values():
        if not isinstance(outputs, dict):
            continue
        for branches in outputs.values():
            if not isinstance(branches, list):
                continue
            for branch in branches:
                if isinstance(branch, list):
                    total += sum(1 for target in branch if isinstance(target, dict))
    return total


def format_workflow_name(name: str) -> str:
    """Format a file name stem for better readability."""
    if not name:
        return ""

    parts = [part for part in re.split(r'[-_\s]+', name) if part]

    # Skip the first part if it's just a number
    if len(parts) > 1 and parts[0].isdigit():
        parts = parts[1:]

    readable_parts = []
    for part in parts:
        acronym = DISPLAY_ACRONYMS.get(part.lower())
        readable_parts.append(acronym or part[:1].upper() + part[1:])
    return ' '.join(readable_parts)


def workflow_display_name(workflow: Dict[str, Any], path: str) -> str:
    name = workflow.get('name')
    if isinstance(name, str) and name.strip():
        return name.strip()
    stem = path.split('/')[-1]
    if stem.lower().endswith('.json'):
        stem = stem[:-5]
    return format_workflow_name(stem) or path


def classify(path: str, raw: Union[bytes, str, None], raw_url: str = '',
             size_bytes: Optional[int] = None, file_hash: Optional[str] = None) -> Optional[CatalogRecord]:
    """Parse and classify one workflow file. Returns None if it is not a workflow."""
    workflow = parse_workflow(raw)
    if workflow is None:
        return None

    node_count = len(workflow['nodes'])
    if size_bytes is None:
        size_bytes = len(raw.encode('utf-8')) if isinstance(raw, str) else len(raw)

    return CatalogRecord(
        slug=make_slug(path),
        name=workflow_display_name(workflow, path),
        path=path,
        raw_url=raw_url,
        size_bytes=size_bytes,
        category=detect_category(path),
        tags=extract_tags(workflow, path),
        node_count=node_count,
        has_credentials=has_credentials(workflow),
        complexity=get_complexity(node_count),
        file_hash=file_hash,
        connection_count=connection_count(workflow),
    )
