"""
Spot-check generated descriptions against the workflows they describe.

A description passes when it mentions enough of the services the workflow
actually uses, names no well-known service the workflow does not use, and
has a sensible length.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from exceptions import FileFetchError
from source_fetcher import GitHubSource
from workflow_db import WorkflowDatabase
from workflow_parser import parse_workflow

logger = logging.getLogger(__name__)

MIN_MATCH_RATE = 0.3
MIN_DESCRIPTION_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 2000
SERVICES_CHECKED = 5

COMMON_SERVICES = (
    'slack', 'gmail', 'sheets', 'airtable', 'hubspot',
    'salesforce', 'twilio', 'telegram', 'discord', 'notion',
    'trello', 'asana', 'jira', 'github', 'gitlab',
    'stripe', 'paypal', 'shopify', 'wordpress', 'mailchimp',
)


@dataclass
class AuditReport:
    total: int = 0
    matched: int = 0
    mismatched: int = 0
    mismatch_details: List[str] = field(default_factory=list)

    @property
    def confidence(self) -> int:
        checked = self.matched + self.mismatched
        return round(self.matched / checked * 100) if checked else 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['confidence'] = self.confidence
        return data


def service_names(workflow: Dict[str, Any]) -> List[str]:
    """Service part of each node type, e.g. ``n8n-nodes-base.slack`` -> ``slack``."""
    names = []
    for node in workflow.get('nodes') or []:
        node_type = node.get('type') if isinstance(node, dict) else None
        if not isinstance(node_type, str):
            continue
        name = node_type.lower().replace('n8n-nodes-base.', '')
        if len(name) > 3:
            names.append(name)
    return names


def check_description(workflow: Dict[str, Any], description: Dict[str, Any]) -> List[str]:
    """Return the reasons ``description`` fails the audit (empty if it passes)."""
    content = ' '.join(
        description.get(key) or '' for key in ('description', 'use_cases', 'setup_guide')
    ).lower()
    workflow_text = json.dumps(workflow).lower()

    checked = service_names(workflow)[:SERVICES_CHECKED]
    mentioned = sum(1 for service in checked if service in content)
    match_rate = mentioned / len(checked) if checked else 0.0

    hallucinated = [s for s in COMMON_SERVICES if s in content and s not in workflow_text]

    reasons = []
    if hallucinated:
        reasons.append(f"{len(hallucinated)} hallucinated services ({', '.join(hallucinated)})")
    if match_rate <= MIN_MATCH_RATE:
        reasons.append(f"Low match rate: {round(match_rate * 100)}%")
    length = len(description.get('description') or '')
    if not MIN_DESCRIPTION_LENGTH < length < MAX_DESCRIPTION_LENGTH:
        reasons.append(f"Description length {length} out of range")
    return reasons


def audit_descriptions(db: WorkflowDatabase, source: GitHubSource, sample_size: int = 20) -> AuditReport:
    """Audit up to ``sample_size`` described workflows.

    Workflows whose JSON cannot be fetched or parsed are left out of the
    matched/mismatched counts.
    """
    samples = db.described_workflows(limit=sample_size)
    report = AuditReport(total=len(samples))

    for sample in samples:
        try:
            workflow = parse_workflow(source.download(sample['raw_url'], sample['name']))
        except FileFetchError as e:
            logger.info("Skipping audit of %s: %s", sample['name'], e.message)
            continue
        if workflow is None:
            logger.info("Skipping audit of %s: not a workflow", sample['name'])
            continue

        reasons = check_description(workflow, sample)
        if reasons:
            report.mismatched += 1
            if len(report.mismatch_details) < 10:
                report.mismatch_details.append(f"{sample['name']}: {reasons[0]}")
            logger.info("Mismatch: %s - %s", sample['name'], '; '.join(reasons))
        else:
            report.matched += 1

    return report
