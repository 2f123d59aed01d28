from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from brokerflow_api.artifact_parser import ParsedBlock, parse_artifact
from brokerflow_api.errors import AmbiguousRecipientMatch
from brokerflow_api.logging_config import get_logger
from brokerflow_api.schemas import (
    ArtifactRead,
    SubmissionAttachment,
    SubmissionRead,
    SubmissionStatus,
    TaskRead,
)

logger = get_logger(__name__)

_LABELED_RECIPIENT_RE = re.compile(r"(?im)^[\s>*_-]*(?:carrier|company|to)[*_]*\s*:[*_\s]*(?P<value>.+?)\s*$")
_HEADING_RE = re.compile(r"(?m)^\s{0,3}#{1,6}\s+(?P<value>.+?)\s*#*\s*$")
_SUBJECT_RE = re.compile(r"(?im)^[\s>*_-]*subject[*_]*\s*:[*_\s]*(?P<value>.+?)\s*$")
_DEAR_EMAIL_RE = re.compile(r"(?i)dear\s+([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_MARKDOWN_EMPHASIS_RE = re.compile(r"[*_`]+")


@dataclass
class SynthesisOutcome:
    submissions: list[SubmissionRead]
    warnings: list[str] = field(default_factory=list)


@dataclass
class _RecipientGroup:
    recipient_name: str
    primary_block: ParsedBlock | None = None
    attachments_by_source: dict[str, SubmissionAttachment] = field(default_factory=dict)


def normalize_recipient(name: str) -> str:
    return " ".join(name.split()).casefold()


def synthesize(
    task: TaskRead,
    dependency_artifacts: Sequence[ArtifactRead],
    *,
    primary_task_id: str | None,
) -> SynthesisOutcome:
    """Build one submission per recipient named in the dependency artifacts.

    ``dependency_artifacts`` is expected in dependency order; within one
    producing task the artifacts are re-ordered by ``artifact_index``. Blocks
    from ``primary_task_id`` provide subject and body, blocks from the other
    dependencies become attachments of the submission with the same recipient.
    """
    warnings: list[str] = []
    groups: dict[str, _RecipientGroup] = {}
    shared_attachments: list[SubmissionAttachment] = []

    by_source = _group_by_producer(dependency_artifacts)
    primary_artifacts = by_source.pop(primary_task_id, []) if primary_task_id is not None else []

    for artifact in primary_artifacts:
        for block in parse_artifact(artifact.content):
            recipient = _recipient_for(block) or (artifact.name or None)
            if recipient is None:
                warnings.append(f"skipped block without recipient in artifact {artifact.id}")
                continue
            key = normalize_recipient(recipient)
            group = groups.get(key)
            if group is None:
                groups[key] = _RecipientGroup(recipient_name=recipient, primary_block=block)
                continue
            if group.primary_block is not None:
                warnings.append(_ambiguous(artifact.task_id, recipient))
            group.primary_block = block

    for source_task_id, artifacts in by_source.items():
        seen: set[str] = set()
        for artifact in artifacts:
            for block in parse_artifact(artifact.content):
                recipient = _recipient_for(block)
                if recipient is None:
                    shared_attachments.append(
                        SubmissionAttachment(name=block.label or artifact.name or source_task_id, content=block.body)
                    )
                    continue
                key = normalize_recipient(recipient)
                if key in seen:
                    warnings.append(_ambiguous(source_task_id, recipient))
                seen.add(key)
                group = groups.setdefault(key, _RecipientGroup(recipient_name=recipient))
                group.attachments_by_source[source_task_id] = SubmissionAttachment(
                    name=block.label or recipient,
                    content=block.body,
                )

    submissions = [
        _build_submission(task, key, group, primary_task_id=primary_task_id, shared_attachments=shared_attachments)
        for key, group in groups.items()
    ]
    logger.info(
        "submissions_synthesized",
        task_id=task.id,
        company_id=task.company_id,
        submission_count=len(submissions),
        warning_count=len(warnings),
    )
    return SynthesisOutcome(submissions=submissions, warnings=warnings)


def extract_subject(body: str) -> str | None:
    match = _SUBJECT_RE.search(body)
    if match is None:
        return None
    subject = _MARKDOWN_EMPHASIS_RE.sub("", match.group("value")).strip()
    return subject or None


def extract_recipient_address(body: str) -> str | None:
    match = _DEAR_EMAIL_RE.search(body)
    if match is not None:
        return match.group(1)
    match = _EMAIL_RE.search(body)
    return match.group(0) if match is not None else None


def placeholder_address(recipient_name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "", recipient_name.lower()) or "carrier"
    return f"underwriter@{slug}.com"


def _group_by_producer(artifacts: Sequence[ArtifactRead]) -> dict[str, list[ArtifactRead]]:
    grouped: dict[str, list[ArtifactRead]] = {}
    for artifact in artifacts:
        grouped.setdefault(artifact.task_id, []).append(artifact)
    for items in grouped.values():
        items.sort(key=lambda item: item.artifact_index)
    return grouped


def _recipient_for(block: ParsedBlock) -> str | None:
    if block.block_id or block.title:
        return block.block_id or block.title
    for pattern in (_LABELED_RECIPIENT_RE, _HEADING_RE):
        match = pattern.search(block.body)
        if match is None:
            continue
        value = _MARKDOWN_EMPHASIS_RE.sub("", match.group("value")).strip()
        if value:
            return value
    return None


def _ambiguous(task_id: str, recipient: str) -> str:
    warning = AmbiguousRecipientMatch(task_id, recipient)
    logger.warning("ambiguous_recipient_match", task_id=task_id, recipient=recipient)
    return str(warning)


def _build_submission(
    task: TaskRead,
    key: str,
    group: _RecipientGroup,
    *,
    primary_task_id: str | None,
    shared_attachments: list[SubmissionAttachment],
) -> SubmissionRead:
    body = group.primary_block.body if group.primary_block is not None else ""
    attachments = list(group.attachments_by_source.values()) + list(shared_attachments)

    address = extract_recipient_address(body)
    if address is None:
        for attachment in group.attachments_by_source.values():
            address = extract_recipient_address(attachment.content)
            if address is not None:
                break

    source_task_ids: list[str] = []
    if group.primary_block is not None and primary_task_id is not None:
        source_task_ids.append(primary_task_id)
    source_task_ids.extend(group.attachments_by_source)

    return SubmissionRead(
        id=_submission_id(task.id, key),
        company_id=task.company_id,
        task_id=task.id,
        recipient_name=group.recipient_name,
        recipient_address=address or placeholder_address(group.recipient_name),
        subject=extract_subject(body) or f"{task.name} - {group.recipient_name}",
        body=body,
        attachments=attachments,
        status=SubmissionStatus.READY if group.primary_block is not None else SubmissionStatus.DRAFT,
        source_task_ids=source_task_ids,
    )


def _submission_id(task_id: str, recipient_key: str) -> str:
    digest = hashlib.sha1(f"{task_id}\x00{recipient_key}".encode("utf-8")).hexdigest()
    return f"sub-{digest[:16]}"
