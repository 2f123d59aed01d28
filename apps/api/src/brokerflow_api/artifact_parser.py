"""Split AI-generated artifact text into addressable blocks.

Generated output marks each logical document with a top-level
``<artifact id="..." title="...">...</artifact>`` region. Some generations wrap
the regions in an ``<artifacts>`` container and older ones carry no tags at
all; both shapes are accepted. Parsing never raises: a trailing unclosed
block is dropped and the complete blocks before it are kept, any other
malformed markup is logged and the whole text is returned as a single bare
block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from brokerflow_api.errors import MalformedArtifact
from brokerflow_api.logging_config import get_logger

logger = get_logger(__name__)

_OPEN_TAG_RE = re.compile(r"<artifact(?P<attrs>\s[^>]*)?>", re.IGNORECASE)
_CLOSE_TAG_RE = re.compile(r"</artifact\s*>", re.IGNORECASE)
_CONTAINER_OPEN_RE = re.compile(r"<artifacts(?:\s[^>]*)?>", re.IGNORECASE)
_CONTAINER_CLOSE_RE = re.compile(r"</artifacts\s*>", re.IGNORECASE)
_ATTRIBUTE_RE = re.compile(r"""(?P<key>[A-Za-z_][\w\-]*)\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)')""")


class BlockKind(str, Enum):
    TAGGED = "tagged"
    WRAPPED = "wrapped"
    BARE = "bare"


@dataclass(frozen=True)
class ParsedBlock:
    body: str
    block_id: str | None = None
    title: str | None = None
    # Where the block came from does not change what it says.
    kind: BlockKind = field(default=BlockKind.TAGGED, compare=False)

    @property
    def label(self) -> str | None:
        return self.title or self.block_id


def parse_artifact(content: str | None) -> list[ParsedBlock]:
    if not content or not content.strip():
        return []

    try:
        blocks = _scan_blocks(content)
    except MalformedArtifact as exc:
        logger.warning("artifact_parse_degraded", reason=exc.detail, offset=exc.offset)
        return [ParsedBlock(body=content.strip(), kind=BlockKind.BARE)]

    if blocks:
        return blocks

    bare_body = _strip_container_tags(content).strip()
    if not bare_body:
        return []
    return [ParsedBlock(body=bare_body, kind=BlockKind.BARE)]


def has_artifact_blocks(content: str | None) -> bool:
    return bool(content) and _OPEN_TAG_RE.search(content) is not None


def strip_artifact_blocks(content: str) -> str:
    """Return the conversational text around the blocks."""
    pieces: list[str] = []
    position = 0
    while True:
        opening = _OPEN_TAG_RE.search(content, position)
        if opening is None:
            break
        closing = _CLOSE_TAG_RE.search(content, opening.end())
        if closing is None:
            break
        pieces.append(content[position:opening.start()])
        position = closing.end()
    pieces.append(content[position:])
    return _strip_container_tags("".join(pieces)).strip()


def _scan_blocks(content: str) -> list[ParsedBlock]:
    containers = _container_spans(content)
    blocks: list[ParsedBlock] = []
    position = 0

    while True:
        opening = _OPEN_TAG_RE.search(content, position)
        if opening is None:
            break
        closing = _CLOSE_TAG_RE.search(content, opening.end())
        if closing is None:
            if not blocks:
                raise MalformedArtifact("unclosed <artifact> tag", offset=opening.start())
            # Truncated generator output: keep the blocks that did close.
            logger.warning("artifact_truncated", offset=opening.start(), kept_blocks=len(blocks))
            break
        nested = _OPEN_TAG_RE.search(content, opening.end(), closing.start())
        if nested is not None:
            raise MalformedArtifact("nested <artifact> tag", offset=nested.start())

        attributes = _parse_attributes(opening.group("attrs") or "")
        wrapped = any(start <= opening.start() < end for start, end in containers)
        blocks.append(
            ParsedBlock(
                body=content[opening.end():closing.start()].strip(),
                block_id=attributes.get("id") or None,
                title=attributes.get("title") or attributes.get("name") or None,
                kind=BlockKind.WRAPPED if wrapped else BlockKind.TAGGED,
            )
        )
        position = closing.end()

    return blocks


def _container_spans(content: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    for opening in _CONTAINER_OPEN_RE.finditer(content):
        closing = _CONTAINER_CLOSE_RE.search(content, opening.end())
        end = closing.end() if closing is not None else len(content)
        spans.append((opening.start(), end))
    return spans


def _parse_attributes(raw: str) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for match in _ATTRIBUTE_RE.finditer(raw):
        value = match.group("dq") if match.group("dq") is not None else match.group("sq")
        attributes[match.group("key").lower()] = value.strip()
    return attributes


def _strip_container_tags(content: str) -> str:
    return _CONTAINER_CLOSE_RE.sub("", _CONTAINER_OPEN_RE.sub("", content))
