"""Claim extraction from knowledge documents.

The default extractor reads claim bullets written as

    - subject | predicate | value

anywhere in a document body. Other bullets and prose are ignored. A bullet
that uses the pipe syntax but does not have exactly three non-empty parts
makes the whole document unparseable (ExtractionError).
"""

import logging
import re
from typing import Protocol, runtime_checkable

from research_vault.errors import ExtractionError
from research_vault.knowledge.schemas import KnowledgeDocument
from research_vault.synthesis.schemas import Claim

logger = logging.getLogger(__name__)

_BULLET_RE = re.compile(r"^\s*[-*+]\s+(.*\|.*)$")


@runtime_checkable
class ClaimExtractor(Protocol):
    def extract(self, doc: KnowledgeDocument) -> list[Claim]:
        ...


class MarkdownClaimExtractor:
    def extract(self, doc: KnowledgeDocument) -> list[Claim]:
        claims = []
        in_fence = False
        for line_no, line in enumerate(doc.body.splitlines(), start=1):
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            match = _BULLET_RE.match(line)
            if not match:
                continue
            parts = [p.strip() for p in match.group(1).split("|")]
            if len(parts) != 3 or not all(parts):
                raise ExtractionError(doc.id, f"malformed claim on line {line_no}: {line.strip()!r}")
            subject, predicate, value = parts
            claims.append(Claim(
                subject=subject,
                predicate=predicate,
                value=value,
                source_doc_id=doc.id,
            ))
        logger.debug(f"Extracted {len(claims)} claims from {doc.id}")
        return claims
