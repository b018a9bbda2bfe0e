"""LLM-backed claim extractor using the Anthropic API.

Only usable when ANTHROPIC_API_KEY is set. Uses a small model first and
falls back to a larger one if the call fails.
"""

import json
import logging
import os
from typing import Optional

import anthropic

from research_vault.errors import ExtractionError
from research_vault.knowledge.schemas import KnowledgeDocument
from research_vault.synthesis.schemas import Claim

logger = logging.getLogger(__name__)

EXTRACTION_MODEL = os.environ.get("VAULT_EXTRACTION_MODEL", "claude-haiku-4-5-20251001")
EXTRACTION_MODEL_FALLBACK = os.environ.get("VAULT_EXTRACTION_MODEL_FALLBACK", "claude-sonnet-4-5-20250929")
MAX_BODY_CHARS = 60_000

SYSTEM_PROMPT = """You extract factual claims from technical research notes.

Return ONLY a JSON object of the form:
{"claims": [{"subject": "...", "predicate": "...", "value": "..."}]}

Rules:
- One claim per concrete assertion (a version, a default, a limit, a recommendation).
- subject: the thing the claim is about, as short as possible ("react useEffect").
- predicate: a camelCase relation ("hasDefault", "recommends", "requiresVersion").
- value: the asserted value, verbatim where possible.
- Do not invent claims that the text does not make."""


def get_anthropic_client() -> Optional[anthropic.Anthropic]:
    """Anthropic client if ANTHROPIC_API_KEY is set, else None."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None
    return anthropic.Anthropic(api_key=api_key)


def parse_llm_json_response(raw_text: str) -> dict:
    """Parse JSON from an LLM response, stripping markdown code fences.

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
    """
    content = raw_text.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]
    return json.loads(content.strip())


class LLMClaimExtractor:
    def __init__(
        self,
        client: Optional[anthropic.Anthropic] = None,
        model: str = EXTRACTION_MODEL,
        fallback_model: str = EXTRACTION_MODEL_FALLBACK,
        max_tokens: int = 4000,
    ):
        self.client = client or get_anthropic_client()
        if self.client is None:
            raise RuntimeError("LLM claim extraction unavailable. Set ANTHROPIC_API_KEY.")
        self.model = model
        self.fallback_model = fallback_model
        self.max_tokens = max_tokens

    def _call(self, prompt: str) -> str:
        for attempt_model in [self.model, self.fallback_model]:
            try:
                response = self.client.messages.create(
                    model=attempt_model,
                    max_tokens=self.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                )
                return response.content[0].text
            except anthropic.APIError as e:
                if attempt_model == self.fallback_model:
                    raise RuntimeError(f"Both {self.model} and {self.fallback_model} failed: {e}") from e
                logger.warning(f"Model {attempt_model} failed, trying {self.fallback_model}: {e}")
        raise RuntimeError("All model attempts exhausted")

    def extract(self, doc: KnowledgeDocument) -> list[Claim]:
        prompt = f"# {doc.topic}\n\n{doc.body[:MAX_BODY_CHARS]}"
        try:
            raw = self._call(prompt)
            data = parse_llm_json_response(raw)
        except (RuntimeError, json.JSONDecodeError) as e:
            raise ExtractionError(doc.id, str(e)) from e

        claims = []
        for item in data.get("claims", []) if isinstance(data, dict) else []:
            if not isinstance(item, dict):
                continue
            subject = str(item.get("subject", "")).strip()
            predicate = str(item.get("predicate", "")).strip()
            value = str(item.get("value", "")).strip()
            if subject and predicate and value:
                claims.append(Claim(subject=subject, predicate=predicate, value=value, source_doc_id=doc.id))
        logger.info(f"LLM extracted {len(claims)} claims from {doc.id}")
        return claims
