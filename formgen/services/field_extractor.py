"""
AI field extraction: template text in, validated ``Placeholder`` records out.

The completion model sits behind the one-method ``CompletionClient`` protocol.
``OllamaCompletionClient`` implements it against Ollama's ``/api/generate``;
tests pass a scripted fake.

Public API
----------
FieldExtractor.extract_fields(document_text)     -> List[Placeholder]
parse_fields_response(raw)                       -> AIFieldsResponse
placeholder_text(field_type, label)              -> str
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from typing import List, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from formgen.config import settings
from formgen.exceptions import AIExtractionError
from formgen.models.database_models import FieldType
from formgen.models.schemas import AIFieldSpec, AIFieldsResponse, Placeholder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Completion clients
# ---------------------------------------------------------------------------

class CompletionClient(Protocol):
    """Single-prompt text completion."""

    async def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str: ...


class OllamaCompletionClient:
    """``CompletionClient`` backed by Ollama ``/api/generate`` in JSON mode.  No retries."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout_seconds = timeout or settings.LLM_TIMEOUT
        self.timeout = httpx.Timeout(self.timeout_seconds, connect=10.0)

    async def complete(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/generate",
                    json={
                        "model": self.model,
                        "prompt": prompt,
                        "stream": False,
                        "format": "json",
                        "options": {
                            "num_predict": max_tokens,
                            "temperature": temperature,
                        },
                    },
                )
        except httpx.TimeoutException as exc:
            raise AIExtractionError(
                f"LLM request timed out after {self.timeout_seconds:.0f} s", original_error=exc
            ) from exc
        except httpx.HTTPError as exc:
            raise AIExtractionError(f"LLM request failed: {exc}", original_error=exc) from exc

        if resp.status_code != 200:
            raise AIExtractionError(f"Ollama returned HTTP {resp.status_code}: {resp.text[:300]}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise AIExtractionError(
                f"Ollama returned a non-JSON body: {resp.text[:300]}", original_error=exc
            ) from exc
        if not isinstance(body, dict):
            raise AIExtractionError("Ollama returned an unexpected response shape")
        return body.get("response", "")

    async def check_health(self) -> bool:
        """Return True if Ollama answers ``/api/tags``."""
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(5.0)) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return False


# ---------------------------------------------------------------------------
# Prompt template
# ---------------------------------------------------------------------------

_FIELD_PROMPT = """\
You are analysing a document template to build a client intake form.

Identify every piece of information a client must supply to complete the
document below (names, addresses, dates, amounts, choices, signatures, ...).

Document:
---
{document_text}
---

For each field provide:
- name: camelCase identifier with no spaces (e.g. "fullName", "propertyAddress")
- type: one of "text", "email", "number", "date", "select", "textarea", "checkbox", "radio"
- label: short human-readable label
- description: optional one-sentence help text
- required: true or false
- options: list of choices, ONLY for "select", "radio" or "checkbox" fields

Do not repeat a field name.

Respond ONLY with a valid JSON object. No explanation, no markdown:
{{"fields": [{{"name": "fullName", "type": "text", "label": "Full Name", "description": "Legal name of the client", "required": true}}]}}\
"""


def build_prompt(document_text: str, max_chars: Optional[int] = None) -> str:
    limit = max_chars if max_chars is not None else settings.LLM_MAX_INPUT_CHARS
    return _FIELD_PROMPT.format(document_text=document_text[:limit])


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_CODE_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def _strip_code_fence(text: str) -> str:
    """Remove one surrounding markdown code fence, if present."""
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


def parse_fields_response(raw: str) -> AIFieldsResponse:
    """
    Parse the model output strictly.

    One surrounding code fence is tolerated; anything else that is not a JSON
    object with a valid ``fields`` array raises ``AIExtractionError``.  A single
    bad field rejects the whole response.
    """
    text = _strip_code_fence(raw).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AIExtractionError(f"LLM response is not valid JSON: {exc}", original_error=exc) from exc

    if not isinstance(data, dict) or not isinstance(data.get("fields"), list):
        raise AIExtractionError("LLM response has no 'fields' array")

    try:
        return AIFieldsResponse.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise AIExtractionError(
            f"LLM response failed field validation ({exc.error_count()} error(s)); "
            f"first at {location}: {first.get('msg')}",
            original_error=exc,
        ) from exc


def placeholder_text(field_type: FieldType, label: str) -> str:
    """Example text shown in forms and used in documents for unmatched fields."""
    if field_type in (FieldType.TEXT, FieldType.TEXTAREA):
        return f"Enter {label.lower()}"
    if field_type == FieldType.EMAIL:
        return "Enter email address"
    if field_type == FieldType.NUMBER:
        return "Enter number"
    if field_type == FieldType.DATE:
        return "Select date"
    if field_type == FieldType.SELECT:
        return f"Select {label.lower()}"
    return label  # checkbox / radio


def to_placeholder(spec: AIFieldSpec) -> Placeholder:
    return Placeholder(
        id=str(uuid.uuid4()),
        name=spec.name,
        label=spec.label,
        type=spec.type,
        required=spec.required,
        description=spec.description,
        options=spec.options,
        placeholder=placeholder_text(spec.type, spec.label),
    )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class FieldExtractor:
    """Asks the completion model for the intake fields of a document."""

    def __init__(
        self,
        client: CompletionClient,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_input_chars: Optional[int] = None,
    ) -> None:
        self.client = client
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.max_input_chars = max_input_chars or settings.LLM_MAX_INPUT_CHARS

    async def extract_fields(self, document_text: str) -> List[Placeholder]:
        """
        Return one ``Placeholder`` per field proposed by the model.

        Short or empty text is sent as-is.

        Raises:
            AIExtractionError: The call failed, returned nothing, or returned
                               content of the wrong shape.
        """
        prompt = build_prompt(document_text or "", self.max_input_chars)
        raw = await self.client.complete(
            prompt, temperature=self.temperature, max_tokens=self.max_tokens
        )
        if not raw or not raw.strip():
            raise AIExtractionError("LLM returned no content")

        parsed = parse_fields_response(raw)
        placeholders = [to_placeholder(spec) for spec in parsed.fields]
        logger.info(
            "Extracted %d field(s) from %d characters of text",
            len(placeholders),
            len(document_text or ""),
        )
        return placeholders
