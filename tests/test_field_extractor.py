"""Tests for AI field extraction and strict response parsing."""
import httpx
import pytest

from formgen.exceptions import AIExtractionError
from formgen.models.database_models import FieldType
from formgen.services.field_extractor import (
    FieldExtractor,
    OllamaCompletionClient,
    build_prompt,
    parse_fields_response,
    placeholder_text,
)
from tests.conftest import SAMPLE_FIELDS, FakeCompletionClient, fields_json


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def test_parse_valid_response():
    parsed = parse_fields_response(fields_json(SAMPLE_FIELDS))
    assert [f.name for f in parsed.fields] == ["fullName", "email", "propertyAddress"]
    assert parsed.fields[1].type == FieldType.EMAIL


def test_parse_tolerates_one_code_fence():
    raw = "```json\n" + fields_json(SAMPLE_FIELDS) + "\n```"
    assert len(parse_fields_response(raw).fields) == 3


def test_parse_rejects_prose():
    with pytest.raises(AIExtractionError):
        parse_fields_response("Here are your fields: fullName, email")


def test_parse_rejects_missing_fields_array():
    with pytest.raises(AIExtractionError):
        parse_fields_response('{"items": []}')
    with pytest.raises(AIExtractionError):
        parse_fields_response('[{"name": "x"}]')


def test_parse_rejects_missing_required_flag():
    with pytest.raises(AIExtractionError):
        parse_fields_response(fields_json([{"name": "fullName", "type": "text", "label": "Full Name"}]))


def test_parse_rejects_unknown_type():
    with pytest.raises(AIExtractionError):
        parse_fields_response(
            fields_json([{"name": "photo", "type": "file", "label": "Photo", "required": False}])
        )


def test_parse_rejects_duplicate_names():
    fields = [SAMPLE_FIELDS[0], dict(SAMPLE_FIELDS[0])]
    with pytest.raises(AIExtractionError):
        parse_fields_response(fields_json(fields))


def test_parse_rejects_names_with_spaces():
    with pytest.raises(AIExtractionError):
        parse_fields_response(
            fields_json([{"name": "full name", "type": "text", "label": "Full Name", "required": True}])
        )


def test_select_requires_options():
    with pytest.raises(AIExtractionError):
        parse_fields_response(
            fields_json([{"name": "plan", "type": "select", "label": "Plan", "required": True}])
        )


def test_options_dropped_for_non_choice_types():
    parsed = parse_fields_response(
        fields_json(
            [{"name": "city", "type": "text", "label": "City", "required": False, "options": ["A", "B"]}]
        )
    )
    assert parsed.fields[0].options is None


def test_unknown_keys_are_ignored():
    field = dict(SAMPLE_FIELDS[0], confidenceScore=0.9)
    assert parse_fields_response(fields_json([field])).fields[0].name == "fullName"


def test_placeholder_text_by_type():
    assert placeholder_text(FieldType.TEXT, "Full Name") == "Enter full name"
    assert placeholder_text(FieldType.EMAIL, "Email") == "Enter email address"
    assert placeholder_text(FieldType.DATE, "Start") == "Select date"
    assert placeholder_text(FieldType.CHECKBOX, "I agree") == "I agree"


def test_build_prompt_truncates_document_text():
    prompt = build_prompt("x" * 50 + "TAIL", max_chars=50)
    assert "x" * 50 in prompt
    assert "TAIL" not in prompt


# ---------------------------------------------------------------------------
# FieldExtractor
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_extract_fields_returns_placeholders():
    client = FakeCompletionClient(fields_json(SAMPLE_FIELDS))
    extractor = FieldExtractor(client, temperature=0.1, max_tokens=500)

    fields = await extractor.extract_fields("Tenant: {{fullName}}")

    assert [f.name for f in fields] == ["fullName", "email", "propertyAddress"]
    assert fields[0].placeholder == "Enter full name"
    assert len({f.id for f in fields}) == 3
    assert "Tenant: {{fullName}}" in client.prompts[0]
    assert client.calls[0] == {"temperature": 0.1, "max_tokens": 500}


@pytest.mark.asyncio
async def test_extract_fields_sends_empty_text_as_is():
    client = FakeCompletionClient(fields_json([]))
    fields = await FieldExtractor(client).extract_fields("")
    assert fields == []
    assert len(client.prompts) == 1


@pytest.mark.asyncio
async def test_extract_fields_empty_response_raises():
    client = FakeCompletionClient("   ")
    with pytest.raises(AIExtractionError):
        await FieldExtractor(client).extract_fields("text")


@pytest.mark.asyncio
async def test_extract_fields_single_bad_field_rejects_all():
    bad = SAMPLE_FIELDS + [{"name": "plan", "type": "radio", "label": "Plan", "required": True}]
    client = FakeCompletionClient(fields_json(bad))
    with pytest.raises(AIExtractionError):
        await FieldExtractor(client).extract_fields("text")


# ---------------------------------------------------------------------------
# Ollama client
# ---------------------------------------------------------------------------

class _FailingAsyncClient:
    """Stands in for httpx.AsyncClient and raises *error* on every request."""

    error: Exception = httpx.ConnectError("connection refused")

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def post(self, *args, **kwargs):
        raise self.error

    async def get(self, *args, **kwargs):
        raise self.error


@pytest.mark.asyncio
async def test_ollama_client_wraps_connection_errors(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", _FailingAsyncClient)
    client = OllamaCompletionClient(base_url="http://ollama.invalid")
    with pytest.raises(AIExtractionError):
        await client.complete("prompt", temperature=0.1, max_tokens=10)
    assert await client.check_health() is False


@pytest.mark.asyncio
async def test_ollama_client_wraps_timeouts(monkeypatch):
    class _TimingOut(_FailingAsyncClient):
        error = httpx.ReadTimeout("too slow")

    monkeypatch.setattr(httpx, "AsyncClient", _TimingOut)
    client = OllamaCompletionClient(base_url="http://ollama.invalid", timeout=3)
    with pytest.raises(AIExtractionError, match="timed out"):
        await client.complete("prompt", temperature=0.1, max_tokens=10)


@pytest.mark.asyncio
async def test_ollama_client_rejects_non_json_reply(monkeypatch):
    class _HtmlReply(_FailingAsyncClient):
        async def post(self, url, **kwargs):
            return httpx.Response(200, text="<html>proxy error</html>", request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "AsyncClient", _HtmlReply)
    client = OllamaCompletionClient(base_url="http://ollama.invalid")
    with pytest.raises(AIExtractionError, match="non-JSON"):
        await client.complete("prompt", temperature=0.1, max_tokens=10)
