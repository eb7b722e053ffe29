"""Tests for provider output validation and the Gemini client."""

import json

import httpx
import pytest

from toolshelf.enrichment.exceptions import ProviderError
from toolshelf.enrichment.provider import (
    EnrichedFields,
    GeminiProvider,
    build_prompt,
    parse_enriched_fields,
)
from toolshelf.models.global_tool import PricingBucket

from tests.conftest import provider_payload

HINTS = ["Automation", "Productivity", "Other"]


def _gemini_body(payload) -> dict:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _provider(handler, api_key="test-key") -> GeminiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiProvider(api_key=api_key, model="gemini-test", client=client)


class TestEnrichedFields:
    """Validation of decoded provider payloads."""

    def test_valid_payload(self):
        fields = parse_enriched_fields(provider_payload(), HINTS)

        assert isinstance(fields, EnrichedFields)
        assert fields.name == "Notion"
        assert fields.best_use_cases == ["Team wikis", "Project tracking", "Personal notes"]
        assert fields.pricing_bucket == PricingBucket.FREEMIUM
        assert fields.website_url == "https://www.notion.so"

    def test_missing_required_field(self):
        payload = provider_payload()
        del payload["summary"]

        with pytest.raises(ProviderError, match="summary"):
            parse_enriched_fields(payload, HINTS)

    def test_unknown_pricing_bucket(self):
        with pytest.raises(ProviderError):
            parse_enriched_fields(provider_payload(pricingBucket="Cheap"), HINTS)

    def test_overlong_name(self):
        with pytest.raises(ProviderError, match="name"):
            parse_enriched_fields(provider_payload(name="N" * 300), HINTS)

    def test_overlong_category(self):
        with pytest.raises(ProviderError, match="category"):
            parse_enriched_fields(provider_payload(category="C" * 150))

    def test_non_object_payload(self):
        with pytest.raises(ProviderError):
            parse_enriched_fields(["not", "an", "object"], HINTS)

    def test_blank_urls_become_none(self):
        fields = parse_enriched_fields(provider_payload(logoUrl="  ", websiteUrl=""), HINTS)

        assert fields.logo_url is None
        assert fields.website_url is None

    def test_lists_are_cleaned(self):
        fields = parse_enriched_fields(
            provider_payload(tags=[" notes ", "", None, "wiki"], integrations=None), HINTS
        )

        assert fields.tags == ["notes", "wiki"]
        assert fields.integrations == []

    def test_category_outside_hints_falls_back(self):
        fields = parse_enriched_fields(provider_payload(category="Note Taking"), HINTS)
        assert fields.category == "Other"

    def test_category_matches_case_insensitively(self):
        fields = parse_enriched_fields(provider_payload(category="productivity"), HINTS)
        assert fields.category == "Productivity"

    def test_no_hints_keeps_category(self):
        fields = parse_enriched_fields(provider_payload(category="Note Taking"))
        assert fields.category == "Note Taking"


class TestBuildPrompt:
    """Prompt rendering."""

    def test_lists_categories(self):
        prompt = build_prompt("notion.so", HINTS)

        assert '"notion.so"' in prompt
        assert "[Automation, Productivity, Other]" in prompt


class TestGeminiProvider:
    """Gemini REST client over a mocked transport."""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-goog-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_gemini_body(provider_payload()))

        fields = await _provider(handler).enrich("https://notion.so", HINTS)

        assert fields.name == "Notion"
        assert seen["url"].endswith("/models/gemini-test:generateContent")
        assert seen["key"] == "test-key"
        config = seen["body"]["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert "pricingBucket" in config["responseSchema"]["properties"]

    @pytest.mark.asyncio
    async def test_not_configured(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not be called")

        provider = _provider(handler, api_key=None)

        assert provider.is_configured() is False
        with pytest.raises(ProviderError, match="not configured"):
            await provider.enrich("notion.so", HINTS)

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        with pytest.raises(ProviderError, match="HTTP 503"):
            await _provider(handler).enrich("notion.so", HINTS)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProviderError, match="timed out"):
            await _provider(handler).enrich("notion.so", HINTS)

    @pytest.mark.asyncio
    async def test_invalid_json_text(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_gemini_body("{not json"))

        with pytest.raises(ProviderError, match="invalid JSON"):
            await _provider(handler).enrich("notion.so", HINTS)

    @pytest.mark.asyncio
    async def test_no_candidates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"candidates": []})

        with pytest.raises(ProviderError, match="no candidates"):
            await _provider(handler).enrich("notion.so", HINTS)

    @pytest.mark.asyncio
    async def test_schema_violation(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_gemini_body({"name": "Notion"}))

        with pytest.raises(ProviderError, match="validation"):
            await _provider(handler).enrich("notion.so", HINTS)
