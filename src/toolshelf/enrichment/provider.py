"""AI provider collaborator: contract, response validation, Gemini client.

The orchestrator never trusts free-form model output. Whatever the provider
returns is validated into ``EnrichedFields``; anything that does not validate
is a ``ProviderError``.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..models.global_tool import PricingBucket
from .exceptions import ProviderError
from .http_client import get_http_client

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "Other"

# Column widths of GlobalTool.name and GlobalTool.category.
NAME_MAX_LENGTH = 255
CATEGORY_MAX_LENGTH = 100


class EnrichedFields(BaseModel):
    """Validated provider output."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    summary: str = Field(min_length=1)
    best_use_cases: List[str] = Field(alias="bestUseCases")
    category: str = Field(min_length=1, max_length=CATEGORY_MAX_LENGTH)
    tags: List[str]
    integrations: List[str] = Field(default_factory=list)
    pricing_bucket: PricingBucket = Field(alias="pricingBucket")
    pricing_notes: str = Field(default="", alias="pricingNotes")
    what_it_does: str = Field(default="", alias="whatItDoes")
    logo_url: Optional[str] = Field(default=None, alias="logoUrl")
    website_url: Optional[str] = Field(default=None, alias="websiteUrl")

    @field_validator("name", "summary", "category", mode="before")
    @classmethod
    def _strip_required(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("best_use_cases", "tags", "integrations", mode="before")
    @classmethod
    def _clean_list(cls, v):
        if v is None:
            return []
        if isinstance(v, list):
            return [str(item).strip() for item in v if item is not None and str(item).strip()]
        return v

    @field_validator("pricing_notes", "what_it_does", mode="before")
    @classmethod
    def _optional_text(cls, v):
        return (v or "").strip() if isinstance(v, (str, type(None))) else v

    @field_validator("logo_url", "website_url", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    def constrain_category(self, category_hints: Sequence[str]) -> "EnrichedFields":
        """Force ``category`` into the caller's closed set (case-insensitive)."""
        if not category_hints:
            return self
        by_lower = {hint.lower(): hint for hint in category_hints}
        chosen = by_lower.get(self.category.lower(), FALLBACK_CATEGORY)
        return self.model_copy(update={"category": chosen})


def parse_enriched_fields(payload: Any, category_hints: Sequence[str] = ()) -> EnrichedFields:
    """Validate a decoded provider payload into ``EnrichedFields``."""
    if not isinstance(payload, dict):
        raise ProviderError("Provider returned a non-object response")
    try:
        fields = EnrichedFields.model_validate(payload)
    except ValidationError as exc:
        missing = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise ProviderError(
            f"Provider response failed validation: {', '.join(missing) or 'invalid payload'}"
        ) from exc
    return fields.constrain_category(category_hints)


class EnrichmentProvider(ABC):
    """Turns a tool name or URL into structured metadata."""

    name: str = "base"

    @abstractmethod
    async def enrich(self, tool_input: str, category_hints: Sequence[str]) -> EnrichedFields:
        """Enrich *tool_input*. Raises ``ProviderError`` on any failure."""


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "name": {"type": "STRING", "description": "The official name of the tool"},
        "summary": {"type": "STRING", "description": "A concise 1-2 sentence summary"},
        "bestUseCases": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "3-6 bullet points of best use cases",
        },
        "category": {"type": "STRING", "description": "Selected category from the provided list"},
        "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
        "integrations": {"type": "ARRAY", "items": {"type": "STRING"}},
        "pricingBucket": {
            "type": "STRING",
            "enum": [bucket.value for bucket in PricingBucket],
        },
        "pricingNotes": {"type": "STRING", "description": "Brief pricing details, e.g. 'Starts at $10/mo'"},
        "whatItDoes": {"type": "STRING"},
        "logoUrl": {"type": "STRING", "description": "Logo or favicon URL if known, otherwise empty"},
        "websiteUrl": {"type": "STRING", "description": "The official homepage URL of the tool"},
    },
    "required": ["name", "summary", "bestUseCases", "category", "tags", "pricingBucket"],
}

PROMPT_TEMPLATE = """\
You are an expert software directory curator.
Analyze the following tool based on the user input: "{tool_input}".

If the input is a URL, assume the tool located at that URL.
If it's a name, use your internal knowledge.

Provide a structured analysis suitable for a personal knowledge base.
The tone should be professional, objective, and concise.

Categorization rules:
- You MUST select exactly one category from this list: [{categories}].
- Choose the one that fits best. If nothing fits, select '{fallback}'.

For logoUrl, prefer a high-quality logo URL if known. If uncertain, leave it blank.
Always try to identify the official website URL.
"""


def build_prompt(tool_input: str, category_hints: Sequence[str]) -> str:
    return PROMPT_TEMPLATE.format(
        tool_input=tool_input.replace('"', "'"),
        categories=", ".join(category_hints) or FALLBACK_CATEGORY,
        fallback=FALLBACK_CATEGORY,
    )


class GeminiProvider(EnrichmentProvider):
    """Schema-constrained enrichment through the Gemini REST API."""

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.3,
        timeout: float = 12.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.timeout = timeout
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _build_request(self, tool_input: str, category_hints: Sequence[str]) -> Dict[str, Any]:
        return {
            "contents": [
                {"role": "user", "parts": [{"text": build_prompt(tool_input, category_hints)}]}
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
                "temperature": self.temperature,
            },
        }

    async def enrich(self, tool_input: str, category_hints: Sequence[str]) -> EnrichedFields:
        if not self.is_configured():
            raise ProviderError("AI provider is not configured")

        client = self._client or get_http_client()
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            response = await client.post(
                url,
                json=self._build_request(tool_input, category_hints),
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderError("AI provider timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Gemini returned HTTP %d: %s",
                exc.response.status_code,
                exc.response.text[:300],
            )
            raise ProviderError(f"AI provider error: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"AI provider unreachable: {type(exc).__name__}") from exc

        text = self._extract_text(response)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError("AI provider returned invalid JSON") from exc
        return parse_enriched_fields(payload, category_hints)

    @staticmethod
    def _extract_text(response: httpx.Response) -> str:
        try:
            body = response.json()
            parts = body["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError("AI provider returned no candidates") from exc
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise ProviderError("AI provider returned an empty response")
        return text
