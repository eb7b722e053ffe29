"""Enrichment error taxonomy.

Every failure the orchestrator can surface is one of these. The API layer maps
``code`` and ``status_code`` onto the JSON error response; nothing here is
retried internally.
"""

from typing import Optional


class EnrichmentError(Exception):
    """Base exception for all enrichment failures."""

    code = "enrichment_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidInput(EnrichmentError):
    """Empty or unparseable input."""

    code = "invalid_input"
    status_code = 400


class Unauthenticated(EnrichmentError):
    """Missing or invalid caller credentials."""

    code = "unauthenticated"
    status_code = 401


class CallerNotVerified(Unauthenticated):
    """Authenticated caller whose account is not verified tried the paid path."""

    code = "caller_not_verified"
    status_code = 403


class RateLimited(EnrichmentError):
    """Per-caller quota ceiling reached for a minute or day bucket."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, scope: str, retry_after: int):
        self.scope = scope
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["scope"] = self.scope
        data["retry_after"] = self.retry_after
        return data


class Conflict(EnrichmentError):
    """Another caller holds the enrichment lock for this tool."""

    code = "enrichment_in_progress"
    status_code = 409

    def __init__(self, message: str, tool_id: str, retry_after: Optional[int] = None):
        self.tool_id = tool_id
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["tool_id"] = self.tool_id
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class ProviderError(EnrichmentError):
    """The AI provider failed, timed out, or returned unusable data."""

    code = "provider_error"
    status_code = 502


class UnresolvedIdentity(EnrichmentError):
    """Text input for which no official website could be determined."""

    code = "unresolved_identity"
    status_code = 422
