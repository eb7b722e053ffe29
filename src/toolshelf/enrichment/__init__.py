"""Global tool enrichment cache."""

from .exceptions import (
    CallerNotVerified,
    Conflict,
    EnrichmentError,
    InvalidInput,
    ProviderError,
    RateLimited,
    Unauthenticated,
    UnresolvedIdentity,
)
from .orchestrator import EnrichmentOrchestrator, EnrichmentResult

__all__ = [
    "CallerNotVerified",
    "Conflict",
    "EnrichmentError",
    "EnrichmentOrchestrator",
    "EnrichmentResult",
    "InvalidInput",
    "ProviderError",
    "RateLimited",
    "Unauthenticated",
    "UnresolvedIdentity",
]
