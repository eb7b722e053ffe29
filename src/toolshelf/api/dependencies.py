"""Request-scoped dependencies for the enrichment API."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import get_settings
from ..database.connection import get_session_factory
from ..enrichment.orchestrator import EnrichmentOrchestrator


def get_orchestrator(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> EnrichmentOrchestrator:
    """Build an orchestrator around the app's provider and the session factory."""
    provider = getattr(request.app.state, "enrichment_provider", None)
    return EnrichmentOrchestrator.from_settings(get_settings(), session_factory, provider=provider)
