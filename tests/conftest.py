"""Test configuration and fixtures."""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

# Set test environment variables BEFORE importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["ENABLE_AUTH"] = "true"

from toolshelf.database.connection import build_engine, get_session_factory
from toolshelf.enrichment.exceptions import ProviderError
from toolshelf.enrichment.orchestrator import EnrichmentOrchestrator
from toolshelf.enrichment.provider import EnrichedFields, EnrichmentProvider, parse_enriched_fields
from toolshelf.enrichment.quota import UsageLedger
from toolshelf.enrichment.store import ToolCacheStore
from toolshelf.main import app
from toolshelf.models.base import Base

NOW = datetime(2026, 1, 15, 12, 0, 30, tzinfo=timezone.utc)

TEST_CATEGORIES = ["Automation", "AI", "Productivity", "Other"]


def provider_payload(**overrides) -> Dict[str, Any]:
    """A well-formed provider response."""
    payload = {
        "name": "Notion",
        "summary": "All-in-one workspace for notes and docs.",
        "bestUseCases": ["Team wikis", "Project tracking", "Personal notes"],
        "category": "Productivity",
        "tags": ["notes", "wiki", "docs"],
        "integrations": ["Slack", "GitHub"],
        "pricingBucket": "Freemium",
        "pricingNotes": "Free plan; paid from $10/mo",
        "whatItDoes": "Combines documents, databases and wikis.",
        "logoUrl": "https://notion.so/logo.png",
        "websiteUrl": "https://www.notion.so",
    }
    payload.update(overrides)
    return payload


class FakeProvider(EnrichmentProvider):
    """Scriptable provider that records every call.

    ``gate`` holds calls inside the provider until set; ``started`` fires as
    soon as a call enters.
    """

    name = "fake"

    def __init__(
        self,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.payload = payload or provider_payload()
        self.payloads: Dict[str, Dict[str, Any]] = {}
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []
        self.started = asyncio.Event()
        self.gate: Optional[asyncio.Event] = None

    async def enrich(self, tool_input: str, category_hints: Sequence[str]) -> EnrichedFields:
        self.calls.append((tool_input, list(category_hints)))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return parse_enriched_fields(self.payloads.get(tool_input, self.payload), category_hints)


@pytest.fixture
def db_file(tmp_path):
    """File-backed SQLite database with the schema created."""
    path = tmp_path / "toolshelf.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(bind=sync_engine)
    sync_engine.dispose()
    return path


@pytest.fixture
def session_factory(db_file):
    """Async session factory; NullPool so no connection outlives its event loop."""
    engine = build_engine(f"sqlite+aiosqlite:///{db_file}", poolclass=NullPool)
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> ToolCacheStore:
    return ToolCacheStore(
        session_factory,
        enrich_version=1,
        stale_after=timedelta(days=30),
        lock_ttl=timedelta(minutes=2),
    )


@pytest.fixture
def ledger(session_factory) -> UsageLedger:
    return UsageLedger(session_factory, per_minute=4, per_day=50)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def orchestrator(store, ledger, provider) -> EnrichmentOrchestrator:
    return EnrichmentOrchestrator(
        store,
        ledger,
        provider,
        default_categories=TEST_CATEGORIES,
        provider_timeout=2.0,
    )


@pytest.fixture
def client(session_factory, provider) -> TestClient:
    """Create a test client bound to the per-test database and fake provider."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.enrichment_provider = provider
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    app.state.enrichment_provider = None


@pytest.fixture
def failing_provider() -> FakeProvider:
    return FakeProvider(error=ProviderError("model returned garbage"))
