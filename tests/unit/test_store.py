"""Tests for the shared enrichment cache store."""

import asyncio
from datetime import timedelta

import pytest

from toolshelf.enrichment.identity import identity_from_url
from toolshelf.enrichment.provider import parse_enriched_fields
from toolshelf.enrichment.store import LockResult, ToolCacheStore
from toolshelf.models.global_tool import GlobalToolAlias, PricingBucket, ToolStatus

from tests.conftest import NOW, provider_payload

NOTION = identity_from_url("notion.so")


async def _commit(store: ToolCacheStore, identity=NOTION, now=NOW, **overrides):
    return await store.commit(
        identity.tool_id,
        parse_enriched_fields(provider_payload(**overrides)),
        canonical_url=identity.canonical_url,
        root_domain=identity.root_domain,
        aliases=identity.aliases,
        now=now,
    )


class TestReads:
    """get, get_many and find_by_alias."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get(NOTION.tool_id) is None

    @pytest.mark.asyncio
    async def test_get_many_omits_unknown(self, store):
        zapier = identity_from_url("zapier.com")
        await _commit(store)
        await _commit(store, identity=zapier, name="Zapier")

        records = await store.get_many([NOTION.tool_id, zapier.tool_id, "0" * 64, NOTION.tool_id])

        assert set(records) == {NOTION.tool_id, zapier.tool_id}
        assert records[zapier.tool_id].name == "Zapier"

    @pytest.mark.asyncio
    async def test_get_many_empty(self, store):
        assert await store.get_many([]) == {}

    @pytest.mark.asyncio
    async def test_find_by_alias(self, store):
        await _commit(store)

        record = await store.find_by_alias("www.notion.so")

        assert record is not None
        assert record.tool_id == NOTION.tool_id
        assert await store.find_by_alias("zapier") is None

    @pytest.mark.asyncio
    async def test_find_by_alias_prefers_ready(self, store):
        other = identity_from_url("notion.site")
        await _commit(store)
        await store.add_aliases(NOTION.tool_id, ["notion"])
        await store.try_acquire_lock(other.tool_id, now=NOW)
        await store.add_aliases(other.tool_id, ["notion"])

        record = await store.find_by_alias("notion")

        assert record.tool_id == NOTION.tool_id


class TestLock:
    """try_acquire_lock mutual exclusion."""

    @pytest.mark.asyncio
    async def test_acquire_creates_placeholder(self, store):
        result = await store.try_acquire_lock(
            NOTION.tool_id, NOTION.canonical_url, NOTION.root_domain, now=NOW
        )

        assert result == LockResult.ACQUIRED
        record = await store.get(NOTION.tool_id)
        assert record.status == ToolStatus.ENRICHING
        assert record.lock_expires_at == NOW + timedelta(minutes=2)
        assert record.root_domain == "notion.so"
        assert record.name is None

    @pytest.mark.asyncio
    async def test_second_acquire_is_refused(self, store):
        assert await store.try_acquire_lock(NOTION.tool_id, now=NOW) == LockResult.ACQUIRED
        later = NOW + timedelta(seconds=30)
        assert await store.try_acquire_lock(NOTION.tool_id, now=later) == LockResult.ALREADY_LOCKED

    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimed(self, store):
        await store.try_acquire_lock(NOTION.tool_id, now=NOW - timedelta(minutes=5))

        assert await store.try_acquire_lock(NOTION.tool_id, now=NOW) == LockResult.ACQUIRED
        record = await store.get(NOTION.tool_id)
        assert record.lock_expires_at == NOW + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_lock_on_ready_record_keeps_fields(self, store):
        await _commit(store, now=NOW - timedelta(days=40))

        assert await store.try_acquire_lock(NOTION.tool_id, now=NOW) == LockResult.ACQUIRED
        record = await store.get(NOTION.tool_id)
        assert record.status == ToolStatus.ENRICHING
        assert record.name == "Notion"
        assert "notion.so" in record.aliases

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, store):
        results = await asyncio.gather(
            *(store.try_acquire_lock(NOTION.tool_id, now=NOW) for _ in range(8))
        )

        assert results.count(LockResult.ACQUIRED) == 1
        assert results.count(LockResult.ALREADY_LOCKED) == 7


class TestCommit:
    """Writing enriched records."""

    @pytest.mark.asyncio
    async def test_commit_after_lock(self, store):
        await store.try_acquire_lock(NOTION.tool_id, now=NOW)

        record = await _commit(store)

        assert record.status == ToolStatus.READY
        assert record.enriched_at == NOW
        assert record.enrich_version == 1
        assert record.lock_expires_at is None
        assert record.pricing_bucket == PricingBucket.FREEMIUM
        assert record.canonical_url == "https://notion.so"
        assert record.aliases == sorted(["notion.so", "www.notion.so", "https://notion.so"])

    @pytest.mark.asyncio
    async def test_commit_overwrites_fields_and_unions_aliases(self, store):
        await _commit(store)
        await store.add_aliases(NOTION.tool_id, ["notion"])

        record = await _commit(store, now=NOW + timedelta(days=1), summary="Updated summary")

        assert record.summary == "Updated summary"
        assert record.enriched_at == NOW + timedelta(days=1)
        assert "notion" in record.aliases
        assert "notion.so" in record.aliases

    @pytest.mark.asyncio
    async def test_add_aliases_returns_only_new(self, store):
        await _commit(store)

        added = await store.add_aliases(NOTION.tool_id, ["notion", "notion.so", "notion"])

        assert added == ["notion"]
        assert await store.add_aliases(NOTION.tool_id, ["notion"]) == []

    @pytest.mark.asyncio
    async def test_failed_alias_write_leaves_record_unready(self, store, monkeypatch):
        await store.try_acquire_lock(NOTION.tool_id, now=NOW)

        async def fail_aliases(session, tool_id, wanted):
            raise RuntimeError("alias write failed")

        monkeypatch.setattr(store, "_stage_aliases", fail_aliases)

        with pytest.raises(RuntimeError):
            await _commit(store)

        record = await store.get(NOTION.tool_id)
        assert record.status == ToolStatus.ENRICHING
        assert record.name is None
        assert record.aliases == []

    @pytest.mark.asyncio
    async def test_long_aliases_are_stored(self, store):
        long_alias = "https://notion.so/" + "p" * 1500
        await _commit(store)

        assert await store.add_aliases(NOTION.tool_id, [long_alias]) == [long_alias]
        assert GlobalToolAlias.__table__.c.alias.type.length is None

    @pytest.mark.asyncio
    async def test_to_dict(self, store):
        record = await _commit(store)

        data = record.to_dict()

        assert data["toolId"] == NOTION.tool_id
        assert data["status"] == "ready"
        assert data["pricingBucket"] == "Freemium"
        assert data["enrichedAt"] == NOW.isoformat()
        assert data["bestUseCases"][0] == "Team wikis"


class TestFreshness:
    """is_fresh rules."""

    @pytest.mark.asyncio
    async def test_fresh_within_threshold(self, store):
        record = await _commit(store)

        assert store.is_fresh(record, NOW + timedelta(days=29)) is True

    @pytest.mark.asyncio
    async def test_stale_after_threshold(self, store):
        record = await _commit(store)

        assert store.is_fresh(record, NOW + timedelta(days=30)) is False

    @pytest.mark.asyncio
    async def test_version_mismatch_is_stale(self, store, session_factory):
        record = await _commit(store)
        bumped = ToolCacheStore(session_factory, enrich_version=2)

        assert bumped.is_fresh(record, NOW) is False

    @pytest.mark.asyncio
    async def test_enriching_is_not_fresh(self, store):
        await store.try_acquire_lock(NOTION.tool_id, now=NOW)

        assert store.is_fresh(await store.get(NOTION.tool_id), NOW) is False

    def test_missing_is_not_fresh(self, store):
        assert store.is_fresh(None, NOW) is False
