"""Tests for the per-caller usage ledger."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from toolshelf.enrichment.quota import QuotaDecision, UsageLedger, bucket_key
from toolshelf.models.usage_counter import QuotaScope, UsageCounter

from tests.conftest import NOW


class TestBucketKey:
    """Bucket naming."""

    def test_minute_bucket(self):
        assert bucket_key(QuotaScope.MINUTE, NOW) == "202601151200"

    def test_day_bucket(self):
        assert bucket_key(QuotaScope.DAY, NOW) == "2026-01-15"

    def test_retry_after(self):
        decision = QuotaDecision(False, QuotaScope.DAY, 50, "2026-01-15")
        assert decision.retry_after == 86400
        assert QuotaDecision(False, QuotaScope.MINUTE, 4, "x").retry_after == 60


class TestAdmit:
    """Atomic admits against a ceiling."""

    @pytest.mark.asyncio
    async def test_admits_up_to_ceiling(self, ledger):
        decisions = [await ledger.admit("alice", QuotaScope.MINUTE, now=NOW) for _ in range(5)]

        assert [d.admitted for d in decisions] == [True, True, True, True, False]
        assert decisions[-1].ceiling == 4
        assert decisions[-1].bucket_key == "202601151200"

    @pytest.mark.asyncio
    async def test_next_minute_is_a_new_bucket(self, ledger):
        for _ in range(4):
            await ledger.admit("alice", QuotaScope.MINUTE, now=NOW)

        assert (await ledger.admit("alice", QuotaScope.MINUTE, now=NOW)).admitted is False
        later = NOW + timedelta(minutes=1)
        assert (await ledger.admit("alice", QuotaScope.MINUTE, now=later)).admitted is True

    @pytest.mark.asyncio
    async def test_callers_are_independent(self, ledger):
        for _ in range(4):
            await ledger.admit("alice", QuotaScope.MINUTE, now=NOW)

        assert (await ledger.admit("bob", QuotaScope.MINUTE, now=NOW)).admitted is True

    @pytest.mark.asyncio
    async def test_zero_ceiling_denies(self, session_factory):
        ledger = UsageLedger(session_factory, per_minute=0, per_day=50)

        decision = await ledger.admit("alice", QuotaScope.MINUTE, now=NOW)

        assert decision.admitted is False

    @pytest.mark.asyncio
    async def test_concurrent_admits_never_exceed_ceiling(self, ledger, session_factory):
        decisions = await asyncio.gather(
            *(ledger.admit("alice", QuotaScope.MINUTE, now=NOW) for _ in range(10))
        )

        assert sum(d.admitted for d in decisions) == 4
        async with session_factory() as session:
            count = await session.scalar(
                select(UsageCounter.count).where(UsageCounter.caller_id == "alice")
            )
        assert count == 4


class TestUsageAndPrune:
    """Reporting and cleanup."""

    @pytest.mark.asyncio
    async def test_usage_report(self, ledger):
        await ledger.admit("alice", QuotaScope.MINUTE, now=NOW)
        await ledger.admit("alice", QuotaScope.DAY, now=NOW)
        await ledger.admit("alice", QuotaScope.DAY, now=NOW)

        usage = await ledger.usage("alice", now=NOW)

        assert usage["minute"] == {"bucket": "202601151200", "used": 1, "limit": 4, "remaining": 3}
        assert usage["day"] == {"bucket": "2026-01-15", "used": 2, "limit": 50, "remaining": 48}

    @pytest.mark.asyncio
    async def test_usage_for_new_caller(self, ledger):
        usage = await ledger.usage("nobody", now=NOW)

        assert usage["minute"]["used"] == 0
        assert usage["day"]["remaining"] == 50

    @pytest.mark.asyncio
    async def test_prune_removes_old_buckets(self, ledger):
        await ledger.admit("alice", QuotaScope.DAY, now=NOW - timedelta(days=10))
        await ledger.admit("alice", QuotaScope.DAY, now=NOW)

        removed = await ledger.prune(timedelta(days=7), now=NOW)

        assert removed == 1
        assert (await ledger.usage("alice", now=NOW))["day"]["used"] == 1
