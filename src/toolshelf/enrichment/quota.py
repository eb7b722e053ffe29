"""Per-caller usage quota ledger.

Each (caller, bucket) pair owns one counter row. ``admit`` increments it with a
guarded update (``count < ceiling``) so concurrent admits for the same bucket
can never push the count past the ceiling: exactly ``ceiling`` of them win.
Counters are never decremented; old buckets are left behind and removed by
``prune``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.usage_counter import QuotaScope, UsageCounter
from .store import as_utc

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS: Dict[QuotaScope, int] = {
    QuotaScope.MINUTE: 60,
    QuotaScope.DAY: 24 * 60 * 60,
}

_ADMIT_ATTEMPTS = 3


def bucket_key(scope: QuotaScope, now: datetime) -> str:
    """``YYYYMMDDHHMM`` for minute buckets, ``YYYY-MM-DD`` for day buckets (UTC)."""
    now = as_utc(now)
    if scope == QuotaScope.MINUTE:
        return now.strftime("%Y%m%d%H%M")
    return now.strftime("%Y-%m-%d")


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a single admit attempt."""

    admitted: bool
    scope: QuotaScope
    ceiling: int
    bucket_key: str

    @property
    def retry_after(self) -> int:
        return RETRY_AFTER_SECONDS[self.scope]


class UsageLedger:
    """Minute and day ceilings on expensive enrichments, per caller."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        per_minute: int = 4,
        per_day: int = 50,
    ):
        self._session_factory = session_factory
        self._ceilings = {
            QuotaScope.MINUTE: per_minute,
            QuotaScope.DAY: per_day,
        }

    def ceiling(self, scope: QuotaScope) -> int:
        return self._ceilings[scope]

    async def admit(
        self,
        caller_id: str,
        scope: QuotaScope,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        """Atomically take one unit from the caller's current bucket, if any remain."""
        now = as_utc(now) or datetime.now(timezone.utc)
        key = bucket_key(scope, now)
        ceiling = self.ceiling(scope)

        def decision(admitted: bool) -> QuotaDecision:
            return QuotaDecision(admitted=admitted, scope=scope, ceiling=ceiling, bucket_key=key)

        if ceiling <= 0:
            return decision(False)

        for attempt in range(_ADMIT_ATTEMPTS):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(UsageCounter)
                    .where(
                        UsageCounter.caller_id == caller_id,
                        UsageCounter.bucket_key == key,
                        UsageCounter.count < ceiling,
                    )
                    .values(count=UsageCounter.count + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await session.commit()
                    return decision(True)

                existing = await session.scalar(
                    select(UsageCounter.count).where(
                        UsageCounter.caller_id == caller_id,
                        UsageCounter.bucket_key == key,
                    )
                )
                if existing is not None:
                    await session.rollback()
                    return decision(False)

                session.add(
                    UsageCounter(
                        caller_id=caller_id,
                        bucket_key=key,
                        scope=scope,
                        count=1,
                        created_at=now,
                        updated_at=now,
                    )
                )
                try:
                    await session.commit()
                    return decision(True)
                except IntegrityError:
                    # First-use race on this bucket: the row exists now, go guard it.
                    await session.rollback()

        logger.error("Quota admit for %s/%s did not settle", caller_id, key)
        return decision(False)

    async def usage(self, caller_id: str, now: Optional[datetime] = None) -> Dict[str, dict]:
        """Current counts and ceilings for both scopes."""
        now = as_utc(now) or datetime.now(timezone.utc)
        keys = {scope: bucket_key(scope, now) for scope in QuotaScope}
        async with self._session_factory() as session:
            rows = await session.execute(
                select(UsageCounter.bucket_key, UsageCounter.count).where(
                    UsageCounter.caller_id == caller_id,
                    UsageCounter.bucket_key.in_(list(keys.values())),
                )
            )
            counts = dict(rows.all())

        report = {}
        for scope, key in keys.items():
            used = counts.get(key, 0)
            ceiling = self.ceiling(scope)
            report[scope.value] = {
                "bucket": key,
                "used": used,
                "limit": ceiling,
                "remaining": max(ceiling - used, 0),
            }
        return report

    async def prune(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Delete counters not touched within *older_than*. Returns rows removed."""
        now = as_utc(now) or datetime.now(timezone.utc)
        cutoff = now - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                delete(UsageCounter)
                .where(UsageCounter.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Pruned %d usage counters older than %s", removed, cutoff.isoformat())
        return removed
