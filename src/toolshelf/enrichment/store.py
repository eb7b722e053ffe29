"""Enrichment cache store: shared GlobalTool records keyed by ToolId.

Writes go through conditional single-statement updates so that the guard and
the write happen atomically in the database:

- ``try_acquire_lock`` only flips a row to ``enriching`` when no live lock is
  held (``UPDATE ... WHERE status != 'enriching' OR lock_expires_at <= now``).
  A missing row is created under the ``tool_id`` unique constraint; losing that
  insert race means someone else just took the lock.
- ``commit`` overwrites enriched fields, unions in aliases, marks the row
  ``ready`` and clears the lock, all in one transaction. Aliases are only ever
  added.

No locks are held in process memory; concurrent request handlers coordinate
entirely through these statements.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.global_tool import GlobalTool, GlobalToolAlias, PricingBucket, ToolStatus
from .provider import EnrichedFields

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(days=30)
DEFAULT_LOCK_TTL = timedelta(minutes=2)

_WRITE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LockResult(str, enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_LOCKED = "already_locked"


@dataclass(frozen=True)
class ToolRecord:
    """Detached snapshot of a GlobalTool row and its aliases."""

    tool_id: str
    status: ToolStatus
    canonical_url: Optional[str] = None
    normalized_url: Optional[str] = None
    root_domain: Optional[str] = None
    name: Optional[str] = None
    summary: Optional[str] = None
    best_use_cases: List[str] = field(default_factory=list)
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    integrations: List[str] = field(default_factory=list)
    pricing_bucket: Optional[PricingBucket] = None
    pricing_notes: Optional[str] = None
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    what_it_does: Optional[str] = None
    enriched_at: Optional[datetime] = None
    enrich_version: int = 0
    lock_expires_at: Optional[datetime] = None
    aliases: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: GlobalTool, aliases: Iterable[str] = ()) -> "ToolRecord":
        return cls(
            tool_id=row.tool_id,
            status=row.status,
            canonical_url=row.canonical_url,
            normalized_url=row.normalized_url,
            root_domain=row.root_domain,
            name=row.name,
            summary=row.summary,
            best_use_cases=list(row.best_use_cases or []),
            category=row.category,
            tags=list(row.tags or []),
            integrations=list(row.integrations or []),
            pricing_bucket=row.pricing_bucket,
            pricing_notes=row.pricing_notes,
            logo_url=row.logo_url,
            website_url=row.website_url,
            what_it_does=row.what_it_does,
            enriched_at=as_utc(row.enriched_at),
            enrich_version=row.enrich_version or 0,
            lock_expires_at=as_utc(row.lock_expires_at),
            aliases=sorted(set(aliases)),
        )

    def to_dict(self) -> dict:
        """Wire shape consumed by the UI layer."""
        return {
            "toolId": self.tool_id,
            "canonicalUrl": self.canonical_url,
            "normalizedUrl": self.normalized_url,
            "rootDomain": self.root_domain,
            "name": self.name,
            "summary": self.summary,
            "bestUseCases": self.best_use_cases,
            "category": self.category,
            "tags": self.tags,
            "integrations": self.integrations,
            "pricingBucket": self.pricing_bucket.value if self.pricing_bucket else None,
            "pricingNotes": self.pricing_notes,
            "logoUrl": self.logo_url,
            "websiteUrl": self.website_url,
            "whatItDoes": self.what_it_does,
            "status": self.status.value,
            "enrichedAt": self.enriched_at.isoformat() if self.enriched_at else None,
            "enrichVersion": self.enrich_version,
            "aliases": self.aliases,
        }


def _dedupe(values: Iterable[Optional[str]]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


class ToolCacheStore:
    """Shared cache of enriched tool records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enrich_version: int = 1,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        lock_ttl: timedelta = DEFAULT_LOCK_TTL,
    ):
        self._session_factory = session_factory
        self.enrich_version = enrich_version
        self.stale_after = stale_after
        self.lock_ttl = lock_ttl

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, tool_id: str) -> Optional[ToolRecord]:
        records = await self.get_many([tool_id])
        return records.get(tool_id)

    async def get_many(self, tool_ids: Sequence[str]) -> Dict[str, ToolRecord]:
        """Batch read; ids without a record are omitted."""
        ids = _dedupe(tool_ids)
        if not ids:
            return {}
        async with self._session_factory() as session:
            rows = (
                await session.execute(select(GlobalTool).where(GlobalTool.tool_id.in_(ids)))
            ).scalars().all()
            aliases = await self._load_aliases(session, [row.tool_id for row in rows])
        return {
            row.tool_id: ToolRecord.from_row(row, aliases.get(row.tool_id, ()))
            for row in rows
        }

    async def find_by_alias(self, alias: str) -> Optional[ToolRecord]:
        """Return the best record whose alias set contains *alias*.

        Ready records win over in-flight ones; among those the most recently
        enriched is chosen.
        """
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(GlobalTool)
                    .join(GlobalToolAlias, GlobalToolAlias.tool_id == GlobalTool.tool_id)
                    .where(GlobalToolAlias.alias == alias)
                    .order_by(
                        case((GlobalTool.status == ToolStatus.READY, 0), else_=1),
                        GlobalTool.enriched_at.desc(),
                    )
                    .limit(1)
                )
            ).scalars().first()
            if row is None:
                return None
            aliases = await self._load_aliases(session, [row.tool_id])
        return ToolRecord.from_row(row, aliases.get(row.tool_id, ()))

    def is_fresh(self, record: Optional[ToolRecord], now: Optional[datetime] = None) -> bool:
        """True iff the record is ready, current-version and younger than the threshold."""
        if record is None or record.status != ToolStatus.READY:
            return False
        if record.enrich_version != self.enrich_version or record.enriched_at is None:
            return False
        now = as_utc(now) or _utcnow()
        return now - record.enriched_at < self.stale_after

    @staticmethod
    async def _load_aliases(session: AsyncSession, tool_ids: List[str]) -> Dict[str, List[str]]:
        if not tool_ids:
            return {}
        rows = await session.execute(
            select(GlobalToolAlias.tool_id, GlobalToolAlias.alias).where(
                GlobalToolAlias.tool_id.in_(tool_ids)
            )
        )
        aliases: Dict[str, List[str]] = {}
        for tool_id, alias in rows:
            aliases.setdefault(tool_id, []).append(alias)
        return aliases

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def try_acquire_lock(
        self,
        tool_id: str,
        canonical_url: Optional[str] = None,
        root_domain: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LockResult:
        """Take the enrichment lock for *tool_id* without blocking.

        Existing fields are preserved. An expired lock is always reclaimable.
        """
        now = as_utc(now) or _utcnow()
        expires_at = now + self.lock_ttl

        async with self._session_factory() as session:
            result = await session.execute(
                update(GlobalTool)
                .where(GlobalTool.tool_id == tool_id)
                .where(
                    or_(
                        GlobalTool.status != ToolStatus.ENRICHING,
                        GlobalTool.lock_expires_at.is_(None),
                        GlobalTool.lock_expires_at <= now,
                    )
                )
                .values(status=ToolStatus.ENRICHING, lock_expires_at=expires_at, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                logger.debug("Acquired enrichment lock on existing record %s", tool_id[:12])
                return LockResult.ACQUIRED

            existing = await session.scalar(
                select(GlobalTool.id).where(GlobalTool.tool_id == tool_id)
            )
            if existing is not None:
                await session.rollback()
                return LockResult.ALREADY_LOCKED

            session.add(
                GlobalTool(
                    tool_id=tool_id,
                    canonical_url=canonical_url,
                    normalized_url=canonical_url,
                    root_domain=root_domain,
                    status=ToolStatus.ENRICHING,
                    lock_expires_at=expires_at,
                    enrich_version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Another caller created the record (and its lock) first.
                await session.rollback()
                return LockResult.ALREADY_LOCKED

        logger.debug("Created record %s under enrichment lock", tool_id[:12])
        return LockResult.ACQUIRED

    async def commit(
        self,
        tool_id: str,
        fields: EnrichedFields,
        canonical_url: Optional[str] = None,
        root_domain: Optional[str] = None,
        aliases: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> ToolRecord:
        """Write enriched fields and aliases, mark the record ready and release the lock.

        Fields and aliases land in one transaction: a record is never ``ready``
        without the aliases it was committed with.
        """
        now = as_utc(now) or _utcnow()
        values = {
            "name": fields.name,
            "summary": fields.summary,
            "best_use_cases": list(fields.best_use_cases),
            "category": fields.category,
            "tags": _dedupe(fields.tags),
            "integrations": _dedupe(fields.integrations),
            "pricing_bucket": fields.pricing_bucket,
            "pricing_notes": fields.pricing_notes,
            "logo_url": fields.logo_url,
            "website_url": fields.website_url,
            "what_it_does": fields.what_it_does,
            "status": ToolStatus.READY,
            "enriched_at": now,
            "enrich_version": self.enrich_version,
            "lock_expires_at": None,
            "updated_at": now,
        }
        if canonical_url:
            values["canonical_url"] = canonical_url
            values["normalized_url"] = canonical_url
        if root_domain:
            values["root_domain"] = root_domain
        wanted = _dedupe(aliases)

        for attempt in range(_WRITE_ATTEMPTS):
            async with self._session_factory() as session:
                result = await session.execute(
                    update(GlobalTool)
                    .where(GlobalTool.tool_id == tool_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.add(GlobalTool(tool_id=tool_id, created_at=now, **values))
                try:
                    await self._stage_aliases(session, tool_id, wanted)
                    await session.commit()
                    break
                except IntegrityError:
                    # Lost an insert race on the record or one of its aliases.
                    await session.rollback()
                    logger.debug("Write race on %s, retrying", tool_id[:12])
        else:
            raise RuntimeError(f"Could not commit record {tool_id}")

        logger.info("Committed enriched record %s (%s)", tool_id[:12], fields.name)
        record = await self.get(tool_id)
        if record is None:
            raise RuntimeError(f"Record {tool_id} vanished after commit")
        return record

    async def add_aliases(self, tool_id: str, aliases: Iterable[str]) -> List[str]:
        """Union *aliases* into the record's alias set. Returns the newly added ones."""
        wanted = _dedupe(aliases)
        if not wanted:
            return []

        for attempt in range(_WRITE_ATTEMPTS):
            async with self._session_factory() as session:
                try:
                    added = await self._stage_aliases(session, tool_id, wanted)
                    if not added:
                        return []
                    await session.commit()
                    return added
                except IntegrityError:
                    await session.rollback()
        raise RuntimeError(f"Could not record aliases for {tool_id}")

    @staticmethod
    async def _stage_aliases(session: AsyncSession, tool_id: str, wanted: List[str]) -> List[str]:
        """Add the aliases in *wanted* that the record lacks to *session*, uncommitted."""
        if not wanted:
            return []
        existing = set(
            (
                await session.execute(
                    select(GlobalToolAlias.alias).where(
                        GlobalToolAlias.tool_id == tool_id,
                        GlobalToolAlias.alias.in_(wanted),
                    )
                )
            ).scalars()
        )
        added = [alias for alias in wanted if alias not in existing]
        session.add_all(GlobalToolAlias(tool_id=tool_id, alias=alias) for alias in added)
        await session.flush()
        return added
