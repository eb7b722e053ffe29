"""Enrichment orchestrator: resolve identity, serve from cache, or enrich once.

URL input::

    cache lookup -> fresh? return it
                 -> lock (409 if held) -> quota (429) -> provider -> commit

Text input::

    alias lookup -> fresh? return it
                 -> quota (429) -> provider -> no websiteUrl? 422
                 -> derive ToolId from websiteUrl -> fresh? record alias, return it
                 -> commit with the alias and the derived URL aliases

Text lookups take no lock: the ToolId is only known after the provider call, so
two callers typing different names for the same tool can both pay for it.
A text-path commit also clears ``lock_expires_at`` and marks the record ready
even while a URL caller holds the lock on it; that caller's later commit
simply overwrites the fields again.

Quota is only charged on the provider path; cache hits are free. Nothing is
retried here and a lock taken before a failure is left to expire on its own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..models.usage_counter import QuotaScope
from ..observability.logging import set_log_context
from ..observability.metrics import (
    record_enrich_outcome,
    record_provider_call,
    record_quota_denial,
)
from .exceptions import (
    CallerNotVerified,
    Conflict,
    EnrichmentError,
    InvalidInput,
    ProviderError,
    RateLimited,
    UnresolvedIdentity,
)
from .identity import CanonicalIdentity, identity_from_url, resolve_identity
from .provider import (
    CATEGORY_MAX_LENGTH,
    EnrichedFields,
    EnrichmentProvider,
    FALLBACK_CATEGORY,
    GeminiProvider,
)
from .quota import UsageLedger
from .store import LockResult, ToolCacheStore, ToolRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrichmentResult:
    """Successful terminal state of an enrichment request."""

    record: ToolRecord
    cached: bool

    @property
    def tool_id(self) -> str:
        return self.record.tool_id


class EnrichmentOrchestrator:
    """Coordinates identity, cache, lock, quota and provider for one request."""

    def __init__(
        self,
        store: ToolCacheStore,
        ledger: UsageLedger,
        provider: EnrichmentProvider,
        default_categories: Sequence[str] = (FALLBACK_CATEGORY,),
        provider_timeout: float = 12.0,
    ):
        self.store = store
        self.ledger = ledger
        self.provider = provider
        self.default_categories = list(default_categories)
        self.provider_timeout = provider_timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        provider: Optional[EnrichmentProvider] = None,
    ) -> "EnrichmentOrchestrator":
        store = ToolCacheStore(
            session_factory,
            enrich_version=settings.enrich_version,
            stale_after=timedelta(days=settings.stale_after_days),
            lock_ttl=timedelta(seconds=settings.lock_ttl_seconds),
        )
        ledger = UsageLedger(
            session_factory,
            per_minute=settings.quota_per_minute,
            per_day=settings.quota_per_day,
        )
        if provider is None:
            provider = GeminiProvider(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                base_url=settings.gemini_base_url,
                temperature=settings.gemini_temperature,
                timeout=settings.enrich_timeout_seconds,
            )
        return cls(
            store,
            ledger,
            provider,
            default_categories=settings.default_categories,
            provider_timeout=settings.enrich_timeout_seconds,
        )

    async def enrich(
        self,
        tool_input: str,
        category_hints: Optional[Sequence[str]],
        caller_id: str,
        caller_verified: bool,
        now: Optional[datetime] = None,
    ) -> EnrichmentResult:
        """Resolve *tool_input* to a shared record, enriching it if needed.

        Raises:
            InvalidInput, CallerNotVerified, Conflict, RateLimited,
            ProviderError, UnresolvedIdentity
        """
        now = now or datetime.now(timezone.utc)
        set_log_context(caller_id=caller_id)
        try:
            identity = resolve_identity(tool_input)
            hints = self._category_hints(category_hints)
            if identity.is_url:
                result = await self._enrich_url(identity, hints, caller_id, caller_verified, now)
            else:
                result = await self._enrich_text(
                    tool_input.strip(), identity, hints, caller_id, caller_verified, now
                )
        except EnrichmentError as exc:
            record_enrich_outcome(exc.code)
            raise

        record_enrich_outcome("hit" if result.cached else "enriched")
        return result

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _enrich_url(
        self,
        identity: CanonicalIdentity,
        hints: List[str],
        caller_id: str,
        caller_verified: bool,
        now: datetime,
    ) -> EnrichmentResult:
        tool_id = identity.tool_id
        set_log_context(tool_id=tool_id)

        record = await self.store.get(tool_id)
        if self.store.is_fresh(record, now):
            logger.info("Cache hit for %s", identity.root_domain)
            return EnrichmentResult(record=record, cached=True)

        self._require_verified(caller_verified)

        lock = await self.store.try_acquire_lock(
            tool_id,
            canonical_url=identity.canonical_url,
            root_domain=identity.root_domain,
            now=now,
        )
        if lock == LockResult.ALREADY_LOCKED:
            logger.info("Enrichment of %s already in progress", identity.root_domain)
            raise Conflict(
                "This tool is being enriched by someone else. Try again shortly.",
                tool_id=tool_id,
                retry_after=int(self.store.lock_ttl.total_seconds()),
            )

        await self._admit(caller_id, now)
        fields = await self._call_provider(identity.canonical_url, hints)

        record = await self.store.commit(
            tool_id,
            fields,
            canonical_url=identity.canonical_url,
            root_domain=identity.root_domain,
            aliases=identity.aliases,
            now=now,
        )
        return EnrichmentResult(record=record, cached=False)

    async def _enrich_text(
        self,
        raw_input: str,
        identity: CanonicalIdentity,
        hints: List[str],
        caller_id: str,
        caller_verified: bool,
        now: datetime,
    ) -> EnrichmentResult:
        alias = identity.alias

        record = await self.store.find_by_alias(alias)
        if self.store.is_fresh(record, now):
            set_log_context(tool_id=record.tool_id)
            logger.info("Alias hit for '%s'", alias)
            return EnrichmentResult(record=record, cached=True)

        self._require_verified(caller_verified)
        await self._admit(caller_id, now)
        fields = await self._call_provider(raw_input, hints)

        if not fields.website_url:
            logger.info("Provider found no website for '%s'", alias)
            raise UnresolvedIdentity(
                f"Could not determine an official website for '{raw_input}'. Add it manually."
            )
        try:
            derived = identity_from_url(fields.website_url)
        except InvalidInput as exc:
            raise UnresolvedIdentity(
                f"Provider returned an unusable website for '{raw_input}'"
            ) from exc

        set_log_context(tool_id=derived.tool_id)
        existing = await self.store.get(derived.tool_id)
        if self.store.is_fresh(existing, now):
            added = await self.store.add_aliases(derived.tool_id, [alias])
            if added:
                logger.info("Recorded alias '%s' for %s", alias, derived.root_domain)
                existing = replace(existing, aliases=sorted(set(existing.aliases) | set(added)))
            return EnrichmentResult(record=existing, cached=True)

        record = await self.store.commit(
            derived.tool_id,
            fields,
            canonical_url=derived.canonical_url,
            root_domain=derived.root_domain,
            aliases=[alias, *derived.aliases],
            now=now,
        )
        return EnrichmentResult(record=record, cached=False)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _category_hints(self, category_hints: Optional[Sequence[str]]) -> List[str]:
        hints = [
            h.strip()
            for h in (category_hints or [])
            if h and h.strip() and len(h.strip()) <= CATEGORY_MAX_LENGTH
        ]
        if not hints:
            hints = list(self.default_categories)
        if FALLBACK_CATEGORY.lower() not in {h.lower() for h in hints}:
            hints.append(FALLBACK_CATEGORY)
        return hints

    @staticmethod
    def _require_verified(caller_verified: bool) -> None:
        if not caller_verified:
            raise CallerNotVerified("Verify your account to use AI enrichment.")

    async def _admit(self, caller_id: str, now: datetime) -> None:
        for scope in (QuotaScope.MINUTE, QuotaScope.DAY):
            decision = await self.ledger.admit(caller_id, scope, now=now)
            if not decision.admitted:
                record_quota_denial(scope.value)
                logger.warning(
                    "Quota exceeded for %s (%s ceiling %d)",
                    caller_id,
                    scope.value,
                    decision.ceiling,
                )
                raise RateLimited(
                    f"Enrichment limit reached ({decision.ceiling} per {scope.value}). "
                    f"Try again in {decision.retry_after} seconds.",
                    scope=scope.value,
                    retry_after=decision.retry_after,
                )

    async def _call_provider(self, tool_input: str, hints: List[str]) -> EnrichedFields:
        started = time.monotonic()
        try:
            fields = await asyncio.wait_for(
                self.provider.enrich(tool_input, hints),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError as exc:
            record_provider_call("timeout", time.monotonic() - started)
            logger.warning("Provider timed out after %.1fs", self.provider_timeout)
            raise ProviderError("AI provider timed out") from exc
        except ProviderError as exc:
            record_provider_call("error", time.monotonic() - started)
            logger.warning("Provider failed: %s", exc.message)
            raise
        except Exception as exc:
            record_provider_call("error", time.monotonic() - started)
            logger.exception("Unexpected provider failure")
            raise ProviderError("AI provider failed") from exc

        record_provider_call("ok", time.monotonic() - started)
        return fields.constrain_category(hints)
