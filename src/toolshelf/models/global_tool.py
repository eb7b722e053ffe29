"""Shared enrichment cache records, one per ToolId."""

import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ToolStatus(str, enum.Enum):
    """Lifecycle state of a cached record."""

    READY = "ready"
    ENRICHING = "enriching"
    ERROR = "error"


class PricingBucket(str, enum.Enum):
    """Pricing model classification returned by the provider."""

    FREE = "Free"
    FREEMIUM = "Freemium"
    PAID = "Paid"
    ENTERPRISE = "Enterprise"
    UNKNOWN = "Unknown"


class GlobalTool(Base):
    """Enriched metadata shared by every caller.

    Mutated only through the cache store's lock and commit operations.
    """

    __tablename__ = "global_tools"

    tool_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)

    canonical_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    normalized_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    root_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    best_use_cases: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    integrations: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    pricing_bucket: Mapped[Optional[PricingBucket]] = mapped_column(
        Enum(
            PricingBucket,
            name="pricingbucket",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )
    pricing_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    what_it_does: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[ToolStatus] = mapped_column(
        Enum(
            ToolStatus,
            name="toolstatus",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ToolStatus.ENRICHING,
    )
    enriched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    enrich_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<GlobalTool(tool_id='{self.tool_id[:12]}', name='{self.name}', status='{self.status.value}')>"


class GlobalToolAlias(Base):
    """A text string known to resolve to a cached record. Never deleted."""

    __tablename__ = "global_tool_aliases"
    __table_args__ = (
        UniqueConstraint("tool_id", "alias", name="uq_global_tool_alias"),
    )

    tool_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    alias: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<GlobalToolAlias(alias='{self.alias}', tool_id='{self.tool_id[:12]}')>"
