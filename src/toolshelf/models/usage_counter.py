"""Per-caller quota counters."""

import enum

from sqlalchemy import Enum, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class QuotaScope(str, enum.Enum):
    """Time window a counter belongs to."""

    MINUTE = "minute"
    DAY = "day"


class UsageCounter(Base):
    """Count of expensive enrichments for one caller in one time bucket.

    ``bucket_key`` is ``YYYYMMDDHHMM`` for minute buckets and ``YYYY-MM-DD``
    for day buckets. Counters only ever increase.
    """

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("caller_id", "bucket_key", name="uq_usage_counter_bucket"),
    )

    caller_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    bucket_key: Mapped[str] = mapped_column(String(16), nullable=False)
    scope: Mapped[QuotaScope] = mapped_column(
        Enum(
            QuotaScope,
            name="quotascope",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<UsageCounter(caller_id='{self.caller_id}', bucket='{self.bucket_key}', count={self.count})>"
