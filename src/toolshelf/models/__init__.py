"""Database models for Toolshelf."""

from .base import Base
from .global_tool import GlobalTool, GlobalToolAlias, PricingBucket, ToolStatus
from .usage_counter import QuotaScope, UsageCounter

__all__ = [
    "Base",
    "GlobalTool",
    "GlobalToolAlias",
    "PricingBucket",
    "ToolStatus",
    "QuotaScope",
    "UsageCounter",
]
