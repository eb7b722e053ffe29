"""Caller authentication."""

from .auth import CallerContext, get_caller, verify_caller

__all__ = ["CallerContext", "get_caller", "verify_caller"]
