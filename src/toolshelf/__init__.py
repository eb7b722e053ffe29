"""Toolshelf: shared enrichment cache for a software-tool knowledge base."""

__version__ = "0.1.0"
