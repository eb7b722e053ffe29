"""HTTP API for Toolshelf."""
