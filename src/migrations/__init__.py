"""Forward-only SQL migrations for the cache schema."""
