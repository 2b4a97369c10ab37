"""Infrastructure adapters (database, cache)."""
