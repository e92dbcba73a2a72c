"""
ArtDB Test Suite.

This package contains:
- unit/: Unit tests (validator, registry, database layer, config, errors)
- integration/: Integration tests (stores and transactions on SQLite files)
"""
