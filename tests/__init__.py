"""
MergeDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory repository, no files)
- integration/: Integration tests (SQLite storage, database composer, CLI)
"""
