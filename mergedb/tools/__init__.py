"""
Operational tools for MergeDB.

- cli: Inspect collections and verify index consistency of a
  SQLite-persisted database
"""
