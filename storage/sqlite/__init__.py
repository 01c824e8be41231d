"""SQLite backend for local runs and tests."""
