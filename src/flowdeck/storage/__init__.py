"""SQLite storage helpers and schema."""
