"""SQLite persistence for users and file uploads."""
