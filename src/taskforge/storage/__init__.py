"""SQLite persistence layer for taskforge."""
