"""SQLite persistence for jobs, job logs, and session progress."""
