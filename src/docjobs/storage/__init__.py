"""SQLite persistence for jobs, job events and documents."""
