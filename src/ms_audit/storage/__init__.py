"""SQLite persistence for microservices, use cases and analysis results."""
