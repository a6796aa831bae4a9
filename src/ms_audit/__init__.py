"""Agent-driven use case extraction and implementation gap analysis for microservices."""

__version__ = "0.4.0"
