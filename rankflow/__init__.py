"""rankflow: event-driven dish ranking ingestion and search synchronization."""

__version__ = "0.1.0"
