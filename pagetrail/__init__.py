"""pagetrail — paginated fetch orchestrator with an auditable execution log."""

__version__ = "0.1.0"
