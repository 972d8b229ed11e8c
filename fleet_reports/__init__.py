"""Fleet Reports: local-day bucketed stops/trips reports for a fleet tracking backend."""

__version__ = "1.0.0"
