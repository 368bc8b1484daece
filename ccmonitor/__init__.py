"""Claude Code usage monitor: transcript ingestion and cost aggregation."""

__version__ = "0.1.0"
