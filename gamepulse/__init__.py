"""GamePulse: event ingestion, idempotent aggregation and cache-aside serving."""

__version__ = "0.1.0"
