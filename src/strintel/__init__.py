"""Short-term-rental market intelligence: ingestion and aggregation pipeline."""

__version__ = "0.1.0"
