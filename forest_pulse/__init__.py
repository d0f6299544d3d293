"""Forest change analytics: ingest, clean, filter, aggregate, benchmark and project."""

__version__ = "0.1.0"
