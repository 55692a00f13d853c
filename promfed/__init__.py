"""Series deduplication, store querying, config reloading and shipper metadata helpers."""

__version__ = "0.1.0"