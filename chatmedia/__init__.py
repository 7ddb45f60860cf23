"""Chat media retrieval pipeline."""

__version__ = "0.3.0"
