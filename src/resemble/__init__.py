"""resemble - two-phase semantic search for call sites that resemble a query."""

__version__ = "0.1.0"
