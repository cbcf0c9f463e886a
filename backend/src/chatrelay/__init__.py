"""Chat relay backend with rolling conversation summaries."""

__version__ = "0.1.0"
