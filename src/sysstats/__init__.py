"""sysstats - real-time host metrics over HTTP."""

__version__ = "1.0"
