"""Exceptions raised by the sampling and streaming pipeline."""


class StatsError(Exception):
    """Base exception for all sysstats errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MetricsUnavailable(StatsError):
    """One or more core metrics (CPU, memory, disk, network) could not be read."""


class ProcessFieldUnavailable(StatsError):
    """A single field of a single process could not be read."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class TransportWriteFailure(StatsError):
    """Writing to a streaming client failed, usually because it went away."""


class ListenerFailure(StatsError):
    """The HTTP listener could not bind or crashed while serving."""
