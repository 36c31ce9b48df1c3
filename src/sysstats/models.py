"""Data models for sysstats."""

from dataclasses import dataclass, field
from typing import Any

BYTES_PER_MB = 1024 * 1024


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Immutable sample of a single process."""

    pid: int
    name: str
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_usage_mb: float  # RSS in MB

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "cpuPercent": self.cpu_percent,
            "memoryUsage": self.memory_usage_mb,
        }


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    Immutable point-in-time reading of all tracked metrics.

    A new Snapshot is built for every sampling cycle; processes are held in a
    tuple so nothing inside can be mutated after construction.
    """

    cpu_usage_percent: float
    mem_usage_percent: float
    disk_usage_percent: float
    net_traffic_bytes: int  # bytes sent + received since boot
    processes: tuple[ProcessSample, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON shape served by the API."""
        return {
            "cpuUsage": self.cpu_usage_percent,
            "memUsage": self.mem_usage_percent,
            "diskUsage": self.disk_usage_percent,
            "netTraffic": self.net_traffic_bytes,
            "processes": [proc.to_dict() for proc in self.processes],
        }
