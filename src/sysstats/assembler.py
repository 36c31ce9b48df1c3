"""Snapshot assembly for sysstats."""

import logging
from collections.abc import Callable
from typing import TypeVar

from sysstats.errors import MetricsUnavailable
from sysstats.models import BYTES_PER_MB, ProcessSample, Snapshot
from sysstats.source import MetricsSource, ProcessHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _read_core(what: str, read: Callable[[], T]) -> T:
    """Run one core metric read, turning any failure into MetricsUnavailable."""
    try:
        return read()
    except Exception as exc:
        raise MetricsUnavailable(f"error getting {what}: {exc}") from exc


class SnapshotAssembler:
    """
    Builds one Snapshot per call from a MetricsSource.

    Core metrics (CPU, memory, disk, network) fail fast as a group: if any of
    them cannot be read, assemble() raises MetricsUnavailable and no Snapshot
    is produced. Process enumeration is best effort: a process whose name,
    CPU percent or RSS cannot be read is left out of the result.

    No retries are done here; callers decide whether to try again next cycle.
    """

    def __init__(self, source: MetricsSource, disk_path: str = "/") -> None:
        """
        Initialize the SnapshotAssembler.

        Args:
            source: Where the readings come from.
            disk_path: Mount point whose utilization is reported.
        """
        self._source = source
        self._disk_path = disk_path

    @property
    def disk_path(self) -> str:
        """Get the filesystem path used for disk utilization."""
        return self._disk_path

    def assemble(self) -> Snapshot:
        """
        Collect a new Snapshot.

        Raises:
            MetricsUnavailable: A core metric or the process list could not be read.
        """
        cpu = _read_core("CPU stats", self._source.read_cpu)
        if cpu is None:
            raise MetricsUnavailable("no CPU statistics available")

        mem = _read_core("memory stats", self._source.read_memory)
        disk = _read_core("disk stats", lambda: self._source.read_disk(self._disk_path))

        counters = _read_core("network stats", self._source.read_network_counters)
        if not counters:
            raise MetricsUnavailable("no network statistics available")
        net = counters[0]

        handles = _read_core("process list", lambda: list(self._source.list_processes()))

        return Snapshot(
            cpu_usage_percent=cpu,
            mem_usage_percent=mem,
            disk_usage_percent=disk,
            net_traffic_bytes=net.bytes_sent + net.bytes_recv,
            processes=self._collect_processes(handles),
        )

    def _collect_processes(self, handles: list[ProcessHandle]) -> tuple[ProcessSample, ...]:
        """
        Sample every process handle, in enumeration order.

        Fields are read as name, CPU percent, RSS. The first failing field,
        whatever it raises, drops the whole process.
        """
        processes: list[ProcessSample] = []

        for handle in handles:
            try:
                name = handle.name()
                cpu_percent = handle.cpu_percent()
                rss = handle.memory_rss()
            except Exception as exc:
                # Died mid-poll, access denied, zombie or any other per-process read error
                logger.debug("Skipping pid %s: %s", handle.pid, exc)
                continue

            processes.append(
                ProcessSample(
                    pid=handle.pid,
                    name=name,
                    cpu_percent=cpu_percent,
                    memory_usage_mb=rss / BYTES_PER_MB,
                )
            )

        return tuple(processes)
