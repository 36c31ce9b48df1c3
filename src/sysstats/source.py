"""OS introspection layer for sysstats."""

from collections.abc import Iterable, Iterator, Sequence
from typing import NamedTuple, Protocol

import psutil

from sysstats.errors import ProcessFieldUnavailable


class NetCounters(NamedTuple):
    """Cumulative network byte counters since boot."""

    bytes_sent: int
    bytes_recv: int


class ProcessHandle(Protocol):
    """A single entry of the process table."""

    pid: int

    def name(self) -> str: ...

    def cpu_percent(self) -> float: ...

    def memory_rss(self) -> int: ...


class MetricsSource(Protocol):
    """
    Read-only view of host resource usage.

    Every read may fail independently. Implementations must be safe to call
    from several threads at once.
    """

    def read_cpu(self) -> float | None: ...

    def read_memory(self) -> float: ...

    def read_disk(self, path: str) -> float: ...

    def read_network_counters(self) -> Sequence[NetCounters]: ...

    def list_processes(self) -> Iterable[ProcessHandle]: ...


class PsutilProcessHandle:
    """ProcessHandle backed by a psutil.Process."""

    __slots__ = ("_proc", "pid")

    def __init__(self, proc: psutil.Process) -> None:
        self._proc = proc
        self.pid = proc.pid

    def name(self) -> str:
        try:
            return self._proc.name()
        except (psutil.Error, OSError) as exc:
            raise ProcessFieldUnavailable(f"name: {exc}", pid=self.pid) from exc

    def cpu_percent(self) -> float:
        try:
            return self._proc.cpu_percent(interval=None)
        except (psutil.Error, OSError) as exc:
            raise ProcessFieldUnavailable(f"cpu_percent: {exc}", pid=self.pid) from exc

    def memory_rss(self) -> int:
        try:
            return self._proc.memory_info().rss
        except (psutil.Error, OSError) as exc:
            raise ProcessFieldUnavailable(f"memory_info: {exc}", pid=self.pid) from exc


class PsutilSource:
    """
    MetricsSource that reads the local host through psutil.

    psutil.process_iter() caches Process objects between calls, so the per
    process CPU percent is measured against the previous sampling cycle.
    """

    def __init__(self) -> None:
        # Initialize CPU percent (first call returns 0.0)
        psutil.cpu_percent(interval=None)

    def read_cpu(self) -> float | None:
        return psutil.cpu_percent(interval=None)

    def read_memory(self) -> float:
        return psutil.virtual_memory().percent

    def read_disk(self, path: str) -> float:
        return psutil.disk_usage(path).percent

    def read_network_counters(self) -> list[NetCounters]:
        counters = psutil.net_io_counters(pernic=False)
        if counters is None:
            # No network interface installed
            return []
        return [NetCounters(counters.bytes_sent, counters.bytes_recv)]

    def list_processes(self) -> Iterator[PsutilProcessHandle]:
        for proc in psutil.process_iter():
            yield PsutilProcessHandle(proc)
