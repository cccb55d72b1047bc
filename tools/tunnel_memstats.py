"""Memory sampling and progress tracking for the tunnel memory stress test.

- Read process memory (this process and/or its descendants) via psutil.
- Count established tunnels from the notice callback thread.
- On every sample tick, fail the run if memory is over budget or if no new
  tunnel was established since the previous tick.
"""

from __future__ import annotations

import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil


_BYTE_UNITS = "KMGTPEZ"

_BYTE_COUNT_RE = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[KMGT]?)(?:I?B)?\s*$", re.IGNORECASE)


class MemoryTestError(RuntimeError):
    """Fatal condition that ends a memory test run."""


class MemoryLimitExceeded(MemoryTestError):
    def __init__(self, sys_bytes: int, limit: int):
        self.sys_bytes = sys_bytes
        self.limit = limit
        super().__init__(f"sys memory exceeds limit: {sys_bytes} (limit {limit})")


class ProgressStalled(MemoryTestError):
    def __init__(self, previous: int, current: int):
        self.previous = previous
        self.current = current
        super().__init__(
            f"expected established tunnels (previous tick: {previous}, this tick: {current})"
        )


@dataclass(frozen=True)
class MemorySample:
    ts: float
    sys_bytes: int
    total_alloc_bytes: int


MemoryReader = Callable[[], MemorySample]


def format_byte_count(n: int) -> str:
    """Render a byte count as 512B, 1.5K, 11.0M, ..."""
    if n < 1024:
        return f"{n}B"
    exp = 1
    while exp < len(_BYTE_UNITS) and n >= 1024 ** (exp + 1):
        exp += 1
    return f"{n / 1024 ** exp:.1f}{_BYTE_UNITS[exp - 1]}"


def parse_byte_count(text: str) -> int:
    """Parse '11534336', '11M', '512k', '1.5GiB' into bytes."""
    m = _BYTE_COUNT_RE.match(text or "")
    if not m:
        raise ValueError(f"Invalid byte count: {text!r}")
    unit = m.group("unit").upper()
    scale = 1024 ** (_BYTE_UNITS.index(unit) + 1) if unit else 1
    return int(float(m.group("num")) * scale)


class ProcessTreeMemoryReader:
    """Sum resident memory over a process and its descendants.

    With include_self=False only the descendants are counted, which is what
    you want when the controller runs as a child process. Cumulative
    allocations are approximated as the running total of resident-size
    growth seen between reads, so the figure never decreases.
    """

    def __init__(self, process: Optional[psutil.Process] = None, *, include_self: bool = True):
        self._process = process or psutil.Process(os.getpid())
        self.include_self = include_self
        self._last_rss: Optional[int] = None
        self._total_alloc = 0

    def _processes(self) -> list[psutil.Process]:
        procs = [self._process] if self.include_self else []
        try:
            procs.extend(self._process.children(recursive=True))
        except psutil.NoSuchProcess:
            pass
        return procs

    def resident_bytes(self) -> int:
        total = 0
        for proc in self._processes():
            try:
                total += int(proc.memory_info().rss)
            except psutil.NoSuchProcess:
                # Children can exit between listing and reading.
                continue
        return total

    def __call__(self) -> MemorySample:
        rss = self.resident_bytes()
        if self._last_rss is None:
            self._total_alloc = rss
        elif rss > self._last_rss:
            self._total_alloc += rss - self._last_rss
        self._last_rss = rss
        return MemorySample(ts=time.time(), sys_bytes=rss, total_alloc_bytes=self._total_alloc)


class ProgressTracker:
    """Established-tunnel counter shared by the notice thread and the loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    def snapshot(self) -> int:
        with self._lock:
            return self._count


class MemoryWatchdog:
    """Per-tick memory ceiling and forward-progress check."""

    def __init__(self, max_sys_memory: int, tracker: ProgressTracker):
        self.max_sys_memory = max_sys_memory
        self.tracker = tracker
        self.last_established = 0

    def check(self, sample: MemorySample) -> int:
        if sample.sys_bytes > self.max_sys_memory:
            raise MemoryLimitExceeded(sample.sys_bytes, self.max_sys_memory)

        n = self.tracker.snapshot()
        print(
            f"Tunnels established: {n}, "
            f"MemStats.Sys (peak system memory used): {format_byte_count(sample.sys_bytes)}, "
            f"MemStats.TotalAlloc (cumulative allocations): {format_byte_count(sample.total_alloc_bytes)}",
            flush=True,
        )
        # Count must strictly increase between ticks, including the first one.
        if self.last_established - n >= 0:
            raise ProgressStalled(self.last_established, n)
        self.last_established = n
        return n
