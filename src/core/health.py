"""
Process Health Snapshot

Read-only view of process statistics for the /health endpoint. The start
time is captured once at process start and passed in, so the reporter holds
no ambient state of its own.
"""

import gc
import os
import resource
import sys
import threading
import time

from pydantic import BaseModel, ConfigDict, Field

MB = 1024 * 1024


class HealthStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uptime: int = Field(description="Seconds since process start")
    threads: int
    gc_cycles: int = Field(alias="completedGCCycles")
    cpus: int
    max_resident_memory: float = Field(alias="maxResidentMemory", description="Peak RSS in MB")
    objects_in_use: int = Field(alias="objectsInUse")


def _max_rss_megabytes() -> float:
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # kilobytes on Linux, bytes on macOS
    if sys.platform != "darwin":
        rss *= 1024
    return round(rss / MB, 2)


class HealthReporter:
    """Builds HealthStats relative to a fixed process start time."""

    def __init__(self, started_at: float):
        self.started_at = started_at

    def uptime(self) -> int:
        return int(time.time() - self.started_at)

    def snapshot(self) -> HealthStats:
        return HealthStats(
            uptime=self.uptime(),
            threads=threading.active_count(),
            gc_cycles=sum(stat["collections"] for stat in gc.get_stats()),
            cpus=os.cpu_count() or 1,
            max_resident_memory=_max_rss_megabytes(),
            objects_in_use=len(gc.get_objects()),
        )
