"""
ShadowPilot Traffic Statistics
==============================
Cumulative upload/download counters fed by absolute snapshots from the
proxy process log (``statistics: upload=N download=M``).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


@dataclass
class TrafficCounters:
    """Cumulative byte counters for one process instance."""
    upload_bytes: int = 0
    download_bytes: int = 0
    updated: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload": self.upload_bytes,
            "download": self.download_bytes,
            "updated": self.updated,
        }


class TrafficStatistics:
    """
    Converts absolute counter snapshots into deltas and accumulates them.

    A snapshot smaller than the previous one means the process counters
    restarted; the snapshot itself is then taken as the delta, so the
    cumulative totals never decrease.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = TrafficCounters()
        self._last_upload = 0
        self._last_download = 0

    def ingest(self, upload: int, download: int) -> Tuple[int, int]:
        """Record a snapshot and return the ``(upload, download)`` delta."""
        with self._lock:
            d_up = upload - self._last_upload if upload >= self._last_upload else upload
            d_down = download - self._last_download if download >= self._last_download else download
            self._last_upload = upload
            self._last_download = download
            self._counters.upload_bytes += d_up
            self._counters.download_bytes += d_down
            self._counters.updated = time.time()
        return d_up, d_down

    def reset(self) -> None:
        with self._lock:
            self._counters = TrafficCounters()
            self._last_upload = 0
            self._last_download = 0

    def snapshot(self) -> TrafficCounters:
        with self._lock:
            c = self._counters
            return TrafficCounters(c.upload_bytes, c.download_bytes, c.updated)

    @property
    def upload_bytes(self) -> int:
        return self.snapshot().upload_bytes

    @property
    def download_bytes(self) -> int:
        return self.snapshot().download_bytes
