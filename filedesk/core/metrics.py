from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "upload_failures": 0,
            "bytes_uploaded": 0,
            "deleted": 0,
            "orphaned_blobs": 0,
            "orphans_reclaimed": 0,
        }

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_upload_failure(self) -> None:
        self._bump("upload_failures")

    def record_deletion(self) -> None:
        self._bump("deleted")

    def record_orphan(self) -> None:
        self._bump("orphaned_blobs")

    def record_reclaimed(self, count: int) -> None:
        if count <= 0:
            return
        self._bump("orphans_reclaimed", count)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
