"""Progress metering and formatting for pipeline runs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from partition_backup.storage.devices import human_size


@dataclass(frozen=True)
class ProgressSnapshot:
    """Cumulative transfer state reported by the metering stage."""

    bytes_done: int
    total_bytes: Optional[int]
    elapsed_seconds: float
    rate: Optional[float]  # bytes per second
    finished: bool = False

    @property
    def ratio(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return max(0.0, min(1.0, self.bytes_done / self.total_bytes))

    @property
    def eta_seconds(self) -> Optional[float]:
        if not self.rate or not self.total_bytes or self.bytes_done > self.total_bytes:
            return None
        return (self.total_bytes - self.bytes_done) / self.rate


ProgressCallback = Callable[[ProgressSnapshot], None]


class ProgressMeter:
    """Count bytes passing through a pipeline and report at intervals.

    ``update`` never alters the data; it only counts. The final call made
    by ``finish`` is always reported, regardless of the interval.
    """

    def __init__(
        self,
        total_bytes: Optional[int] = None,
        callback: Optional[ProgressCallback] = None,
        interval_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = total_bytes
        self.callback = callback
        self.interval = interval_seconds
        self._clock = clock
        self._start = clock()
        self._last_report: Optional[float] = None
        self.bytes_done = 0

    def update(self, byte_count: int) -> None:
        self.bytes_done += byte_count
        now = self._clock()
        if self._last_report is None or now - self._last_report >= self.interval:
            self._report(now, finished=False)

    def finish(self) -> ProgressSnapshot:
        return self._report(self._clock(), finished=True)

    def snapshot(self, now: Optional[float] = None, finished: bool = False) -> ProgressSnapshot:
        now = self._clock() if now is None else now
        elapsed = max(0.0, now - self._start)
        rate = self.bytes_done / elapsed if elapsed > 0 else None
        return ProgressSnapshot(
            bytes_done=self.bytes_done,
            total_bytes=self.total_bytes,
            elapsed_seconds=elapsed,
            rate=rate,
            finished=finished,
        )

    def _report(self, now: float, finished: bool) -> ProgressSnapshot:
        snapshot = self.snapshot(now, finished)
        self._last_report = now
        if self.callback:
            self.callback(snapshot)
        return snapshot


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_elapsed(seconds: float) -> str:
    """Format a duration as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_progress_lines(title: Optional[str], snapshot: ProgressSnapshot) -> list[str]:
    """Format a progress snapshot into display lines."""
    lines = []
    if title:
        lines.append(title)
    written_line = f"{human_size(snapshot.bytes_done)}"
    if snapshot.total_bytes:
        written_line = f"{written_line} / {human_size(snapshot.total_bytes)}"
    if snapshot.ratio is not None:
        written_line = f"{written_line} {snapshot.ratio * 100:.1f}%"
    lines.append(written_line)
    if snapshot.rate:
        rate_line = f"{human_size(snapshot.rate)}/s"
        eta = format_eta(snapshot.eta_seconds)
        if eta and not snapshot.finished:
            rate_line = f"{rate_line} ETA {eta}"
        lines.append(rate_line)
    return lines
