"""Three-stage streaming pipeline: read -> meter -> transform -> write.

Each stage runs in its own thread and stages are connected by bounded
channels, so memory use is capped at ``queue_depth`` chunks per channel no
matter how large the source is, and a slow stage blocks the ones upstream
of it.

The first failure in any stage sets a shared abort flag, cancels the
transform, and wakes every blocked stage; run() joins all stages and then
raises that first failure. A KeyboardInterrupt in the calling thread is
handled the same way and surfaces as OperationCancelledError.

Backup:   device  -> meter(device size)  -> compress   -> archive file
Restore:  archive -> meter(archive size) -> decompress -> device
"""

from __future__ import annotations

import os
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from partition_backup.logging import LoggerFactory
from partition_backup.storage.exceptions import (
    OperationCancelledError,
    StreamFailureError,
)

from .progress import ProgressCallback, ProgressMeter
from .transforms import StreamTransform

MIB = 1024 * 1024
PARTITION_BLOCK_SIZE = 1 * MIB
WHOLE_DISK_BLOCK_SIZE = 16 * MIB
DEFAULT_QUEUE_DEPTH = 4
POLL_INTERVAL = 0.1

_EOF = object()


class _Aborted(Exception):
    """Raised inside a stage when another stage has already failed."""


class Channel:
    """Bounded, blocking hand-off between two stages.

    put() and get() wait in short slices so a blocked stage notices an
    abort instead of waiting forever on a peer that has stopped.
    """

    def __init__(self, name: str, maxsize: int, abort: threading.Event):
        self.name = name
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._abort = abort

    def put(self, item) -> None:
        while True:
            if self._abort.is_set():
                raise _Aborted(self.name)
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def get(self):
        while True:
            if self._abort.is_set():
                raise _Aborted(self.name)
            try:
                return self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue

    def close(self) -> None:
        self.put(_EOF)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self.get()
            if item is _EOF:
                return
            yield item


@dataclass(frozen=True)
class PipelineResult:
    bytes_read: int
    bytes_written: int
    elapsed_seconds: float


class StreamPipeline:
    """Stream ``source_path`` through ``transform`` into ``sink_path``.

    Args:
        source_path: Device node or archive file to read
        sink_path: Archive file or device node to write (truncated on open)
        transform: Compressor or decompressor stream filter
        total_bytes: Declared extent of the source; reading stops there and
            a shorter source is a failure. None reads to end of file.
        block_size: Read size for the source
        progress_callback: Receives ProgressSnapshot updates from the meter
        sink_capacity: Largest number of bytes the sink may receive
        fsync: Flush written blocks to stable storage before returning
        sync_filesystems: Run a global sync() after the final flush
        queue_depth: Chunks each channel may hold
        name: Label for log messages
    """

    def __init__(
        self,
        source_path: Path | str,
        sink_path: Path | str,
        transform: StreamTransform,
        *,
        total_bytes: Optional[int] = None,
        block_size: int = PARTITION_BLOCK_SIZE,
        progress_callback: Optional[ProgressCallback] = None,
        sink_capacity: Optional[int] = None,
        fsync: bool = True,
        sync_filesystems: bool = False,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
        job_id: Optional[str] = None,
        name: str = "pipeline",
    ):
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.source_path = str(source_path)
        self.sink_path = str(sink_path)
        self.transform = transform
        self.total_bytes = total_bytes
        self.block_size = block_size
        self.sink_capacity = sink_capacity
        self.fsync = fsync
        self.sync_filesystems = sync_filesystems
        self.queue_depth = queue_depth
        self.name = name
        self.meter = ProgressMeter(total_bytes, progress_callback)
        self.log = LoggerFactory.for_pipeline(job_id)

        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._first_error: Optional[BaseException] = None
        self._bytes_read = 0
        self._bytes_written = 0

    def run(self) -> PipelineResult:
        """Run all stages to completion.

        Raises:
            StreamFailureError: If any stage fails
            OperationCancelledError: If the run is interrupted
        """
        start = time.monotonic()
        raw = Channel("read", self.queue_depth, self._abort)
        metered = Channel("meter", self.queue_depth, self._abort)
        transformed = Channel("transform", self.queue_depth, self._abort)

        stages = [
            self._stage("read", self._read_stage, raw),
            self._stage("meter", self._meter_stage, raw, metered),
            self._stage("transform", self._transform_stage, metered, transformed),
            self._stage("write", self._write_stage, transformed),
        ]
        self.log.debug(
            f"{self.name}: {self.source_path} -> {self.transform.name} -> {self.sink_path}"
        )
        for thread in stages:
            thread.start()

        try:
            for thread in stages:
                while thread.is_alive():
                    thread.join(POLL_INTERVAL)
        except KeyboardInterrupt:
            self._fail(OperationCancelledError(f"{self.name} interrupted by operator"))
            for thread in stages:
                thread.join()

        if self._first_error is not None:
            self.log.debug(f"{self.name} aborted: {self._first_error}")
            raise self._first_error

        self.meter.finish()
        elapsed = time.monotonic() - start
        self.log.debug(
            f"{self.name} complete: read {self._bytes_read} bytes, "
            f"wrote {self._bytes_written} bytes in {elapsed:.2f}s"
        )
        return PipelineResult(self._bytes_read, self._bytes_written, elapsed)

    # -- failure propagation -------------------------------------------------

    def _fail(self, error: BaseException) -> None:
        with self._lock:
            if self._first_error is None:
                self._first_error = error
            self._abort.set()
        self.transform.cancel()

    def _stage(self, name: str, target: Callable[..., None], *args) -> threading.Thread:
        def runner() -> None:
            try:
                target(*args)
            except _Aborted:
                pass
            except StreamFailureError as error:
                self._fail(error)
            except OSError as error:
                self._fail(
                    StreamFailureError(f"{name} stage failed: {error}", stage=name)
                )
            except Exception as error:
                self._fail(
                    StreamFailureError(
                        f"{name} stage failed: {type(error).__name__}: {error}",
                        stage=name,
                    )
                )

        return threading.Thread(target=runner, name=f"{self.name}-{name}", daemon=True)

    # -- stages ---------------------------------------------------------------

    def _read_stage(self, out: Channel) -> None:
        remaining = self.total_bytes
        with open(self.source_path, "rb", buffering=0) as source:
            while remaining is None or remaining > 0:
                size = self.block_size if remaining is None else min(self.block_size, remaining)
                chunk = source.read(size)
                if not chunk:
                    break
                self._bytes_read += len(chunk)
                if remaining is not None:
                    remaining -= len(chunk)
                out.put(chunk)
        if remaining:
            raise StreamFailureError(
                f"Short read from {self.source_path}: expected {self.total_bytes} bytes, "
                f"got {self._bytes_read}",
                stage="read",
            )
        out.close()

    def _meter_stage(self, inbound: Channel, out: Channel) -> None:
        for chunk in inbound:
            self.meter.update(len(chunk))
            out.put(chunk)
        out.close()

    def _transform_stage(self, inbound: Channel, out: Channel) -> None:
        self.transform.run(iter(inbound), out.put)
        out.close()

    def _write_stage(self, inbound: Channel) -> None:
        with open(self.sink_path, "wb", buffering=0) as sink:
            for chunk in inbound:
                if (
                    self.sink_capacity is not None
                    and self._bytes_written + len(chunk) > self.sink_capacity
                ):
                    raise StreamFailureError(
                        f"{self.sink_path} is too small: more than {self.sink_capacity} bytes",
                        stage="write",
                    )
                view = memoryview(chunk)
                while view:
                    written = sink.write(view)
                    view = view[written:]
                self._bytes_written += len(chunk)
            if self.fsync:
                os.fsync(sink.fileno())
        if self.sync_filesystems:
            os.sync()
