"""Byte-stream filters used as the middle stage of a pipeline.

A transform consumes an iterator of input chunks and hands every output
chunk to ``emit``. The pipeline composes against the StreamTransform
protocol only; SubprocessTransform is the production implementation that
shells out to an external compressor, and PassthroughTransform is an
in-process identity filter.
"""

from __future__ import annotations

import subprocess
import threading
from collections import deque
from typing import IO, Callable, Iterable, Optional, Protocol, Sequence

from partition_backup.logging import get_logger
from partition_backup.storage.exceptions import StreamFailureError

log = get_logger(source=__name__, tags=["pipeline"])

DEFAULT_READ_SIZE = 1024 * 1024
STDERR_TAIL_LINES = 20


class StreamTransform(Protocol):
    """A bidirectional byte-stream filter (compressor, decompressor, ...)."""

    name: str

    def run(self, chunks: Iterable[bytes], emit: Callable[[bytes], None]) -> None:
        """Consume ``chunks`` and emit transformed bytes until input is exhausted.

        Raises:
            StreamFailureError: If the filter fails
        """

    def cancel(self) -> None:
        """Stop a running filter from another thread."""


class PassthroughTransform:
    """Emit every chunk unchanged."""

    name = "passthrough"

    def run(self, chunks: Iterable[bytes], emit: Callable[[bytes], None]) -> None:
        for chunk in chunks:
            emit(chunk)

    def cancel(self) -> None:
        return None


class SubprocessTransform:
    """Run a command as a stdin -> stdout filter.

    Input is fed from a helper thread while the calling thread reads the
    command's stdout, so both pipes stay drained and a slow consumer
    simply blocks the command. stderr is drained separately and the last
    lines are kept for the error message.
    """

    def __init__(
        self,
        command: Sequence[str],
        name: Optional[str] = None,
        read_size: int = DEFAULT_READ_SIZE,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.command = list(command)
        self.name = name or self.command[0]
        self.read_size = read_size
        self._popen = popen
        self._process: Optional[subprocess.Popen] = None
        self._cancelled = threading.Event()

    def run(self, chunks: Iterable[bytes], emit: Callable[[bytes], None]) -> None:
        log.debug(f"Running command: {' '.join(self.command)}")
        try:
            process = self._popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise StreamFailureError(
                f"Failed to start {self.name}: {error}", stage=self.name
            ) from error
        self._process = process
        if self._cancelled.is_set():
            self._terminate(process)

        feed_errors: list[BaseException] = []
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        feeder = threading.Thread(
            target=self._feed,
            args=(process.stdin, chunks, feed_errors),
            name=f"{self.name}-stdin",
            daemon=True,
        )
        drainer = threading.Thread(
            target=self._drain,
            args=(process.stderr, stderr_tail),
            name=f"{self.name}-stderr",
            daemon=True,
        )
        feeder.start()
        drainer.start()

        completed = False
        try:
            while True:
                data = process.stdout.read(self.read_size)
                if not data:
                    break
                emit(data)
            completed = True
        finally:
            if not completed:
                self._terminate(process)
            process.stdout.close()
            feeder.join()
            drainer.join()
            returncode = process.wait()
            self._process = None

        for error in feed_errors:
            if not isinstance(error, (BrokenPipeError, OSError)):
                # Upstream aborted or failed; let the pipeline report it.
                raise error

        if self._cancelled.is_set():
            raise StreamFailureError(f"{self.name} was cancelled", stage=self.name)
        if returncode != 0:
            message = " ".join(line.strip() for line in stderr_tail) or "no error output"
            raise StreamFailureError(
                f"{self.name} exited with status {returncode}: {message}",
                stage=self.name,
                returncode=returncode,
            )
        if feed_errors:
            raise StreamFailureError(
                f"{self.name} stopped reading its input: {feed_errors[0]}",
                stage=self.name,
            )
        log.debug(f"{self.name} completed successfully")

    def cancel(self) -> None:
        self._cancelled.set()
        process = self._process
        if process is not None:
            self._terminate(process)

    @staticmethod
    def _feed(
        stdin: IO[bytes], chunks: Iterable[bytes], errors: list[BaseException]
    ) -> None:
        try:
            for chunk in chunks:
                stdin.write(chunk)
        except BaseException as error:  # re-raised by run() in the stage thread
            errors.append(error)
        finally:
            try:
                stdin.close()
            except OSError as error:
                errors.append(error)

    @staticmethod
    def _drain(stderr: IO[bytes], tail: deque[str]) -> None:
        for raw_line in iter(stderr.readline, b""):
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)
                log.trace(f"stderr: {line}")
        stderr.close()

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
