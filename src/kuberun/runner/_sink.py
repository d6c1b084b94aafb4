"""Output sinks shared by all concurrently running log copies.

Writes arrive from worker threads, one per chunk, and from different
containers they interleave in arbitrary order. Each write call is applied
atomically under a lock so a single chunk is never split.
"""

from __future__ import annotations

import sys
import threading
from typing import BinaryIO, Protocol, runtime_checkable

from kuberun.logger import logger


@runtime_checkable
class OutputSink(Protocol):
    def write(self, data: bytes) -> None: ...
    def close(self) -> None: ...


class StreamSink:
    """Raw byte sink over a binary file object (stdout by default)."""

    def __init__(self, stream: BinaryIO | None = None, *, close_underlying: bool = False) -> None:
        self._stream = stream if stream is not None else sys.stdout.buffer
        self._close_underlying = close_underlying
        self._lock = threading.Lock()
        self.closed = False

    def write(self, data: bytes) -> None:
        with self._lock:
            if self.closed:
                return
            self._stream.write(data)
            self._stream.flush()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._stream.flush()
            if self._close_underlying:
                self._stream.close()


class LoggerSink:
    """Emit each complete output line as a log event tagged with the job name.

    Bytes are buffered until a newline arrives; whatever is left over is
    flushed as a final line on close.
    """

    def __init__(self, job: str) -> None:
        self._log = logger.bind(job=job)
        self._buf = b""
        self._lock = threading.Lock()
        self.closed = False

    def write(self, data: bytes) -> None:
        with self._lock:
            if self.closed:
                return
            self._buf += data
            *lines, self._buf = self._buf.split(b"\n")
        for line in lines:
            self._emit(line)

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            rest, self._buf = self._buf, b""
        if rest:
            self._emit(rest)

    def _emit(self, line: bytes) -> None:
        self._log.info(line.decode(errors="replace").rstrip("\r"))
