"""
Upgrade marker scanning for daemon output.

Daemon output is teed: every byte goes to the operator's stream unchanged
and is also split into lines that are checked for the upgrade marker

    UPGRADE "<name>" NEEDED at height <height>: <info>
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator

from .errors import ScanError

logger = logging.getLogger(__name__)

MARKER_RE = re.compile(r'UPGRADE "([^"]*)" NEEDED at height (\d+): (.*)')

CHUNK_SIZE = 64 * 1024

# Longest line the scanner will buffer, newline excluded
MAX_LINE_SIZE = 64 * 1024


@dataclass(frozen=True)
class UpgradeInfo:
    """An upgrade request announced by the daemon."""

    name: str
    height: int
    info: str


def parse_marker(line: str) -> UpgradeInfo | None:
    """Return the UpgradeInfo announced on this line, if any."""
    match = MARKER_RE.search(line)
    if not match:
        return None
    return UpgradeInfo(
        name=match.group(1),
        height=int(match.group(2)),
        info=match.group(3),
    )


class LineSource:
    """Iterator over the complete lines written to a ScanningWriter.

    Blocks until a line is available. Ends once the writer is closed and the
    buffer is drained; a read error passed to the writer is raised as
    ScanError after the buffered lines, as is a line longer than
    MAX_LINE_SIZE. Can be consumed once only.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._buffer = bytearray()
        self._closed = False
        self._discarding = False
        self._error: BaseException | None = None
        self._done = False

    def _feed(self, data: bytes):
        with self._cond:
            if self._discarding or self._closed:
                return
            # Start of the pending partial line
            start = self._buffer.rfind(b"\n") + 1
            self._buffer.extend(data)
            while True:
                newline = self._buffer.find(b"\n", start)
                end = newline if newline >= 0 else len(self._buffer)
                if end - start > MAX_LINE_SIZE:
                    # Keep the complete lines, stop scanning
                    del self._buffer[start:]
                    self._closed = True
                    self._error = ValueError(f"line longer than {MAX_LINE_SIZE} bytes")
                    break
                if newline < 0:
                    break
                start = newline + 1
            self._cond.notify_all()

    def _finish(self, error: BaseException | None = None):
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._error = error
            self._cond.notify_all()

    def close(self):
        """Stop buffering. Lines already buffered are dropped."""
        with self._cond:
            self._discarding = True
            self._done = True
            self._buffer.clear()
            self._cond.notify_all()

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        with self._cond:
            while True:
                if self._done:
                    raise StopIteration

                newline = self._buffer.find(b"\n")
                if newline >= 0:
                    line = bytes(self._buffer[:newline])
                    del self._buffer[: newline + 1]
                    return _decode(line)

                if self._closed:
                    self._done = True
                    if self._error is not None:
                        self._buffer.clear()
                        raise ScanError(f"reading output failed: {self._error}") from self._error
                    if self._buffer:
                        line = bytes(self._buffer)
                        self._buffer.clear()
                        return _decode(line)
                    raise StopIteration

                self._cond.wait()


def _decode(line: bytes) -> str:
    return line.decode("utf-8", errors="replace").rstrip("\r")


class ScanningWriter:
    """Writes through to a sink while feeding a LineSource."""

    def __init__(self, sink: BinaryIO, lines: LineSource):
        self._sink = sink
        self._lines = lines
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._sink.write(data)
            flush = getattr(self._sink, "flush", None)
            if flush:
                flush()
            self._lines._feed(data)
        return len(data)

    def close(self, error: BaseException | None = None):
        """End the line source. A non-None error is raised to its reader."""
        self._lines._finish(error)


def scanning_writer(sink: BinaryIO) -> tuple[ScanningWriter, LineSource]:
    """Create a writer that copies to sink and the line source it feeds."""
    lines = LineSource()
    return ScanningWriter(sink, lines), lines


def copy_stream(source: BinaryIO, writer: ScanningWriter):
    """Pump source into writer until EOF, then close both.

    Read errors are handed to the writer so the scanning side sees them.
    """
    error = None
    try:
        read = getattr(source, "read1", source.read)
        for chunk in iter(lambda: read(CHUNK_SIZE), b""):
            writer.write(chunk)
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading process output: {e}")
        error = e
    finally:
        writer.close(error)
        try:
            source.close()
        except OSError:
            pass


def await_marker(lines: Iterable[str]) -> UpgradeInfo | None:
    """Consume lines until one carries the upgrade marker.

    Returns the parsed UpgradeInfo and stops reading at the first match, or
    None if the lines run out first. Raises ScanError if reading fails.
    """
    for line in lines:
        info = parse_marker(line)
        if info is not None:
            logger.info(
                f"Detected upgrade {info.name!r} at height {info.height}: {info.info}"
            )
            return info
    return None
