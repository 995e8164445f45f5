"""
Process supervision for the managed daemon.

Starts the current binary, passes its stdout/stderr through to the operator
and watches both streams for the upgrade marker. Three things can end a run:
the process exits, stdout announces an upgrade, or stderr announces one.
Whichever is decided first wins, and an upgrade always beats a failure.
"""

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterable, Sequence

import psutil

from .config import Config
from .errors import BinaryNotExecutable, ProcessExitError, ProcessStartError, ScanError
from .scanner import UpgradeInfo, await_marker, copy_stream, scanning_writer
from .upgrade import do_upgrade, verify_binary

logger = logging.getLogger(__name__)


class ProcessState(Enum):
    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    EXITED = "exited"


@dataclass(frozen=True)
class Outcome:
    """Result of a supervised run: an upgrade, a failure, or neither."""

    info: UpgradeInfo | None = None
    error: BaseException | None = None

    def is_empty(self) -> bool:
        return self.info is None and self.error is None


def offer(current: Outcome, candidate: Outcome) -> Outcome:
    """Merge a new candidate into the current outcome.

    The first offer of either kind is kept, except that an upgrade replaces a
    failure. A recorded upgrade is never replaced.
    """
    if current.info is not None:
        return current
    if candidate.info is not None:
        return Outcome(info=candidate.info)
    if current.error is not None:
        return current
    if candidate.error is not None:
        return Outcome(error=candidate.error)
    return current


class WaitResult:
    """Outcome shared by the stream scanners and the exit wait."""

    def __init__(self):
        self._outcome = Outcome()
        self._lock = threading.Lock()

    def set_upgrade(self, info: UpgradeInfo):
        with self._lock:
            self._outcome = offer(self._outcome, Outcome(info=info))

    def set_error(self, error: BaseException):
        with self._lock:
            self._outcome = offer(self._outcome, Outcome(error=error))

    def get(self) -> Outcome:
        with self._lock:
            return self._outcome


def kill_process_tree(pid: int):
    """Best-effort kill of a process and its descendants. Errors are only logged."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    except psutil.Error as e:
        logger.warning(f"Could not inspect process {pid}: {e}")
        return

    for proc in [parent, *children]:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"Could not kill process {proc.pid}: {e}")


class UpgradeWatcher:
    """Races a process exit against upgrade markers on its two output streams."""

    def __init__(self, process: subprocess.Popen):
        self._process = process
        self._result = WaitResult()
        self._state = ProcessState.RUNNING
        self._state_lock = threading.Lock()

    @property
    def state(self) -> ProcessState:
        with self._state_lock:
            return self._state

    @property
    def result(self) -> Outcome:
        return self._result.get()

    def _scan(self, lines: Iterable[str], stream_name: str):
        """Scan one stream and record what it found."""
        try:
            info = await_marker(lines)
        except ScanError as e:
            logger.error(f"Scanning {stream_name} of PID {self._process.pid} failed: {e}")
            self._result.set_error(e)
            return
        finally:
            close = getattr(lines, "close", None)
            if close:
                close()

        if info is not None:
            self._result.set_upgrade(info)
            self._stop_for_upgrade(info)

    def _stop_for_upgrade(self, info: UpgradeInfo):
        with self._state_lock:
            if self._state is not ProcessState.RUNNING:
                return
            self._state = ProcessState.SIGNAL_SENT
        logger.info(f"Stopping PID {self._process.pid} for upgrade {info.name!r}")
        kill_process_tree(self._process.pid)

    def wait(
        self,
        stdout_lines: Iterable[str],
        stderr_lines: Iterable[str],
        stream_threads: Sequence[threading.Thread] = (),
    ) -> UpgradeInfo | None:
        """Block until the process is gone and its streams are drained.

        Returns the UpgradeInfo if an upgrade was announced (the process has
        been killed), None if the process exited cleanly before any upgrade or
        failure was recorded. Raises the recorded failure otherwise.
        """
        scanners = [
            threading.Thread(
                target=self._scan, args=(lines, name), name=f"scan-{name}", daemon=True
            )
            for lines, name in ((stdout_lines, "stdout"), (stderr_lines, "stderr"))
        ]
        for thread in scanners:
            thread.start()

        returncode = self._process.wait()
        with self._state_lock:
            signal_sent = self._state is ProcessState.SIGNAL_SENT
            self._state = ProcessState.EXITED

        if returncode == 0:
            # Anything the scanners find from here on is ignored
            outcome = self._result.get()
            if signal_sent:
                logger.info(f"PID {self._process.pid} exited cleanly after termination signal")
            elif outcome.is_empty():
                logger.info(f"PID {self._process.pid} exited cleanly")
        else:
            self._result.set_error(ProcessExitError(returncode))
            outcome = self._result.get()

        for thread in (*stream_threads, *scanners):
            thread.join()

        if outcome.info is not None:
            return outcome.info
        if outcome.error is not None:
            raise outcome.error
        return None


def wait_for_upgrade_or_exit(
    process: subprocess.Popen,
    stdout_lines: Iterable[str],
    stderr_lines: Iterable[str],
    stream_threads: Sequence[threading.Thread] = (),
) -> UpgradeInfo | None:
    """Supervise a started process. See UpgradeWatcher.wait."""
    return UpgradeWatcher(process).wait(stdout_lines, stderr_lines, stream_threads)


def launch_process(config: Config, args: Sequence[str], stdout: BinaryIO, stderr: BinaryIO) -> bool:
    """Run the current binary until it exits or asks for an upgrade.

    Returns True if an upgrade was announced and applied, False if the
    process exited cleanly without one.
    """
    bin_path = config.current_bin()
    try:
        verify_binary(bin_path)
    except BinaryNotExecutable as e:
        logger.error(f"Current binary invalid: {e}")
        raise

    cmd = [str(bin_path), *args]
    try:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise ProcessStartError(f"launching process {shlex.join(cmd)}: {e}") from e
    logger.info(f"Started {shlex.join(cmd)} with PID {process.pid}")

    out_writer, out_lines = scanning_writer(stdout)
    err_writer, err_lines = scanning_writer(stderr)
    pumps = [
        threading.Thread(
            target=copy_stream, args=(process.stdout, out_writer), name="pump-stdout", daemon=True
        ),
        threading.Thread(
            target=copy_stream, args=(process.stderr, err_writer), name="pump-stderr", daemon=True
        ),
    ]
    for thread in pumps:
        thread.start()

    info = wait_for_upgrade_or_exit(process, out_lines, err_lines, stream_threads=pumps)
    if info is None:
        return False

    do_upgrade(config, info)
    return True
