"""
Exceptions raised by the upgrade manager.

Everything derives from UpgradeManagerError so the command line entry point
can report any failure of a supervised run in one place.
"""

from enum import Enum


class UpgradeManagerError(Exception):
    """Base class for all upgrade manager failures."""


class ConfigErrorReason(Enum):
    NAME_NOT_SET = "name_not_set"
    HOME_NOT_SET = "home_not_set"
    HOME_NOT_ABSOLUTE = "home_not_absolute"
    ROOT_MISSING = "root_missing"
    ROOT_NOT_DIRECTORY = "root_not_directory"


class ConfigError(UpgradeManagerError):
    """The configuration is unusable. Fatal at startup."""

    def __init__(self, reason: ConfigErrorReason, message: str):
        super().__init__(message)
        self.reason = reason


class BinaryNotExecutable(UpgradeManagerError):
    """A binary is missing, not a regular file, or not executable."""

    def __init__(self, path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class ProcessStartError(UpgradeManagerError):
    """The daemon process could not be spawned."""


class ScanError(UpgradeManagerError):
    """Reading one of the daemon's output streams failed."""


class ProcessExitError(UpgradeManagerError):
    """The daemon exited with a failure status and no upgrade was requested."""

    def __init__(self, returncode: int):
        if returncode < 0:
            message = f"process terminated by signal {-returncode}"
        else:
            message = f"process exited with status {returncode}"
        super().__init__(message)
        self.returncode = returncode


class UpgradeError(UpgradeManagerError):
    """An upgrade was requested but could not be applied."""


class DownloadError(UpgradeError):
    """The upgrade binary could not be located or fetched."""
