"""
Configuration for the upgrade manager.

Loads settings from environment variables (optionally from a .env file) and
maps a daemon name plus home directory onto the on-disk binary layout:

    <home>/upgrade_manager/genesis/bin/<name>
    <home>/upgrade_manager/upgrades/<escaped-upgrade>/bin/<name>
    <home>/upgrade_manager/current -> genesis or upgrades/<escaped-upgrade>
"""

import os
import stat
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError, ConfigErrorReason

ROOT_NAME = "upgrade_manager"
GENESIS_DIR = "genesis"
UPGRADES_DIR = "upgrades"
CURRENT_LINK = "current"
LOG_FILE = "upgrade_manager.log"

# Characters a URL path segment may carry unescaped besides the unreserved set
_PATH_SEGMENT_SAFE = "$&+:=@"


def escape_upgrade_name(upgrade_name: str) -> str:
    """Percent-escape an upgrade name so it is a single safe path segment."""
    return quote(upgrade_name, safe=_PATH_SEGMENT_SAFE)


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "") == "on"


@dataclass(frozen=True)
class Config:
    """Upgrade manager configuration."""

    home: str
    name: str
    allow_download_binaries: bool = False
    restart_after_upgrade: bool = False

    # Logging
    log_level: str = "INFO"
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5

    @classmethod
    def from_env(cls) -> "Config":
        """Read the configuration from the environment and validate it.

        A .env file in the working directory is loaded first; variables already
        present in the environment take precedence over it.
        """
        load_dotenv(find_dotenv(usecwd=True))
        cfg = cls(
            home=os.environ.get("DAEMON_HOME", ""),
            name=os.environ.get("DAEMON_NAME", ""),
            allow_download_binaries=_env_flag("DAEMON_ALLOW_DOWNLOAD_BINARIES"),
            restart_after_upgrade=_env_flag("DAEMON_RESTART_AFTER_UPGRADE"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_max_bytes=int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
            log_backup_count=int(os.environ.get("LOG_BACKUP_COUNT", "5")),
        )
        cfg.validate()
        return cfg

    def validate(self):
        """Raise ConfigError unless name is set and <home>/upgrade_manager is a directory."""
        if not self.name:
            raise ConfigError(ConfigErrorReason.NAME_NOT_SET, "DAEMON_NAME is not set")
        if not self.home:
            raise ConfigError(ConfigErrorReason.HOME_NOT_SET, "DAEMON_HOME is not set")
        if not os.path.isabs(self.home):
            raise ConfigError(
                ConfigErrorReason.HOME_NOT_ABSOLUTE, "DAEMON_HOME must be an absolute path"
            )

        root = self.root()
        try:
            info = root.stat()
        except OSError as e:
            raise ConfigError(
                ConfigErrorReason.ROOT_MISSING, f"cannot stat root dir {root}: {e}"
            ) from e
        if not stat.S_ISDIR(info.st_mode):
            raise ConfigError(
                ConfigErrorReason.ROOT_NOT_DIRECTORY, f"{root} is not a directory"
            )

    def root(self) -> Path:
        """Directory holding every binary version and the current link."""
        return Path(self.home) / ROOT_NAME

    def genesis_bin(self) -> Path:
        """The binary installed at first setup. Must exist to start the manager."""
        return self.root() / GENESIS_DIR / "bin" / self.name

    def upgrade_dir(self, upgrade_name: str) -> Path:
        return self.root() / UPGRADES_DIR / escape_upgrade_name(upgrade_name)

    def upgrade_bin(self, upgrade_name: str) -> Path:
        return self.upgrade_dir(upgrade_name) / "bin" / self.name

    def current_link(self) -> Path:
        return self.root() / CURRENT_LINK

    def log_file(self) -> Path:
        return self.root() / LOG_FILE

    def current_bin(self) -> Path:
        """Path to the currently selected binary.

        The current link is resolved one level so logs show the real version
        directory. Falls back to the genesis binary when the link is missing,
        is not a symlink, or cannot be read.
        """
        link = self.current_link()
        try:
            if not link.is_symlink():
                return self.genesis_bin()
            dest = os.readlink(link)
        except OSError:
            return self.genesis_bin()

        dest_path = Path(dest)
        if not dest_path.is_absolute():
            dest_path = link.parent / dest_path
        return dest_path / "bin" / self.name
