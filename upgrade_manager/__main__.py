"""
Entry point for running the upgrade manager via `python -m upgrade_manager`.

All command line arguments are passed to the daemon unchanged, e.g.

    DAEMON_HOME=/home/node DAEMON_NAME=noded python -m upgrade_manager start
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import BinaryIO, Sequence

from .config import Config
from .errors import UpgradeManagerError
from .process import launch_process

logger = logging.getLogger("upgrade_manager")


def setup_logging(config: Config):
    """Log to a rotating file under the root directory and to stderr."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.log_file(),
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)

    logging.basicConfig(
        level=config.log_level,
        handlers=[file_handler, console_handler],
        force=True,
    )


def run(config: Config, args: Sequence[str], stdout: BinaryIO, stderr: BinaryIO):
    """Supervise the daemon, relaunching it after upgrades if configured to."""
    upgraded = launch_process(config, args, stdout, stderr)
    while config.restart_after_upgrade and upgraded:
        logger.info(f"Restarting {config.name} on the upgraded binary")
        upgraded = launch_process(config, args, stdout, stderr)
    if upgraded:
        logger.info("Upgrade applied, restart the manager to run the new binary")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the upgrade manager. Returns the process exit code."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        config = Config.from_env()
    except UpgradeManagerError as e:
        print(f"upgrade_manager: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    try:
        run(config, args, sys.stdout.buffer, sys.stderr.buffer)
    except UpgradeManagerError as e:
        logger.error(f"{config.name} stopped: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
