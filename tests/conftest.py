"""Shared fixtures for the upgrade manager tests."""

import os
import stat
from pathlib import Path

import pytest

from upgrade_manager.config import Config


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """A DAEMON_HOME with an empty upgrade_manager root directory."""
    (tmp_path / "upgrade_manager").mkdir()
    return tmp_path


@pytest.fixture
def config(home: Path) -> Config:
    return Config(home=str(home), name="noded")


@pytest.fixture
def install_script():
    """Write an executable /bin/sh script to the given path."""

    def install(path: Path, body: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        os.chmod(path, stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)
        return path

    return install
