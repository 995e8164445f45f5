"""
Upgrade coordinator tests.

Run with: pytest tests/test_upgrade.py -v

Downloads are served by httpx.MockTransport, nothing touches the network.
"""

import hashlib
import io
import json
import os
import stat
import tarfile

import httpx
import pytest

from upgrade_manager import upgrade
from upgrade_manager.config import Config
from upgrade_manager.errors import BinaryNotExecutable, DownloadError, UpgradeError
from upgrade_manager.scanner import UpgradeInfo
from upgrade_manager.upgrade import (
    do_upgrade,
    download_binary,
    get_download_url,
    mark_executable,
    os_arch,
    set_current_upgrade,
    verify_binary,
)

BINARY = b"#!/bin/sh\necho upgraded\n"


@pytest.fixture(autouse=True)
def linux_amd64(monkeypatch):
    monkeypatch.setattr(upgrade.platform, "system", lambda: "Linux")
    monkeypatch.setattr(upgrade.platform, "machine", lambda: "x86_64")


def mock_client(routes: dict) -> httpx.Client:
    """Client answering GETs from a url -> bytes map, 404 otherwise."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested.append(url)
        if url in routes:
            return httpx.Response(200, content=routes[url])
        return httpx.Response(404)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    client.requested = requested
    return client


def binaries_info(name: str, binaries: dict) -> UpgradeInfo:
    return UpgradeInfo(name=name, height=100, info=json.dumps({"binaries": binaries}))


def tar_gz(members: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            entry = tarfile.TarInfo(name)
            entry.size = len(data)
            entry.mode = 0o755
            tar.addfile(entry, io.BytesIO(data))
    return buf.getvalue()


# --- binary checks ---

def test_verify_binary_accepts_world_executable(tmp_path):
    path = tmp_path / "noded"
    path.write_bytes(BINARY)
    os.chmod(path, 0o755)
    verify_binary(path)


@pytest.mark.parametrize("mode", [0o644, 0o750, 0o700])
def test_verify_binary_requires_world_execute(tmp_path, mode):
    path = tmp_path / "noded"
    path.write_bytes(BINARY)
    os.chmod(path, mode)

    with pytest.raises(BinaryNotExecutable) as excinfo:
        verify_binary(path)
    assert excinfo.value.path == path


def test_verify_binary_missing(tmp_path):
    with pytest.raises(BinaryNotExecutable):
        verify_binary(tmp_path / "missing")


def test_verify_binary_directory(tmp_path):
    os.chmod(tmp_path, 0o755)
    with pytest.raises(BinaryNotExecutable):
        verify_binary(tmp_path)


def test_mark_executable(tmp_path):
    path = tmp_path / "noded"
    path.write_bytes(BINARY)
    os.chmod(path, 0o640)

    mark_executable(path)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o751


@pytest.mark.parametrize(
    "system, machine, expected",
    [
        ("Linux", "x86_64", "linux/amd64"),
        ("Darwin", "arm64", "darwin/arm64"),
        ("Linux", "aarch64", "linux/arm64"),
        ("Windows", "AMD64", "windows/amd64"),
        ("Linux", "riscv64", "linux/riscv64"),
    ],
)
def test_os_arch(monkeypatch, system, machine, expected):
    monkeypatch.setattr(upgrade.platform, "system", lambda: system)
    monkeypatch.setattr(upgrade.platform, "machine", lambda: machine)
    assert os_arch() == expected


# --- download url ---

def test_download_url_for_platform():
    info = binaries_info("v2", {
        "linux/amd64": "https://dl.example.com/linux",
        "any": "https://dl.example.com/any",
    })
    assert get_download_url(info) == "https://dl.example.com/linux"


def test_download_url_falls_back_to_any():
    info = binaries_info("v2", {"darwin/arm64": "https://x/mac", "any": "https://x/any"})
    assert get_download_url(info) == "https://x/any"


def test_download_url_missing_platform():
    info = binaries_info("v2", {"darwin/arm64": "https://x/mac"})
    with pytest.raises(DownloadError, match="linux/amd64"):
        get_download_url(info)


@pytest.mark.parametrize("doc", ["not json at all", "[1, 2]", '{"other": {}}', ""])
def test_download_url_without_binary_map(doc):
    with pytest.raises(DownloadError):
        get_download_url(UpgradeInfo(name="v2", height=1, info=doc))


def test_download_url_from_reference_link():
    """Test an info URL is fetched and read as the binaries document."""
    reference = json.dumps({"binaries": {"any": "https://dl.example.com/noded"}}).encode()
    client = mock_client({"https://example.com/v2.json": reference})
    info = UpgradeInfo(name="v2", height=1, info="  https://example.com/v2.json  ")

    assert get_download_url(info, client=client) == "https://dl.example.com/noded"


def test_download_url_reference_link_not_found():
    client = mock_client({})
    info = UpgradeInfo(name="v2", height=1, info="https://example.com/missing.json")

    with pytest.raises(DownloadError):
        get_download_url(info, client=client)


# --- downloads ---

def test_download_plain_binary_with_checksum(config):
    digest = hashlib.sha256(BINARY).hexdigest()
    info = binaries_info("v2", {"any": f"https://dl.example.com/noded?checksum=sha256:{digest}"})
    client = mock_client({"https://dl.example.com/noded": BINARY})

    download_binary(config, info, client=client)

    bin_path = config.upgrade_bin("v2")
    assert bin_path.read_bytes() == BINARY
    verify_binary(bin_path)
    assert client.requested == ["https://dl.example.com/noded"]
    # no temporary files left behind
    assert sorted(p.name for p in config.upgrade_dir("v2").iterdir()) == ["bin"]


def test_download_checksum_mismatch(config):
    info = binaries_info("v2", {"any": "https://dl.example.com/noded?checksum=sha256:" + "0" * 64})
    client = mock_client({"https://dl.example.com/noded": BINARY})

    with pytest.raises(DownloadError, match="checksum mismatch"):
        download_binary(config, info, client=client)
    assert not config.upgrade_bin("v2").exists()


def test_download_keeps_other_query_parameters(config):
    info = binaries_info("v2", {"any": "https://dl.example.com/noded?token=abc&checksum=md5:x"})
    client = mock_client({"https://dl.example.com/noded?token=abc": BINARY})

    with pytest.raises(DownloadError, match="checksum mismatch"):
        download_binary(config, info, client=client)
    assert client.requested == ["https://dl.example.com/noded?token=abc"]


def test_download_unsupported_checksum(config):
    info = binaries_info("v2", {"any": "https://dl.example.com/noded?checksum=nope:abc"})

    with pytest.raises(DownloadError, match="unsupported checksum"):
        download_binary(config, info, client=mock_client({}))


def test_download_archive(config):
    archive = tar_gz({"bin/noded": BINARY, "lib/libfoo.so": b"lib"})
    info = binaries_info("v2", {"any": "https://dl.example.com/noded.tar.gz"})
    client = mock_client({"https://dl.example.com/noded.tar.gz": archive})

    download_binary(config, info, client=client)

    assert config.upgrade_bin("v2").read_bytes() == BINARY
    assert (config.upgrade_dir("v2") / "lib" / "libfoo.so").read_bytes() == b"lib"
    verify_binary(config.upgrade_bin("v2"))


def test_download_archive_without_binary(config):
    archive = tar_gz({"README": b"nothing"})
    info = binaries_info("v2", {"any": "https://dl.example.com/noded.tgz"})
    client = mock_client({"https://dl.example.com/noded.tgz": archive})

    with pytest.raises(DownloadError, match="no binary"):
        download_binary(config, info, client=client)


def test_download_archive_rejects_members_outside_upgrade_dir(config):
    """Test an archive cannot write outside its upgrade directory."""
    archive = tar_gz({"../evil": b"payload", "bin/noded": BINARY})
    info = binaries_info("v2", {"any": "https://dl.example.com/noded.tar.gz"})
    client = mock_client({"https://dl.example.com/noded.tar.gz": archive})

    with pytest.raises(DownloadError):
        download_binary(config, info, client=client)

    assert not (config.root() / "upgrades" / "evil").exists()


def test_download_not_found(config):
    info = binaries_info("v2", {"any": "https://dl.example.com/missing"})

    with pytest.raises(DownloadError):
        download_binary(config, info, client=mock_client({}))


# --- switching versions ---

def _install(config: Config, upgrade_name: str):
    bin_path = config.upgrade_bin(upgrade_name)
    bin_path.parent.mkdir(parents=True)
    bin_path.write_bytes(BINARY)
    os.chmod(bin_path, 0o755)


def test_set_current_upgrade_replaces_link(config):
    _install(config, "v2")
    _install(config, "v3")

    set_current_upgrade(config, "v2")
    assert config.current_bin() == config.upgrade_bin("v2")

    set_current_upgrade(config, "v3")
    assert config.current_bin() == config.upgrade_bin("v3")
    assert sorted(p.name for p in config.root().iterdir()) == ["current", "upgrades"]


def test_set_current_upgrade_replaces_stale_temp_link(config):
    _install(config, "v2")
    os.symlink("/nowhere", config.root() / "current.tmp")

    set_current_upgrade(config, "v2")

    assert config.current_bin() == config.upgrade_bin("v2")
    assert not os.path.lexists(config.root() / "current.tmp")


def test_set_current_upgrade_requires_binary(config):
    with pytest.raises(BinaryNotExecutable):
        set_current_upgrade(config, "v2")
    assert not os.path.lexists(config.current_link())


def test_set_current_upgrade_over_directory(config):
    _install(config, "v2")
    (config.current_link() / "bin").mkdir(parents=True)

    with pytest.raises(UpgradeError):
        set_current_upgrade(config, "v2")


def test_do_upgrade_with_installed_binary(config):
    _install(config, "v2")

    do_upgrade(config, UpgradeInfo(name="v2", height=1, info="ignored"))

    assert config.current_bin() == config.upgrade_bin("v2")


def test_do_upgrade_escapes_name(config):
    _install(config, "v2/rc 1")

    do_upgrade(config, UpgradeInfo(name="v2/rc 1", height=1, info=""))

    assert config.current_bin() == config.root() / "upgrades" / "v2%2Frc%201" / "bin" / "noded"


def test_do_upgrade_downloads_when_allowed(home):
    config = Config(home=str(home), name="noded", allow_download_binaries=True)
    info = binaries_info("v2", {"linux/amd64": "https://dl.example.com/noded"})
    client = mock_client({"https://dl.example.com/noded": BINARY})

    do_upgrade(config, info, client=client)

    assert config.current_bin() == config.upgrade_bin("v2")
    assert config.current_bin().read_bytes() == BINARY


def test_do_upgrade_without_download_permission(config):
    info = binaries_info("v2", {"any": "https://dl.example.com/noded"})
    client = mock_client({"https://dl.example.com/noded": BINARY})

    with pytest.raises(UpgradeError):
        do_upgrade(config, info, client=client)
    assert client.requested == []
    assert config.current_bin() == config.genesis_bin()


def test_do_upgrade_download_failure(home):
    config = Config(home=str(home), name="noded", allow_download_binaries=True)
    info = binaries_info("v2", {"any": "https://dl.example.com/noded"})

    with pytest.raises(DownloadError):
        do_upgrade(config, info, client=mock_client({}))
    assert not os.path.lexists(config.current_link())
