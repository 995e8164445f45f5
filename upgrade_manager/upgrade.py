"""
Applying upgrades announced by the daemon.

Makes sure the binary for a named upgrade is in place (downloading it when
allowed) and then switches the `current` link to it. The link is swapped with
a rename so there is exactly one active version at every moment, even if the
manager dies half way through.

The upgrade info string is either a JSON document or an http(s) URL to one:

    {"binaries": {"linux/amd64": "https://example.com/daemon.tar.gz?checksum=sha256:...",
                  "any": "https://example.com/daemon.zip"}}
"""

import contextlib
import hashlib
import json
import logging
import os
import platform
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from .config import Config
from .errors import BinaryNotExecutable, DownloadError, UpgradeError
from .scanner import UpgradeInfo

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 600.0  # 10 minutes max for a binary
REFERENCE_TIMEOUT = 30.0

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}

_ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz")


def verify_binary(path: Path):
    """Raise BinaryNotExecutable unless path is a world-executable regular file."""
    try:
        info = os.stat(path)
    except OSError as e:
        raise BinaryNotExecutable(path, f"cannot stat binary: {e.strerror or e}") from e
    if not stat.S_ISREG(info.st_mode):
        raise BinaryNotExecutable(path, "not a regular file")
    # Only the world bit is checked, the owner may not be the current user
    if not info.st_mode & stat.S_IXOTH:
        raise BinaryNotExecutable(path, "not world executable")


def mark_executable(path: Path):
    """Set the execute bits for owner, group and others."""
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def os_arch() -> str:
    """Platform key used in the upgrade info binaries map, e.g. linux/amd64."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    return f"{system}/{_ARCH_ALIASES.get(machine, machine)}"


def _http_client(client: httpx.Client | None, timeout: float):
    if client is not None:
        return contextlib.nullcontext(client)
    return httpx.Client(follow_redirects=True, timeout=timeout)


def _is_url(doc: str) -> bool:
    parts = urlsplit(doc)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def get_download_url(info: UpgradeInfo, client: httpx.Client | None = None) -> str:
    """Find the binary URL for this platform in the upgrade info.

    If the info itself is a URL, the document it points to is fetched first.
    """
    doc = info.info.strip()
    if _is_url(doc):
        logger.info(f"Fetching upgrade reference {doc}")
        try:
            with _http_client(client, REFERENCE_TIMEOUT) as http:
                response = http.get(doc)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DownloadError(f"downloading reference link {doc}: {e}") from e
        doc = response.text

    try:
        upgrade_config = json.loads(doc)
    except json.JSONDecodeError as e:
        raise DownloadError("upgrade info doesn't contain binary map") from e

    binaries = upgrade_config.get("binaries") if isinstance(upgrade_config, dict) else None
    if not isinstance(binaries, dict):
        raise DownloadError("upgrade info doesn't contain binary map")

    key = os_arch()
    url = binaries.get(key) or binaries.get("any")
    if not url:
        raise DownloadError(f"cannot find binary for os/arch: neither {key}, nor any")
    return url


def _split_checksum(url: str) -> tuple[str, str | None]:
    """Remove a `checksum=<algo>:<hex>` query parameter from url."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    checksum = None
    remaining = []
    for key, value in query:
        if key == "checksum":
            checksum = value
        else:
            remaining.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(remaining))), checksum


def _new_hasher(checksum: str):
    algo, sep, expected = checksum.partition(":")
    if not sep or not expected:
        raise DownloadError(f"invalid checksum {checksum!r}, want <algo>:<hex>")
    try:
        return hashlib.new(algo.lower()), expected.lower()
    except ValueError as e:
        raise DownloadError(f"unsupported checksum type {algo!r}") from e


def _extract(archive: Path, url_path: str, dest_dir: Path):
    if url_path.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest_dir)
        return
    with tarfile.open(archive) as tar:
        tar.extractall(dest_dir, filter="data")


def download_binary(config: Config, info: UpgradeInfo, client: httpx.Client | None = None):
    """Download the binary for an upgrade into its upgrade directory.

    Plain files are written to upgrades/<name>/bin/<daemon>. Archives are
    unpacked into upgrades/<name>/ and must contain bin/<daemon>.
    """
    url = get_download_url(info, client=client)
    url, checksum = _split_checksum(url)
    hasher, expected = _new_hasher(checksum) if checksum else (None, None)

    dest_dir = config.upgrade_dir(info.name)
    bin_path = config.upgrade_bin(info.name)
    bin_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Downloading binary for upgrade {info.name!r} from {url}")
    fd, tmp_name = tempfile.mkstemp(prefix=".download-", dir=dest_dir)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp:
            with _http_client(client, DOWNLOAD_TIMEOUT) as http:
                with http.stream("GET", url) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes():
                        tmp.write(chunk)
                        if hasher:
                            hasher.update(chunk)

        if hasher and hasher.hexdigest() != expected:
            raise DownloadError(
                f"checksum mismatch for {url}: expected {expected}, got {hasher.hexdigest()}"
            )

        url_path = urlsplit(url).path.lower()
        if url_path.endswith(_ARCHIVE_SUFFIXES):
            _extract(tmp_path, url_path, dest_dir)
            if not bin_path.is_file():
                raise DownloadError(f"no binary at bin/{config.name} in archive {url}")
        else:
            os.replace(tmp_path, bin_path)
    except httpx.HTTPError as e:
        raise DownloadError(f"downloading {url}: {e}") from e
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        raise DownloadError(f"installing download from {url}: {e}") from e
    finally:
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()

    mark_executable(bin_path)
    logger.info(f"Installed binary for upgrade {info.name!r} at {bin_path}")


def set_current_upgrade(config: Config, upgrade_name: str):
    """Point the current link at the named upgrade.

    A temporary link is created beside `current` and renamed over it, so a
    reader always sees either the old or the new version.
    """
    verify_binary(config.upgrade_bin(upgrade_name))

    link = config.current_link()
    tmp_link = link.with_name(link.name + ".tmp")
    target = config.upgrade_dir(upgrade_name)
    try:
        with contextlib.suppress(FileNotFoundError):
            tmp_link.unlink()
        os.symlink(target, tmp_link)
        os.replace(tmp_link, link)
    except OSError as e:
        raise UpgradeError(f"switching current link to {target}: {e}") from e

    logger.info(f"Current version is now {upgrade_name!r} ({target})")


def do_upgrade(config: Config, info: UpgradeInfo, client: httpx.Client | None = None):
    """Install (if needed and allowed) and activate the binary for info."""
    bin_path = config.upgrade_bin(info.name)
    try:
        verify_binary(bin_path)
    except BinaryNotExecutable as e:
        if not config.allow_download_binaries:
            raise UpgradeError(f"binary for upgrade {info.name!r} is not usable: {e}") from e
        logger.info(f"No usable binary for upgrade {info.name!r}, downloading")
        download_binary(config, info, client=client)
        try:
            verify_binary(bin_path)
        except BinaryNotExecutable as e:
            raise UpgradeError(f"downloaded binary is invalid: {e}") from e

    set_current_upgrade(config, info.name)
