"""DDR training firmware retrieval.

The composite boot image needs the Synopsys DDR PHY training blobs that NXP
ships inside a self-extracting firmware archive. This module downloads the
archive, runs its extractor (accepting the EULA non-interactively) and
copies the DDR blobs into the boot tools directory.
"""

import hashlib
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from imx_bootstack.errors import BootstackError, MissingOutputError
from imx_bootstack.shell import run_command

logger = logging.getLogger(__name__)

# Per-operation timeout (connect/read), not an overall deadline
DOWNLOAD_TIMEOUT = 60.0
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

DDR_FIRMWARE_SUBDIR = Path("firmware") / "ddr" / "synopsys"


class DownloadError(BootstackError):
    """Raised when a download fails."""

    def __init__(self, message: str, error_code: str = "DOWNLOAD_FAILED") -> None:
        super().__init__(message, error_code=error_code)


@dataclass
class DownloadResult:
    """Result of a download operation.

    Attributes:
        path: Path to the downloaded file.
        checksum: SHA256 checksum of the file.
        size_bytes: Size of the file in bytes.
    """

    path: Path
    checksum: str
    size_bytes: int


def firmware_archive_name(url: str) -> str:
    """Return the archive file name from its URL.

    Raises:
        DownloadError: The URL has no file name component.
    """
    name = Path(urlparse(url).path).name
    if not name:
        raise DownloadError(f"Cannot derive a file name from {url}", "INVALID_URL")
    return name


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Stream a file to disk.

    The body is written to a ``.part`` file that is renamed once complete,
    so an interrupted download never leaves a truncated archive in place.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Per-operation timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest_path.with_name(dest_path.name + ".part")

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            with part_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            error_code="HTTP_ERROR",
        ) from e
    except httpx.TimeoutException as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", error_code="TIMEOUT") from e
    except httpx.RequestError as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Request error downloading {url}: {e}", error_code="REQUEST_ERROR"
        ) from e

    part_path.replace(dest_path)
    checksum = sha256.hexdigest()
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s...)",
        dest_path.name,
        total_bytes,
        checksum[:16],
    )
    return DownloadResult(path=dest_path, checksum=checksum, size_bytes=total_bytes)


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def prepare_ddr_firmware(
    url: str,
    tools_dir: Path,
    client: httpx.Client | None = None,
) -> list[Path]:
    """Make the DDR training firmware available in ``tools_dir``.

    The archive is downloaded only when absent and extracted only when its
    extraction directory is absent, so repeated runs reuse earlier work.

    Args:
        url: URL of the NXP firmware self-extractor.
        tools_dir: Boot tools directory receiving the DDR blobs.
        client: Optional HTTPX client (a redirect-following one is created).

    Returns:
        Paths of the DDR firmware files copied into ``tools_dir``.

    Raises:
        DownloadError: The archive could not be downloaded.
        ToolExecutionError: The extractor failed.
        MissingOutputError: The extracted archive holds no DDR firmware.
    """
    tools_dir.mkdir(parents=True, exist_ok=True)
    archive_name = firmware_archive_name(url)
    archive = tools_dir / archive_name
    extract_dir = tools_dir / Path(archive_name).stem

    if archive.exists():
        logger.info("Using cached firmware archive %s", archive)
    elif client is not None:
        download_file(client, url, archive)
    else:
        with httpx.Client(follow_redirects=True) as own_client:
            download_file(own_client, url, archive)

    if not extract_dir.exists():
        _make_executable(archive)
        run_command([f"./{archive_name}", "--auto-accept"], cwd=tools_dir)

    ddr_dir = extract_dir / DDR_FIRMWARE_SUBDIR
    blobs: list[Path] = []
    if ddr_dir.is_dir():
        blobs = sorted(p for p in ddr_dir.iterdir() if p.is_file())
    if not blobs:
        raise MissingOutputError(
            f"No DDR firmware found in {ddr_dir}", path=str(ddr_dir)
        )

    copied: list[Path] = []
    for blob in blobs:
        target = tools_dir / blob.name
        shutil.copy2(blob, target)
        copied.append(target)
    logger.info("Staged %d DDR firmware files into %s", len(copied), tools_dir)
    return copied


__all__ = [
    "DDR_FIRMWARE_SUBDIR",
    "DownloadError",
    "DownloadResult",
    "download_file",
    "firmware_archive_name",
    "prepare_ddr_firmware",
]
