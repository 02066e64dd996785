# bedrock_manager/services/archive_transport.py
"""
Bedrock Dedicated Server download and extraction.

Handles:
- Streaming the release zip over HTTPS (manual redirect following, bounded)
- Overall transfer timeout
- Extraction into the instance directory
"""

import asyncio
import logging
import os
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Optional

import httpx

from bedrock_manager.core.config import BEDROCK_DOWNLOAD_URL, DOWNLOAD_TIMEOUT_SEC, MAX_REDIRECTS
from bedrock_manager.services import server_layout
from bedrock_manager.services.errors import (
    DownloadError, DownloadTimeout, ExtractionError, SupervisorError,
)

logger = logging.getLogger(__name__)

# The minecraft.net CDN refuses requests without a browser User-Agent
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
REDIRECT_STATUS_CODES = frozenset({301, 302, 303, 307, 308})
CHUNK_SIZE = 1024 * 1024


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove partial download %s: %s", path, e)


async def _stream_to_file(client: httpx.AsyncClient, url: str, destination: Path, max_redirects: int) -> None:
    hops = 0
    while True:
        async with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
            location = response.headers.get("location")
            if response.status_code in REDIRECT_STATUS_CODES and location:
                hops += 1
                if hops > max_redirects:
                    raise DownloadError(
                        f"Download failed: more than {max_redirects} redirects",
                        status_code=response.status_code,
                    )
                url = str(response.url.join(location))
                logger.debug("Following redirect to %s", url)
                continue

            if response.status_code != 200:
                raise DownloadError(
                    f"Download failed: Status code {response.status_code}",
                    status_code=response.status_code,
                )

            with open(destination, "wb") as f:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    f.write(chunk)
            return


async def download_archive(
    url: str,
    destination: Path,
    *,
    timeout: Optional[float] = None,
    max_redirects: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Path:
    """
    Download *url* to *destination*.

    Raises DownloadError for bad statuses, too many redirects or connection
    failures, and DownloadTimeout when the whole transfer exceeds *timeout*.
    The partial file is removed on every failure path.
    """
    timeout = DOWNLOAD_TIMEOUT_SEC if timeout is None else timeout
    max_redirects = MAX_REDIRECTS if max_redirects is None else max_redirects

    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=False, transport=transport) as client:
            await asyncio.wait_for(
                _stream_to_file(client, url, destination, max_redirects),
                timeout=timeout,
            )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        _remove_partial(destination)
        raise DownloadTimeout("Download timeout")
    except DownloadError:
        _remove_partial(destination)
        raise
    except (httpx.HTTPError, OSError) as e:
        _remove_partial(destination)
        raise DownloadError(f"Download failed: {e}", cause=e) from e

    return destination


def _merge_into(source: Path, target: Path) -> None:
    """Move *source*'s entries into *target*, merging existing directories."""
    # The executable goes last so a half-promoted tree never looks installed
    entries = sorted(source.iterdir(), key=lambda p: p.name == server_layout.EXECUTABLE_NAME)
    for entry in entries:
        destination = target / entry.name
        if entry.is_dir() and destination.is_dir():
            _merge_into(entry, destination)
        else:
            if destination.is_dir():
                shutil.rmtree(destination)
            os.replace(entry, destination)


def _extract_zip(archive_path: Path, target_dir: Path) -> None:
    staging = Path(tempfile.mkdtemp(prefix=".extract-", dir=target_dir))
    try:
        with zipfile.ZipFile(archive_path) as zf:
            zf.extractall(staging)
        _merge_into(staging, target_dir)
    finally:
        shutil.rmtree(staging, ignore_errors=True)


async def extract_archive(archive_path: Path, target_dir: Path) -> None:
    """
    Unpack the downloaded zip in a worker thread.

    Members land in a staging directory first and are moved into *target_dir*
    only once every one of them decompressed cleanly. The zip is always removed.
    """
    try:
        await asyncio.to_thread(_extract_zip, archive_path, target_dir)
    except (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, NotImplementedError, OSError) as e:
        raise ExtractionError(f"Extraction failed: {e}") from e
    finally:
        _remove_partial(archive_path)


async def install_server(
    instance_id: int,
    url: Optional[str] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Download, extract and lay out a Bedrock server for *instance_id*."""
    if server_layout.is_installed(instance_id):
        return {"success": True, "message": "Bedrock server already installed", "already_installed": True}

    target_dir = server_layout.ensure_server_dir(instance_id)
    archive_path = target_dir / server_layout.DOWNLOAD_NAME

    logger.info("Downloading Bedrock server for server %s...", instance_id)
    try:
        await download_archive(url or BEDROCK_DOWNLOAD_URL, archive_path, transport=transport)
        await extract_archive(archive_path, target_dir)
    except SupervisorError as e:
        logger.warning("Install failed for server %s: %s", instance_id, e.message)
        return e.to_result()

    server_layout.finalize_install(instance_id)
    if not server_layout.is_installed(instance_id):
        return ExtractionError(
            f"Extraction failed: archive did not contain {server_layout.EXECUTABLE_NAME}"
        ).to_result()

    logger.info("Bedrock server extracted for server %s", instance_id)
    return {"success": True, "message": "Bedrock server downloaded and extracted"}
