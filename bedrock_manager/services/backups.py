# bedrock_manager/services/backups.py
"""
Point-in-time backups of whole instance directories.

Archives are tar.gz files in BACKUPS_DIR named server-<id>-<UTC timestamp>.tar.gz,
so sorting names in reverse gives newest first. Restores unpack into a staging
directory next to the live one and only swap it in once extraction succeeded.
"""

import asyncio
import logging
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from bedrock_manager.core.config import BACKUPS_DIR, BACKUP_TIMEOUT_SEC
from bedrock_manager.services import server_layout
from bedrock_manager.services.errors import (
    BackupFailed, BackupNotFound, InstanceMissing, InstanceRunning, RestoreFailed,
)

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"
BACKUP_NAME_PATTERN = re.compile(r"^server-(\d+)-[0-9A-Za-z\-]+\.tar\.gz$")


def make_backup_name(instance_id: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{server_layout.dir_name(instance_id)}-{now.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def parse_backup_instance(name: str) -> Optional[int]:
    """Instance id encoded in a backup name, or None for anything that isn't one."""
    match = BACKUP_NAME_PATTERN.match(name or "")
    if not match:
        return None
    return int(match.group(1))


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)


async def _run_tar(*args: str) -> tuple[int, str]:
    """Run tar, bounded by BACKUP_TIMEOUT_SEC. Raises asyncio.TimeoutError on expiry."""
    process = await asyncio.create_subprocess_exec(
        "tar", *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=BACKUP_TIMEOUT_SEC)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, (stderr or b"").decode("utf-8", errors="replace").strip()


class BackupManager:
    """Create/list/restore/delete instance backups."""

    def __init__(self, supervisor):
        self._supervisor = supervisor

    def list_backups(self, instance_id: int) -> list[str]:
        if not BACKUPS_DIR.exists():
            return []
        names = [
            path.name
            for path in BACKUPS_DIR.glob(f"{server_layout.dir_name(instance_id)}-*{ARCHIVE_SUFFIX}")
            if parse_backup_instance(path.name) == instance_id
        ]
        return sorted(names, reverse=True)

    async def create_backup(self, instance_id: int) -> dict:
        source = server_layout.server_dir(instance_id)
        if not source.exists():
            return InstanceMissing("Server directory not found").to_result()

        BACKUPS_DIR.mkdir(parents=True, exist_ok=True)
        name = make_backup_name(instance_id)
        archive = BACKUPS_DIR / name

        async with self._supervisor.instance_lock(instance_id):
            try:
                code, stderr = await _run_tar("-czf", str(archive), "-C", str(source.parent), source.name)
            except asyncio.TimeoutError:
                _remove_quietly(archive)
                return BackupFailed(f"Backup timed out after {BACKUP_TIMEOUT_SEC:.0f}s").to_result()
            except OSError as e:
                _remove_quietly(archive)
                return BackupFailed(f"Backup failed: {e}").to_result()

        if code != 0:
            _remove_quietly(archive)
            logger.warning("Backup of server %s failed (code %s): %s", instance_id, code, stderr)
            return BackupFailed(f"Backup failed with code {code}", exit_code=code).to_result()

        logger.info("Backup created for server %s: %s", instance_id, name)
        return {"success": True, "message": "Backup created successfully", "backup_name": name}

    async def restore_backup(self, instance_id: int, backup_name: str) -> dict:
        if parse_backup_instance(backup_name) != instance_id:
            return BackupNotFound("Backup not found").to_result()
        archive = BACKUPS_DIR / backup_name
        if not archive.is_file():
            return BackupNotFound("Backup not found").to_result()

        async with self._supervisor.instance_lock(instance_id):
            if self._supervisor.is_running(instance_id) or self._supervisor.has_pending_restart(instance_id):
                return InstanceRunning("Stop the server before restoring").to_result()

            target = server_layout.server_dir(instance_id)
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".restore-{target.name}-", dir=target.parent))
            try:
                try:
                    code, stderr = await _run_tar("-xzf", str(archive), "-C", str(staging))
                except asyncio.TimeoutError:
                    return RestoreFailed(f"Restore timed out after {BACKUP_TIMEOUT_SEC:.0f}s").to_result()
                except OSError as e:
                    return RestoreFailed(f"Restore failed: {e}").to_result()

                if code != 0:
                    logger.warning("Restore of server %s failed (code %s): %s", instance_id, code, stderr)
                    return RestoreFailed(f"Restore failed with code {code}").to_result()

                restored = staging / target.name
                if not restored.is_dir():
                    return RestoreFailed(f"Backup does not contain {target.name}").to_result()

                try:
                    if target.exists():
                        await asyncio.to_thread(shutil.rmtree, target)
                    os.replace(restored, target)
                except OSError as e:
                    return RestoreFailed(f"Restore failed: {e}").to_result()
            finally:
                await asyncio.to_thread(shutil.rmtree, staging, True)

        logger.info("Backup restored for server %s: %s", instance_id, backup_name)
        return {"success": True, "message": "Backup restored successfully"}

    def delete_backup(self, backup_name: str) -> dict:
        if parse_backup_instance(backup_name) is None:
            return BackupNotFound("Backup not found").to_result()
        archive = BACKUPS_DIR / backup_name
        if not archive.is_file():
            return BackupNotFound("Backup not found").to_result()
        try:
            archive.unlink()
        except OSError as e:
            return {"success": False, "error": f"Failed to delete: {e}"}
        logger.info("Deleted backup %s", backup_name)
        return {"success": True, "message": "Backup deleted"}
