# bedrock_manager/services/server_layout.py
"""
Per-instance directory layout.

Every managed server lives in SERVERS_DIR/server-<id>. The directory and the
executable inside it are the only record of whether a server is installed.
"""

import logging
import os
from pathlib import Path

from bedrock_manager.core.config import SERVERS_DIR

logger = logging.getLogger(__name__)

EXECUTABLE_NAME = "bedrock_server"
PROPERTIES_NAME = "server.properties"
ALLOWLIST_NAME = "allowlist.json"
PERMISSIONS_NAME = "permissions.json"
DOWNLOAD_NAME = "bedrock-server.zip"
PACK_DIRS = ("resource_packs", "behavior_packs")

DEFAULT_PROPERTIES = [
    "server-name=Dedicated Server",
    "gamemode=survival",
    "difficulty=easy",
    "allow-cheats=false",
    "max-players=10",
    "online-mode=true",
    "white-list=false",
    "server-port=19132",
    "server-portv6=19133",
    "view-distance=32",
    "tick-distance=4",
    "player-idle-timeout=30",
    "max-threads=8",
    "level-name=Bedrock level",
    "level-seed=",
    "default-player-permission-level=member",
    "texturepack-required=false",
    "content-log-file-enabled=false",
    "compression-threshold=1",
    "server-authoritative-movement=server-auth",
    "player-movement-score-threshold=20",
    "player-movement-distance-threshold=0.3",
    "player-movement-duration-threshold-in-ms=500",
    "correct-player-movement=false",
    "server-authoritative-block-breaking=true",
]


def dir_name(instance_id: int) -> str:
    return f"server-{int(instance_id)}"


def server_dir(instance_id: int) -> Path:
    return SERVERS_DIR / dir_name(instance_id)


def executable_path(instance_id: int) -> Path:
    return server_dir(instance_id) / EXECUTABLE_NAME


def properties_path(instance_id: int) -> Path:
    return server_dir(instance_id) / PROPERTIES_NAME


def allowlist_path(instance_id: int) -> Path:
    return server_dir(instance_id) / ALLOWLIST_NAME


def permissions_path(instance_id: int) -> Path:
    return server_dir(instance_id) / PERMISSIONS_NAME


def is_installed(instance_id: int) -> bool:
    return executable_path(instance_id).exists()


def ensure_server_dir(instance_id: int) -> Path:
    path = server_dir(instance_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_default_properties(instance_id: int) -> bool:
    """Write the stock server.properties. Never overwrites an existing file."""
    path = properties_path(instance_id)
    if path.exists():
        return False
    path.write_text("\n".join(DEFAULT_PROPERTIES), encoding="utf-8")
    logger.info("Created default server.properties for server %s", instance_id)
    return True


def ensure_pack_dirs(instance_id: int) -> None:
    base = server_dir(instance_id)
    for pack in PACK_DIRS:
        (base / pack).mkdir(parents=True, exist_ok=True)


def finalize_install(instance_id: int) -> None:
    """Post-extraction fixups: exec bit, default properties, pack directories."""
    executable = executable_path(instance_id)
    if executable.exists():
        os.chmod(executable, 0o755)
    write_default_properties(instance_id)
    ensure_pack_dirs(instance_id)
