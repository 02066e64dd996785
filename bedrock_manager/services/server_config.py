# bedrock_manager/services/server_config.py
"""
File-backed configuration surfaces of an instance.

- server.properties: raw read/write and targeted key replacement
- allowlist.json: players allowed to join
- permissions.json: operator entries

List mutations are mirrored to the live console when the server is running,
so they apply without a restart.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Optional

from bedrock_manager.services import server_layout

logger = logging.getLogger(__name__)

GAME_MODES = {
    "survival": "survival",
    "creative": "creative",
    "adventure": "adventure",
}
DIFFICULTIES = {
    "peaceful": "peaceful",
    "easy": "easy",
    "normal": "normal",
    "hard": "hard",
}
DEFAULT_GAME_MODE = "survival"
DEFAULT_DIFFICULTY = "normal"
OPERATOR_PERMISSION = "operator"

# Bedrock gamertags: letters, digits, spaces, underscores; quoting is done by us
PLAYER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_ ]{1,32}$")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def map_game_mode(value: Optional[str]) -> str:
    return GAME_MODES.get((value or "").strip().lower(), DEFAULT_GAME_MODE)


def map_difficulty(value: Optional[str]) -> str:
    return DIFFICULTIES.get((value or "").strip().lower(), DEFAULT_DIFFICULTY)


def is_valid_player_name(name: str) -> bool:
    return bool(name) and bool(PLAYER_NAME_PATTERN.match(name)) and name.strip() == name


def is_valid_server_name(name: str) -> bool:
    """server-name is written as one properties line, so no line breaks or other controls."""
    return bool(name) and not CONTROL_CHARS.search(name)


def _write_atomic(path: Path, content: str) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(content)
    os.replace(tmp_path, path)


def _load_json_list(path: Path) -> list:
    """Read a JSON array file. Missing file → []; anything else invalid raises."""
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path.name} does not contain a JSON array")
    return data


def _save_json_list(path: Path, entries: list) -> None:
    _write_atomic(path, json.dumps(entries, indent=2, ensure_ascii=False))


# =============================================================================
# server.properties
# =============================================================================

def get_properties(instance_id: int) -> Optional[str]:
    path = server_layout.properties_path(instance_id)
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def save_properties(instance_id: int, content: str) -> dict:
    """Replace server.properties wholesale."""
    path = server_layout.properties_path(instance_id)
    if not path.parent.exists():
        return {"success": False, "error": "Server directory not found", "error_code": "instance_missing"}
    try:
        _write_atomic(path, content)
    except OSError as e:
        return {"success": False, "error": f"Failed to save: {e}"}
    return {"success": True, "message": "server.properties saved successfully"}


def _replace_key(content: str, key: str, value: Any) -> str:
    pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
    return pattern.sub(lambda _: f"{key}={value}", content)


def update_properties(
    instance_id: int,
    *,
    server_name: str,
    port: int,
    max_players: int,
    game_mode: str,
    difficulty: str,
) -> bool:
    """Push record values into server.properties, leaving every other line alone."""
    path = server_layout.properties_path(instance_id)
    if not path.exists():
        logger.info("server.properties not found for server %s", instance_id)
        return False

    content = path.read_text(encoding="utf-8")
    replacements = {
        "server-name": CONTROL_CHARS.sub("", server_name),
        "server-port": int(port),
        "max-players": int(max_players),
        "gamemode": map_game_mode(game_mode),
        "difficulty": map_difficulty(difficulty),
    }
    for key, value in replacements.items():
        content = _replace_key(content, key, value)

    _write_atomic(path, content)
    logger.info("Updated server.properties for server %s", instance_id)
    return True


# =============================================================================
# Player lists
# =============================================================================

def _entry_name(entry: Any) -> Optional[str]:
    if isinstance(entry, dict):
        return entry.get("name")
    if isinstance(entry, str):
        return entry
    return None


def _is_operator_entry(entry: Any) -> bool:
    return isinstance(entry, dict) and entry.get("permission") == OPERATOR_PERMISSION


def get_allowlist(instance_id: int) -> list[str]:
    try:
        entries = _load_json_list(server_layout.allowlist_path(instance_id))
    except (ValueError, OSError) as e:
        logger.warning("Unreadable allowlist for server %s: %s", instance_id, e)
        return []
    return [name for name in (_entry_name(e) for e in entries) if name]


def get_operators(instance_id: int) -> list[str]:
    try:
        entries = _load_json_list(server_layout.permissions_path(instance_id))
    except (ValueError, OSError) as e:
        logger.warning("Unreadable permissions for server %s: %s", instance_id, e)
        return []
    operators = []
    for entry in entries:
        if _is_operator_entry(entry):
            ident = entry.get("xuid") or entry.get("name")
            if ident:
                operators.append(ident)
    return operators


async def _add_entry(
    supervisor,
    instance_id: int,
    path: Path,
    player_name: str,
    *,
    matches: Callable[[Any], bool],
    new_entry: dict,
    live_command: str,
    already_message: str,
    done_message: str,
) -> dict:
    if not is_valid_player_name(player_name):
        return {"success": False, "error": "Invalid player name", "error_code": "invalid_player_name"}
    if not path.parent.exists():
        return {"success": False, "error": "Server directory not found", "error_code": "instance_missing"}

    try:
        entries = _load_json_list(path)
        if any(matches(entry) for entry in entries):
            return {"success": True, "already_present": True, "message": already_message}
        entries.append(new_entry)
        _save_json_list(path, entries)
    except (ValueError, OSError) as e:
        return {"success": False, "error": f"Failed: {e}"}

    if supervisor.is_running(instance_id):
        await supervisor.send_command(instance_id, live_command)

    return {"success": True, "message": done_message}


async def _remove_entry(
    supervisor,
    instance_id: int,
    path: Path,
    player_name: str,
    *,
    matches: Callable[[Any], bool],
    live_command: str,
    done_message: str,
) -> dict:
    if not is_valid_player_name(player_name):
        return {"success": False, "error": "Invalid player name", "error_code": "invalid_player_name"}

    try:
        if path.exists():
            entries = _load_json_list(path)
            kept = [entry for entry in entries if not matches(entry)]
            if len(kept) != len(entries):
                _save_json_list(path, kept)
    except (ValueError, OSError) as e:
        return {"success": False, "error": f"Failed: {e}"}

    if supervisor.is_running(instance_id):
        await supervisor.send_command(instance_id, live_command)

    return {"success": True, "message": done_message}


async def add_to_allowlist(supervisor, instance_id: int, player_name: str) -> dict:
    return await _add_entry(
        supervisor, instance_id, server_layout.allowlist_path(instance_id), player_name,
        matches=lambda entry: _entry_name(entry) == player_name,
        new_entry={"name": player_name, "ignoresPlayerLimit": False},
        live_command=f'allowlist add "{player_name}"',
        already_message="Player already in allowlist",
        done_message=f"{player_name} added to allowlist",
    )


async def remove_from_allowlist(supervisor, instance_id: int, player_name: str) -> dict:
    return await _remove_entry(
        supervisor, instance_id, server_layout.allowlist_path(instance_id), player_name,
        matches=lambda entry: _entry_name(entry) == player_name,
        live_command=f'allowlist remove "{player_name}"',
        done_message=f"{player_name} removed from allowlist",
    )


async def add_operator(supervisor, instance_id: int, player_name: str) -> dict:
    return await _add_entry(
        supervisor, instance_id, server_layout.permissions_path(instance_id), player_name,
        matches=lambda entry: _is_operator_entry(entry) and entry.get("name") == player_name,
        new_entry={"permission": OPERATOR_PERMISSION, "name": player_name},
        live_command=f'op "{player_name}"',
        already_message="Player is already an operator",
        done_message=f"{player_name} is now an operator",
    )


async def remove_operator(supervisor, instance_id: int, player_name: str) -> dict:
    return await _remove_entry(
        supervisor, instance_id, server_layout.permissions_path(instance_id), player_name,
        matches=lambda entry: _is_operator_entry(entry) and entry.get("name") == player_name,
        live_command=f'deop "{player_name}"',
        done_message=f"{player_name} is no longer an operator",
    )
