# bedrock_manager/routers/servers.py
"""
Server lifecycle, console, config and backup endpoints.

Every handler delegates to ServerControl and returns its result dict.
"""

import re
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from bedrock_manager.services.server_control import ServerControl

router = APIRouter()

MAX_COMMAND_LENGTH = 256


def get_server_control(request: Request) -> ServerControl:
    return request.app.state.server_control


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _respond(result: dict, status_code: int = 200) -> JSONResponse:
    if result.get("error_code") == "server_not_found":
        status_code = 404
    return JSONResponse(result, status_code=status_code)


def _missing(field: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": f"{field} is required"}, status_code=400)


# =============================================================================
# Servers & status
# =============================================================================

@router.get("/api/servers")
async def list_servers(control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.list_status())


@router.post("/api/server/create")
async def create_server(request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    try:
        port = int(body.get("port") or 0)
        max_players = int(body.get("max_players") or body.get("maxPlayers") or 20)
    except (TypeError, ValueError):
        return JSONResponse({"success": False, "error": "port and max_players must be integers"}, status_code=400)

    result = control.create_server(
        name=str(body.get("name") or "").strip(),
        port=port,
        max_players=max_players,
        game_mode=body.get("game_mode") or body.get("gameMode") or "survival",
        difficulty=body.get("difficulty") or "normal",
    )
    return _respond(result, status_code=201 if result.get("success") else 400)


@router.delete("/api/server/{server_id}")
async def delete_server(server_id: int, control: ServerControl = Depends(get_server_control)):
    return _respond(await control.delete_server(server_id))


@router.get("/api/server/status")
async def get_all_status(control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.list_status())


@router.get("/api/server/status/{server_id}")
async def get_status(server_id: int, control: ServerControl = Depends(get_server_control)):
    return _respond(control.get_status(server_id))


@router.get("/api/server/{server_id}/logs")
async def get_logs(server_id: int, lines: Optional[int] = None, control: ServerControl = Depends(get_server_control)):
    return _respond(control.get_logs(server_id, lines))


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("/api/server/install/{server_id}")
async def install_server(server_id: int, control: ServerControl = Depends(get_server_control)):
    return _respond(await control.install(server_id))


@router.post("/api/server/start/{server_id}")
async def start_server(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    auto_restart = body.get("auto_restart", body.get("autoRestart")) is not False
    return _respond(await control.start(server_id, auto_restart=auto_restart))


@router.post("/api/server/stop/{server_id}")
async def stop_server(server_id: int, control: ServerControl = Depends(get_server_control)):
    return _respond(await control.stop(server_id))


@router.post("/api/server/restart/{server_id}")
async def restart_server(server_id: int, control: ServerControl = Depends(get_server_control)):
    return _respond(await control.restart(server_id))


@router.post("/api/server/{server_id}/command")
async def send_command(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    command = str(body.get("command") or "").strip()
    command = re.sub(r"[\x00-\x1f\x7f]", "", command)[:MAX_COMMAND_LENGTH]
    if not command:
        return _missing("Command")
    return _respond(await control.send_command(server_id, command))


@router.get("/api/server/{server_id}/auto-restart")
async def get_auto_restart(server_id: int, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.get_auto_restart(server_id))


@router.post("/api/server/{server_id}/auto-restart")
async def set_auto_restart(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    return JSONResponse(control.set_auto_restart(server_id, body.get("enabled") is True))


# =============================================================================
# Config surfaces
# =============================================================================

@router.get("/api/server/{server_id}/properties")
async def get_properties(server_id: int, control: ServerControl = Depends(get_server_control)):
    result = control.get_properties(server_id)
    return JSONResponse(result, status_code=200 if result.get("success") else 404)


@router.post("/api/server/{server_id}/properties")
async def save_properties(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    content = body.get("content")
    if not content or not isinstance(content, str):
        return _missing("Content")
    return JSONResponse(control.save_properties(server_id, content))


@router.get("/api/server/{server_id}/whitelist")
async def get_allowlist(server_id: int, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.get_allowlist(server_id))


@router.post("/api/server/{server_id}/whitelist")
async def add_to_allowlist(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    player_name = body.get("player_name") or body.get("playerName")
    if not player_name:
        return _missing("Player name")
    return JSONResponse(await control.add_to_allowlist(server_id, player_name))


@router.delete("/api/server/{server_id}/whitelist/{player_name}")
async def remove_from_allowlist(server_id: int, player_name: str, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(await control.remove_from_allowlist(server_id, player_name))


@router.get("/api/server/{server_id}/operators")
async def get_operators(server_id: int, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.get_operators(server_id))


@router.post("/api/server/{server_id}/operators")
async def add_operator(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    player_name = body.get("player_name") or body.get("playerName")
    if not player_name:
        return _missing("Player name")
    return JSONResponse(await control.add_operator(server_id, player_name))


@router.delete("/api/server/{server_id}/operators/{player_name}")
async def remove_operator(server_id: int, player_name: str, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(await control.remove_operator(server_id, player_name))


# =============================================================================
# Backups
# =============================================================================

@router.get("/api/server/{server_id}/backups")
async def list_backups(server_id: int, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.list_backups(server_id))


@router.post("/api/server/{server_id}/backup")
async def create_backup(server_id: int, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(await control.create_backup(server_id))


@router.post("/api/server/{server_id}/restore")
async def restore_backup(server_id: int, request: Request, control: ServerControl = Depends(get_server_control)):
    body = await _json_body(request)
    backup_name = body.get("backup_name") or body.get("backupName")
    if not backup_name:
        return _missing("Backup name")
    return JSONResponse(await control.restore_backup(server_id, backup_name))


@router.delete("/api/server/{server_id}/backup/{backup_name}")
async def delete_backup(server_id: int, backup_name: str, control: ServerControl = Depends(get_server_control)):
    return JSONResponse(control.delete_backup(backup_name))
