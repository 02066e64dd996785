# bedrock_manager/services/server_control.py
"""
Single entry point used by the HTTP layer.

Composes the metadata store, the process supervisor, the config surfaces and
the backup engine. Every method returns a result dict
({"success": bool, "message"/"error": str, ...}); nothing here raises for an
operational failure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

import httpx

from bedrock_manager.services import archive_transport
from bedrock_manager.services import server_config
from bedrock_manager.services import server_layout
from bedrock_manager.services.backups import BackupManager
from bedrock_manager.services.bedrock_server import BedrockSupervisor
from bedrock_manager.services.errors import NotInstalled
from bedrock_manager.services.storage import (
    STATUS_OFFLINE, STATUS_ONLINE, STATUS_STARTING, ServerRecord, ServerStore,
)

logger = logging.getLogger(__name__)

RESTART_DELAY_SEC = 2.0
STATUS_LOG_LINES = 100


def _server_not_found() -> dict:
    return {"success": False, "error": "Server not found", "error_code": "server_not_found"}


class ServerControl:
    def __init__(
        self,
        store: ServerStore,
        supervisor: Optional[BedrockSupervisor] = None,
        backups: Optional[BackupManager] = None,
        *,
        download_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.supervisor = supervisor or BedrockSupervisor()
        self.backups = backups or BackupManager(self.supervisor)
        self._download_url = download_url
        self._transport = transport
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _live_status(self, server_id: int) -> str:
        if self.supervisor.is_running(server_id):
            return STATUS_ONLINE
        if self.supervisor.has_pending_restart(server_id):
            return STATUS_STARTING
        return STATUS_OFFLINE

    def describe(self, record: ServerRecord) -> dict:
        data = record.to_dict()
        data["status"] = self._live_status(record.id)
        data["installed"] = self.supervisor.is_installed(record.id)
        data["auto_restart"] = self.supervisor.is_auto_restart_enabled(record.id)
        return data

    def list_status(self) -> dict:
        servers = [self.describe(record) for record in self.store.list_servers()]
        return {
            "success": True,
            "servers": servers,
            "running_count": len(self.supervisor.running_ids()),
            "total_count": len(servers),
        }

    def get_status(self, server_id: int) -> dict:
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()
        return {
            "success": True,
            "server": self.describe(record),
            "logs": self.supervisor.get_logs(server_id, STATUS_LOG_LINES),
        }

    def get_logs(self, server_id: int, lines: Optional[int] = None) -> dict:
        return {"success": True, "logs": self.supervisor.get_logs(server_id, lines)}

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def create_server(
        self,
        name: str,
        port: int = 19132,
        max_players: int = 20,
        game_mode: str = "survival",
        difficulty: str = "normal",
    ) -> dict:
        if not name or not port:
            return {"success": False, "error": "Name and port are required", "error_code": "invalid_request"}
        if not server_config.is_valid_server_name(name):
            return {
                "success": False,
                "error": "Server name must not contain control characters",
                "error_code": "invalid_request",
            }
        if self.store.is_port_in_use(port):
            return {
                "success": False,
                "error": "Port is already in use by another server",
                "error_code": "port_in_use",
            }
        record = self.store.create_server(
            name=name,
            port=port,
            max_players=max_players,
            game_mode=game_mode,
            difficulty=difficulty,
        )
        logger.info("Created server %s (%s) on port %s", record.id, name, port)
        return {
            "success": True,
            "server": record.to_dict(),
            "message": "Server created successfully. Install it to download the Bedrock server.",
        }

    async def delete_server(self, server_id: int) -> dict:
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()
        if self.supervisor.is_running(server_id) or self.supervisor.has_pending_restart(server_id):
            stop_result = await self.supervisor.stop_server(server_id)
            if not stop_result.get("success"):
                return {"success": False, "error": f"Failed to stop: {stop_result.get('error')}"}
        self.store.delete_server(server_id)
        logger.info("Deleted server %s", server_id)
        return {"success": True, "message": "Server deleted"}

    def _push_properties(self, record: ServerRecord) -> None:
        server_config.update_properties(
            record.id,
            server_name=record.name,
            port=record.port,
            max_players=record.max_players,
            game_mode=record.game_mode,
            difficulty=record.difficulty,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def install(self, server_id: int) -> dict:
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()

        async with self.supervisor.instance_lock(server_id):
            result = await archive_transport.install_server(
                server_id, self._download_url, transport=self._transport,
            )
        if result.get("success"):
            self._push_properties(record)
        return result

    async def start(self, server_id: int, auto_restart: bool = True) -> dict:
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()
        if not server_layout.is_installed(server_id):
            return NotInstalled("Bedrock server not installed. Install it first.").to_result()

        self._push_properties(record)
        result = await self.supervisor.start_server(server_id, record.port, auto_restart)
        if result.get("success"):
            self.store.update_status(server_id, STATUS_ONLINE)
        return result

    async def stop(self, server_id: int) -> dict:
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()
        result = await self.supervisor.stop_server(server_id)
        if result.get("success"):
            self.store.update_status(server_id, STATUS_OFFLINE)
        return result

    async def restart(self, server_id: int) -> dict:
        """Stop now, start again in the background after RESTART_DELAY_SEC."""
        record = self.store.get_server(server_id)
        if record is None:
            return _server_not_found()
        if not server_layout.is_installed(server_id):
            return NotInstalled("Bedrock server not installed. Install it first.").to_result()

        auto_restart = self.supervisor.is_auto_restart_enabled(server_id)
        if self.supervisor.is_running(server_id):
            stop_result = await self.supervisor.stop_server(server_id)
            if not stop_result.get("success"):
                return {"success": False, "error": f"Failed to stop: {stop_result.get('error')}"}

        self.store.update_status(server_id, STATUS_STARTING)
        task = asyncio.create_task(self._start_after_delay(server_id, auto_restart))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return {"success": True, "status": STATUS_STARTING, "message": "Server restarting"}

    async def _start_after_delay(self, server_id: int, auto_restart: bool) -> None:
        await asyncio.sleep(RESTART_DELAY_SEC)
        record = self.store.get_server(server_id)
        if record is None:
            return
        self._push_properties(record)
        result = await self.supervisor.start_server(server_id, record.port, auto_restart)
        self.store.update_status(server_id, STATUS_ONLINE if result.get("success") else STATUS_OFFLINE)
        if not result.get("success"):
            logger.warning("Restart of server %s failed: %s", server_id, result.get("error"))

    async def send_command(self, server_id: int, command: str) -> dict:
        return await self.supervisor.send_command(server_id, command)

    def get_auto_restart(self, server_id: int) -> dict:
        return {"success": True, "enabled": self.supervisor.is_auto_restart_enabled(server_id)}

    def set_auto_restart(self, server_id: int, enabled: bool) -> dict:
        self.supervisor.set_auto_restart(server_id, enabled)
        return {"success": True, "message": f"Auto-restart {'enabled' if enabled else 'disabled'}"}

    async def shutdown(self) -> None:
        running = self.supervisor.running_ids()
        for task in list(self._background):
            task.cancel()
        await self.supervisor.shutdown()
        for server_id in running:
            if self.store.get_server(server_id) is not None:
                self.store.update_status(server_id, STATUS_OFFLINE)

    # ------------------------------------------------------------------
    # Config surfaces
    # ------------------------------------------------------------------

    def get_properties(self, server_id: int) -> dict:
        content = server_config.get_properties(server_id)
        if content is None:
            return {"success": False, "error": "server.properties not found", "error_code": "properties_not_found"}
        return {"success": True, "content": content}

    def save_properties(self, server_id: int, content: str) -> dict:
        return server_config.save_properties(server_id, content)

    def get_allowlist(self, server_id: int) -> dict:
        return {"success": True, "allowlist": server_config.get_allowlist(server_id)}

    async def add_to_allowlist(self, server_id: int, player_name: str) -> dict:
        return await server_config.add_to_allowlist(self.supervisor, server_id, player_name)

    async def remove_from_allowlist(self, server_id: int, player_name: str) -> dict:
        return await server_config.remove_from_allowlist(self.supervisor, server_id, player_name)

    def get_operators(self, server_id: int) -> dict:
        return {"success": True, "operators": server_config.get_operators(server_id)}

    async def add_operator(self, server_id: int, player_name: str) -> dict:
        return await server_config.add_operator(self.supervisor, server_id, player_name)

    async def remove_operator(self, server_id: int, player_name: str) -> dict:
        return await server_config.remove_operator(self.supervisor, server_id, player_name)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def list_backups(self, server_id: int) -> dict:
        return {"success": True, "backups": self.backups.list_backups(server_id)}

    async def create_backup(self, server_id: int) -> dict:
        return await self.backups.create_backup(server_id)

    async def restore_backup(self, server_id: int, backup_name: str) -> dict:
        return await self.backups.restore_backup(server_id, backup_name)

    def delete_backup(self, backup_name: str) -> dict:
        return self.backups.delete_backup(backup_name)
