# bedrock_manager/services/storage.py
"""
SQLite store for server metadata (name, port, capacity, mode, difficulty, status).

Lifecycle state is never derived from here: installed/running come from the
filesystem and the supervisor. The persisted status is a display hint.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

from bedrock_manager.core.config import DATABASE_PATH

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_STARTING = "starting"
SERVER_STATUSES = frozenset({STATUS_ONLINE, STATUS_OFFLINE, STATUS_STARTING})


@dataclass
class ServerRecord:
    id: int
    name: str
    port: int = 19132
    max_players: int = 20
    game_mode: str = "survival"
    difficulty: str = "normal"
    status: str = STATUS_OFFLINE

    def to_dict(self) -> dict:
        return asdict(self)


class ServerStore:
    """Thin repository over a single `servers` table."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or DATABASE_PATH)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS servers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    port INTEGER NOT NULL DEFAULT 19132,
                    max_players INTEGER NOT NULL DEFAULT 20,
                    game_mode TEXT NOT NULL DEFAULT 'survival',
                    difficulty TEXT NOT NULL DEFAULT 'normal',
                    status TEXT NOT NULL DEFAULT 'offline'
                )
            """)
        logger.info("Server database initialized at %s", self.db_path)

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ServerRecord:
        return ServerRecord(
            id=row["id"],
            name=row["name"],
            port=row["port"],
            max_players=row["max_players"],
            game_mode=row["game_mode"],
            difficulty=row["difficulty"],
            status=row["status"],
        )

    def list_servers(self) -> List[ServerRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM servers ORDER BY id").fetchall()
        return [self._to_record(row) for row in rows]

    def get_server(self, server_id: int) -> Optional[ServerRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        return self._to_record(row) if row else None

    def create_server(
        self,
        name: str,
        port: int = 19132,
        max_players: int = 20,
        game_mode: str = "survival",
        difficulty: str = "normal",
    ) -> ServerRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO servers (name, port, max_players, game_mode, difficulty, status) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (name, port, max_players, game_mode, difficulty, STATUS_OFFLINE),
            )
            server_id = cursor.lastrowid
        return ServerRecord(
            id=server_id,
            name=name,
            port=port,
            max_players=max_players,
            game_mode=game_mode,
            difficulty=difficulty,
        )

    def update_status(self, server_id: int, status: str) -> Optional[ServerRecord]:
        if status not in SERVER_STATUSES:
            raise ValueError(f"Unknown server status: {status}")
        with self._connect() as conn:
            conn.execute("UPDATE servers SET status = ? WHERE id = ?", (status, server_id))
        return self.get_server(server_id)

    def delete_server(self, server_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))

    def is_port_in_use(self, port: int) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM servers WHERE port = ? LIMIT 1", (port,)).fetchone()
        return row is not None
