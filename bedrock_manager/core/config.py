import os
from pathlib import Path

import yaml

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
APP_DIR = CORE_DIR.parent
ROOT_DIR = APP_DIR.parent

ENV_FILE = ROOT_DIR / ".env"

DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILE = DATA_DIR / "bedrock_manager.yml"
DATABASE_PATH = Path(os.getenv("BEDROCK_DATABASE_PATH", str(DATA_DIR / "servers.db")))


def _resolve_dir(env_name: str, default: Path) -> Path:
    raw = os.getenv(env_name, str(default)).strip()
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


SERVERS_DIR = _resolve_dir("BEDROCK_SERVERS_DIR", ROOT_DIR / "bedrock-servers")
BACKUPS_DIR = _resolve_dir("BEDROCK_BACKUPS_DIR", ROOT_DIR / "bedrock-backups")


def load_settings_overrides() -> dict:
    """Load optional tunables from the YAML settings file."""
    if SETTINGS_FILE.exists():
        try:
            with open(SETTINGS_FILE, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
                if isinstance(data, dict):
                    return data
        except Exception:
            pass
    return {}


_overrides = load_settings_overrides()

# ==========================================
# Bedrock Server Configuration
# ==========================================

BEDROCK_DOWNLOAD_URL = os.getenv(
    "BEDROCK_DOWNLOAD_URL",
    _overrides.get(
        "download_url",
        "https://www.minecraft.net/bedrockdedicatedserver/bin-linux/bedrock-server-1.21.51.02.zip",
    ),
)
DOWNLOAD_TIMEOUT_SEC = float(os.getenv("DOWNLOAD_TIMEOUT_SEC", _overrides.get("download_timeout_seconds", 120)))
MAX_REDIRECTS = int(os.getenv("DOWNLOAD_MAX_REDIRECTS", _overrides.get("max_redirects", 10)))
BACKUP_TIMEOUT_SEC = float(os.getenv("BACKUP_TIMEOUT_SEC", _overrides.get("backup_timeout_seconds", 900)))

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "8000"))
HOST = os.getenv("HOST", "127.0.0.1")
