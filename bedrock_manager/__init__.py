from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from bedrock_manager.core.config import APP_VERSION, BACKUPS_DIR, ENV_FILE, SERVERS_DIR


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    control = app.state.server_control
    control.store.init_db()
    SERVERS_DIR.mkdir(parents=True, exist_ok=True)
    BACKUPS_DIR.mkdir(parents=True, exist_ok=True)
    print(f"Managing Bedrock servers in {SERVERS_DIR}")

    yield

    await control.shutdown()
    print("App shutting down")


def create_app(server_control=None):
    """FastAPI application factory."""
    load_dotenv(dotenv_path=ENV_FILE)

    from bedrock_manager.services.server_control import ServerControl
    from bedrock_manager.services.storage import ServerStore

    app = FastAPI(
        title="Bedrock Server Manager",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.server_control = server_control or ServerControl(ServerStore())

    from bedrock_manager.routers import servers

    app.include_router(servers.router, tags=["Servers"])

    return app
