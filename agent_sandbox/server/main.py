"""FastAPI application setup and configuration."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from agent_sandbox import __version__
from agent_sandbox.logging import log_server_startup
from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.database import Database
from agent_sandbox.server.dependencies import (
    clear_config,
    clear_database,
    set_config,
    set_database,
)
from agent_sandbox.server.routes import (
    health_router,
    prompts_router,
    servers_router,
    tasks_router,
)
from agent_sandbox.server.routes.tasks import configure_exception_handlers


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan events.

    Sets start_time on startup for uptime calculation.
    Initializes configuration and the database.
    """
    config = ServerConfig()
    set_config(config)

    database = Database(config.database_path)
    await database.connect()
    await database.ensure_schema()
    set_database(database)

    log_server_startup(
        host=config.host,
        port=config.port,
        database_path=str(config.database_path),
        version=__version__,
    )

    app.state.start_time = datetime.now(UTC)
    yield

    await database.close()
    clear_database()
    clear_config()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    application = FastAPI(
        title="Agent Sandbox API",
        description="Sandbox provisioning and registered-agent control API",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    configure_exception_handlers(application)

    application.include_router(health_router, prefix="/api")
    application.include_router(servers_router, prefix="/api")
    application.include_router(tasks_router, prefix="/api")
    application.include_router(prompts_router, prefix="/api")

    return application


# Create app instance
app = create_app()
