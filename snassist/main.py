"""ServiceNow assistant entry point.

Initializes all components and starts the server:
  Settings -> Database -> migrations -> stores -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from snassist.chat.history import ChatHistory
from snassist.chat.llm import LLMSettingsStore
from snassist.config import Settings
from snassist.servicenow.credentials import CredentialStore
from snassist.storage.database import Database
from snassist.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database - connection pool, migrations, schema check
    2. servicenow_http - shared pool for outbound ServiceNow calls
    3. CredentialStore - credentials + client factory
    4. ChatHistory, LLMSettingsStore - chat persistence
    """
    database = Database(settings)
    await database.connect()
    applied = await run_migrations(database.engine)
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))
    await database.verify_schema()

    servicenow_http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.servicenow_timeout),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
    )

    return {
        "database": database,
        "servicenow_http": servicenow_http,
        "credentials": CredentialStore(database, settings, http=servicenow_http),
        "history": ChatHistory(database),
        "llm_settings": LLMSettingsStore(database, settings),
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down...")

    servicenow_http = components.get("servicenow_http")
    if servicenow_http:
        await servicenow_http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info("Listening on %s:%d", settings.host, settings.port)
        yield
        # Cached ServiceNow clients share servicenow_http and own nothing
        app.state.servicenow_clients.clear()
        await shutdown_components(components)

    from snassist.api.rest import create_app

    return create_app(
        database=_lazy_component(components, "database"),
        credentials=_lazy_component(components, "credentials"),
        history=_lazy_component(components, "history"),
        llm_settings=_lazy_component(components, "llm_settings"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before lifespan has
    initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    logger.info("Completion API: %s (model %s)", settings.openai_base_url, settings.openai_model)
    if not settings.db_app_role:
        logger.warning("SNASSIST_DB_APP_ROLE not set; row-level security is skipped for superuser or BYPASSRLS connections")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
