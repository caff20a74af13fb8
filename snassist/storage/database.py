"""Async database engine and session management."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from snassist.config import Settings

_REQUIRED_TABLES = {"servicenow_credentials", "chatgpt_settings", "conversations", "messages"}

# Errors a read path logs and degrades on. asyncpg raises OSError (e.g.
# ConnectionRefusedError) unwrapped when the server cannot be reached.
READ_ERRORS = (OSError, SQLAlchemyError)


class Database:
    def __init__(self, settings: Settings) -> None:
        self.engine = create_async_engine(
            settings.db_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            echo=settings.log_level == "debug",
        )
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        # Non-owner role assumed per transaction so row-level security applies
        self.app_role = settings.db_app_role

    async def connect(self) -> None:
        """Verify the connection pool can reach Postgres."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def verify_schema(self) -> None:
        """Raise if any of the application tables is missing."""
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT table_name FROM information_schema.tables "
                    "WHERE table_schema = 'public' AND table_name = ANY(:names)"
                ),
                {"names": sorted(_REQUIRED_TABLES)},
            )
            tables = {row[0] for row in result}
            if tables != _REQUIRED_TABLES:
                missing = _REQUIRED_TABLES - tables
                raise RuntimeError(f"Missing database tables: {missing}")

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self, user_id: UUID | None = None) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup.

        When user_id is given it is bound to the transaction-local
        ``app.user_id`` setting that the row-level security policies read.
        The binding (and the app role) lasts until the first commit or
        rollback; call bind() again to continue in a new transaction.
        """
        async with self.session_factory() as session:
            await self.bind(session, user_id)
            yield session

    async def bind(self, session: AsyncSession, user_id: UUID | None = None) -> None:
        """Apply the app role and RLS identity to the session's current transaction."""
        if self.app_role:
            role = self.engine.dialect.identifier_preparer.quote(self.app_role)
            await session.execute(text(f"SET LOCAL ROLE {role}"))
        if user_id is not None:
            await bind_user(session, user_id)

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()


async def bind_user(session: AsyncSession, user_id: UUID) -> None:
    """Set the RLS identity for the session's current transaction."""
    await session.execute(
        text("SELECT set_config('app.user_id', :uid, true)"),
        {"uid": str(user_id)},
    )
