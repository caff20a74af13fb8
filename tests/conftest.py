"""Test fixtures using real Postgres (DB_* env vars, see Settings).

DB-backed tests are skipped when Postgres is not reachable; everything that
talks to ServiceNow or the completion API runs against httpx.MockTransport.
"""

import uuid
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from snassist.config import Settings
from snassist.storage.database import Database
from snassist.storage.migrator import run_migrations

# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db():
    """Database with migrations applied."""
    database = Database(Settings())
    try:
        await database.connect()
    except (OSError, SQLAlchemyError) as e:
        await database.disconnect()
        pytest.skip(f"Postgres not available: {e}")
    await run_migrations(database.engine)
    yield database
    await database.disconnect()


@pytest.fixture
def settings() -> Settings:
    return Settings()


async def _remove_rows(db, uid: uuid.UUID) -> None:
    async with db.engine.begin() as conn:
        # Policies are forced on the owner too, so delete as the user
        await conn.execute(text("SELECT set_config('app.user_id', :uid, true)"), {"uid": str(uid)})
        for table in ("conversations", "servicenow_credentials", "chatgpt_settings"):
            await conn.execute(text(f"DELETE FROM public.{table} WHERE user_id = :uid"), {"uid": uid})


@pytest_asyncio.fixture
async def user_id(db):
    """Fresh owner id; all of its rows are removed after the test."""
    uid = uuid.uuid4()
    yield uid
    await _remove_rows(db, uid)


@pytest_asyncio.fixture
async def other_user_id(db):
    """A second owner, cleaned up the same way."""
    uid = uuid.uuid4()
    yield uid
    await _remove_rows(db, uid)


# ---------------------------------------------------------------------------
# Fake ServiceNow instance
# ---------------------------------------------------------------------------


class FakeServiceNow:
    """Canned ServiceNow responses keyed by (method, path), recording every request.

    A queued list of responses is consumed in order; the last one repeats.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list] = {
            ("GET", "/api/now/v2/table/sys_user"): [httpx.Response(200, json={"result": [{"sys_id": "u1"}]})],
        }

    def on(self, method: str, path: str, *responses) -> None:
        self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @property
    def verify_calls(self) -> int:
        return len(self.calls("GET", "/api/now/v2/table/sys_user"))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": {"message": "No route", "detail": request.url.path}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def servicenow() -> FakeServiceNow:
    return FakeServiceNow()


# ---------------------------------------------------------------------------
# Unreachable database
# ---------------------------------------------------------------------------


class BrokenDatabase:
    """Every session fails as if the database were unreachable."""

    @asynccontextmanager
    async def session(self, user_id=None):
        # asyncpg surfaces a refused connection as a bare OSError
        raise ConnectionRefusedError(111, "Connection refused")
        yield  # pragma: no cover


@pytest.fixture
def broken_db() -> BrokenDatabase:
    return BrokenDatabase()


@pytest_asyncio.fixture
async def unreachable_db():
    """A real Database pointed at a closed port."""
    database = Database(Settings(_env_file=None, DB_HOST="127.0.0.1", DB_PORT=1))
    yield database
    await database.disconnect()


# ---------------------------------------------------------------------------
# Row-level security as the application role
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def rls_db(db):
    """Database that assumes snassist_app in every transaction.

    Skipped when the migration could not create the role or grant it to the
    connecting user.
    """
    async with db.engine.connect() as conn:
        member = await conn.scalar(
            text(
                "SELECT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = 'snassist_app') "
                "AND pg_has_role(current_user, 'snassist_app', 'MEMBER')"
            )
        )
    if not member:
        pytest.skip("Role snassist_app not available to the test user")
    database = Database(Settings(db_app_role="snassist_app"))
    await database.connect()
    yield database
    await database.disconnect()
