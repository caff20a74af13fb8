"""ServiceNow REST client bound to one instance and one credential.

Authentication is HTTP Basic. The encoded token is verified once against
sys_user, cached for the token TTL, and thrown away on the first 401, after
which the failed request is re-sent exactly once with a fresh token.
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

from snassist.errors import (
    AuthenticationError,
    NetworkError,
    OperationError,
    QueryError,
    RequestError,
    ServiceNowError,
)

logger = logging.getLogger(__name__)

Record = dict[str, Any]
OrderDirection = Literal["asc", "desc"]

DEFAULT_TIMEOUT = 15.0
DEFAULT_TOKEN_TTL = 3600

# Cheap, always-present table used to verify credentials
_VERIFY_TABLE = "sys_user"
# One original attempt plus one retry after a 401
_MAX_ATTEMPTS = 2


@dataclass
class AuthState:
    """Cached Basic token and the monotonic instant it stops being trusted."""

    token: str | None = None
    expires_at: float = 0.0

    def is_valid(self, now: float) -> bool:
        return self.token is not None and now < self.expires_at

    def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0


def encode_basic_token(username: str, password: str) -> str:
    """base64("username:password") as used in the Authorization header."""
    return base64.b64encode(f"{username}:{password}".encode()).decode("ascii")


def normalize_error(response: httpx.Response) -> RequestError:
    """Convert a non-2xx response into a RequestError.

    ServiceNow error bodies look like {"error": {"message": ..., "detail": ...}}.
    Bodies that are not JSON fall back to the raw text or the reason phrase.
    """
    status = response.status_code
    try:
        data = response.json()
    except ValueError:
        fallback = response.text or response.reason_phrase or f"Request failed with status {status}"
        return RequestError(status, fallback)

    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        error = {}
    message = error.get("message") or "Unknown error"
    detail = error.get("detail") or None
    if detail:
        message = f"{message}: {detail}"
    return RequestError(status, message, detail)


class ServiceNowClient:
    """Async client for the ServiceNow Table and Script APIs."""

    def __init__(
        self,
        instance_url: str,
        username: str,
        password: str,
        *,
        credential_id: Any = None,
        timeout: float = DEFAULT_TIMEOUT,
        token_ttl: int = DEFAULT_TOKEN_TTL,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        url = instance_url.strip()
        self.base_url = url if url.endswith("/") else f"{url}/"
        self.username = username
        self._password = password
        self.credential_id = credential_id
        self._timeout = httpx.Timeout(timeout)
        self._token_ttl = token_ttl
        self._clock = clock
        self._auth = AuthState()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=self._timeout)

    @classmethod
    def from_credential(cls, credential: Any, **kwargs: Any) -> ServiceNowClient:
        """Build a client from a stored credential row or DTO."""
        return cls(
            credential.instance_url,
            credential.username,
            credential.password,
            credential_id=credential.id,
            **kwargs,
        )

    @property
    def is_authenticated(self) -> bool:
        return self._auth.is_valid(self._clock())

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self) -> None:
        """Ensure a verified token is cached, verifying new tokens once."""
        if self._auth.is_valid(self._clock()):
            logger.debug("Using cached ServiceNow token for %s", self.base_url)
            return

        if not self.username or not self._password:
            raise AuthenticationError(
                "ServiceNow username or password is empty. Please check your credentials."
            )

        logger.info("Authenticating with ServiceNow at %s as %s", self.base_url, self.username)
        token = encode_basic_token(self.username, self._password)

        try:
            response = await self._send(
                "GET", self._table_url(_VERIFY_TABLE), token, params={"sysparm_limit": 1}
            )
        except NetworkError as e:
            raise AuthenticationError(f"Failed to authenticate with ServiceNow: {e}") from e

        if not response.is_success:
            logger.error(
                "ServiceNow authentication test failed: %d %s",
                response.status_code,
                response.reason_phrase,
            )
            raise AuthenticationError(
                f"Failed to authenticate with ServiceNow: "
                f"Basic auth test failed: {response.status_code} {response.text}"
            )

        self._auth = AuthState(token=token, expires_at=self._clock() + self._token_ttl)
        logger.info("Authenticated with ServiceNow at %s", self.base_url)

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    def _table_url(self, table: str, sys_id: str | None = None) -> str:
        url = f"{self.base_url}api/now/v2/table/{quote(table, safe='')}"
        if sys_id is not None:
            url = f"{url}/{quote(sys_id, safe='')}"
        return url

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json", "Authorization": f"Basic {token}"}
        if json is not None:
            headers["Content-Type"] = "application/json"

        logger.info("%s %s", method, url)
        try:
            return await self._http.request(
                method, url, params=params, json=json, headers=headers, timeout=self._timeout
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach ServiceNow at {self.base_url}: {e}") from e

    async def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Authenticated request with a single re-authentication on 401."""
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            await self.authenticate()
            response = await self._send(method, url, self._auth.token, params=params, json=json)
            if response.status_code != 401:
                break
            self._auth.clear()
            if attempt < _MAX_ATTEMPTS:
                logger.warning("ServiceNow returned 401 for %s %s, re-authenticating", method, url)

        if not response.is_success:
            raise normalize_error(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RequestError(response.status_code, "Invalid JSON in ServiceNow response") from e

    # ------------------------------------------------------------------
    # Table API
    # ------------------------------------------------------------------

    async def query_records(
        self,
        table: str,
        query: str | None = None,
        limit: int = 10,
        offset: int = 0,
        fields: list[str] | None = None,
        order_by: str | None = None,
        order_direction: OrderDirection = "desc",
    ) -> list[Record]:
        """List records of a table. An empty query means no filter."""
        params: dict[str, Any] = {}
        if query:
            params["sysparm_query"] = query
        params["sysparm_limit"] = limit
        params["sysparm_offset"] = offset
        if fields:
            params["sysparm_fields"] = ",".join(fields)
        if order_by:
            params["sysparm_order_by"] = order_by
            params["sysparm_order"] = order_direction

        try:
            payload = await self._request("GET", self._table_url(table), params=params)
        except ServiceNowError as e:
            logger.error("Error querying %s records: %s", table, e)
            raise QueryError(table, e) from e
        return _result(payload) or []

    async def get_record(self, table: str, sys_id: str, fields: list[str] | None = None) -> Record:
        params = {"sysparm_fields": ",".join(fields)} if fields else None
        try:
            payload = await self._request("GET", self._table_url(table, sys_id), params=params)
        except ServiceNowError as e:
            logger.error("Error getting %s record %s: %s", table, sys_id, e)
            raise OperationError(f"Failed to get {table} record", e) from e
        return _result(payload)

    async def create_record(self, table: str, data: Record) -> Record:
        try:
            payload = await self._request("POST", self._table_url(table), json=data)
        except ServiceNowError as e:
            logger.error("Error creating %s record: %s", table, e)
            raise OperationError(f"Failed to create {table} record", e) from e
        return _result(payload)

    async def update_record(self, table: str, sys_id: str, data: Record) -> Record:
        try:
            payload = await self._request("PATCH", self._table_url(table, sys_id), json=data)
        except ServiceNowError as e:
            logger.error("Error updating %s record %s: %s", table, sys_id, e)
            raise OperationError(f"Failed to update {table} record", e) from e
        return _result(payload)

    async def delete_record(self, table: str, sys_id: str) -> None:
        try:
            await self._request("DELETE", self._table_url(table, sys_id))
        except ServiceNowError as e:
            logger.error("Error deleting %s record %s: %s", table, sys_id, e)
            raise OperationError(f"Failed to delete {table} record", e) from e

    # ------------------------------------------------------------------
    # Script API
    # ------------------------------------------------------------------

    async def execute_script(self, script: str) -> Any:
        """Run server-side script text on the instance and return its result."""
        url = f"{self.base_url}api/now/v1/script/execute"
        try:
            payload = await self._request("POST", url, json={"script": script})
        except ServiceNowError as e:
            logger.error("Error executing script: %s", e)
            raise OperationError("Failed to execute script", e) from e
        return _result(payload)

    async def test_connection(self) -> bool:
        """Authenticate and list one user. Never raises."""
        try:
            await self.authenticate()
            await self._request("GET", self._table_url(_VERIFY_TABLE), params={"sysparm_limit": 1})
            return True
        except Exception as e:
            logger.warning("ServiceNow connection test failed for %s: %s", self.base_url, e)
            return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ServiceNowClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()


def _result(payload: Any) -> Any:
    if isinstance(payload, dict):
        return payload.get("result")
    return payload
