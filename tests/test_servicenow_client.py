"""Tests for ServiceNowClient: token caching, 401 retry, error normalization.

All HTTP goes through the FakeServiceNow MockTransport from conftest.
"""

import base64
import json

import httpx
import pytest

from snassist.errors import (
    AuthenticationError,
    NetworkError,
    OperationError,
    QueryError,
    RequestError,
)
from snassist.servicenow.client import ServiceNowClient, encode_basic_token, normalize_error

INSTANCE = "https://dev.service-now.com"
INCIDENT = "/api/now/v2/table/incident"


def _client(servicenow, clock=None, **kwargs) -> ServiceNowClient:
    if clock is not None:
        kwargs["clock"] = clock
    return ServiceNowClient(INSTANCE, "admin", "secret", http=servicenow.http(), **kwargs)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_basic_token(self):
        assert encode_basic_token("admin", "secret") == base64.b64encode(b"admin:secret").decode()

    async def test_verifies_once_then_reuses_token(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={"result": []}))
        client = _client(servicenow)

        await client.query_records("incident")
        await client.query_records("incident")

        assert servicenow.verify_calls == 1
        assert len(servicenow.calls("GET", INCIDENT)) == 2
        assert client.is_authenticated

    async def test_verification_request(self, servicenow):
        client = _client(servicenow)
        await client.authenticate()

        request = servicenow.requests[0]
        assert request.url.params["sysparm_limit"] == "1"
        assert request.headers["Authorization"] == f"Basic {encode_basic_token('admin', 'secret')}"
        assert request.headers["Accept"] == "application/json"

    async def test_expired_token_is_verified_again(self, servicenow):
        clock = _Clock()
        client = _client(servicenow, clock=clock, token_ttl=60)

        await client.authenticate()
        clock.now += 59
        await client.authenticate()
        assert servicenow.verify_calls == 1

        clock.now += 2
        assert not client.is_authenticated
        await client.authenticate()
        assert servicenow.verify_calls == 2

    async def test_empty_credentials_make_no_request(self, servicenow):
        client = ServiceNowClient(INSTANCE, "admin", "", http=servicenow.http())

        with pytest.raises(AuthenticationError, match="username or password is empty"):
            await client.authenticate()
        assert servicenow.requests == []

    async def test_rejected_verification(self, servicenow):
        servicenow.on("GET", "/api/now/v2/table/sys_user", httpx.Response(401, text="User Not Authenticated"))
        client = _client(servicenow)

        with pytest.raises(AuthenticationError, match="Failed to authenticate with ServiceNow"):
            await client.authenticate()
        assert not client.is_authenticated

    async def test_unreachable_instance(self, servicenow):
        servicenow.on("GET", "/api/now/v2/table/sys_user", httpx.ConnectError("connection refused"))
        client = _client(servicenow)

        with pytest.raises(AuthenticationError) as exc_info:
            await client.authenticate()
        assert isinstance(exc_info.value.__cause__, NetworkError)


# ---------------------------------------------------------------------------
# 401 handling
# ---------------------------------------------------------------------------


class TestUnauthorizedRetry:
    async def test_single_401_is_retried_once(self, servicenow):
        servicenow.on(
            "GET",
            INCIDENT,
            httpx.Response(401, json={"error": {"message": "User Not Authenticated"}}),
            httpx.Response(200, json={"result": [{"number": "INC0010001"}]}),
        )
        client = _client(servicenow)

        records = await client.query_records("incident")

        assert records == [{"number": "INC0010001"}]
        assert len(servicenow.calls("GET", INCIDENT)) == 2
        assert servicenow.verify_calls == 2

    async def test_second_401_is_not_retried(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(401, json={"error": {"message": "User Not Authenticated"}}))
        client = _client(servicenow)

        with pytest.raises(QueryError) as exc_info:
            await client.query_records("incident")

        assert exc_info.value.status == 401
        assert len(servicenow.calls("GET", INCIDENT)) == 2
        assert not client.is_authenticated


# ---------------------------------------------------------------------------
# Table API
# ---------------------------------------------------------------------------


class TestQueryRecords:
    async def test_default_parameters(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={"result": []}))
        client = _client(servicenow)

        await client.query_records("incident")

        params = servicenow.calls("GET", INCIDENT)[0].url.params
        assert params["sysparm_limit"] == "10"
        assert params["sysparm_offset"] == "0"
        assert "sysparm_query" not in params
        assert "sysparm_fields" not in params
        assert "sysparm_order_by" not in params

    async def test_empty_query_means_no_filter(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={"result": []}))
        client = _client(servicenow)

        await client.query_records("incident", query="")

        assert "sysparm_query" not in servicenow.calls("GET", INCIDENT)[0].url.params

    async def test_all_parameters(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={"result": [{"number": "INC1"}]}))
        client = _client(servicenow)

        await client.query_records(
            "incident",
            query="active=true",
            limit=5,
            offset=20,
            fields=["number", "short_description"],
            order_by="opened_at",
            order_direction="asc",
        )

        params = servicenow.calls("GET", INCIDENT)[0].url.params
        assert params["sysparm_query"] == "active=true"
        assert params["sysparm_limit"] == "5"
        assert params["sysparm_offset"] == "20"
        assert params["sysparm_fields"] == "number,short_description"
        assert params["sysparm_order_by"] == "opened_at"
        assert params["sysparm_order"] == "asc"

    async def test_missing_result_is_empty_list(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={}))
        client = _client(servicenow)

        assert await client.query_records("incident") == []

    async def test_error_message_carries_table(self, servicenow):
        servicenow.on(
            "GET",
            INCIDENT,
            httpx.Response(400, json={"error": {"message": "Invalid query", "detail": "bad field"}}),
        )
        client = _client(servicenow)

        with pytest.raises(QueryError) as exc_info:
            await client.query_records("incident", query="nope=1")

        assert str(exc_info.value) == "Failed to query incident records: Invalid query: bad field"
        assert exc_info.value.status == 400


class TestRecordOperations:
    async def test_get_record(self, servicenow):
        servicenow.on("GET", f"{INCIDENT}/abc123", httpx.Response(200, json={"result": {"sys_id": "abc123"}}))
        client = _client(servicenow)

        assert await client.get_record("incident", "abc123") == {"sys_id": "abc123"}

    async def test_get_missing_record_keeps_404(self, servicenow):
        servicenow.on(
            "GET",
            f"{INCIDENT}/missing",
            httpx.Response(404, json={"error": {"message": "No Record found", "detail": "Record doesn't exist"}}),
        )
        client = _client(servicenow)

        with pytest.raises(OperationError) as exc_info:
            await client.get_record("incident", "missing")

        assert exc_info.value.status == 404
        assert str(exc_info.value).startswith("Failed to get incident record: No Record found")

    async def test_create_record(self, servicenow):
        servicenow.on("POST", INCIDENT, httpx.Response(201, json={"result": {"sys_id": "new1", "short_description": "x"}}))
        client = _client(servicenow)

        record = await client.create_record("incident", {"short_description": "x"})

        assert record["sys_id"] == "new1"
        request = servicenow.calls("POST", INCIDENT)[0]
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"short_description": "x"}

    async def test_update_uses_patch(self, servicenow):
        servicenow.on("PATCH", f"{INCIDENT}/abc", httpx.Response(200, json={"result": {"state": "2"}}))
        client = _client(servicenow)

        assert await client.update_record("incident", "abc", {"state": "2"}) == {"state": "2"}

    async def test_delete_returns_none_on_204(self, servicenow):
        servicenow.on("DELETE", f"{INCIDENT}/abc", httpx.Response(204))
        client = _client(servicenow)

        assert await client.delete_record("incident", "abc") is None

    async def test_execute_script(self, servicenow):
        servicenow.on("POST", "/api/now/v1/script/execute", httpx.Response(200, json={"result": "42"}))
        client = _client(servicenow)

        assert await client.execute_script("gs.info(42)") == "42"

    async def test_trailing_slash_is_normalized(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.Response(200, json={"result": []}))
        client = ServiceNowClient(f"{INSTANCE}/", "admin", "secret", http=servicenow.http())

        await client.query_records("incident")

        assert str(servicenow.calls("GET", INCIDENT)[0].url).startswith(f"{INSTANCE}/api/now/v2/table/incident")

    async def test_timeout_is_network_error(self, servicenow):
        servicenow.on("GET", INCIDENT, httpx.ReadTimeout("timed out"))
        client = _client(servicenow)

        with pytest.raises(QueryError) as exc_info:
            await client.query_records("incident")

        assert isinstance(exc_info.value.__cause__, NetworkError)
        assert exc_info.value.status is None


# ---------------------------------------------------------------------------
# Connection test
# ---------------------------------------------------------------------------


class TestConnection:
    async def test_success(self, servicenow):
        assert await _client(servicenow).test_connection() is True

    async def test_failure_never_raises(self, servicenow):
        servicenow.on("GET", "/api/now/v2/table/sys_user", httpx.ConnectError("connection refused"))

        assert await _client(servicenow).test_connection() is False

    async def test_bad_credentials(self, servicenow):
        servicenow.on("GET", "/api/now/v2/table/sys_user", httpx.Response(401))

        assert await _client(servicenow).test_connection() is False


# ---------------------------------------------------------------------------
# Error normalization
# ---------------------------------------------------------------------------


class TestNormalizeError:
    def test_json_body_with_detail(self):
        response = httpx.Response(403, json={"error": {"message": "Forbidden", "detail": "ACL"}})

        error = normalize_error(response)

        assert isinstance(error, RequestError)
        assert error.status == 403
        assert error.message == "Forbidden: ACL"
        assert error.to_dict() == {"status": 403, "message": "Forbidden: ACL", "detail": "ACL"}

    def test_json_body_without_message(self):
        error = normalize_error(httpx.Response(500, json={"status": "failure"}))

        assert error.message == "Unknown error"
        assert error.detail is None

    def test_text_body(self):
        error = normalize_error(httpx.Response(502, text="Bad gateway from proxy"))

        assert error.message == "Bad gateway from proxy"

    def test_empty_body_uses_reason_phrase(self):
        error = normalize_error(httpx.Response(503))

        assert error.message == "Service Unavailable"
        assert error.to_dict() == {"status": 503, "message": "Service Unavailable"}
