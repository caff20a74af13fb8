"""REST API for the ServiceNow chat assistant.

The caller's identity comes from the X-User-Id header, set by the auth
gateway in front of this service.

Endpoints:
  GET    /credentials                      - List the caller's ServiceNow credentials
  POST   /credentials                      - Save a credential
  PATCH  /credentials/{id}                 - Partial update (omitted password is kept)
  DELETE /credentials/{id}                 - Delete a credential
  POST   /credentials/{id}/test            - Test the connection
  GET    /servicenow/{cid}/tables/{table}  - Query records
  POST   /servicenow/{cid}/tables/{table}  - Create a record
  GET    /servicenow/{cid}/tables/{table}/{sys_id}    - Get a record
  PATCH  /servicenow/{cid}/tables/{table}/{sys_id}    - Update a record
  DELETE /servicenow/{cid}/tables/{table}/{sys_id}    - Delete a record
  POST   /servicenow/{cid}/script          - Execute a server-side script
  GET    /settings/llm                     - Completion API settings (key masked)
  PUT    /settings/llm                     - Save completion API settings
  POST   /chat                             - Send a message, get the AI reply
  POST   /chat/{session_id}/save           - Save the session as a conversation
  DELETE /chat/{session_id}                - Drop an in-memory session
  GET    /conversations                    - Conversation history
  GET    /conversations/{id}               - Conversation with messages
  PATCH  /conversations/{id}               - Rename
  DELETE /conversations/{id}               - Delete with messages
  GET    /health                           - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from snassist.chat.history import ChatHistory
from snassist.chat.llm import LLMSettingsStore
from snassist.chat.session import ChatSession, SessionRegistry
from snassist.config import Settings
from snassist.errors import OwnershipError, ServiceNowError
from snassist.servicenow.client import ServiceNowClient
from snassist.servicenow.credentials import CredentialStore
from snassist.servicenow.schemas import CredentialInput, CredentialUpdate
from snassist.storage.database import Database

logger = logging.getLogger(__name__)

_QUERY_TYPES = {"general", "servicenow", "docs", "generate"}


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _servicenow_error(e: ServiceNowError) -> JSONResponse:
    upstream = getattr(e, "status", None)
    return _error(str(e), 404 if upstream == 404 else 502, upstream_status=upstream)


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    database: Database,
    credentials: CredentialStore,
    history: ChatHistory,
    llm_settings: LLMSettingsStore,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    sessions = SessionRegistry(history, max_sessions=settings.max_chat_sessions)
    # (user_id, credential_id) -> client, so token caches survive between requests;
    # least recently used clients are closed past max_servicenow_clients
    clients: OrderedDict[tuple[UUID, UUID], ServiceNowClient] = OrderedDict()

    def caller(request: Request) -> UUID | None:
        return _parse_uuid(request.headers.get("x-user-id"))

    async def client_for(user_id: UUID, credential_id: UUID) -> ServiceNowClient | None:
        key = (user_id, credential_id)
        client = clients.get(key)
        if client is not None:
            clients.move_to_end(key)
            return client
        client = await credentials.bind(user_id).get_client(credential_id, user_id)
        if client is None:
            return None
        clients[key] = client
        while len(clients) > settings.max_servicenow_clients:
            (evicted_user, evicted_credential), evicted = clients.popitem(last=False)
            logger.debug("Evicted ServiceNow client %s of user %s", evicted_credential, evicted_user)
            await evicted.close()
        return client

    async def forget_client(user_id: UUID, credential_id: UUID) -> None:
        client = clients.pop((user_id, credential_id), None)
        if client is not None:
            await client.close()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def list_credentials(request: Request) -> JSONResponse:
        """GET /credentials"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        rows = await credentials.bind(user_id).list_credentials(user_id)
        return JSONResponse({"credentials": [c.public() for c in rows], "total": len(rows)})

    async def create_credential(request: Request) -> JSONResponse:
        """POST /credentials"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        try:
            data = CredentialInput(**body)
        except ValidationError as e:
            return _error(str(e), 400)
        try:
            detail = await credentials.bind(user_id).save(user_id, data)
        except OwnershipError as e:
            return _error(str(e), 403)
        except IntegrityError:
            return _error(f"A credential named {data.name!r} already exists", 409)
        return JSONResponse(detail.public(), status_code=201)

    async def update_credential(request: Request) -> JSONResponse:
        """PATCH /credentials/{id}"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        credential_id = _parse_uuid(request.path_params["id"])
        if credential_id is None:
            return _error("Invalid credential id", 400)
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        try:
            changes = CredentialUpdate(**body)
        except ValidationError as e:
            return _error(str(e), 400)
        try:
            detail = await credentials.bind(user_id).update(credential_id, user_id, changes)
        except OwnershipError as e:
            return _error(str(e), 403)
        except IntegrityError:
            return _error("A credential with that name already exists", 409)
        if detail is None:
            return _error("Credential not found", 404)
        await forget_client(user_id, credential_id)
        return JSONResponse(detail.public())

    async def delete_credential(request: Request) -> Response:
        """DELETE /credentials/{id}"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        credential_id = _parse_uuid(request.path_params["id"])
        if credential_id is None:
            return _error("Invalid credential id", 400)
        deleted = await credentials.bind(user_id).delete(credential_id, user_id)
        await forget_client(user_id, credential_id)
        if not deleted:
            return _error("Credential not found", 404)
        return Response(status_code=204)

    async def check_credential(request: Request) -> JSONResponse:
        """POST /credentials/{id}/test"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        credential_id = _parse_uuid(request.path_params["id"])
        if credential_id is None:
            return _error("Invalid credential id", 400)
        client = await client_for(user_id, credential_id)
        if client is None:
            return _error("Credential not found", 404)
        return JSONResponse({"connected": await client.test_connection()})

    # ------------------------------------------------------------------
    # ServiceNow pass-through
    # ------------------------------------------------------------------

    async def _resolve_client(request: Request) -> tuple[ServiceNowClient | None, JSONResponse | None]:
        user_id = caller(request)
        if user_id is None:
            return None, _error("Missing or invalid X-User-Id header", 401)
        credential_id = _parse_uuid(request.path_params["cid"])
        if credential_id is None:
            return None, _error("Invalid credential id", 400)
        client = await client_for(user_id, credential_id)
        if client is None:
            return None, _error("Cannot connect: credential not found", 404)
        return client, None

    async def table_records(request: Request) -> JSONResponse:
        """GET/POST /servicenow/{cid}/tables/{table}"""
        client, failure = await _resolve_client(request)
        if failure is not None:
            return failure
        table = request.path_params["table"]

        if request.method == "POST":
            body = await _json_body(request)
            if body is None:
                return _error("Invalid JSON body", 400)
            try:
                record = await client.create_record(table, body)
            except ServiceNowError as e:
                return _servicenow_error(e)
            return JSONResponse({"result": record}, status_code=201)

        params = request.query_params
        fields = [f for f in params.get("fields", "").split(",") if f]
        order = params.get("order", "desc")
        if order not in ("asc", "desc"):
            return _error("order must be 'asc' or 'desc'", 400)
        try:
            limit = int(params.get("limit", "10"))
            offset = int(params.get("offset", "0"))
        except ValueError:
            return _error("limit and offset must be integers", 400)
        try:
            records = await client.query_records(
                table,
                query=params.get("query"),
                limit=limit,
                offset=offset,
                fields=fields or None,
                order_by=params.get("order_by"),
                order_direction=order,
            )
        except ServiceNowError as e:
            return _servicenow_error(e)
        return JSONResponse({"result": records, "total": len(records)})

    async def table_record(request: Request) -> Response:
        """GET/PATCH/DELETE /servicenow/{cid}/tables/{table}/{sys_id}"""
        client, failure = await _resolve_client(request)
        if failure is not None:
            return failure
        table = request.path_params["table"]
        sys_id = request.path_params["sys_id"]
        try:
            if request.method == "DELETE":
                await client.delete_record(table, sys_id)
                return Response(status_code=204)
            if request.method == "PATCH":
                body = await _json_body(request)
                if body is None:
                    return _error("Invalid JSON body", 400)
                record = await client.update_record(table, sys_id, body)
            else:
                fields = [f for f in request.query_params.get("fields", "").split(",") if f]
                record = await client.get_record(table, sys_id, fields or None)
        except ServiceNowError as e:
            return _servicenow_error(e)
        return JSONResponse({"result": record})

    async def execute_script(request: Request) -> JSONResponse:
        """POST /servicenow/{cid}/script"""
        client, failure = await _resolve_client(request)
        if failure is not None:
            return failure
        body = await _json_body(request)
        script = body.get("script") if body else None
        if not script:
            return _error("Missing required field: script", 400)
        try:
            result = await client.execute_script(script)
        except ServiceNowError as e:
            return _servicenow_error(e)
        return JSONResponse({"result": result})

    # ------------------------------------------------------------------
    # LLM settings
    # ------------------------------------------------------------------

    async def llm_settings_view(request: Request) -> JSONResponse:
        """GET/PUT /settings/llm"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)

        if request.method == "PUT":
            body = await _json_body(request)
            if body is None:
                return _error("Invalid JSON body", 400)
            api_key = body.get("api_key")
            if not api_key:
                return _error("Missing required field: api_key", 400)
            detail = await llm_settings.save(user_id, api_key, bool(body.get("is_enabled", True)))
            return JSONResponse(detail.public())

        detail = await llm_settings.get(user_id)
        if detail is None:
            return _error("No LLM settings found", 404)
        return JSONResponse(detail.public())

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get the AI reply."""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)

        message = body.get("message")
        if not message:
            return _error("Missing required field: message", 400)
        query_type = body.get("type", "general")
        if query_type not in _QUERY_TYPES:
            return _error(f"Unknown message type: {query_type}", 400)

        session_id = body.get("session_id") or str(uuid4())
        session = sessions.get(user_id, session_id)
        if session is None:
            conversation_id = _parse_uuid(body.get("conversation_id"))
            if conversation_id is not None:
                session = await ChatSession.load(session_id, history, conversation_id, user_id)
                if session is None:
                    return _error("Conversation not found", 404)
                sessions.put(session)
            else:
                session = sessions.get_or_create(user_id, session_id)

        instance_name = None
        credential_id = _parse_uuid(body.get("credential_id"))
        if credential_id is not None:
            credential = await credentials.bind(user_id).get(credential_id, user_id)
            instance_name = credential.name if credential else None

        llm = await llm_settings.create_client(user_id)
        try:
            reply = await session.send(message, query_type, llm=llm, instance_name=instance_name)
        finally:
            if llm is not None:
                await llm.close()

        return JSONResponse({
            "session_id": session_id,
            "reply": reply.model_dump(mode="json") if reply else None,
            "llm_configured": llm is not None,
        })

    async def save_chat(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/save"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        session = sessions.get(user_id, request.path_params["session_id"])
        if session is None:
            return _error("Unknown chat session", 404)
        body = await _json_body(request) or {}
        conversation_id = await session.save(body.get("title"))
        return JSONResponse({"conversation_id": str(conversation_id)})

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id}"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        session_id = request.path_params["session_id"]
        if not sessions.remove(user_id, session_id):
            return _error("Unknown chat session", 404)
        return JSONResponse({"status": "ended", "session_id": session_id})

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        rows = await history.get_conversations(user_id)
        return JSONResponse({
            "conversations": [c.model_dump(mode="json") for c in rows],
            "total": len(rows),
        })

    async def conversation(request: Request) -> Response:
        """GET/PATCH/DELETE /conversations/{id}"""
        user_id = caller(request)
        if user_id is None:
            return _error("Missing or invalid X-User-Id header", 401)
        conversation_id = _parse_uuid(request.path_params["id"])
        if conversation_id is None:
            return _error("Invalid conversation id", 400)

        if request.method == "DELETE":
            if not await history.delete_conversation(conversation_id, user_id):
                return _error("Conversation not found", 404)
            return Response(status_code=204)

        if request.method == "PATCH":
            body = await _json_body(request)
            title = body.get("title") if body else None
            if not title:
                return _error("Missing required field: title", 400)
            if not await history.update_conversation_title(conversation_id, title, user_id):
                return _error("Conversation not found", 404)

        detail = await history.get_conversation_with_messages(conversation_id, user_id)
        if detail is None:
            return _error("Conversation not found", 404)
        return JSONResponse(detail.model_dump(mode="json"))

    async def health(request: Request) -> JSONResponse:
        """GET /health - DB connectivity."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "database": "connected"})
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse(
                {"status": "unhealthy", "database": "disconnected", "error": str(e)},
                status_code=503,
            )

    routes = [
        Route("/credentials", list_credentials, methods=["GET"]),
        Route("/credentials", create_credential, methods=["POST"]),
        Route("/credentials/{id}", update_credential, methods=["PATCH"]),
        Route("/credentials/{id}", delete_credential, methods=["DELETE"]),
        Route("/credentials/{id}/test", check_credential, methods=["POST"]),
        Route("/servicenow/{cid}/tables/{table}", table_records, methods=["GET", "POST"]),
        Route("/servicenow/{cid}/tables/{table}/{sys_id}", table_record, methods=["GET", "PATCH", "DELETE"]),
        Route("/servicenow/{cid}/script", execute_script, methods=["POST"]),
        Route("/settings/llm", llm_settings_view, methods=["GET", "PUT"]),
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/{session_id}/save", save_chat, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/conversations", list_conversations),
        Route("/conversations/{id}", conversation, methods=["GET", "PATCH", "DELETE"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    app = Starlette(**kwargs)
    app.state.sessions = sessions
    app.state.servicenow_clients = clients
    return app
