"""Credential store and client factory for per-user ServiceNow connections.

Every query is filtered by both credential id and owner, on top of the
row-level security policies the database enforces. Reads log and degrade to
None / empty results; writes raise.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx
from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from snassist.config import Settings
from snassist.errors import OwnershipError
from snassist.servicenow.client import DEFAULT_TIMEOUT, DEFAULT_TOKEN_TTL, ServiceNowClient
from snassist.servicenow.schemas import CredentialDetail, CredentialInput, CredentialUpdate
from snassist.storage.database import READ_ERRORS, Database
from snassist.storage.models import ServiceNowCredential

logger = logging.getLogger(__name__)

_PRIVILEGED_INSERT = text(
    "SELECT public.insert_servicenow_credential("
    ":user_id, :name, :instance_url, :username, :password)"
)


def _is_rls_violation(error: Exception) -> bool:
    return "row-level security policy" in str(error)


class CredentialStore:
    """CRUD on servicenow_credentials plus construction of API clients.

    ``auth_user_id`` is the identity the caller authenticated as. It is bound
    to each transaction for row-level security and compared with the owner id
    when the database rejects a write.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings | None = None,
        auth_user_id: UUID | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._db = database
        self._settings = settings
        self._auth_user_id = auth_user_id
        self._http = http

    def bind(self, auth_user_id: UUID) -> CredentialStore:
        """Same store, acting as another authenticated user."""
        return CredentialStore(self._db, self._settings, auth_user_id, self._http)

    def _session(self):
        return self._db.session(self._auth_user_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, credential_id: UUID, user_id: UUID) -> CredentialDetail | None:
        """One credential scoped to its owner, or None."""
        try:
            async with self._session() as session:
                row = await session.scalar(
                    select(ServiceNowCredential)
                    .where(ServiceNowCredential.id == credential_id)
                    .where(ServiceNowCredential.user_id == user_id)
                )
        except READ_ERRORS:
            logger.exception("Error getting ServiceNow credential %s", credential_id)
            return None
        return CredentialDetail.model_validate(row) if row is not None else None

    async def list_credentials(self, user_id: UUID) -> list[CredentialDetail]:
        """All credentials of a user, oldest first."""
        try:
            async with self._session() as session:
                result = await session.scalars(
                    select(ServiceNowCredential)
                    .where(ServiceNowCredential.user_id == user_id)
                    .order_by(ServiceNowCredential.created_at, ServiceNowCredential.name)
                )
                rows = list(result.all())
        except READ_ERRORS:
            logger.exception("Error listing ServiceNow credentials for user %s", user_id)
            return []
        return [CredentialDetail.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Client factory
    # ------------------------------------------------------------------

    def build_client(self, credential: CredentialDetail) -> ServiceNowClient:
        """Unauthenticated client for one credential."""
        timeout = self._settings.servicenow_timeout if self._settings else DEFAULT_TIMEOUT
        token_ttl = self._settings.servicenow_token_ttl if self._settings else DEFAULT_TOKEN_TTL
        return ServiceNowClient.from_credential(
            credential, timeout=timeout, token_ttl=token_ttl, http=self._http
        )

    async def get_client(self, credential_id: UUID, user_id: UUID) -> ServiceNowClient | None:
        """Client for the credential, or None when it cannot be loaded."""
        credential = await self.get(credential_id, user_id)
        if credential is None:
            logger.warning("No ServiceNow credential %s for user %s", credential_id, user_id)
            return None
        return self.build_client(credential)

    async def get_all_clients(self, user_id: UUID) -> dict[UUID, ServiceNowClient]:
        """Map credential id -> client for every credential the user owns."""
        credentials = await self.list_credentials(user_id)
        return {credential.id: self.build_client(credential) for credential in credentials}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, user_id: UUID, credential: CredentialInput) -> CredentialDetail:
        """Insert a credential, trying the privileged function first."""
        logger.info(
            "Saving ServiceNow credential %r for user %s (%s as %s)",
            credential.name,
            user_id,
            credential.instance_url,
            credential.username,
        )
        try:
            return await self._insert_privileged(user_id, credential)
        except SQLAlchemyError as e:
            self._check_ownership(user_id, e)
            logger.warning("Privileged credential insert failed, falling back to direct insert: %s", e)
        return await self._insert_direct(user_id, credential)

    async def _insert_privileged(self, user_id: UUID, credential: CredentialInput) -> CredentialDetail:
        async with self._session() as session:
            new_id = await session.scalar(
                _PRIVILEGED_INSERT,
                {"user_id": user_id, **credential.model_dump()},
            )
            await session.commit()
            # The function only writes for the bound user, so the owner can read it back
            await self._db.bind(session, user_id)
            row = await session.get(ServiceNowCredential, new_id)
            if row is None:
                raise LookupError(f"Inserted credential {new_id} is not readable")
            logger.info("Saved ServiceNow credential %s via privileged insert", new_id)
            return CredentialDetail.model_validate(row)

    async def _insert_direct(self, user_id: UUID, credential: CredentialInput) -> CredentialDetail:
        async with self._session() as session:
            row = ServiceNowCredential(user_id=user_id, **credential.model_dump())
            session.add(row)
            try:
                await session.flush()
                await session.refresh(row)
                await session.commit()
            except DBAPIError as e:
                await session.rollback()
                self._check_ownership(user_id, e)
                raise
            logger.info("Saved ServiceNow credential %s", row.id)
            return CredentialDetail.model_validate(row)

    async def update(
        self,
        credential_id: UUID,
        user_id: UUID,
        changes: CredentialUpdate,
    ) -> CredentialDetail | None:
        """Apply a partial update. Returns None when no owned row matches."""
        values = changes.changes()
        async with self._session() as session:
            if not values:
                row = await session.scalar(
                    select(ServiceNowCredential)
                    .where(ServiceNowCredential.id == credential_id)
                    .where(ServiceNowCredential.user_id == user_id)
                )
                return CredentialDetail.model_validate(row) if row is not None else None
            try:
                row = await session.scalar(
                    update(ServiceNowCredential)
                    .where(ServiceNowCredential.id == credential_id)
                    .where(ServiceNowCredential.user_id == user_id)
                    .values(**values)
                    .returning(ServiceNowCredential)
                )
                await session.commit()
            except DBAPIError as e:
                await session.rollback()
                self._check_ownership(user_id, e)
                raise
        if row is None:
            return None
        logger.info("Updated ServiceNow credential %s (%s)", credential_id, ", ".join(sorted(values)))
        return CredentialDetail.model_validate(row)

    async def delete(self, credential_id: UUID, user_id: UUID) -> bool:
        """Delete an owned credential. Returns False when nothing matched."""
        async with self._session() as session:
            result = await session.execute(
                delete(ServiceNowCredential)
                .where(ServiceNowCredential.id == credential_id)
                .where(ServiceNowCredential.user_id == user_id)
            )
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted ServiceNow credential %s", credential_id)
        return deleted

    def _check_ownership(self, user_id: UUID, error: Exception) -> None:
        """Turn an RLS rejection for someone else's owner id into OwnershipError."""
        if not _is_rls_violation(error):
            return
        logger.error(
            "Row-level security rejected credential write (authenticated as %s, owner %s)",
            self._auth_user_id,
            user_id,
        )
        if self._auth_user_id is not None and self._auth_user_id != user_id:
            raise OwnershipError(
                "User ID mismatch: the provided user ID does not match the authenticated user ID"
            ) from error
