"""Error taxonomy shared by the ServiceNow client, the credential store and the LLM client.

Lookups that find no row return None instead of raising; everything here is
a real failure the caller has to handle.
"""

from __future__ import annotations


class ServiceNowError(Exception):
    """Base class for failures talking to a ServiceNow instance."""


class AuthenticationError(ServiceNowError):
    """Credentials are missing, or the verification call after token creation failed."""


class NetworkError(ServiceNowError):
    """Transport failure or timeout before a response was received."""


class RequestError(ServiceNowError):
    """Non-2xx HTTP response, normalized to status / message / detail."""

    def __init__(self, status: int, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        data: dict = {"status": self.status, "message": self.message}
        if self.detail:
            data["detail"] = self.detail
        return data


class OperationError(ServiceNowError):
    """A public client operation failed; message carries the operation prefix.

    ``status`` mirrors the upstream HTTP status when the failure came from a
    RequestError, so a missing record still reads as 404.
    """

    def __init__(self, prefix: str, cause: Exception) -> None:
        reason = str(cause) or "Unknown error"
        super().__init__(f"{prefix}: {reason}")
        self.reason = reason
        self.status: int | None = getattr(cause, "status", None)


class QueryError(OperationError):
    """query_records failed for a table."""

    def __init__(self, table: str, cause: Exception) -> None:
        super().__init__(f"Failed to query {table} records", cause)
        self.table = table


class OwnershipError(Exception):
    """Row-level security rejected a write because the owner id is not the caller's."""


class CompletionError(Exception):
    """The LLM completion API returned an error or an unreadable response."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
