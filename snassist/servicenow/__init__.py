"""ServiceNow module: credential store and REST client.

Public API: ServiceNowClient, CredentialStore + credential schema types.
"""

from snassist.servicenow.client import AuthState, Record, ServiceNowClient
from snassist.servicenow.credentials import CredentialStore
from snassist.servicenow.schemas import CredentialDetail, CredentialInput, CredentialUpdate

__all__ = [
    "AuthState",
    "CredentialDetail",
    "CredentialInput",
    "CredentialStore",
    "CredentialUpdate",
    "Record",
    "ServiceNowClient",
]
