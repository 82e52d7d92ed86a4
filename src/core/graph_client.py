"""
Process-wide MS Graph client for calendar access.

App-only (client credentials) auth; the async credential acquires and
refreshes tokens itself, so nothing token-related is persisted.
"""

import logging

from azure.identity.aio import ClientSecretCredential
from msgraph import GraphServiceClient

from core.config import GRAPH_APP_ID, GRAPH_CLIENT_SECRET, GRAPH_TENANT_ID

logger = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

_credential: ClientSecretCredential | None = None
_graph_client: GraphServiceClient | None = None


def get_graph_client() -> GraphServiceClient:
    """Shared client, created on first use. Raises if Graph is not configured."""
    global _credential, _graph_client
    if _graph_client is None:
        missing = [
            name
            for name, value in (
                ("MICROSOFT_GRAPH_TENANT_ID", GRAPH_TENANT_ID),
                ("MICROSOFT_GRAPH_APP_ID", GRAPH_APP_ID),
                ("MICROSOFT_GRAPH_CLIENT_SECRET", GRAPH_CLIENT_SECRET),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"MS Graph is not configured: {', '.join(missing)} not set")

        _credential = ClientSecretCredential(
            tenant_id=GRAPH_TENANT_ID,
            client_id=GRAPH_APP_ID,
            client_secret=GRAPH_CLIENT_SECRET,
        )
        _graph_client = GraphServiceClient(credentials=_credential, scopes=GRAPH_SCOPES)
        logger.info("MS Graph client initialized for tenant %s", GRAPH_TENANT_ID)
    return _graph_client


async def close_graph_client() -> None:
    """Release the credential's HTTP session. Safe to call when never opened."""
    global _credential, _graph_client
    if _credential is not None:
        await _credential.close()
    _credential = None
    _graph_client = None
