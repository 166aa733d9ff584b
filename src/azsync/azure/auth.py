"""
Azure AD client-credentials token acquisition.

Each tenant row stores its app registration (directory id + client id) and a
reference to the client secret. The secret itself lives in a secret store;
the default store reads it from the environment:

    AZSYNC_SECRET_<REF>=<client secret>

Tokens are short-lived and deliberately not cached: chunked syncs call
get_token() once per chunk because consecutive chunks run in separate
invocations, minutes apart.
"""
import logging
import os
from typing import Optional

import httpx
from sqlmodel import Session

from azsync.config import get_settings
from azsync.models.azure import AzureTenant

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
LOG_ANALYTICS_SCOPE = "https://api.loganalytics.io/.default"


# ── Exceptions ────────────────────────────────────────────────────────────────

class TenantNotFoundError(RuntimeError):
    """Raised when a tenant id does not resolve to a stored tenant."""


class CredentialError(RuntimeError):
    """Raised when a secret or access token cannot be obtained."""


# ── Secret store ──────────────────────────────────────────────────────────────

class EnvSecretStore:
    """Resolve client secrets from AZSYNC_SECRET_<REF> environment variables."""

    prefix = "AZSYNC_SECRET_"

    def get_secret(self, ref: str) -> str:
        key = self.prefix + ref.upper().replace("-", "_")
        value = os.environ.get(key)
        if not value:
            raise CredentialError(f"No client secret configured for {ref!r} ({key})")
        return value


# ── Provider ──────────────────────────────────────────────────────────────────

class AzureCredentialProvider:
    """
    Exchanges a tenant's client credentials for an access token.

    Usage:
        provider = AzureCredentialProvider(engine)
        token = await provider.get_token(tenant_id, MANAGEMENT_SCOPE)
    """

    def __init__(self, engine, secrets=None, http: Optional[httpx.AsyncClient] = None):
        self.engine = engine
        self.secrets = secrets or EnvSecretStore()
        self._http = http

    def load_tenant(self, tenant_id: int) -> AzureTenant:
        with Session(self.engine) as s:
            tenant = s.get(AzureTenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    async def get_token(self, tenant_id: int, scope: str = MANAGEMENT_SCOPE) -> str:
        """
        Fetch a fresh access token for the given tenant and scope.

        Raises:
            TenantNotFoundError: if the tenant row is gone.
            CredentialError: if the secret is missing or Azure AD rejects it.
        """
        tenant = self.load_tenant(tenant_id)
        secret = self.secrets.get_secret(tenant.client_secret_ref)

        url = f"{get_settings().azure_login_url}/{tenant.directory_id}/oauth2/v2.0/token"
        form = {
            "grant_type": "client_credentials",
            "client_id": tenant.client_id,
            "client_secret": secret,
            "scope": scope,
        }
        try:
            if self._http is not None:
                response = await self._http.post(url, data=form)
            else:
                async with httpx.AsyncClient(timeout=20.0) as http:
                    response = await http.post(url, data=form)
        except httpx.HTTPError as exc:
            raise CredentialError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise CredentialError(
                f"Token request rejected ({response.status_code}): {response.text[:200]}"
            )
        token = response.json().get("access_token")
        if not token:
            raise CredentialError("Token response had no access_token")
        logger.debug("Acquired token for tenant %s (%s)", tenant_id, scope)
        return token
