"""Tests for client-credentials token acquisition."""
from urllib.parse import parse_qs

import httpx
import pytest

from azsync.azure.auth import (
    LOG_ANALYTICS_SCOPE,
    AzureCredentialProvider,
    CredentialError,
    EnvSecretStore,
    TenantNotFoundError,
)


class StaticSecrets:
    def __init__(self, value="s3cret"):
        self.value = value

    def get_secret(self, ref):
        return self.value


def _provider(engine, handler, secrets=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AzureCredentialProvider(engine, secrets=secrets or StaticSecrets(), http=http)


class TestEnvSecretStore:
    def test_reads_prefixed_variable(self, monkeypatch):
        monkeypatch.setenv("AZSYNC_SECRET_CONTOSO_PROD", "xyz")
        assert EnvSecretStore().get_secret("contoso-prod") == "xyz"

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.delenv("AZSYNC_SECRET_NOPE", raising=False)
        with pytest.raises(CredentialError):
            EnvSecretStore().get_secret("nope")


class TestGetToken:
    @pytest.mark.asyncio
    async def test_posts_client_credentials(self, engine, tenant):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "tok-1"})

        token = await _provider(engine, handler).get_token(tenant.id, LOG_ANALYTICS_SCOPE)
        assert token == "tok-1"
        assert tenant.directory_id in seen["url"]
        assert seen["form"]["grant_type"] == ["client_credentials"]
        assert seen["form"]["client_id"] == [tenant.client_id]
        assert seen["form"]["client_secret"] == ["s3cret"]
        assert seen["form"]["scope"] == [LOG_ANALYTICS_SCOPE]

    @pytest.mark.asyncio
    async def test_no_caching_between_calls(self, engine, tenant):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}"})

        provider = _provider(engine, handler)
        assert await provider.get_token(tenant.id) == "tok-1"
        assert await provider.get_token(tenant.id) == "tok-2"

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise(self, engine, tenant):
        provider = _provider(engine, lambda r: httpx.Response(401, text="invalid_client"))
        with pytest.raises(CredentialError, match="401"):
            await provider.get_token(tenant.id)

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self, engine, tenant):
        provider = _provider(engine, lambda r: httpx.Response(200, json={}))
        with pytest.raises(CredentialError):
            await provider.get_token(tenant.id)

    @pytest.mark.asyncio
    async def test_unknown_tenant_raises(self, engine):
        provider = _provider(engine, lambda r: httpx.Response(200, json={"access_token": "x"}))
        with pytest.raises(TenantNotFoundError):
            await provider.get_token(42)

    @pytest.mark.asyncio
    async def test_transport_error_becomes_credential_error(self, engine, tenant):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        with pytest.raises(CredentialError):
            await _provider(engine, handler).get_token(tenant.id)
