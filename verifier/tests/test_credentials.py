"""
Credential provider tests.

Test plan:
- IMDSv2 flow: token PUT, role listing, role document
- Every failure mode surfaces as CredentialUnavailable
- Caching wrapper refreshes before expiry and shares one refresh
- Factory honours the configured credential source
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pydantic import ValidationError

from verifier.app.core.config import Settings
from verifier.app.schemas.aws import Credential
from verifier.app.services.credentials import (
    CachingCredentialProvider,
    CredentialUnavailable,
    InstanceMetadataCredentialProvider,
    StaticCredentialProvider,
    build_credential_provider,
)
from verifier.tests.fixtures.fake_backends import CountingCredentialProvider

pytestmark = pytest.mark.anyio

IMDS = "http://169.254.169.254"
ROLE_PATH = "/latest/meta-data/iam/security-credentials/"

ROLE_DOCUMENT = {
    "Code": "Success",
    "LastUpdated": "2025-03-01T09:00:00Z",
    "Type": "AWS-HMAC",
    "AccessKeyId": "ASIAEXAMPLE",
    "SecretAccessKey": "role-secret",
    "Token": "role-session-token",
    "Expiration": "2025-03-01T15:30:00Z",
}


class FakeMetadataService:
    def __init__(
        self,
        *,
        roles: str = "ic-verifier-role\n",
        document: object = None,
        role_status: int = 200,
        unreachable: bool = False,
    ) -> None:
        self.roles = roles
        self.document = ROLE_DOCUMENT if document is None else document
        self.role_status = role_status
        self.unreachable = unreachable
        self.requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.unreachable:
            raise httpx.ConnectError("no route to host", request=request)

        if request.method == "PUT" and request.url.path == "/latest/api/token":
            return httpx.Response(200, text="imds-session-token")

        if request.url.path == ROLE_PATH:
            return httpx.Response(self.role_status, text=self.roles)

        if request.url.path == ROLE_PATH + "ic-verifier-role":
            if isinstance(self.document, str):
                return httpx.Response(200, text=self.document)
            return httpx.Response(200, text=json.dumps(self.document))

        return httpx.Response(404)

    def provider(self, **kwargs) -> InstanceMetadataCredentialProvider:
        return InstanceMetadataCredentialProvider(
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handle)),
            base_url=IMDS,
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Instance metadata
# ---------------------------------------------------------------------------

async def test_imds_v2_flow_returns_role_credential():
    service = FakeMetadataService()

    credential = await service.provider().get()

    assert credential.access_key_id == "ASIAEXAMPLE"
    assert credential.secret_access_key.get_secret_value() == "role-secret"
    assert credential.session_token.get_secret_value() == "role-session-token"
    assert credential.expires_at == datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc)

    token_request, role_request, document_request = service.requests
    assert token_request.method == "PUT"
    assert token_request.headers["X-aws-ec2-metadata-token-ttl-seconds"] == "21600"
    assert role_request.headers["X-aws-ec2-metadata-token"] == "imds-session-token"
    assert document_request.headers["X-aws-ec2-metadata-token"] == "imds-session-token"


async def test_imds_v1_skips_session_token():
    service = FakeMetadataService()

    await service.provider(use_imds_v2=False).get()

    assert [r.method for r in service.requests] == ["GET", "GET"]
    assert "X-aws-ec2-metadata-token" not in service.requests[0].headers


async def test_unreachable_endpoint_is_unavailable():
    service = FakeMetadataService(unreachable=True)

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


async def test_error_status_is_unavailable():
    service = FakeMetadataService(role_status=404)

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


async def test_empty_role_listing_is_unavailable():
    service = FakeMetadataService(roles="   \n")

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


async def test_non_success_code_is_unavailable():
    service = FakeMetadataService(document={**ROLE_DOCUMENT, "Code": "Failure"})

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


async def test_malformed_document_is_unavailable():
    service = FakeMetadataService(document="{not json")

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


async def test_document_missing_keys_is_unavailable():
    service = FakeMetadataService(document={"Code": "Success"})

    with pytest.raises(CredentialUnavailable):
        await service.provider().get()


# ---------------------------------------------------------------------------
# Static
# ---------------------------------------------------------------------------

async def test_static_provider_refuses_expired_credential():
    provider = StaticCredentialProvider(
        Credential(
            access_key_id="AKID",
            secret_access_key="secret",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
    )

    with pytest.raises(CredentialUnavailable):
        await provider.get()


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------

async def test_cache_reuses_credential_until_refresh_margin():
    now = [datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)]
    inner = CountingCredentialProvider(
        Credential(
            access_key_id="ASIAEXAMPLE",
            secret_access_key="secret",
            session_token="token",
            expires_at=now[0] + timedelta(hours=1),
        )
    )
    provider = CachingCredentialProvider(
        inner, refresh_margin_seconds=300, clock=lambda: now[0]
    )

    await provider.get()
    await provider.get()
    assert inner.calls == 1

    now[0] += timedelta(minutes=56)
    await provider.get()
    assert inner.calls == 2


async def test_cache_shares_one_refresh_between_concurrent_callers():
    inner = CountingCredentialProvider(
        Credential(access_key_id="AKID", secret_access_key="secret")
    )
    provider = CachingCredentialProvider(inner)

    results = await asyncio.gather(*(provider.get() for _ in range(5)))

    assert inner.calls == 1
    assert all(result.access_key_id == "AKID" for result in results)


async def test_cache_propagates_unavailable():
    provider = CachingCredentialProvider(CountingCredentialProvider(fail=True))

    with pytest.raises(CredentialUnavailable):
        await provider.get()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

async def test_factory_builds_static_provider_with_optional_cache():
    settings = Settings(
        storage_bucket="tenant-ic-test",
        credential_source="static",
        static_access_key_id="AKID",
        static_secret_access_key="secret",
        credential_cache_enabled=True,
    )

    async with httpx.AsyncClient() as client:
        provider = build_credential_provider(settings, client)

    assert isinstance(provider, CachingCredentialProvider)
    credential = await provider.get()
    assert credential.access_key_id == "AKID"


async def test_factory_defaults_to_instance_metadata():
    settings = Settings(storage_bucket="tenant-ic-test")

    async with httpx.AsyncClient() as client:
        provider = build_credential_provider(settings, client)

    assert isinstance(provider, InstanceMetadataCredentialProvider)


def test_static_source_requires_keys():
    with pytest.raises(ValidationError):
        Settings(storage_bucket="tenant-ic-test", credential_source="static")
