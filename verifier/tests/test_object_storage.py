import httpx
import pytest

from verifier.app.services.object_storage import ObjectStorageClient, UploadFailed
from verifier.app.utils.hashing import EMPTY_PAYLOAD_SHA256, sha256_hex
from verifier.tests.fixtures.fake_backends import (
    BUCKET,
    FIXED_NOW,
    REGION,
    STORAGE_HOST,
    CountingCredentialProvider,
    FakeStorageBackend,
    storage_client,
)
from verifier.tests.fixtures.images import jpeg_bytes

pytestmark = pytest.mark.anyio

KEY = "ic-verification/0f1e2d3c_1740821400_front.jpg"


async def test_upload_sends_signed_put_and_returns_url():
    backend = FakeStorageBackend()
    client, http_client = storage_client(backend)
    data = jpeg_bytes()

    async with http_client:
        url = await client.upload(data, KEY, "image/jpeg")

    assert url == f"https://{STORAGE_HOST}/{KEY}"
    assert backend.objects[KEY] == data

    request = backend.requests[0]
    assert request.method == "PUT"
    assert request.headers["Host"] == STORAGE_HOST
    assert request.headers["Content-Type"] == "image/jpeg"
    assert request.headers["X-Amz-Date"] == "20250301T093000Z"
    assert request.headers["X-Amz-Content-Sha256"] == sha256_hex(data)
    assert request.headers["X-Amz-Security-Token"] == "session-token"

    authorization = request.headers["Authorization"]
    assert authorization.startswith(
        f"AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20250301/{REGION}/s3/aws4_request, "
    )
    assert (
        "SignedHeaders=content-type;host;x-amz-content-sha256;"
        "x-amz-date;x-amz-security-token," in authorization
    )


@pytest.mark.parametrize("status_code", [201, 403, 500, 503])
async def test_upload_rejects_any_status_other_than_200(status_code):
    backend = FakeStorageBackend(
        fail_put_markers=["front"],
        put_failure_status=status_code,
    )
    client, http_client = storage_client(backend)

    async with http_client:
        with pytest.raises(UploadFailed) as excinfo:
            await client.upload(jpeg_bytes(), KEY, "image/jpeg")

    assert excinfo.value.status_code == status_code
    assert "<Error>" not in str(excinfo.value)


async def test_upload_transport_failure_raises_upload_failed():
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
    client = ObjectStorageClient(
        http_client=http_client,
        credential_provider=CountingCredentialProvider(),
        bucket=BUCKET,
        region=REGION,
    )

    async with http_client:
        with pytest.raises(UploadFailed):
            await client.upload(jpeg_bytes(), KEY, "image/jpeg")


async def test_upload_credential_failure_raises_upload_failed():
    backend = FakeStorageBackend()
    client, http_client = storage_client(
        backend, CountingCredentialProvider(fail=True)
    )

    async with http_client:
        with pytest.raises(UploadFailed):
            await client.upload(jpeg_bytes(), KEY, "image/jpeg")

    assert backend.requests == []


async def test_delete_signs_empty_payload_and_succeeds_on_204():
    backend = FakeStorageBackend()
    client, http_client = storage_client(backend)

    async with http_client:
        await client.upload(jpeg_bytes(), KEY, "image/jpeg")
        deleted = await client.delete(KEY)

    assert deleted is True
    assert KEY not in backend.objects

    request = backend.requests[-1]
    assert request.method == "DELETE"
    assert request.content == b""
    assert request.headers["X-Amz-Content-Sha256"] == EMPTY_PAYLOAD_SHA256
    assert "Content-Type" not in request.headers


async def test_delete_of_missing_key_is_harmless():
    backend = FakeStorageBackend()
    client, http_client = storage_client(backend)

    async with http_client:
        deleted = await client.delete("ic-verification/never-uploaded.jpg")

    assert deleted is True
    assert backend.deletes == ["ic-verification/never-uploaded.jpg"]


@pytest.mark.parametrize("status_code", [200, 403, 404, 500])
async def test_delete_returns_false_on_other_status(status_code):
    backend = FakeStorageBackend(delete_status=status_code)
    client, http_client = storage_client(backend)

    async with http_client:
        assert await client.delete(KEY) is False


async def test_delete_never_raises_on_credential_failure():
    backend = FakeStorageBackend()
    client, http_client = storage_client(
        backend, CountingCredentialProvider(fail=True)
    )

    async with http_client:
        assert await client.delete(KEY) is False


async def test_credential_fetched_per_operation():
    backend = FakeStorageBackend()
    credentials = CountingCredentialProvider()
    client, http_client = storage_client(backend, credentials)

    async with http_client:
        await client.upload(jpeg_bytes(), KEY, "image/jpeg")
        await client.delete(KEY)

    assert credentials.calls == 2


def test_object_url_uses_virtual_hosted_style():
    client = ObjectStorageClient(
        http_client=httpx.AsyncClient(),
        credential_provider=CountingCredentialProvider(),
        bucket=BUCKET,
        region=REGION,
        clock=lambda: FIXED_NOW,
    )

    assert client.object_url("ic-verification/a b.jpg") == (
        f"https://{STORAGE_HOST}/ic-verification/a%20b.jpg"
    )
