"""
Orphan sweep tests.

Test plan:
- Signed ListObjectsV2 request (query in the signature and the URL)
- Pagination through continuation tokens
- Listing failures raise ListingFailed and delete nothing
- Age rule: strictly older than the maximum age, prefix only
- Dry run, delete failures, settings wiring, command line exit codes
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pydantic import ValidationError

from verifier.app.core.config import Settings
from verifier.app.coordinator import orphan_sweep
from verifier.app.coordinator.orphan_sweep import OrphanSweeper, run_sweep
from verifier.app.schemas.verification import SweepReport
from verifier.app.services.object_storage import ListingFailed, ObjectStorageClient
from verifier.app.utils.hashing import EMPTY_PAYLOAD_SHA256
from verifier.tests.fixtures.fake_backends import (
    BUCKET,
    FIXED_NOW,
    REGION,
    CountingCredentialProvider,
    FakeStorageBackend,
    storage_client,
)

pytestmark = pytest.mark.anyio

PREFIX = "ic-verification/"
HOUR = timedelta(hours=1)


def sweeper_for(backend, *, max_age_seconds=3600):
    storage, http_client = storage_client(backend)
    sweeper = OrphanSweeper(
        storage=storage,
        max_age_seconds=max_age_seconds,
        clock=lambda: FIXED_NOW,
    )
    return sweeper, http_client


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

async def test_listing_is_a_signed_get_with_query_parameters():
    backend = FakeStorageBackend()
    backend.seed(f"{PREFIX}a_front.jpg", last_modified=FIXED_NOW - HOUR)
    storage, http_client = storage_client(backend)

    async with http_client:
        listed = await storage.list_objects(PREFIX)

    assert [entry.key for entry in listed] == [f"{PREFIX}a_front.jpg"]
    assert listed[0].last_modified == FIXED_NOW - HOUR
    assert listed[0].size == 1

    request = backend.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/"
    assert request.url.query == b"list-type=2&prefix=ic-verification%2F"
    assert request.headers["X-Amz-Content-Sha256"] == EMPTY_PAYLOAD_SHA256
    assert request.headers["Authorization"].startswith(
        f"AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20250301/{REGION}/s3/aws4_request, "
    )


async def test_listing_follows_continuation_tokens():
    backend = FakeStorageBackend(page_size=2)
    for index in range(5):
        backend.seed(f"{PREFIX}{index}_front.jpg", last_modified=FIXED_NOW)
    storage, http_client = storage_client(backend)

    async with http_client:
        listed = await storage.list_objects(PREFIX)

    assert len(listed) == 5
    assert len(backend.listings) == 3
    assert "continuation-token" not in backend.listings[0]
    assert backend.listings[1]["continuation-token"] == "2"
    assert backend.listings[2]["continuation-token"] == "4"


async def test_listing_excludes_other_prefixes():
    backend = FakeStorageBackend()
    backend.seed(f"{PREFIX}a_front.jpg", last_modified=FIXED_NOW)
    backend.seed("tenant-documents/lease.pdf", last_modified=FIXED_NOW)
    storage, http_client = storage_client(backend)

    async with http_client:
        listed = await storage.list_objects(PREFIX)

    assert [entry.key for entry in listed] == [f"{PREFIX}a_front.jpg"]


async def test_listing_rejection_raises():
    backend = FakeStorageBackend(list_status=403)
    storage, http_client = storage_client(backend)

    async with http_client:
        with pytest.raises(ListingFailed) as excinfo:
            await storage.list_objects(PREFIX)

    assert excinfo.value.status_code == 403


async def test_unparseable_listing_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<ListBucketResult><Contents>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        storage = ObjectStorageClient(
            http_client=http_client,
            credential_provider=CountingCredentialProvider(),
            bucket=BUCKET,
            region=REGION,
            clock=lambda: FIXED_NOW,
        )
        with pytest.raises(ListingFailed):
            await storage.list_objects(PREFIX)


async def test_listing_credential_failure_raises():
    backend = FakeStorageBackend()
    storage, http_client = storage_client(
        backend, CountingCredentialProvider(fail=True)
    )

    async with http_client:
        with pytest.raises(ListingFailed):
            await storage.list_objects(PREFIX)

    assert backend.requests == []


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

async def test_sweep_deletes_only_objects_older_than_max_age():
    backend = FakeStorageBackend()
    backend.seed(f"{PREFIX}stale_front.jpg", last_modified=FIXED_NOW - 2 * HOUR)
    backend.seed(
        f"{PREFIX}stale_back.png",
        last_modified=FIXED_NOW - HOUR - timedelta(seconds=1),
    )
    backend.seed(f"{PREFIX}boundary_front.jpg", last_modified=FIXED_NOW - HOUR)
    backend.seed(f"{PREFIX}fresh_front.jpg", last_modified=FIXED_NOW)
    backend.seed("tenant-documents/old.pdf", last_modified=FIXED_NOW - 48 * HOUR)
    sweeper, http_client = sweeper_for(backend)

    async with http_client:
        report = await sweeper.sweep()

    assert sorted(backend.deletes) == [
        f"{PREFIX}stale_back.png",
        f"{PREFIX}stale_front.jpg",
    ]
    assert report.listed_count == 4
    assert report.deleted_count == 2
    assert report.confirmed is True
    assert f"{PREFIX}boundary_front.jpg" in backend.objects
    assert "tenant-documents/old.pdf" in backend.objects


async def test_sweep_leaves_objects_of_a_request_in_flight():
    backend = FakeStorageBackend()
    storage, http_client = storage_client(backend)
    sweeper = OrphanSweeper(storage=storage, clock=lambda: FIXED_NOW + timedelta(minutes=5))

    async with http_client:
        await storage.upload(b"\xff\xd8\xff", f"{PREFIX}live_front.jpg", "image/jpeg")
        report = await sweeper.sweep()

    assert report.expired_keys == []
    assert backend.deletes == []


async def test_dry_run_deletes_nothing():
    backend = FakeStorageBackend()
    backend.seed(f"{PREFIX}stale_front.jpg", last_modified=FIXED_NOW - 2 * HOUR)
    sweeper, http_client = sweeper_for(backend)

    async with http_client:
        report = await sweeper.sweep(dry_run=True)

    assert report.expired_keys == [f"{PREFIX}stale_front.jpg"]
    assert backend.deletes == []


async def test_delete_failure_is_reported_not_raised():
    backend = FakeStorageBackend(fail_delete_markers=["_front."])
    backend.seed(f"{PREFIX}a_front.jpg", last_modified=FIXED_NOW - 2 * HOUR)
    backend.seed(f"{PREFIX}a_back.png", last_modified=FIXED_NOW - 2 * HOUR)
    sweeper, http_client = sweeper_for(backend)

    async with http_client:
        report = await sweeper.sweep()

    assert report.failed_keys == [f"{PREFIX}a_front.jpg"]
    assert report.deleted_count == 1
    assert report.confirmed is False


async def test_listing_failure_deletes_nothing():
    backend = FakeStorageBackend(list_status=500)
    backend.seed(f"{PREFIX}stale_front.jpg", last_modified=FIXED_NOW - 2 * HOUR)
    sweeper, http_client = sweeper_for(backend)

    async with http_client:
        with pytest.raises(ListingFailed):
            await sweeper.sweep()

    assert backend.deletes == []


def test_non_positive_max_age_is_rejected():
    backend = FakeStorageBackend()
    storage, _ = storage_client(backend)

    with pytest.raises(ValueError):
        OrphanSweeper(storage=storage, max_age_seconds=0)


# ---------------------------------------------------------------------------
# Settings wiring and command line
# ---------------------------------------------------------------------------

def static_settings(**overrides) -> Settings:
    return Settings(
        storage_bucket=BUCKET,
        aws_region=REGION,
        credential_source="static",
        static_access_key_id="AKIDEXAMPLE",
        static_secret_access_key="secret",
        **overrides,
    )


def test_orphan_max_age_defaults_to_one_hour():
    assert static_settings().orphan_max_age_seconds == 3600

    with pytest.raises(ValidationError):
        static_settings(orphan_max_age_seconds=10)


async def test_run_sweep_uses_settings():
    backend = FakeStorageBackend()
    now = datetime.now(timezone.utc)
    backend.seed(f"{PREFIX}stale_front.jpg", last_modified=now - 3 * HOUR)
    backend.seed(f"{PREFIX}fresh_front.jpg", last_modified=now)

    report = await run_sweep(
        static_settings(orphan_max_age_seconds=7200),
        transport=httpx.MockTransport(backend.handle),
    )

    assert report.expired_keys == [f"{PREFIX}stale_front.jpg"]
    assert backend.deletes == [f"{PREFIX}stale_front.jpg"]
    assert backend.requests[0].headers["Host"] == f"{BUCKET}.s3.{REGION}.amazonaws.com"


def test_main_reports_deleted_count(monkeypatch, capsys):
    async def fake_run_sweep(settings, *, max_age_seconds, dry_run):
        assert max_age_seconds == 120
        assert dry_run is False
        return SweepReport(prefix=PREFIX, listed_count=3, expired_keys=["a", "b"])

    monkeypatch.setattr(orphan_sweep, "get_settings", static_settings)
    monkeypatch.setattr(orphan_sweep, "run_sweep", fake_run_sweep)

    assert orphan_sweep.main(["--max-age-seconds", "120"]) == 0
    assert "Deleted 2 orphaned IC images." in capsys.readouterr().out


def test_main_exits_non_zero_when_listing_fails(monkeypatch, capsys):
    async def failing_run_sweep(settings, *, max_age_seconds, dry_run):
        raise ListingFailed("Storage listing rejected with status 403")

    monkeypatch.setattr(orphan_sweep, "get_settings", static_settings)
    monkeypatch.setattr(orphan_sweep, "run_sweep", failing_run_sweep)

    assert orphan_sweep.main([]) == 1
    assert "Error:" in capsys.readouterr().err


def test_main_exits_non_zero_when_a_delete_fails(monkeypatch):
    async def partial_run_sweep(settings, *, max_age_seconds, dry_run):
        return SweepReport(prefix=PREFIX, expired_keys=["a"], failed_keys=["a"])

    monkeypatch.setattr(orphan_sweep, "get_settings", static_settings)
    monkeypatch.setattr(orphan_sweep, "run_sweep", partial_run_sweep)

    assert orphan_sweep.main(["--dry-run"]) == 1
