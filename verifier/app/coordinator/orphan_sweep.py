"""
Orphan sweep for transient IC objects.

The verification pipeline deletes its objects in-process. If the process
dies between PUT and DELETE, the objects outlive their request; this
sweep removes them out of band. Intended to run on a schedule:

    python -m verifier.app.coordinator.orphan_sweep

HARD GUARANTEES:
- only keys under "<storage_key_prefix>/" are considered
- an object is deleted only when its age is strictly greater than the
  configured maximum age
- a failed delete is reported, never raised; a failed listing deletes
  nothing and exits non-zero
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

import httpx

from verifier.app.core.config import Settings, get_settings
from verifier.app.schemas.verification import SweepReport
from verifier.app.services.credentials import build_credential_provider
from verifier.app.services.object_storage import ListingFailed, ObjectStorageClient

logger = logging.getLogger("verifier.sweep")


class OrphanSweeper:
    """
    Lists the transient key prefix and deletes expired objects.
    """

    def __init__(
        self,
        *,
        storage: ObjectStorageClient,
        key_prefix: str = "ic-verification",
        max_age_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        self._storage = storage
        self.prefix = f"{key_prefix.strip('/')}/"
        self.max_age_seconds = max_age_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
    ) -> "OrphanSweeper":
        storage = ObjectStorageClient(
            http_client=http_client,
            credential_provider=build_credential_provider(settings, http_client),
            bucket=settings.storage_bucket,
            region=settings.aws_region,
            host=settings.resolved_storage_host,
            timeout_seconds=settings.request_timeout_seconds,
        )
        return cls(
            storage=storage,
            key_prefix=settings.storage_key_prefix,
            max_age_seconds=settings.orphan_max_age_seconds,
        )

    async def sweep(self, *, dry_run: bool = False) -> SweepReport:
        """
        Delete every object under the prefix older than the maximum age.

        Raises ListingFailed when the prefix cannot be listed.
        """
        listed = await self._storage.list_objects(self.prefix)
        now = self._clock()

        expired = [
            entry.key
            for entry in listed
            if entry.key.startswith(self.prefix)
            and entry.age_seconds(now) > self.max_age_seconds
        ]

        failed: List[str] = []
        if not dry_run:
            for key in expired:
                if not await self._storage.delete(key):
                    failed.append(key)

        report = SweepReport(
            prefix=self.prefix,
            listed_count=len(listed),
            expired_keys=expired,
            failed_keys=failed,
        )

        logger.info(
            "orphan_sweep_completed",
            extra={
                "prefix": self.prefix,
                "listed_count": report.listed_count,
                "expired_count": len(expired),
                "failed_count": len(failed),
                "dry_run": dry_run,
            },
        )
        return report


# ----------------------------------------------------------------------
# Command line entry point
# ----------------------------------------------------------------------

async def run_sweep(
    settings: Settings,
    *,
    max_age_seconds: Optional[int] = None,
    dry_run: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SweepReport:
    timeout = settings.request_timeout_seconds
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout=timeout, connect=min(timeout, 2.0)),
        transport=transport,
    ) as http_client:
        sweeper = OrphanSweeper.from_settings(settings, http_client)
        if max_age_seconds is not None:
            sweeper.max_age_seconds = max_age_seconds
        return await sweeper.sweep(dry_run=dry_run)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Delete transient IC images that outlived their request",
    )
    parser.add_argument(
        "--max-age-seconds",
        type=int,
        default=None,
        help="Override VERIFIER_ORPHAN_MAX_AGE_SECONDS",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List expired objects without deleting them",
    )
    args = parser.parse_args(argv)

    if args.max_age_seconds is not None and args.max_age_seconds <= 0:
        parser.error("--max-age-seconds must be positive")

    logging.basicConfig(level=logging.INFO)

    try:
        report = asyncio.run(
            run_sweep(
                get_settings(),
                max_age_seconds=args.max_age_seconds,
                dry_run=args.dry_run,
            )
        )
    except ListingFailed as exc:
        logger.error("orphan_sweep_failed", extra={"error": str(exc)})
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print(f"Found {len(report.expired_keys)} orphaned IC images.")
    else:
        print(f"Deleted {report.deleted_count} orphaned IC images.")
    return 0 if report.confirmed else 1


if __name__ == "__main__":
    sys.exit(main())
