"""Profile catalog: enumerates AWS profiles and the buckets each one sees."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .commands import LIST_TIMEOUT, REGION_TIMEOUT, CommandRunner, CommandResult
from .errors import CatalogError, CommandTimeout

logger = logging.getLogger(__name__)


@dataclass
class CachedListing:
    """Snapshot of the buckets visible to a single profile."""

    buckets: List[str] = field(default_factory=list)
    fetched_at: float = 0.0


class ProfileCatalog:
    """Lists profiles and per-profile buckets through the ``aws`` CLI.

    Listings are cached for *ttl* seconds so that one run resolving many
    groups asks the cloud once per profile.  A failed listing raises
    ``CatalogError``; an empty one is a valid, empty list.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        ttl: float = 300.0,
        aws: str = "aws",
    ):
        self._runner = runner or CommandRunner()
        self._ttl = ttl
        self._aws = aws
        self._profiles: Optional[List[str]] = None
        self._cache: Dict[str, CachedListing] = {}

    def _run(self, argv: List[str], timeout: float, profile: Optional[str]) -> CommandResult:
        try:
            result = self._runner.run(argv, timeout=timeout)
        except CommandTimeout as e:
            raise CatalogError(str(e), profile=profile) from e
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise CatalogError(
                f"{' '.join(argv[:3])} failed: {detail}", profile=profile
            )
        return result

    def profiles(self) -> List[str]:
        """Return configured profile names in the order the CLI reports them."""
        if self._profiles is None:
            result = self._run(
                [self._aws, "configure", "list-profiles"], LIST_TIMEOUT, None
            )
            names: List[str] = []
            for line in result.stdout.splitlines():
                name = line.strip()
                if name and name not in names:
                    names.append(name)
            self._profiles = names
            logger.debug("Discovered %d profile(s)", len(names))
        return list(self._profiles)

    def has_profile(self, profile: str) -> bool:
        return profile in self.profiles()

    def buckets(self, profile: str) -> List[str]:
        """Return a (possibly cached) bucket list for *profile*."""
        cached = self._cache.get(profile)
        if cached and (time.time() - cached.fetched_at) < self._ttl:
            return list(cached.buckets)

        logger.info("Fetching bucket list for profile %s", profile)
        result = self._run(
            [
                self._aws, "s3api", "list-buckets",
                "--profile", profile,
                "--query", "Buckets[].[Name]",
                "--output", "text",
            ],
            LIST_TIMEOUT,
            profile,
        )
        buckets = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not buckets:
            logger.info("No accessible buckets found for profile '%s'", profile)
        self._cache[profile] = CachedListing(buckets=buckets, fetched_at=time.time())
        return list(buckets)

    def bucket_region(self, profile: str, bucket: str) -> Optional[str]:
        """Return the bucket's location constraint, or None for the default.

        Lookup failures also yield None: the mount then falls back to the
        default endpoint, which s3fs redirects when it can.
        """
        try:
            result = self._runner.run(
                [
                    self._aws, "s3api", "get-bucket-location",
                    "--profile", profile,
                    "--bucket", bucket,
                    "--output", "json",
                ],
                timeout=REGION_TIMEOUT,
            )
        except CommandTimeout:
            logger.warning("Region lookup timed out for %s; using default endpoint", bucket)
            return None
        if not result.ok:
            logger.debug("Region lookup failed for %s: %s", bucket, result.stderr.strip())
            return None
        try:
            doc = json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            logger.debug("Unparseable region lookup output for %s", bucket)
            return None
        location = doc.get("LocationConstraint") if isinstance(doc, dict) else None
        return location or None
