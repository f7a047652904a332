"""Credential vault for short-lived STS credentials kept in the session keyring.

Bundles live only in the kernel session keyring (``keyctl ... @s``), which
the kernel clears when the login session ends.  Nothing in this module
writes credential material to a file, and secret values are handed to
``keyctl`` on stdin rather than argv so they never show up in a process
listing.
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .catalog import ProfileCatalog
from .commands import ISSUE_TIMEOUT, KEYRING_TIMEOUT, CommandRunner
from .errors import (
    CatalogError,
    CommandNotFound,
    CommandTimeout,
    IssuanceFailed,
    MountAllS3Error,
)
from .utils import format_timestamp, parse_iso_timestamp

logger = logging.getLogger(__name__)

SESSION_DURATION = 12 * 60 * 60  # 12 hours
KEY_PREFIX = "mountalls3"
_FIELDS = ("access", "secret", "token", "expiry")


@dataclass(frozen=True)
class CredentialBundle:
    access_id: str
    secret: str
    session_token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        # The boundary belongs to "expired": now == expires_at is not valid.
        return now < self.expires_at

    def passwd_line(self) -> str:
        """The ``ACCESS:SECRET:TOKEN`` line s3fs reads from its passwd file."""
        return f"{self.access_id}:{self.secret}:{self.session_token}"

    def __repr__(self) -> str:
        return (
            f"CredentialBundle(access_id={self.access_id!r}, secret=***, "
            f"session_token=***, expires_at={self.expires_at!r})"
        )


# ----------------------------------------------------------------------
# Secret stores
# ----------------------------------------------------------------------


class SecretStore(ABC):
    """Session-scoped key/value store addressed by description and key id."""

    @abstractmethod
    def add(self, key: str, value: str) -> str:
        """Store *value* under *key*, replacing any existing entry.  Returns its id."""

    @abstractmethod
    def search(self, key: str) -> Optional[str]:
        """Return the id stored under *key*, or None."""

    @abstractmethod
    def read(self, key_id: str) -> Optional[str]:
        """Return the value for *key_id*, or None if it vanished."""

    @abstractmethod
    def delete(self, key_id: str) -> None:
        """Remove the entry.  Missing entries are ignored."""


class KeyringStore(SecretStore):
    """Linux session keyring via the ``keyctl`` utility (keyutils)."""

    def __init__(self, runner: Optional[CommandRunner] = None, keyring: str = "@s"):
        self._runner = runner or CommandRunner()
        self._keyring = keyring

    def _keyctl(self, *args: str, input: Optional[str] = None):
        try:
            return self._runner.run(
                ["keyctl", *args], timeout=KEYRING_TIMEOUT, input=input
            )
        except CommandTimeout as e:
            raise MountAllS3Error(f"session keyring unavailable: {e}") from e

    def add(self, key: str, value: str) -> str:
        result = self._keyctl("padd", "user", key, self._keyring, input=value)
        if not result.ok:
            raise MountAllS3Error(
                f"failed to store {key} in session keyring: {result.stderr.strip()}"
            )
        return result.stdout.strip()

    def search(self, key: str) -> Optional[str]:
        result = self._keyctl("search", self._keyring, "user", key)
        key_id = result.stdout.strip()
        return key_id if result.ok and key_id else None

    def read(self, key_id: str) -> Optional[str]:
        result = self._keyctl("pipe", key_id)
        return result.stdout if result.ok else None

    def delete(self, key_id: str) -> None:
        result = self._keyctl("unlink", key_id, self._keyring)
        if not result.ok:
            logger.debug("keyctl unlink %s: %s", key_id, result.stderr.strip())


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------


Notifier = Callable[[str], None]


def desktop_notifier(runner: Optional[CommandRunner] = None) -> Notifier:
    """Return a notifier that pops a desktop notification if it can."""
    runner = runner or CommandRunner()

    def notify(message: str) -> None:
        if shutil.which("notify-send") is None:
            return
        try:
            runner.run(["notify-send", "MountAllS3", message, "-t", "5000"], timeout=5.0)
        except MountAllS3Error as e:
            logger.debug("Desktop notification failed: %s", e)

    return notify


# ----------------------------------------------------------------------
# Vault
# ----------------------------------------------------------------------


class CredentialVault:
    """Hands out one live credential bundle per profile, refreshing on expiry.

    Check-and-issue for a profile happens under that profile's lock, so two
    callers that both see an expired bundle produce a single issuance; the
    second waits and then reads what the first stored.
    """

    def __init__(
        self,
        store: SecretStore,
        runner: Optional[CommandRunner] = None,
        catalog: Optional[ProfileCatalog] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        duration: int = SESSION_DURATION,
        aws: str = "aws",
    ):
        self._store = store
        self._runner = runner or CommandRunner()
        self._catalog = catalog
        self._notify = notifier or (lambda message: None)
        self._clock = clock
        self._duration = duration
        self._aws = aws
        # Per-profile locks serialise refresh of the same profile.
        self._locks: Dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def _lock_for(self, profile: str) -> threading.Lock:
        with self._global_lock:
            if profile not in self._locks:
                self._locks[profile] = threading.Lock()
            return self._locks[profile]

    @staticmethod
    def _key(field_name: str, profile: str) -> str:
        return f"{KEY_PREFIX}_{field_name}_{profile}"

    def _read_field(self, field_name: str, profile: str) -> Optional[str]:
        key_id = self._store.search(self._key(field_name, profile))
        if key_id is None:
            return None
        return self._store.read(key_id)

    # ------------------------------------------------------------------

    def lookup(self, profile: str) -> Optional[CredentialBundle]:
        """Return the stored bundle (valid or not), or None if absent/incomplete."""
        values = {}
        for name in _FIELDS:
            value = self._read_field(name, profile)
            if value is None:
                return None
            values[name] = value
        try:
            expires_at = float(values["expiry"].strip())
        except ValueError:
            return None
        return CredentialBundle(
            access_id=values["access"],
            secret=values["secret"],
            session_token=values["token"],
            expires_at=expires_at,
        )

    def purge(self, profile: str) -> None:
        """Remove every stored field for *profile*."""
        for name in _FIELDS:
            key_id = self._store.search(self._key(name, profile))
            if key_id is not None:
                self._store.delete(key_id)

    def get_or_refresh(self, profile: str) -> CredentialBundle:
        """Return a valid bundle for *profile*, issuing one if needed.

        Raises ``IssuanceFailed`` when a new bundle cannot be obtained.
        """
        with self._lock_for(profile):
            try:
                return self._get_or_refresh_locked(profile)
            except (IssuanceFailed, CommandNotFound):
                raise
            except MountAllS3Error as e:
                raise IssuanceFailed(profile, str(e)) from e

    def _get_or_refresh_locked(self, profile: str) -> CredentialBundle:
        bundle = self.lookup(profile)
        if bundle is not None and bundle.is_valid(self._clock()):
            logger.info("Using cached STS credentials for profile: %s", profile)
            return bundle

        if bundle is not None:
            logger.warning("STS credentials expired for profile: %s", profile)
            self.purge(profile)
            self._notify(f"Refreshing expired credentials for {profile}...")
        else:
            # Clear any half-written leftovers before issuing.
            self.purge(profile)
            logger.info("No STS credentials found for profile: %s", profile)

        bundle = self._issue(profile)
        self._store_bundle(profile, bundle)
        return bundle

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _issue(self, profile: str) -> CredentialBundle:
        if self._catalog is not None:
            try:
                known = self._catalog.has_profile(profile)
            except CatalogError as e:
                raise IssuanceFailed(profile, f"cannot list profiles: {e}") from e
            if not known:
                raise IssuanceFailed(profile, "profile not found")

        logger.info("Generating new STS credentials for profile: %s", profile)
        argv = [
            self._aws, "sts", "get-session-token",
            "--profile", profile,
            "--duration-seconds", str(self._duration),
            "--output", "json",
        ]
        try:
            result = self._runner.run(argv, timeout=ISSUE_TIMEOUT)
        except CommandTimeout as e:
            raise IssuanceFailed(profile, str(e)) from e
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise IssuanceFailed(profile, detail)
        return parse_session_token(profile, result.stdout)

    def _store_bundle(self, profile: str, bundle: CredentialBundle) -> None:
        # Expiry goes last: a bundle without it reads as absent.
        self._store.add(self._key("access", profile), bundle.access_id)
        self._store.add(self._key("secret", profile), bundle.secret)
        self._store.add(self._key("token", profile), bundle.session_token)
        self._store.add(self._key("expiry", profile), str(int(bundle.expires_at)))
        logger.info(
            "STS credentials stored in session keyring (expires: %s)",
            format_timestamp(bundle.expires_at),
        )


def parse_session_token(profile: str, payload: str) -> CredentialBundle:
    """Parse ``aws sts get-session-token --output json`` output."""
    try:
        doc = json.loads(payload)
    except json.JSONDecodeError as e:
        raise IssuanceFailed(profile, f"unparseable response: {e}") from None
    if not isinstance(doc, dict):
        raise IssuanceFailed(profile, "unexpected response shape")
    creds = doc.get("Credentials", doc)
    if not isinstance(creds, dict):
        raise IssuanceFailed(profile, "unexpected response shape")

    missing = [
        k for k in ("AccessKeyId", "SecretAccessKey", "SessionToken", "Expiration")
        if not isinstance(creds.get(k), str) or not creds.get(k)
    ]
    if missing:
        raise IssuanceFailed(profile, f"missing field(s): {', '.join(missing)}")

    try:
        expires_at = parse_iso_timestamp(creds["Expiration"])
    except ValueError:
        raise IssuanceFailed(
            profile, f"bad expiration time: {creds['Expiration']!r}"
        ) from None

    return CredentialBundle(
        access_id=creds["AccessKeyId"],
        secret=creds["SecretAccessKey"],
        session_token=creds["SessionToken"],
        expires_at=expires_at,
    )
