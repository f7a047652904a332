"""Mount orchestration: per-bucket mount state machine and cleanup pass.

Each (profile, bucket) pair maps to a ``MountUnit`` at
``<mount_base>/<bucket>`` that moves through::

    UNMOUNTED -> MOUNTING -> VERIFYING -> MOUNTED
                                      \\-> FAILED
    MOUNTED -> UNMOUNTING -> UNMOUNTED

A failure is recorded on the unit and in the batch report; it never stops
the rest of the batch.  Only ``CommandNotFound`` (a missing tool) escapes.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from .cache import BucketCache
from .catalog import ProfileCatalog
from .commands import MOUNT_TIMEOUT, UNMOUNT_TIMEOUT, CommandRunner, format_command
from .errors import (
    CommandTimeout,
    IntegrityViolation,
    IssuanceFailed,
    MountAllS3Error,
    MountRejected,
    MountTimeout,
)
from .mounttable import MountEntry, MountTable, provenance_tag
from .utils import is_within, needs_path_style
from .vault import CredentialVault

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]

# Shown instead of the anonymous pipe when printing a command to reproduce.
_PASSWD_HINT = (
    "passwd_file=<(printf '%s:%s:%s' \"$AWS_ACCESS_KEY_ID\" "
    "\"$AWS_SECRET_ACCESS_KEY\" \"$AWS_SESSION_TOKEN\")"
)
_DEBUG_SUFFIX = "-o dbglevel=info -f"


class MountState(Enum):
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    VERIFYING = "verifying"
    MOUNTED = "mounted"
    FAILED = "failed"
    UNMOUNTING = "unmounting"


@dataclass
class MountUnit:
    target: Path
    profile: str
    bucket: str
    state: MountState = MountState.UNMOUNTED
    command: str = ""
    reason: str = ""
    polls: int = 0
    already_mounted: bool = False
    error: Optional[MountAllS3Error] = None


class OutcomeStatus(str, Enum):
    MOUNTED = "mounted"
    ALREADY = "already"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNMOUNTED = "unmounted"


@dataclass(frozen=True)
class MountSettings:
    """Tunables for mounting and verification."""

    poll_attempts: int = 6
    poll_interval: float = 5.0
    default_region: str = "us-east-1"
    parallel_count: int = 5
    multireq_max: int = 20
    adapter: str = "s3fs"
    unmount_command: str = "umount"


@dataclass
class Outcome:
    profile: str
    bucket: str
    target: Path
    status: OutcomeStatus
    reason: str = ""
    command: str = ""


@dataclass
class CleanupReport:
    removed: List[Path] = field(default_factory=list)
    skipped: List[Tuple[Path, str]] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Cleanup completed: removed {len(self.removed)} empty "
            f"directories, skipped {len(self.skipped)}"
        )


@dataclass
class BatchReport:
    kind: str = "mount"
    outcomes: List[Outcome] = field(default_factory=list)
    cleanup: Optional[CleanupReport] = None

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    def count(self, *statuses: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status in statuses)

    @property
    def failures(self) -> List[Outcome]:
        bad = (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED)
        return [o for o in self.outcomes if o.status in bad]

    def summary(self) -> str:
        if self.kind == "unmount":
            return (
                f"Unmount completed: {self.count(OutcomeStatus.UNMOUNTED)} unmounted, "
                f"{self.count(OutcomeStatus.SKIPPED)} skipped"
            )
        return (
            f"Mount completed: {self.count(OutcomeStatus.MOUNTED)} mounted, "
            f"{self.count(OutcomeStatus.ALREADY)} already mounted, "
            f"{self.count(OutcomeStatus.FAILED)} failed, "
            f"{self.count(OutcomeStatus.SKIPPED)} skipped"
        )


@dataclass(frozen=True)
class UnmountSelector:
    """Which live mounts an unmount applies to.

    Profile selection relies on the provenance tag written into the mount
    table at mount time; mounts without one (made by hand or by an older
    version) never match a profile selector.
    """

    profile: Optional[str] = None
    pairs: Optional[FrozenSet[Pair]] = None

    @classmethod
    def everything(cls) -> "UnmountSelector":
        return cls()

    @classmethod
    def for_profile(cls, profile: str) -> "UnmountSelector":
        return cls(profile=profile)

    @classmethod
    def for_pairs(cls, pairs: Iterable[Pair]) -> "UnmountSelector":
        return cls(pairs=frozenset(pairs))

    def matches(self, entry: MountEntry) -> bool:
        origin = entry.provenance
        if self.profile is not None:
            return origin is not None and origin[0] == self.profile
        if self.pairs is not None:
            if origin is not None:
                return origin in self.pairs
            return entry.path.name in {bucket for _, bucket in self.pairs}
        return True


class MountOrchestrator:
    def __init__(
        self,
        mount_base: Union[str, Path],
        vault: CredentialVault,
        catalog: Optional[ProfileCatalog] = None,
        table: Optional[MountTable] = None,
        runner: Optional[CommandRunner] = None,
        cache: Optional[BucketCache] = None,
        settings: Optional[MountSettings] = None,
        abort: Optional[threading.Event] = None,
    ):
        self._base = Path(mount_base).expanduser().resolve()
        self._vault = vault
        self._catalog = catalog
        self._table = table or MountTable()
        self._runner = runner or CommandRunner()
        self._cache = cache or BucketCache()
        self._settings = settings or MountSettings()
        self._abort = abort or threading.Event()
        self._units: Dict[Path, MountUnit] = {}
        # Per-target locks keep the live-mount check and the mount atomic.
        self._locks: Dict[Path, threading.Lock] = {}
        self._global_lock = threading.Lock()

    @property
    def mount_base(self) -> Path:
        return self._base

    @property
    def units(self) -> Dict[Path, MountUnit]:
        return dict(self._units)

    def _lock_for(self, target: Path) -> threading.Lock:
        with self._global_lock:
            if target not in self._locks:
                self._locks[target] = threading.Lock()
            return self._locks[target]

    def _unit_for(self, target: Path, profile: str, bucket: str) -> MountUnit:
        with self._global_lock:
            unit = self._units.get(target)
            if unit is None:
                unit = MountUnit(target=target, profile=profile, bucket=bucket)
                self._units[target] = unit
            return unit

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    def mount(self, profile: str, bucket: str) -> MountUnit:
        """Drive one bucket to MOUNTED or FAILED."""
        target = self._base / bucket
        unit = self._unit_for(target, profile, bucket)
        if "/" in bucket or not is_within(target, self._base):
            self._fail(unit, "bucket name does not map to a directory under the mount base")
            return unit

        with self._lock_for(target):
            if self._table.is_live(target):
                logger.info("  Already mounted: %s", bucket)
                unit.state = MountState.MOUNTED
                unit.reason = "already mounted"
                unit.already_mounted = True
                return unit

            unit.state = MountState.MOUNTING
            unit.already_mounted = False
            unit.reason = ""
            unit.error = None
            unit.polls = 0
            unit.command = ""
            try:
                bundle = self._vault.get_or_refresh(profile)
            except IssuanceFailed as e:
                unit.error = e
                self._fail(unit, f"no credentials: {e.reason}")
                return unit

            logger.info("  Mounting: %s", bucket)
            try:
                target.mkdir(parents=True, exist_ok=True)
                argv = self.build_command(profile, bucket)
            except (OSError, ValueError) as e:
                self._fail(unit, f"cannot prepare mount: {e}")
                return unit
            unit.command = f"{format_command(argv)} -o {_PASSWD_HINT}"

            try:
                result = self._run_with_credentials(argv, bundle.passwd_line())
            except CommandTimeout as e:
                self._fail(unit, str(e))
                return unit
            if not result.ok:
                detail = result.stderr.strip() or f"exit status {result.returncode}"
                self._fail(unit, f"{self._settings.adapter} failed: {detail}")
                return unit

            unit.state = MountState.VERIFYING
            self._verify(unit)
            return unit

    def mount_all(self, pairs: Iterable[Pair]) -> BatchReport:
        """Mount every pair; failures are reported, never raised."""
        report = BatchReport()
        failed_profiles: Set[str] = set()
        self._base.mkdir(parents=True, exist_ok=True)

        for profile, bucket in pairs:
            target = self._base / bucket
            if profile in failed_profiles:
                report.add(Outcome(
                    profile, bucket, target, OutcomeStatus.SKIPPED,
                    reason=f"no credentials for profile '{profile}'",
                ))
                continue
            unit = self.mount(profile, bucket)
            if unit.state is MountState.MOUNTED:
                if unit.already_mounted:
                    status = OutcomeStatus.ALREADY
                else:
                    status = OutcomeStatus.MOUNTED
                report.add(Outcome(profile, bucket, target, status))
                continue
            if isinstance(unit.error, IssuanceFailed):
                failed_profiles.add(profile)
                report.add(Outcome(
                    profile, bucket, target, OutcomeStatus.SKIPPED, reason=unit.reason,
                ))
                continue
            report.add(Outcome(
                profile, bucket, target, OutcomeStatus.FAILED,
                reason=unit.reason, command=unit.command,
            ))
        return report

    def build_command(self, profile: str, bucket: str) -> List[str]:
        """The adapter argv for *bucket*, minus the credential pipe."""
        s = self._settings
        target = self._base / bucket
        argv = [s.adapter, bucket, str(target), "-o", "check_cache_dir_exist"]

        if needs_path_style(bucket):
            argv += ["-o", "use_path_request_style"]

        region = self._catalog.bucket_region(profile, bucket) if self._catalog else None
        if region and region != s.default_region:
            argv += [
                "-o", f"url=https://s3.{region}.amazonaws.com",
                "-o", f"endpoint={region}",
            ]

        argv += [
            "-o", "enable_noobj_cache",
            "-o", "notsup_compat_dir",
            "-o", f"multireq_max={s.multireq_max}",
            "-o", f"parallel_count={s.parallel_count}",
            "-o", "complement_stat",
        ]

        cache_dir = self._cache.ensure(bucket)
        argv += [
            "-o", f"use_cache={cache_dir}",
            "-o", f"ensure_diskfree={self._cache.diskfree_mb}",
            "-o", f"fsname={provenance_tag(profile, bucket)}",
        ]
        return argv

    def _run_with_credentials(self, argv: List[str], secret: str):
        # Credentials travel over an anonymous pipe: no named file ever exists.
        read_fd, write_fd = os.pipe()
        try:
            os.write(write_fd, (secret + "\n").encode("utf-8"))
            os.close(write_fd)
            write_fd = -1
            full = argv + ["-o", f"passwd_file=/dev/fd/{read_fd}"]
            return self._runner.run(full, timeout=MOUNT_TIMEOUT, pass_fds=(read_fd,))
        finally:
            if write_fd >= 0:
                os.close(write_fd)
            os.close(read_fd)

    def _verify(self, unit: MountUnit) -> None:
        s = self._settings
        last = "not yet mounted"
        try:
            for attempt in range(1, s.poll_attempts + 1):
                if self._abort.is_set():
                    self._fail(unit, f"cancelled; last status: {last}")
                    return
                unit.polls = attempt
                if self._table.is_live(unit.target):
                    unit.state = MountState.MOUNTED
                    logger.info("    Successfully mounted: %s", unit.bucket)
                    return
                if not self._table.adapter_running(unit.target):
                    last = "adapter process exited"
                    unit.error = MountTimeout(str(unit.target), unit.command, last)
                    self._fail(unit, f"failed to mount {unit.bucket} to {unit.target}")
                    return
                logger.info(
                    "    Waiting for %s to mount... (attempt %d/%d)",
                    unit.bucket, attempt, s.poll_attempts,
                )
                if attempt < s.poll_attempts and self._abort.wait(s.poll_interval):
                    self._fail(unit, f"cancelled; last status: {last}")
                    return
        except KeyboardInterrupt:
            self._fail(unit, f"interrupted; last status: {last}")
            raise

        unit.error = MountTimeout(str(unit.target), unit.command)
        self._fail(unit, f"{unit.bucket} did not mount within expected time")

    def _fail(self, unit: MountUnit, reason: str) -> None:
        unit.state = MountState.FAILED
        unit.reason = reason
        logger.error("    %s [%s:%s] %s", unit.target, unit.profile, unit.bucket, reason)
        if unit.command:
            logger.error("    Troubleshoot with: %s %s", unit.command, _DEBUG_SUFFIX)

    # ------------------------------------------------------------------
    # Unmounting
    # ------------------------------------------------------------------

    def unmount(self, selector: Optional[UnmountSelector] = None) -> BatchReport:
        """Tear down matching live mounts under the base, then clean up."""
        selector = selector or UnmountSelector.everything()
        report = BatchReport(kind="unmount")
        logger.info("Unmounting S3 buckets...")

        for entry in self._table.entries_under(self._base):
            if not selector.matches(entry):
                logger.debug("Skipping %s (doesn't match criteria)", entry.mountpoint)
                continue
            origin = entry.provenance or ("?", entry.path.name)
            unit = self._unit_for(entry.path, *origin)
            report.add(self._teardown(unit))

        logger.info("%s", report.summary())
        report.cleanup = self.cleanup()
        return report

    def _teardown(self, unit: MountUnit) -> Outcome:
        with self._lock_for(unit.target):
            unit.state = MountState.UNMOUNTING
            logger.info("  Unmounting: %s", unit.target)
            argv = [self._settings.unmount_command, str(unit.target)]
            try:
                result = self._runner.run(argv, timeout=UNMOUNT_TIMEOUT)
                if not result.ok:
                    raise MountRejected(result.stderr.strip() or "busy or not mounted")
            except (MountRejected, CommandTimeout) as e:
                unit.state = MountState.MOUNTED
                unit.reason = str(e)
                logger.warning(
                    "    Failed to unmount %s (%s); retry with: %s",
                    unit.bucket, e, format_command(argv),
                )
                return Outcome(
                    unit.profile, unit.bucket, unit.target, OutcomeStatus.SKIPPED,
                    reason=str(e), command=format_command(argv),
                )
            unit.state = MountState.UNMOUNTED
            logger.info("    Successfully unmounted %s", unit.bucket)
            return Outcome(unit.profile, unit.bucket, unit.target, OutcomeStatus.UNMOUNTED)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, mount_base: Union[str, Path, None] = None) -> CleanupReport:
        """Remove empty, unmounted directories directly under the base."""
        base = Path(mount_base) if mount_base else self._base
        report = CleanupReport()
        if not base.is_dir():
            logger.info("Mount base directory '%s' does not exist. Nothing to clean up.", base)
            return report

        live = {e.mountpoint for e in self._table.entries()}
        for child in sorted(base.iterdir()):
            # A dead FUSE mount raises on stat (ENOTCONN); that is a skip.
            try:
                if str(child) not in live and not child.is_dir():
                    continue
            except OSError as e:
                logger.debug("   Skipping %s (%s)", child.name, e)
                report.skipped.append((child, f"unreadable: {e.strerror}"))
                continue
            try:
                self._check_removable(child, base, live)
                child.rmdir()
            except IntegrityViolation as e:
                logger.debug("   Skipping %s (%s)", child.name, e)
                report.skipped.append((child, str(e)))
                continue
            except OSError as e:
                logger.debug("   Failed to remove %s: %s", child.name, e)
                report.skipped.append((child, f"rmdir failed: {e.strerror}"))
                continue
            logger.debug("   Removed empty directory: %s", child.name)
            report.removed.append(child)

        if report.removed:
            logger.info("%s", report.summary())
        else:
            logger.debug("%s", report.summary())
        return report

    def _check_removable(self, child: Path, base: Path, live: Set[str]) -> None:
        if str(child) in live:
            raise IntegrityViolation("currently mounted")
        try:
            with os.scandir(child) as it:
                if next(it, None) is not None:
                    raise IntegrityViolation("contains files or directories")
        except OSError as e:
            raise IntegrityViolation(f"unreadable: {e.strerror}") from None
        if self._table.is_mountpoint(child):
            raise IntegrityViolation("is a mountpoint")
        if not is_within(child, base):
            raise IntegrityViolation("outside mount base")

    # ------------------------------------------------------------------

    def status(self) -> List[MountEntry]:
        """Live adapter mounts directly under the base."""
        return self._table.entries_under(self._base)
