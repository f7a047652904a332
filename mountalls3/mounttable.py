"""Typed view of the live mount table and of running adapter processes.

Both are owned by the kernel and can change under us (manual umount,
crashed adapter), so every call re-reads them; nothing is cached.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import psutil

logger = logging.getLogger(__name__)

S3FS_FSTYPE = "fuse.s3fs"
PROVENANCE_PREFIX = "mountalls3:"


@dataclass(frozen=True)
class MountEntry:
    device: str
    mountpoint: str
    fstype: str
    opts: str = ""

    @property
    def path(self) -> Path:
        return Path(self.mountpoint)

    @property
    def provenance(self) -> Optional[Tuple[str, str]]:
        """(profile, bucket) recorded in the fsname tag, if we mounted it."""
        if not self.device.startswith(PROVENANCE_PREFIX):
            return None
        rest = self.device[len(PROVENANCE_PREFIX):]
        profile, sep, bucket = rest.rpartition(":")
        if not sep or not profile or not bucket:
            return None
        return profile, bucket


def provenance_tag(profile: str, bucket: str) -> str:
    return f"{PROVENANCE_PREFIX}{profile}:{bucket}"


class MountTable:
    """Queries the live mount table (via psutil) and the process list."""

    def __init__(self, fstype: str = S3FS_FSTYPE, adapter: str = "s3fs"):
        self._fstype = fstype
        self._adapter = adapter

    def entries(self) -> List[MountEntry]:
        """Adapter mounts currently registered with the kernel."""
        rows = []
        for part in psutil.disk_partitions(all=True):
            if part.fstype != self._fstype:
                continue
            rows.append(MountEntry(
                device=part.device,
                mountpoint=part.mountpoint,
                fstype=part.fstype,
                opts=part.opts,
            ))
        return rows

    def entries_under(self, base: Union[str, Path]) -> List[MountEntry]:
        """Adapter mounts that sit directly below *base*."""
        base = Path(base)
        return [e for e in self.entries() if e.path.parent == base]

    def find(self, target: Union[str, Path]) -> Optional[MountEntry]:
        target = str(Path(target))
        for entry in self.entries():
            if entry.mountpoint == target:
                return entry
        return None

    def is_live(self, target: Union[str, Path]) -> bool:
        """True if the mount table lists an adapter mount at *target*."""
        return self.find(target) is not None

    def is_mountpoint(self, path: Union[str, Path]) -> bool:
        """Independent check straight against the filesystem."""
        try:
            return os.path.ismount(path)
        except OSError:
            # A wedged FUSE mount can fail to stat; treat it as mounted.
            return True

    def adapter_running(self, target: Union[str, Path]) -> bool:
        """True if an adapter process serving *target* is still alive."""
        target = str(Path(target))
        for proc in psutil.process_iter(["name", "cmdline"]):
            try:
                name = proc.info.get("name") or ""
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if name != self._adapter and not (
                cmdline and os.path.basename(cmdline[0]) == self._adapter
            ):
                continue
            if target in cmdline:
                return True
        return False
