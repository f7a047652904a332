"""Grouping configuration: YAML document of defaults and bucket groups."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from platformdirs import user_config_dir

from .errors import ConfigError
from .utils import validate_group_name

logger = logging.getLogger(__name__)

WILDCARD = "*"

DEFAULT_CONFIG_PATH = Path(user_config_dir("mountalls3")) / "config.yaml"
DEFAULT_MOUNT_BASE = "~/s3"
PROFILE_MODES = ("all", "selective")


@dataclass(frozen=True)
class BucketEntry:
    """A static (profile, bucket) member of a group."""

    profile: str
    bucket: str


@dataclass(frozen=True)
class PatternRule:
    """Select buckets by substring across one profile or all of them.

    ``profile`` and ``pattern`` both accept ``"*"`` as the wildcard.
    """

    profile: str
    pattern: str
    description: str = ""

    @property
    def all_profiles(self) -> bool:
        return self.profile == WILDCARD

    def matches(self, bucket: str) -> bool:
        return self.pattern == WILDCARD or self.pattern in bucket


@dataclass
class Group:
    name: str
    description: str = ""
    buckets: List[BucketEntry] = field(default_factory=list)
    patterns: List[PatternRule] = field(default_factory=list)


@dataclass
class Config:
    mount_base: str = DEFAULT_MOUNT_BASE
    # "all", "selective", or a single profile name
    profile_mode: str = "all"
    default_groups: List[str] = field(default_factory=list)
    groups: Dict[str, Group] = field(default_factory=dict)

    def group(self, name: str) -> Group:
        try:
            return self.groups[name]
        except KeyError:
            raise ConfigError(f"unknown group: {name}") from None


# ----------------------------------------------------------------------
# Document <-> model
# ----------------------------------------------------------------------


def _require_str(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}: expected a non-empty string, got {value!r}")
    return value.strip()


def _parse_groups_list(value: Any) -> List[str]:
    # Legacy documents stored the list as a comma-separated string.
    if value is None:
        return []
    if isinstance(value, str):
        return [g.strip() for g in value.split(",") if g.strip()]
    if isinstance(value, list):
        return [_require_str(g, "defaults.groups") for g in value]
    raise ConfigError(f"defaults.groups: expected a list, got {value!r}")


def _parse_group(name: str, raw: Any) -> Group:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"groups.{name}: expected a mapping")

    buckets = []
    for i, entry in enumerate(raw.get("buckets") or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"groups.{name}.buckets[{i}]: expected a mapping")
        # "resource" is accepted as an alias of "bucket".
        bucket = entry.get("bucket", entry.get("resource"))
        buckets.append(BucketEntry(
            profile=_require_str(entry.get("profile"), f"groups.{name}.buckets[{i}].profile"),
            bucket=_require_str(bucket, f"groups.{name}.buckets[{i}].bucket"),
        ))

    patterns = []
    for i, entry in enumerate(raw.get("patterns") or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"groups.{name}.patterns[{i}]: expected a mapping")
        patterns.append(PatternRule(
            profile=_require_str(entry.get("profile"), f"groups.{name}.patterns[{i}].profile"),
            pattern=_require_str(entry.get("pattern"), f"groups.{name}.patterns[{i}].pattern"),
            description=str(entry.get("description") or ""),
        ))

    return Group(
        name=name,
        description=str(raw.get("description") or ""),
        buckets=buckets,
        patterns=patterns,
    )


def config_from_document(doc: Any) -> Config:
    """Build a ``Config`` from a parsed YAML document."""
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigError("configuration root must be a mapping")

    defaults = doc.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigError("defaults: expected a mapping")

    raw_groups = doc.get("groups") or {}
    if not isinstance(raw_groups, dict):
        raise ConfigError("groups: expected a mapping")

    profile_mode = defaults.get("profile_mode", defaults.get("aws_profile", "all"))
    return Config(
        mount_base=str(defaults.get("mount_base") or DEFAULT_MOUNT_BASE),
        profile_mode=str(profile_mode or "all"),
        default_groups=_parse_groups_list(
            defaults.get("groups", defaults.get("mount_groups"))
        ),
        groups={str(n): _parse_group(str(n), g) for n, g in raw_groups.items()},
    )


def config_to_document(config: Config) -> Dict[str, Any]:
    groups: Dict[str, Any] = {}
    for name, group in config.groups.items():
        groups[name] = {
            "description": group.description,
            "buckets": [
                {"profile": b.profile, "bucket": b.bucket} for b in group.buckets
            ],
            "patterns": [
                {"profile": p.profile, "pattern": p.pattern, "description": p.description}
                for p in group.patterns
            ],
        }
    return {
        "defaults": {
            "mount_base": config.mount_base,
            "profile_mode": config.profile_mode,
            "groups": list(config.default_groups),
        },
        "groups": groups,
    }


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------


class ConfigStore:
    """Loads and atomically rewrites the configuration document."""

    def __init__(self, path: Union[str, Path, None] = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_PATH

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> Config:
        """Read and validate the document.  Raises ``ConfigError``."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"configuration file not found: {self._path}") from None
        except OSError as e:
            raise ConfigError(f"cannot read {self._path}: {e}") from e
        try:
            doc = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {self._path}: {e}") from e
        return config_from_document(doc)

    def save(self, config: Config) -> None:
        """Write *config* to a sibling temp file, then rename it into place."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump(
            config_to_document(config), sort_keys=False, default_flow_style=False
        )
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("# MountAllS3 configuration\n")
                f.write(body)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Saved configuration to %s", self._path)

    def load_or_default(self) -> Config:
        """Like ``load`` but returns a default ``Config`` when no file exists."""
        if not self.exists():
            return Config()
        return self.load()

    # ------------------------------------------------------------------
    # Update operations (each one is load -> mutate -> atomic save)
    # ------------------------------------------------------------------

    def create_default(self, mount_base: str = DEFAULT_MOUNT_BASE) -> Config:
        config = Config(
            mount_base=mount_base,
            default_groups=["main"],
            groups={"main": Group(name="main", description="Default bucket group")},
        )
        self.save(config)
        logger.info("Created basic configuration at %s", self._path)
        return config

    def set_mount_base(self, mount_base: str) -> Config:
        config = self.load_or_default()
        config.mount_base = mount_base
        self.save(config)
        return config

    def set_profile_mode(self, mode: str) -> Config:
        if not mode:
            raise ConfigError("profile mode cannot be empty")
        config = self.load_or_default()
        config.profile_mode = mode
        self.save(config)
        return config

    def set_default_groups(self, names: List[str]) -> Config:
        config = self.load_or_default()
        for name in names:
            config.group(name)
        config.default_groups = list(names)
        self.save(config)
        return config

    def add_group(self, name: str, description: str = "") -> Config:
        try:
            validate_group_name(name)
        except ValueError as e:
            raise ConfigError(str(e)) from None
        config = self.load_or_default()
        if name in config.groups:
            raise ConfigError(f"group already exists: {name}")
        config.groups[name] = Group(name=name, description=description)
        self.save(config)
        return config

    def remove_group(self, name: str) -> Config:
        config = self.load()
        config.group(name)
        del config.groups[name]
        config.default_groups = [g for g in config.default_groups if g != name]
        self.save(config)
        return config

    def add_bucket(self, group: str, profile: str, bucket: str) -> Config:
        config = self.load()
        entry = BucketEntry(profile=profile, bucket=bucket)
        target = config.group(group)
        if entry not in target.buckets:
            target.buckets.append(entry)
        self.save(config)
        return config

    def add_pattern(
        self, group: str, profile: str, pattern: str, description: str = ""
    ) -> Config:
        config = self.load()
        target = config.group(group)
        rule = PatternRule(profile=profile, pattern=pattern, description=description)
        if all(replace(p, description="") != replace(rule, description="")
               for p in target.patterns):
            target.patterns.append(rule)
        self.save(config)
        return config

    def backup(self) -> Optional[Path]:
        """Copy the current file to ``config.yaml.backup.<timestamp>``."""
        if not self.exists():
            return None
        stamp = time.strftime("%Y%m%d_%H%M%S")
        dest = self._path.with_name(f"{self._path.name}.backup.{stamp}")
        shutil.copy2(self._path, dest)
        logger.info("Config backed up to: %s", dest)
        return dest

    def reset(self) -> Optional[Path]:
        """Back up and delete the configuration.  Returns the backup path."""
        backup = self.backup()
        if backup is not None:
            self._path.unlink()
        return backup
