"""Expand bucket groups into concrete (profile, bucket) pairs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .catalog import ProfileCatalog
from .config import WILDCARD, Config, PatternRule
from .errors import CatalogError, ConfigError

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]


@dataclass
class Resolution:
    """Outcome of resolving one or more groups.

    ``pairs`` keeps first-seen order so output is deterministic for a fixed
    config and catalog snapshot.  ``errors`` holds unknown group names and
    ``catalog_errors`` the profiles whose bucket listing failed; neither
    stops resolution of the rest.
    """

    pairs: List[Pair] = field(default_factory=list)
    errors: Dict[str, ConfigError] = field(default_factory=dict)
    catalog_errors: Dict[str, CatalogError] = field(default_factory=dict)

    @property
    def pair_set(self) -> Set[Pair]:
        return set(self.pairs)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.catalog_errors


class _PairCollector:
    def __init__(self) -> None:
        self.pairs: List[Pair] = []
        self._seen: Set[Pair] = set()

    def add(self, profile: str, bucket: str) -> None:
        pair = (profile, bucket)
        if pair not in self._seen:
            self._seen.add(pair)
            self.pairs.append(pair)


class GroupResolver:
    def __init__(self, config: Config, catalog: ProfileCatalog):
        self._config = config
        self._catalog = catalog

    def resolve(self, group_names: Iterable[str]) -> Resolution:
        """Resolve *group_names* into a deduplicated pair list."""
        result = Resolution()
        collector = _PairCollector()

        for name in group_names:
            try:
                group = self._config.group(name)
            except ConfigError as e:
                logger.warning("%s", e)
                result.errors[name] = e
                continue

            logger.debug("Processing group: %s", name)
            for entry in group.buckets:
                collector.add(entry.profile, entry.bucket)
            for rule in group.patterns:
                self._expand(rule, collector, result)

        result.pairs = collector.pairs
        return result

    def resolve_profiles(self, profiles: Optional[Iterable[str]] = None) -> Resolution:
        """All buckets of *profiles*, or of every catalog profile when None."""
        result = Resolution()
        collector = _PairCollector()
        if profiles is None:
            rules = [PatternRule(profile=WILDCARD, pattern=WILDCARD)]
        else:
            rules = [PatternRule(profile=p, pattern=WILDCARD) for p in profiles]
        for rule in rules:
            self._expand(rule, collector, result)
        result.pairs = collector.pairs
        return result

    def describe(self) -> List[Tuple[str, str, int, int]]:
        """(name, description, static count, pattern count) for every group."""
        return [
            (g.name, g.description, len(g.buckets), len(g.patterns))
            for g in self._config.groups.values()
        ]

    # ------------------------------------------------------------------

    def _candidate_profiles(self, rule: PatternRule, result: Resolution) -> List[str]:
        if not rule.all_profiles:
            return [rule.profile]
        try:
            return self._catalog.profiles()
        except CatalogError as e:
            logger.warning("Cannot enumerate profiles: %s", e)
            result.catalog_errors[WILDCARD] = e
            return []

    def _expand(
        self, rule: PatternRule, collector: _PairCollector, result: Resolution
    ) -> None:
        for profile in self._candidate_profiles(rule, result):
            if profile in result.catalog_errors:
                continue
            try:
                buckets = self._catalog.buckets(profile)
            except CatalogError as e:
                logger.warning("Skipping profile '%s': %s", profile, e)
                result.catalog_errors[profile] = e
                continue
            for bucket in buckets:
                if rule.matches(bucket):
                    collector.add(profile, bucket)
