"""Shared fixtures for mountalls3 tests."""

import pytest

from fakes import FakeMountTable, FakeRunner, MemoryStore, ok, sts_payload

from mountalls3.cache import BucketCache
from mountalls3.catalog import ProfileCatalog
from mountalls3.orchestrator import MountOrchestrator, MountSettings
from mountalls3.vault import CredentialVault

NOW = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def runner():
    r = FakeRunner()
    r.on("aws", "configure", "list-profiles", response=ok("work\npersonal\n"))
    r.on("aws", "sts", "get-session-token", response=ok(sts_payload()))
    return r


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def catalog(runner):
    return ProfileCatalog(runner)


@pytest.fixture
def vault(store, runner, catalog, clock):
    return CredentialVault(store, runner=runner, catalog=catalog, clock=clock)


@pytest.fixture
def table():
    return FakeMountTable()


@pytest.fixture
def mount_base(tmp_path):
    base = tmp_path / "s3"
    base.mkdir()
    return base.resolve()


@pytest.fixture
def orchestrator(mount_base, vault, catalog, table, runner, tmp_path):
    return MountOrchestrator(
        mount_base=mount_base,
        vault=vault,
        catalog=catalog,
        table=table,
        runner=runner,
        cache=BucketCache(tmp_path / "cache", diskfree_mb=512),
        settings=MountSettings(poll_attempts=6, poll_interval=0),
    )
