"""Tests for the credential vault and the keyctl-backed store."""

import threading
import time

import pytest

from fakes import FakeRunner, MemoryStore, fail, ok, sts_payload

from mountalls3.errors import CommandNotFound, IssuanceFailed
from mountalls3.utils import parse_iso_timestamp
from mountalls3.vault import (
    CredentialBundle,
    CredentialVault,
    KeyringStore,
    parse_session_token,
)


def _seed(store, profile, expires_at, access="AKIA", secret="s3cr3t", token="tok"):
    store.add(f"mountalls3_access_{profile}", access)
    store.add(f"mountalls3_secret_{profile}", secret)
    store.add(f"mountalls3_token_{profile}", token)
    store.add(f"mountalls3_expiry_{profile}", str(int(expires_at)))


class TestCredentialBundle:
    def test_valid_before_expiry(self):
        bundle = CredentialBundle("a", "s", "t", expires_at=100.0)
        assert bundle.is_valid(99.0)

    def test_boundary_counts_as_expired(self):
        bundle = CredentialBundle("a", "s", "t", expires_at=100.0)
        assert not bundle.is_valid(100.0)

    def test_passwd_line(self):
        assert CredentialBundle("a", "s", "t", 1.0).passwd_line() == "a:s:t"

    def test_repr_hides_secrets(self):
        text = repr(CredentialBundle("AKIA", "hunter2", "tok123", 1.0))
        assert "hunter2" not in text
        assert "tok123" not in text
        assert "AKIA" in text


class TestGetOrRefresh:
    def test_cached_bundle_needs_no_issuance(self, vault, store, runner, clock):
        _seed(store, "work", clock.now + 3600)
        bundle = vault.get_or_refresh("work")
        assert bundle.access_id == "AKIA"
        assert runner.calls_to("aws", "sts") == []

    def test_issues_when_absent(self, vault, store, runner):
        bundle = vault.get_or_refresh("work")
        assert bundle.access_id == "ASIAEXAMPLE"
        assert bundle.expires_at == parse_iso_timestamp("2099-01-01T00:00:00Z")
        assert len(runner.calls_to("aws", "sts", "get-session-token")) == 1
        assert "mountalls3_expiry_work" in store.keys()

    def test_second_call_reuses_issued_bundle(self, vault, runner):
        first = vault.get_or_refresh("work")
        second = vault.get_or_refresh("work")
        assert first == second
        assert len(runner.calls_to("aws", "sts")) == 1

    def test_requested_duration_is_twelve_hours(self, vault, runner):
        vault.get_or_refresh("work")
        argv = runner.calls_to("aws", "sts")[0].argv
        assert argv[argv.index("--duration-seconds") + 1] == "43200"
        assert argv[argv.index("--profile") + 1] == "work"

    def test_expiry_equal_to_now_is_refreshed(self, vault, store, runner, clock):
        _seed(store, "work", clock.now)
        bundle = vault.get_or_refresh("work")
        assert bundle.access_id == "ASIAEXAMPLE"
        assert len(runner.calls_to("aws", "sts")) == 1

    def test_expired_bundle_is_purged_and_user_notified(self, store, runner, catalog, clock):
        messages = []
        vault = CredentialVault(
            store, runner=runner, catalog=catalog, clock=clock, notifier=messages.append
        )
        _seed(store, "work", clock.now - 1, access="OLD")
        bundle = vault.get_or_refresh("work")
        assert bundle.access_id == "ASIAEXAMPLE"
        assert vault.lookup("work").access_id == "ASIAEXAMPLE"
        assert messages == ["Refreshing expired credentials for work..."]

    def test_incomplete_bundle_reads_as_absent(self, vault, store):
        store.add("mountalls3_access_work", "AKIA")
        store.add("mountalls3_secret_work", "s")
        assert vault.lookup("work") is None

    def test_nonzero_exit_raises_issuance_failed(self, vault, runner, store):
        runner.on("aws", "sts", "get-session-token", response=fail("ExpiredToken"))
        with pytest.raises(IssuanceFailed) as exc:
            vault.get_or_refresh("work")
        assert exc.value.profile == "work"
        assert "ExpiredToken" in exc.value.reason
        assert store.keys() == set()

    def test_unknown_profile_is_not_issued(self, vault, runner):
        with pytest.raises(IssuanceFailed, match="profile not found"):
            vault.get_or_refresh("nobody")
        assert runner.calls_to("aws", "sts") == []

    def test_missing_field_is_issuance_failure(self, vault, runner):
        runner.on(
            "aws", "sts", "get-session-token",
            response=ok(sts_payload(SessionToken="")),
        )
        with pytest.raises(IssuanceFailed, match="SessionToken"):
            vault.get_or_refresh("work")

    def test_missing_tool_is_not_wrapped(self, vault, runner):
        def missing(call):
            raise CommandNotFound("aws")

        runner.on("aws", "sts", "get-session-token", response=missing)
        with pytest.raises(CommandNotFound):
            vault.get_or_refresh("work")

    def test_concurrent_refresh_issues_once(self, store, clock):
        runner = FakeRunner()
        gate = threading.Event()

        def slow_issue(call):
            gate.wait(1.0)
            return ok(sts_payload())

        runner.on("aws", "sts", "get-session-token", response=slow_issue)
        vault = CredentialVault(store, runner=runner, clock=clock)

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(vault.get_or_refresh("work")))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        time.sleep(0.05)
        gate.set()
        for t in threads:
            t.join(5.0)

        assert len(results) == 4
        assert len(runner.calls_to("aws", "sts")) == 1
        assert len({r.session_token for r in results}) == 1

    def test_profiles_refresh_independently(self, vault, store, runner, clock):
        _seed(store, "work", clock.now + 60)
        vault.get_or_refresh("work")
        vault.get_or_refresh("personal")
        calls = runner.calls_to("aws", "sts")
        assert [c.argv[c.argv.index("--profile") + 1] for c in calls] == ["personal"]


class TestParseSessionToken:
    def test_bare_credentials_object(self):
        payload = (
            '{"AccessKeyId": "A", "SecretAccessKey": "S", '
            '"SessionToken": "T", "Expiration": "2030-01-01T00:00:00+00:00"}'
        )
        bundle = parse_session_token("p", payload)
        assert bundle.passwd_line() == "A:S:T"

    def test_garbage_is_issuance_failure(self):
        with pytest.raises(IssuanceFailed, match="unparseable"):
            parse_session_token("p", "not json")

    def test_bad_expiration(self):
        with pytest.raises(IssuanceFailed, match="bad expiration"):
            parse_session_token("p", sts_payload(expiration="tomorrow"))


class TestKeyringStore:
    def test_secret_goes_over_stdin(self):
        runner = FakeRunner()
        runner.on("keyctl", "padd", response=ok("123456\n"))
        key_id = KeyringStore(runner).add("mountalls3_secret_work", "hunter2")
        call = runner.calls[0]
        assert key_id == "123456"
        assert call.argv == ["keyctl", "padd", "user", "mountalls3_secret_work", "@s"]
        assert call.input == "hunter2"
        assert "hunter2" not in call.argv

    def test_search_miss_returns_none(self):
        runner = FakeRunner()
        runner.on("keyctl", "search", response=fail("Required key not available"))
        assert KeyringStore(runner).search("mountalls3_access_work") is None

    def test_read_pipes_value(self):
        runner = FakeRunner()
        runner.on("keyctl", "pipe", "42", response=ok("value"))
        assert KeyringStore(runner).read("42") == "value"

    def test_delete_unlinks_from_session_keyring(self):
        runner = FakeRunner()
        KeyringStore(runner).delete("42")
        assert runner.calls[0].argv == ["keyctl", "unlink", "42", "@s"]

    def test_purge_removes_every_field(self, clock):
        store = MemoryStore()
        runner = FakeRunner()
        runner.on("aws", "sts", response=ok(sts_payload()))
        vault = CredentialVault(store, runner=runner, clock=clock)
        vault.get_or_refresh("work")
        vault.purge("work")
        assert store.keys() == set()
