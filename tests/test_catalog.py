"""Tests for the aws-CLI-backed profile catalog."""

import pytest

from fakes import FakeRunner, fail, ok

from mountalls3.catalog import ProfileCatalog
from mountalls3.errors import CatalogError, CommandTimeout


@pytest.fixture
def runner():
    r = FakeRunner()
    r.on("aws", "configure", "list-profiles", response=ok("default\nwork\n\nwork\n"))
    r.on("aws", "s3api", "list-buckets", response=ok("alpha\nbeta\n"))
    return r


class TestProfiles:
    def test_profiles_are_unique_and_ordered(self, runner):
        assert ProfileCatalog(runner).profiles() == ["default", "work"]

    def test_profiles_are_listed_once(self, runner):
        catalog = ProfileCatalog(runner)
        catalog.profiles()
        assert catalog.has_profile("work")
        assert len(runner.calls_to("aws", "configure")) == 1

    def test_listing_failure(self, runner):
        runner.on("aws", "configure", "list-profiles", response=fail("no aws config"))
        with pytest.raises(CatalogError, match="no aws config"):
            ProfileCatalog(runner).profiles()


class TestBuckets:
    def test_parses_text_output(self, runner):
        assert ProfileCatalog(runner).buckets("work") == ["alpha", "beta"]
        argv = runner.calls[-1].argv
        assert argv[argv.index("--profile") + 1] == "work"
        assert argv[argv.index("--query") + 1] == "Buckets[].[Name]"

    def test_listing_is_cached_within_ttl(self, runner):
        catalog = ProfileCatalog(runner)
        catalog.buckets("work")
        catalog.buckets("work")
        assert len(runner.calls_to("aws", "s3api")) == 1

    def test_zero_ttl_refetches(self, runner):
        catalog = ProfileCatalog(runner, ttl=0)
        catalog.buckets("work")
        catalog.buckets("work")
        assert len(runner.calls_to("aws", "s3api")) == 2

    def test_empty_listing_is_valid(self, runner):
        runner.on("aws", "s3api", "list-buckets", response=ok(""))
        assert ProfileCatalog(runner).buckets("work") == []

    def test_failure_carries_profile(self, runner):
        runner.on("aws", "s3api", "list-buckets", response=fail("InvalidClientTokenId"))
        with pytest.raises(CatalogError) as exc:
            ProfileCatalog(runner).buckets("work")
        assert exc.value.profile == "work"

    def test_timeout_becomes_catalog_error(self, runner):
        def hang(call):
            raise CommandTimeout(call.argv, call.timeout)

        runner.on("aws", "s3api", "list-buckets", response=hang)
        with pytest.raises(CatalogError, match="timed out"):
            ProfileCatalog(runner).buckets("work")


class TestBucketRegion:
    @pytest.mark.parametrize("stdout, expected", [
        ('{"LocationConstraint": "eu-central-1"}', "eu-central-1"),
        ('{"LocationConstraint": null}', None),
        ("not json", None),
    ])
    def test_location_constraint(self, runner, stdout, expected):
        runner.on("aws", "s3api", "get-bucket-location", response=ok(stdout))
        assert ProfileCatalog(runner).bucket_region("work", "alpha") == expected

    def test_lookup_failure_is_none(self, runner):
        runner.on("aws", "s3api", "get-bucket-location", response=fail("AccessDenied"))
        assert ProfileCatalog(runner).bucket_region("work", "alpha") is None
