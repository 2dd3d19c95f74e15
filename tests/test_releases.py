"""Tests for flux_core._core.releases module."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from flux_core.errors import CoreError, CoreErrorCode, ParseError
from flux_core.serialization import utcnow
from flux_core.types import Release
from flux_core._core.releases import (
    CachePolicy,
    ReleaseCache,
    ReleaseService,
    raise_for_github_status,
)

FEED = [
    {
        "tag_name": "v6.6.104-0",
        "name": "v6.6.104-0",
        "published_at": "2025-02-01T00:00:00Z",
        "assets": [
            {
                "name": "CLIProxyAPIPlus_6.6.104-0_darwin_arm64.tar.gz",
                "browser_download_url": "https://example.invalid/104.tar.gz",
                "size": 10,
                "digest": "sha256:" + "a" * 64,
            }
        ],
    },
    {"tag_name": "v6.6.103-0", "assets": []},
]


def make_response(status=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = payload
    return response


@pytest.fixture
def cache(tmp_path):
    return ReleaseCache(tmp_path / "releases", default_ttl_seconds=600)


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def service(cache, session):
    return ReleaseService(cache, base_url="https://api.example.invalid/repos/o/r", session=session)


class TestRaiseForGithubStatus:
    def test_success(self):
        raise_for_github_status(make_response(200), "u")

    def test_429(self):
        with pytest.raises(CoreError) as exc_info:
            raise_for_github_status(make_response(429), "u")
        assert exc_info.value.code == CoreErrorCode.RATE_LIMITED

    def test_403_exhausted(self):
        response = make_response(403, headers={"X-RateLimit-Remaining": "0"})
        with pytest.raises(CoreError) as exc_info:
            raise_for_github_status(response, "u")
        assert exc_info.value.code == CoreErrorCode.RATE_LIMITED

    def test_403_other(self):
        with pytest.raises(CoreError) as exc_info:
            raise_for_github_status(make_response(403), "u")
        assert exc_info.value.code == CoreErrorCode.NETWORK_ERROR

    def test_500(self):
        with pytest.raises(CoreError) as exc_info:
            raise_for_github_status(make_response(500), "u")
        assert exc_info.value.code == CoreErrorCode.NETWORK_ERROR
        assert "500" in exc_info.value.details


class TestReleaseCache:
    def test_missing(self, cache):
        assert cache.load() is None

    def test_store_and_load(self, cache):
        releases = [Release.from_feed(item) for item in FEED]
        cache.store('"etag-1"', releases)

        loaded = cache.load()
        assert loaded.etag == '"etag-1"'
        assert loaded.ttl_seconds == 600
        assert [r.tag_name for r in loaded.releases] == ["v6.6.104-0", "v6.6.103-0"]
        assert loaded.releases[0].assets[0].sha256_digest == "a" * 64
        assert not loaded.is_expired()

    def test_expiry(self, cache):
        cache.store(None, [], fetched_at=utcnow() - timedelta(seconds=601))
        assert cache.load().is_expired()

    @pytest.mark.parametrize("content", [
        "{nope",
        "[]",
        "null",
        '{"fetchedAt": "2025-01-01T00:00:00Z", "ttlSeconds": 600, "releases": [[]]}',
        '{"fetchedAt": "2025-01-01T00:00:00Z", "ttlSeconds": 600, "releases": [{"tag_name": "v1", "assets": ["x"]}]}',
    ])
    def test_corrupt(self, cache, content):
        cache.releases_dir.mkdir(parents=True)
        cache.path.write_text(content)
        with pytest.raises(CoreError) as exc_info:
            cache.load()
        assert exc_info.value.code == CoreErrorCode.CACHE_CORRUPTED

    def test_upsert_replaces_same_tag(self, cache):
        cache.store('"etag"', [Release.from_feed(item) for item in FEED])
        cache.upsert(Release(tag_name="v6.6.103-0", name="patched"))

        loaded = cache.load()
        assert [r.tag_name for r in loaded.releases] == ["v6.6.103-0", "v6.6.104-0"]
        assert loaded.releases[0].name == "patched"
        assert loaded.etag is None


class TestFetchReleases:
    """Tests for cache policies on the list endpoint."""

    def test_loads_and_caches(self, service, session, cache):
        session.get.return_value = make_response(200, FEED, {"ETag": '"v1"'})

        releases = service.fetch_releases()

        assert releases[0].version_string == "6.6.104-0"
        assert cache.load().etag == '"v1"'
        url = session.get.call_args[0][0]
        assert url == "https://api.example.invalid/repos/o/r/releases"
        assert "If-None-Match" not in session.get.call_args[1]["headers"]

    def test_fresh_cache_skips_network(self, service, session, cache):
        cache.store('"v1"', [Release.from_feed(FEED[0])])
        assert service.fetch_releases()[0].tag_name == "v6.6.104-0"
        session.get.assert_not_called()

    def test_revalidates_with_etag(self, service, session, cache):
        cache.store('"v1"', [Release.from_feed(FEED[0])], fetched_at=utcnow() - timedelta(hours=1))
        session.get.return_value = make_response(304)

        releases = service.fetch_releases()

        assert [r.tag_name for r in releases] == ["v6.6.104-0"]
        assert session.get.call_args[1]["headers"]["If-None-Match"] == '"v1"'
        assert not cache.load().is_expired()

    def test_reload_ignoring_cache_sends_no_etag(self, service, session, cache):
        cache.store('"v1"', [Release.from_feed(FEED[0])])
        session.get.return_value = make_response(200, FEED, {"ETag": '"v2"'})

        releases = service.fetch_releases(CachePolicy.RELOAD_IGNORING_CACHE_DATA)

        assert len(releases) == 2
        assert "If-None-Match" not in session.get.call_args[1]["headers"]

    def test_304_without_cache(self, service, session):
        session.get.return_value = make_response(304)
        with pytest.raises(CoreError) as exc_info:
            service.fetch_releases(CachePolicy.RELOAD_REVALIDATING_CACHE_DATA)
        assert exc_info.value.code == CoreErrorCode.CACHE_CORRUPTED

    def test_cache_only_without_cache(self, service):
        with pytest.raises(CoreError) as exc_info:
            service.fetch_releases(CachePolicy.RETURN_CACHE_DATA_DONT_LOAD)
        assert exc_info.value.code == CoreErrorCode.CACHE_CORRUPTED

    def test_cache_only_returns_stale(self, service, session, cache):
        cache.store(None, [Release.from_feed(FEED[1])], fetched_at=utcnow() - timedelta(days=1))
        assert service.fetch_releases(CachePolicy.RETURN_CACHE_DATA_DONT_LOAD)[0].tag_name == "v6.6.103-0"
        session.get.assert_not_called()

    def test_rate_limited(self, service, session):
        session.get.return_value = make_response(429)
        with pytest.raises(CoreError) as exc_info:
            service.fetch_releases()
        assert exc_info.value.code == CoreErrorCode.RATE_LIMITED

    def test_network_failure(self, service, session):
        session.get.side_effect = requests.exceptions.ConnectionError("offline")
        with pytest.raises(CoreError) as exc_info:
            service.fetch_releases()
        assert exc_info.value.code == CoreErrorCode.NETWORK_ERROR

    def test_bad_payload(self, service, session):
        session.get.return_value = make_response(200, {"message": "not a list"})
        with pytest.raises(ParseError):
            service.fetch_releases()


class TestFetchRelease:
    def test_by_tag(self, service, session, cache):
        session.get.return_value = make_response(200, FEED[0])

        release = service.fetch_release("v6.6.104-0", CachePolicy.RELOAD_REVALIDATING_CACHE_DATA)

        assert release.tag_name == "v6.6.104-0"
        assert session.get.call_args[0][0].endswith("/releases/tags/v6.6.104-0")
        assert cache.load().releases[0].tag_name == "v6.6.104-0"

    def test_cached_tag(self, service, session, cache):
        cache.store(None, [Release.from_feed(FEED[0])])
        assert service.fetch_release("v6.6.104-0").tag_name == "v6.6.104-0"
        session.get.assert_not_called()

    def test_missing_tag(self, service, session):
        session.get.return_value = make_response(404)
        with pytest.raises(CoreError) as exc_info:
            service.fetch_release("v0.0.0")
        assert exc_info.value.code == CoreErrorCode.NETWORK_ERROR


class TestFetchLatest:
    def test_first_release(self, service, session):
        session.get.return_value = make_response(200, FEED)
        assert service.fetch_latest().tag_name == "v6.6.104-0"

    def test_empty_feed(self, service, session):
        session.get.return_value = make_response(200, [])
        with pytest.raises(ParseError):
            service.fetch_latest()

    async def test_async_variant(self, service, session):
        session.get.return_value = make_response(200, FEED)
        latest = await service.fetch_latest_async(CachePolicy.RELOAD_IGNORING_CACHE_DATA)
        assert latest.version_string == "6.6.104-0"
