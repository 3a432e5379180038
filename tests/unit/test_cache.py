"""Tests for cache utilities."""

from __future__ import annotations

from unittest.mock import patch

from service_manager_operator.utils.cache import (
    get_cached_object,
    invalidate_cache,
    make_cache_key,
    set_cached_object,
)


class TestCacheKey:
    """Test cases for make_cache_key function."""

    def test_make_cache_key(self):
        """Test making cache key."""
        assert make_cache_key("OfferingTags", "", "plan-id") == "OfferingTags::plan-id"
        assert make_cache_key("SMCredentials", "default", "secret") == "SMCredentials:default:secret"

    def test_keys_differ_by_part(self):
        """Test cache keys are unique for different lookups."""
        keys = {
            make_cache_key("SMCredentials", "ns1", "a"),
            make_cache_key("SMCredentials", "ns2", "a"),
            make_cache_key("OfferingTags", "ns1", "a"),
        }
        assert len(keys) == 3


class TestCacheOperations:
    """Test cases for cache get/set operations."""

    def test_set_and_get_cached_object(self):
        """Test setting and getting cached object."""
        set_cached_object("OfferingTags::p1", ["db", "nosql"])
        assert get_cached_object("OfferingTags::p1") == ["db", "nosql"]

    def test_get_nonexistent_object(self):
        """Test getting non-existent cached object returns None."""
        assert get_cached_object("missing") is None

    def test_cache_expiration(self):
        """Test that cached objects expire after TTL."""
        with patch("service_manager_operator.utils.cache.time.time", side_effect=[100.0, 100.5, 200.0]):
            set_cached_object("OfferingTags::p1", ["db"])
            assert get_cached_object("OfferingTags::p1", ttl=60) == ["db"]
            assert get_cached_object("OfferingTags::p1", ttl=60) is None

    def test_default_ttl(self):
        """Test the module TTL applies when none is given."""
        with patch("service_manager_operator.utils.cache._cache_ttl", 0.0), patch(
            "service_manager_operator.utils.cache.time.time", side_effect=[100.0, 101.0]
        ):
            set_cached_object("key", "value")
            assert get_cached_object("key") is None

    def test_cache_overwrite(self):
        """Test that setting same key overwrites previous value."""
        set_cached_object("key", {"version": 1})
        set_cached_object("key", {"version": 2})
        assert get_cached_object("key") == {"version": 2}


class TestCacheInvalidation:
    """Test cases for cache invalidation."""

    def test_invalidate_all_cache(self):
        """Test invalidating all cache entries."""
        set_cached_object("key1", 1)
        set_cached_object("key2", 2)

        invalidate_cache()

        assert get_cached_object("key1") is None
        assert get_cached_object("key2") is None

    def test_invalidate_cache_with_pattern(self):
        """Test invalidating cache entries matching pattern."""
        set_cached_object("SMCredentials:ns1:a", "x")
        set_cached_object("SMCredentials:ns2:a", "y")
        set_cached_object("OfferingTags::p1", ["db"])

        invalidate_cache("SMCredentials")

        assert get_cached_object("SMCredentials:ns1:a") is None
        assert get_cached_object("SMCredentials:ns2:a") is None
        assert get_cached_object("OfferingTags::p1") == ["db"]

    def test_invalidate_empty_cache(self):
        """Test invalidating empty cache doesn't error."""
        invalidate_cache()
        invalidate_cache("pattern")
