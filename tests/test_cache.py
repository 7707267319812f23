"""Tests for the LRU + pinned cache."""
import pytest

from fieldlink.cache.store import CacheEntry, CacheStore
from fieldlink.core.errors import CacheEntryNotFound


def entry(key: str, **kwargs) -> CacheEntry:
    return CacheEntry(key=key, detection_result={"disease_type": f"d-{key}"}, **kwargs)


@pytest.fixture
def make_cache(clock, bus):
    def factory(capacity=50, path=None):
        return CacheStore(path=path, capacity=capacity, bus=bus, clock=clock)
    return factory


class TestCapacity:
    """Non-pinned count never exceeds capacity."""

    def test_fifty_first_entry_evicts_oldest(self, make_cache, clock, bus):
        """Inserting the 51st unpinned entry evicts the least recently used one."""
        cache = make_cache()
        for i in range(51):
            cache.put(entry(f"k{i}"))
            clock.advance(1)

        assert len(cache) == 50
        assert "k0" not in cache
        assert "k50" in cache
        assert bus.of_type("cache_evicted")[0]["key"] == "k0"

    def test_lru_not_fifo(self, make_cache):
        """A read refreshes recency: A,B,C then get(A) then D evicts B."""
        cache = make_cache(capacity=3)
        for key in "ABC":
            cache.put(entry(key))
        cache.get("A")

        evicted = cache.put(entry("D"))

        assert evicted == ["B"]
        assert cache.keys() == ["C", "A", "D"]

    def test_pinned_exempt(self, make_cache):
        """Pinned entries are neither counted nor evicted."""
        cache = make_cache(capacity=2)
        cache.put(entry("fav"))
        cache.pin("fav")
        for key in ["x", "y", "z"]:
            cache.put(entry(key))

        assert "fav" in cache
        assert cache.count_non_pinned() == 2
        assert cache.count_pinned() == 1
        assert len(cache) == 3

    def test_unpin_may_evict(self, make_cache):
        """Unpinning above capacity evicts the least recently used unpinned entry."""
        cache = make_cache(capacity=1)
        cache.put(entry("old"))
        cache.pin("old")
        cache.put(entry("new"))

        evicted = cache.unpin("old")

        assert evicted == ["old"]
        assert cache.keys() == ["new"]


class TestOperations:
    """get / put / pin semantics."""

    def test_get_miss(self, make_cache):
        assert make_cache().get("missing") is None

    def test_get_updates_access_time(self, make_cache, clock):
        cache = make_cache()
        cache.put(entry("a"))
        clock.advance(30)
        assert cache.get("a").last_accessed_at == clock.now

    def test_put_same_key_replaces(self, make_cache):
        """Writes are keyed: a second put updates in place."""
        cache = make_cache()
        cache.put(entry("a"))
        cache.put(entry("a", advisory_response={"advice": "water less"}))
        assert len(cache) == 1
        assert cache.peek("a").advisory_response == {"advice": "water less"}

    def test_put_keeps_pinned_flag(self, make_cache):
        """Updating a favorite does not unpin it."""
        cache = make_cache()
        cache.put(entry("a"))
        cache.pin("a")
        cache.put(entry("a"))
        assert cache.peek("a").pinned

    def test_pin_missing_raises(self, make_cache):
        with pytest.raises(CacheEntryNotFound):
            make_cache().pin("ghost")

    def test_pin_evicted_raises(self, make_cache):
        """A key that was evicted cannot be pinned afterwards."""
        cache = make_cache(capacity=1)
        cache.put(entry("a"))
        cache.put(entry("b"))
        with pytest.raises(CacheEntryNotFound):
            cache.pin("a")

    def test_unpin_missing_raises(self, make_cache):
        with pytest.raises(CacheEntryNotFound):
            make_cache().unpin("ghost")

    def test_evict_older_than(self, make_cache, clock, bus):
        """Manual sweep removes old unpinned entries and spares favorites."""
        cache = make_cache()
        cache.put(entry("old"))
        cache.put(entry("old-fav"))
        cache.pin("old-fav")
        clock.advance(100)
        cache.put(entry("fresh"))

        removed = cache.evict_older_than(50)

        assert removed == ["old"]
        assert set(cache.keys()) == {"old-fav", "fresh"}
        assert bus.of_type("cache_evicted")[-1]["reason"] == "max_age"

    def test_negative_capacity_rejected(self):
        with pytest.raises(ValueError):
            CacheStore(capacity=-1)


class TestPersistence:
    """Cache table on disk."""

    def test_reload_keeps_order_and_pins(self, make_cache, tmp_path):
        path = tmp_path / "cache.json"
        cache = make_cache(capacity=3, path=path)
        for key in "ABC":
            cache.put(entry(key))
        cache.pin("B")
        cache.get("A")
        cache.flush()

        reloaded = make_cache(capacity=3, path=path)

        assert reloaded.keys() == ["B", "C", "A"]
        assert reloaded.peek("B").pinned
        assert reloaded.peek("A").detection_result == {"disease_type": "d-A"}

    def test_reload_with_smaller_capacity_trims(self, make_cache, tmp_path):
        path = tmp_path / "cache.json"
        cache = make_cache(capacity=3, path=path)
        for key in "ABC":
            cache.put(entry(key))

        reloaded = make_cache(capacity=2, path=path)

        assert reloaded.keys() == ["B", "C"]

    def test_reads_do_not_rewrite_table(self, make_cache, tmp_path):
        """get() only reorders in memory; flush() or the next mutation persists it."""
        path = tmp_path / "cache.json"
        cache = make_cache(capacity=3, path=path)
        for key in "AB":
            cache.put(entry(key))
        before = path.read_text()

        cache.get("A")

        assert path.read_text() == before
        assert make_cache(capacity=3, path=path).keys() == ["A", "B"]
        assert cache.flush()
        assert not cache.flush()
        assert make_cache(capacity=3, path=path).keys() == ["B", "A"]

    def test_mutation_carries_read_order(self, make_cache, tmp_path):
        path = tmp_path / "cache.json"
        cache = make_cache(capacity=3, path=path)
        for key in "AB":
            cache.put(entry(key))
        cache.get("A")
        cache.put(entry("C"))

        assert make_cache(capacity=3, path=path).keys() == ["B", "A", "C"]
