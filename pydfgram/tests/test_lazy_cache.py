"""
Unit tests for the lazy cache primitives.

Tests cover:
  - KeyedCache computes once per key and recomputes on a new key
  - invalidate() forces recomputation for the same key
  - a raising compute leaves no value behind
  - VectorCache scopes values per unit and invalidate_all() drops them all
"""

import pytest

from pydfgram.core.lazy_cache import KeyedCache, VectorCache


class _Counter:
    """Compute callback that counts its calls."""

    def __init__(self):
        self.calls = 0

    def __call__(self, key):
        self.calls += 1
        return [key, self.calls]


class TestKeyedCache:
    def test_same_key_computes_once(self):
        """Two gets with the same key call compute once and return the same object."""
        cache = KeyedCache()
        compute = _Counter()
        first = cache.get(1.5, compute)
        second = cache.get(1.5, compute)
        assert compute.calls == 1
        assert first is second

    def test_new_key_recomputes(self):
        """A different key replaces the stored value."""
        cache = KeyedCache()
        compute = _Counter()
        cache.get(1.0, compute)
        value = cache.get(2.0, compute)
        assert compute.calls == 2
        assert value == [2.0, 2]
        cache.get(1.0, compute)
        assert compute.calls == 3

    def test_invalidate(self):
        """After invalidate() the same key is computed again."""
        cache = KeyedCache()
        compute = _Counter()
        cache.get("k", compute)
        cache.invalidate()
        assert not cache.has_value()
        cache.get("k", compute)
        assert compute.calls == 2

    def test_failed_compute_keeps_previous_value_out(self):
        """A raising compute propagates and stores nothing for the new key."""
        cache = KeyedCache()
        cache.get(1, lambda k: "one")

        def boom(key):
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            cache.get(2, boom)
        compute = _Counter()
        assert cache.get(1, compute) == "one"
        assert compute.calls == 0

    def test_failed_compute_on_empty_cache(self):
        """A raising compute on an empty cache leaves it empty."""
        cache = KeyedCache()

        def boom(key):
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            cache.get(1, boom)
        assert not cache.has_value()


class TestVectorCache:
    def test_per_unit_values(self):
        """Each unit gets its own value, computed once."""
        cache = VectorCache()
        compute = _Counter()
        a, b = object(), object()
        va = cache.value_for(a, compute)
        vb = cache.value_for(b, compute)
        assert va is not vb
        assert cache.value_for(a, compute) is va
        assert compute.calls == 2
        assert len(cache) == 2

    def test_invalidate_all_recomputes_every_unit(self):
        """After invalidate_all() every unit is recomputed on next access."""
        cache = VectorCache()
        compute = _Counter()
        units = [object() for _ in range(3)]
        for u in units:
            cache.value_for(u, compute)
        cache.invalidate_all()
        assert len(cache) == 0
        for u in units:
            cache.value_for(u, compute)
        assert compute.calls == 6

    def test_failed_compute_leaves_slot_empty(self):
        """A raising compute does not create an entry for the unit."""
        cache = VectorCache()
        unit = object()

        def boom(u):
            raise ValueError("no data")

        with pytest.raises(ValueError):
            cache.value_for(unit, boom)
        assert not cache.has_value(unit)
