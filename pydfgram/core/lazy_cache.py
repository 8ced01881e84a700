"""
Lazy caches for expensive derived data.

Two memoization primitives are provided:

* :class:`KeyedCache` holds at most one value, tagged with the key that
  produced it.  It is used for the angle map, keyed by the one geometry
  scalar that varies between measurements (the detector arm angle 2θ).
* :class:`VectorCache` holds one value per unit (e.g. per ``Cluster`` and
  γ slice), addressed by the unit itself.  It is used for diffractograms.

Neither cache tracks what its compute function reads.  The owner (the
``Session``) calls :meth:`KeyedCache.invalidate` or
:meth:`VectorCache.invalidate_all` from every setter that changes such an
input, so that the next access recomputes.

If a compute function raises, the exception propagates and the cache keeps
whatever it held before the call; a half-computed value is never stored.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Generic, Hashable, TypeVar

log = logging.getLogger(__name__)

V = TypeVar("V")
K = TypeVar("K")

_missing = object()


class KeyedCache(Generic[V, K]):
    """Single cached value, recomputed when requested for a different key."""

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._key = _missing
        self._value = _missing

    def get(self, key: K, compute: Callable[[K], V]) -> V:
        """Return the value for *key*, calling ``compute(key)`` if needed."""
        if self._value is not _missing and self._key == key:
            return self._value
        log.debug("%s cache: computing for key %r", self.name, key)
        value = compute(key)
        self._key = key
        self._value = value
        return value

    def invalidate(self) -> None:
        """Drop the stored value regardless of its key."""
        self._key = _missing
        self._value = _missing

    def has_value(self) -> bool:
        return self._value is not _missing


class VectorCache(Generic[V]):
    """One optional cached value per unit.

    Units must be hashable; objects that keep the default identity-based
    ``__hash__`` (such as ``Cluster``) are addressed by identity.
    """

    def __init__(self, name: str = "vector"):
        self.name = name
        self._values: Dict[Hashable, V] = {}

    def value_for(self, unit: Hashable, compute: Callable[[Hashable], V]) -> V:
        """Return the value for *unit*, calling ``compute(unit)`` if needed."""
        try:
            return self._values[unit]
        except KeyError:
            pass
        log.debug("%s cache: computing for unit %r", self.name, unit)
        value = compute(unit)
        self._values[unit] = value
        return value

    def invalidate_all(self) -> None:
        """Drop every stored value."""
        self._values.clear()

    def has_value(self, unit: Hashable) -> bool:
        return unit in self._values

    def __len__(self) -> int:
        return len(self._values)
