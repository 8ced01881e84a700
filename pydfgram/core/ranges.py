"""
Real intervals and ordered sets of them.

A ``Range`` with NaN bounds is *invalid*; it is the neutral element of
:meth:`Range.extended` and contains nothing.  ``Ranges`` keeps its members
sorted and merges overlapping intervals on insertion, so baseline ranges can
be added in any order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class Range:
    """Closed interval [min, max]."""

    min: float = math.nan
    max: float = math.nan

    def __post_init__(self):
        if self.is_valid() and self.min > self.max:
            raise ValueError(f"Range min {self.min} > max {self.max}")

    @classmethod
    def safe(cls, a: float, b: float) -> "Range":
        """Build a range from two bounds given in any order."""
        return cls(min(a, b), max(a, b))

    @classmethod
    def of(cls, values) -> "Range":
        """Range spanned by the finite entries of *values*; invalid if none."""
        arr = np.asarray(values, dtype=float)
        arr = arr[np.isfinite(arr)]
        if arr.size == 0:
            return cls()
        return cls(float(arr.min()), float(arr.max()))

    def is_valid(self) -> bool:
        return not (math.isnan(self.min) or math.isnan(self.max))

    def is_empty(self) -> bool:
        return not self.is_valid() or self.min == self.max

    @property
    def width(self) -> float:
        return self.max - self.min if self.is_valid() else math.nan

    @property
    def center(self) -> float:
        return 0.5 * (self.min + self.max) if self.is_valid() else math.nan

    def mask(self, xs: np.ndarray) -> np.ndarray:
        """Boolean mask of the entries of *xs* inside the range."""
        xs = np.asarray(xs, dtype=float)
        if not self.is_valid():
            return np.zeros(xs.shape, dtype=bool)
        return (xs >= self.min) & (xs <= self.max)

    def intersects(self, other: "Range") -> bool:
        return (self.is_valid() and other.is_valid()
                and self.min <= other.max and other.min <= self.max)

    def extended(self, other: "Range") -> "Range":
        """Smallest range covering both ``self`` and *other*."""
        if not other.is_valid():
            return self
        if not self.is_valid():
            return other
        return Range(min(self.min, other.min), max(self.max, other.max))

    def slice(self, i: int, n: int) -> "Range":
        """The *i*-th of *n* equal sub-ranges.

        All but the last sub-range are half-open, so every value of ``self``
        lies in exactly one of them.
        """
        if not 0 <= i < n:
            raise IndexError(f"slice {i} out of range for {n} slices")
        step = self.width / n
        lo = self.min + i * step
        if i == n - 1:
            return Range(lo, self.max)
        return HalfOpenRange(lo, self.min + (i + 1) * step)

    def to_list(self) -> List[float]:
        return [self.min, self.max]

    @classmethod
    def from_list(cls, pair: Sequence[float]) -> "Range":
        return cls.safe(float(pair[0]), float(pair[1]))

    def __str__(self):
        return f"[{self.min:g}, {self.max:g}]"


@dataclass(frozen=True)
class HalfOpenRange(Range):
    """Interval [min, max); the upper bound is excluded from masks."""

    def mask(self, xs: np.ndarray) -> np.ndarray:
        xs = np.asarray(xs, dtype=float)
        if not self.is_valid():
            return np.zeros(xs.shape, dtype=bool)
        return (xs >= self.min) & (xs < self.max)

    def __str__(self):
        return f"[{self.min:g}, {self.max:g})"


class Ranges:
    """Sorted collection of non-overlapping ranges."""

    def __init__(self, ranges: Optional[Iterable[Range]] = None):
        self._ranges: List[Range] = []
        for r in ranges or ():
            self.add(r)

    def add(self, rng: Range) -> None:
        """Insert *rng*, merging it with every range it overlaps."""
        if not rng.is_valid():
            raise ValueError("cannot add an invalid range")
        merged = rng
        keep = []
        for r in self._ranges:
            if r.intersects(merged):
                merged = merged.extended(r)
            else:
                keep.append(r)
        keep.append(merged)
        self._ranges = sorted(keep, key=lambda r: r.min)

    def remove_at(self, i: int) -> Range:
        return self._ranges.pop(i)

    def mask(self, xs: np.ndarray) -> np.ndarray:
        """Boolean mask of the entries of *xs* inside any of the ranges."""
        xs = np.asarray(xs, dtype=float)
        out = np.zeros(xs.shape, dtype=bool)
        for r in self._ranges:
            out |= r.mask(xs)
        return out

    def to_list(self) -> List[List[float]]:
        return [r.to_list() for r in self._ranges]

    @classmethod
    def from_list(cls, pairs: Iterable[Sequence[float]]) -> "Ranges":
        return cls(Range.from_list(p) for p in pairs)

    def __len__(self) -> int:
        return len(self._ranges)

    def __iter__(self) -> Iterator[Range]:
        return iter(self._ranges)

    def __getitem__(self, i: int) -> Range:
        return self._ranges[i]

    def __eq__(self, other):
        if not isinstance(other, Ranges):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self):
        return f"Ranges({self._ranges!r})"
