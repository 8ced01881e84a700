"""Sampled 1-D curve y(x) with x in ascending order."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

import numpy as np

from pydfgram.core.ranges import Range, Ranges


@dataclass(frozen=True, eq=False)
class Curve:
    """Immutable pair of equally long x/y arrays."""

    xs: np.ndarray = field(default_factory=lambda: np.zeros(0))
    ys: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        xs = np.array(self.xs, dtype=float)
        ys = np.array(self.ys, dtype=float)
        if xs.shape != ys.shape or xs.ndim != 1:
            raise ValueError(
                f"Curve needs two 1-D arrays of equal length, got {xs.shape} and {ys.shape}"
            )
        xs.setflags(write=False)
        ys.setflags(write=False)
        object.__setattr__(self, "xs", xs)
        object.__setattr__(self, "ys", ys)

    @property
    def size(self) -> int:
        return int(self.xs.size)

    def is_empty(self) -> bool:
        return self.xs.size == 0

    def intersect(self, rng: Union[Range, Ranges]) -> "Curve":
        """Points whose x lies inside *rng* (a Range or a Ranges union)."""
        m = rng.mask(self.xs)
        return Curve(self.xs[m], self.ys[m])

    def subtract(self, f: Callable[[np.ndarray], np.ndarray]) -> "Curve":
        """Curve of ``y - f(x)``."""
        return Curve(self.xs, self.ys - np.asarray(f(self.xs), dtype=float))

    def __len__(self) -> int:
        return self.size
