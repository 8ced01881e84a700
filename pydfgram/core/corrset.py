"""
Flat-field correction ("Correction Set").

A correction file is a series of images of a homogeneous scatterer.  Their
sum, after the session's image transform, is turned into a per-pixel factor
``mean(valid pixels) / pixel``.  Pixels whose correction value is not
positive or not finite get a NaN factor and are excluded from binning.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence as SequenceT, Tuple

import numpy as np

from pydfgram.core.cluster import Measurement, Sequence
from pydfgram.core.geometry import ImageTransform
from pydfgram.core.lazy_cache import KeyedCache

log = logging.getLogger(__name__)


class Corrset:
    """Optional correction image, enabled by default once loaded."""

    def __init__(self):
        self._name: Optional[str] = None
        self._sequence: Optional[Sequence] = None
        self.enabled = True
        self._factors: KeyedCache[np.ndarray, ImageTransform] = KeyedCache("corrset")

    def has_file(self) -> bool:
        return self._sequence is not None

    @property
    def name(self) -> Optional[str]:
        return self._name

    @property
    def image_size(self) -> Optional[Tuple[int, int]]:
        return self._sequence.image_size if self._sequence is not None else None

    def load(self, name: str, measurements: SequenceT[Measurement]) -> None:
        """Replace the correction data by *measurements*."""
        measurements = list(measurements)
        if not measurements:
            raise ValueError(f"correction file {name!r} contains no measurements")
        self._sequence = Sequence(measurements)
        self._name = name
        self._factors.invalidate()
        log.info("Loaded correction file %r (%d image(s))", name, len(measurements))

    def remove(self) -> None:
        self._sequence = None
        self._name = None
        self._factors.invalidate()

    def is_active(self) -> bool:
        return self.enabled and self.has_file()

    def factors(self, transform: ImageTransform) -> np.ndarray:
        """Per-pixel intensity factors for images under *transform*."""
        if self._sequence is None:
            raise ValueError("no correction file loaded")
        return self._factors.get(transform, self._compute_factors)

    def _compute_factors(self, transform: ImageTransform) -> np.ndarray:
        total = sum(transform.apply(m.image) for m in self._sequence.members)
        total = np.asarray(total, dtype=float)
        good = np.isfinite(total) & (total > 0)
        if not good.any():
            raise ValueError(f"correction file {self._name!r} has no positive pixel")
        mean = float(total[good].mean())
        factors = np.full(total.shape, np.nan)
        factors[good] = mean / total[good]
        log.debug("Correction factors: %d of %d pixel(s) usable",
                  int(good.sum()), good.size)
        factors.setflags(write=False)
        return factors
