"""
Reduction and fit settings.

``Params`` gathers everything that changes how images become curves
(geometry, cut, transform, normalization, intensity scaling, bin and slice
counts); ``Baseline`` and ``PeakSettings`` describe what is fitted.  All of
them round-trip through plain dicts for the state file and batch configs.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from pydfgram.core.fit_functions import RAW, check_peak_function_name
from pydfgram.core.geometry import Geometry, ImageCut, ImageTransform
from pydfgram.core.ranges import Range, Ranges


class NormMode(enum.Enum):
    """Divisor applied to binned intensities."""

    NONE = "none"
    MONITOR = "monitor"
    DELTA_MONITOR = "delta_monitor"
    TIME = "time"
    DELTA_TIME = "delta_time"


@dataclass(frozen=True)
class Params:
    """Image-to-curve reduction parameters.

    Attributes
    ----------
    intensity_scaled_avg : bool
        Bin value is accumulated intensity / pixel count × ``intensity_scale``
        when True, the plain sum otherwise.
    num_bins : int or None
        Number of 2θ bins; None uses the pixel columns left after the cut.
    num_slices : int
        Number of equal γ sectors; 1 means no γ selection.
    """

    geometry: Geometry = field(default_factory=Geometry)
    image_cut: ImageCut = field(default_factory=ImageCut)
    image_transform: ImageTransform = field(default_factory=ImageTransform)
    norm_mode: NormMode = NormMode.NONE
    intensity_scaled_avg: bool = True
    intensity_scale: float = 1.0
    num_bins: Optional[int] = None
    num_slices: int = 1

    def __post_init__(self):
        if self.num_slices < 1:
            raise ValueError(f"num_slices must be >= 1, got {self.num_slices}")
        if self.num_bins is not None and self.num_bins < 1:
            raise ValueError(f"num_bins must be >= 1 or None, got {self.num_bins}")

    def to_dict(self) -> Dict:
        return {
            "geometry": self.geometry.to_dict(),
            "image_cut": self.image_cut.to_dict(),
            "image_transform": self.image_transform.to_dict(),
            "norm_mode": self.norm_mode.value,
            "intensity_scaled_avg": self.intensity_scaled_avg,
            "intensity_scale": self.intensity_scale,
            "num_bins": self.num_bins,
            "num_slices": self.num_slices,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "Params":
        num_bins = d.get("num_bins")
        return cls(
            geometry=Geometry.from_dict(d.get("geometry", {})),
            image_cut=ImageCut.from_dict(d.get("image_cut", {})),
            image_transform=ImageTransform.from_dict(d.get("image_transform", {})),
            norm_mode=NormMode(d.get("norm_mode", NormMode.NONE.value)),
            intensity_scaled_avg=bool(d.get("intensity_scaled_avg", True)),
            intensity_scale=float(d.get("intensity_scale", 1.0)),
            num_bins=None if num_bins is None else int(num_bins),
            num_slices=int(d.get("num_slices", 1)),
        )


@dataclass
class Baseline:
    """Polynomial background fitted over the union of ``ranges``."""

    ranges: Ranges = field(default_factory=Ranges)
    polynom_degree: int = 2

    def __post_init__(self):
        if self.polynom_degree < 0:
            raise ValueError(f"polynomial degree must be >= 0, got {self.polynom_degree}")

    def is_active(self) -> bool:
        return len(self.ranges) > 0

    def to_dict(self) -> Dict:
        return {"ranges": self.ranges.to_list(), "polynom_degree": self.polynom_degree}

    @classmethod
    def from_dict(cls, d: Dict) -> "Baseline":
        return cls(
            ranges=Ranges.from_list(d.get("ranges", [])),
            polynom_degree=int(d.get("polynom_degree", 2)),
        )


@dataclass(frozen=True)
class PeakSettings:
    """One peak: its 2θ window, shape and optional initial guesses.

    ``guess`` may hold ``center``, ``height`` and/or ``fwhm`` to override
    the values taken from the raw statistics of the window.  It is stored
    as a read-only mapping; change a peak with :meth:`Session.set_peak`.
    """

    range: Range
    function_name: str = "Gaussian"
    guess: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if not self.range.is_valid():
            raise ValueError("peak range must be valid")
        check_peak_function_name(self.function_name)
        object.__setattr__(self, "guess", MappingProxyType(
            {k: float(v) for k, v in self.guess.items()}))

    @property
    def is_raw(self) -> bool:
        return self.function_name == RAW

    def to_dict(self) -> Dict:
        return {
            "range": self.range.to_list(),
            "function": self.function_name,
            "guess": dict(self.guess),
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "PeakSettings":
        return cls(
            range=Range.from_list(d["range"]),
            function_name=d.get("function", "Gaussian"),
            guess=d.get("guess", {}),
        )
