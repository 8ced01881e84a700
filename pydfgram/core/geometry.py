"""
Detector geometry, image cut and image transform settings.

All three are frozen dataclasses so they can be compared and used as cache
keys.  Distances and pixel sizes are in mm, offsets and cuts in pixels.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np


@dataclass(frozen=True)
class Geometry:
    """Flat detector at ``detector_distance`` from the sample.

    ``mid_pix_offset`` shifts the beam center (i, j) away from the image
    center, in pixels of the transformed image.
    """

    MIN_DETECTOR_DISTANCE = 10.0
    MIN_DETECTOR_PIXEL_SIZE = 0.1
    DEF_DETECTOR_DISTANCE = 1035.0
    DEF_DETECTOR_PIXEL_SIZE = 1.0

    detector_distance: float = DEF_DETECTOR_DISTANCE
    pix_size: float = DEF_DETECTOR_PIXEL_SIZE
    mid_pix_offset: Tuple[int, int] = (0, 0)

    def __post_init__(self):
        object.__setattr__(self, "detector_distance",
                           max(float(self.detector_distance), self.MIN_DETECTOR_DISTANCE))
        object.__setattr__(self, "pix_size",
                           max(float(self.pix_size), self.MIN_DETECTOR_PIXEL_SIZE))
        i, j = self.mid_pix_offset
        object.__setattr__(self, "mid_pix_offset", (int(i), int(j)))

    def to_dict(self) -> Dict:
        return {
            "detector_distance": self.detector_distance,
            "pix_size": self.pix_size,
            "mid_pix_offset": list(self.mid_pix_offset),
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "Geometry":
        return cls(
            detector_distance=d.get("detector_distance", cls.DEF_DETECTOR_DISTANCE),
            pix_size=d.get("pix_size", cls.DEF_DETECTOR_PIXEL_SIZE),
            mid_pix_offset=tuple(d.get("mid_pix_offset", (0, 0))),
        )


@dataclass(frozen=True)
class ImageCut:
    """Number of pixels removed at each border of the transformed image."""

    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0

    def __post_init__(self):
        for name in ("left", "top", "right", "bottom"):
            value = int(getattr(self, name))
            if value < 0:
                raise ValueError(f"image cut {name} must be >= 0, got {value}")
            object.__setattr__(self, name, value)

    def mask(self, width: int, height: int) -> np.ndarray:
        """Boolean (height, width) array, True for pixels kept by the cut."""
        keep = np.zeros((height, width), dtype=bool)
        keep[self.top:max(self.top, height - self.bottom),
             self.left:max(self.left, width - self.right)] = True
        return keep

    def count_columns(self, width: int) -> int:
        return max(0, width - self.left - self.right)

    def to_dict(self) -> Dict:
        return {"left": self.left, "top": self.top,
                "right": self.right, "bottom": self.bottom}

    @classmethod
    def from_dict(cls, d: Dict) -> "ImageCut":
        return cls(**{k: d.get(k, 0) for k in ("left", "top", "right", "bottom")})


@dataclass(frozen=True)
class ImageTransform:
    """Rotation by quarter turns (counter-clockwise) followed by a mirror."""

    rotation: int = 0
    mirror: bool = False

    def __post_init__(self):
        object.__setattr__(self, "rotation", int(self.rotation) % 4)
        object.__setattr__(self, "mirror", bool(self.mirror))

    def apply(self, image: np.ndarray) -> np.ndarray:
        out = np.rot90(image, self.rotation) if self.rotation else image
        return np.fliplr(out) if self.mirror else out

    def transformed_size(self, size: Tuple[int, int]) -> Tuple[int, int]:
        """(width, height) after the transform."""
        w, h = size
        return (h, w) if self.rotation % 2 else (w, h)

    def rotated(self) -> "ImageTransform":
        return ImageTransform(self.rotation + 1, self.mirror)

    def to_dict(self) -> Dict:
        return {"rotation": self.rotation, "mirror": self.mirror}

    @classmethod
    def from_dict(cls, d: Dict) -> "ImageTransform":
        return cls(rotation=d.get("rotation", 0), mirror=d.get("mirror", False))
