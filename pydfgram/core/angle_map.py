"""
Per-pixel scattering angles of a flat area detector.

The detector plane stands at distance D from the sample, its normal
rotated by the arm angle 2θ₀ (``mid_tth``) away from the primary beam in the
horizontal plane.  For a pixel at in-plane offsets (dx, dy) from the beam
center the laboratory position is::

    x = D·sin 2θ₀ + dx·cos 2θ₀      (horizontal, towards the arm)
    y = dy                           (vertical)
    z = D·cos 2θ₀ − dx·sin 2θ₀      (along the primary beam)

and the pixel sees the scattering angle ``2θ = atan2(√(x²+y²), z)`` at the
azimuth ``γ = atan2(y, x)``.  Angles are stored in degrees.

Only the arm angle varies between measurements of one session, so maps are
cached under that single scalar (see ``Session.angle_map``).
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

from pydfgram.core.geometry import Geometry, ImageCut
from pydfgram.core.ranges import Range

log = logging.getLogger(__name__)


class AngleMap:
    """2θ, γ and validity of every pixel of a transformed detector image.

    Parameters
    ----------
    geometry : Geometry
        Detector distance, pixel size and beam-center offset.
    cut : ImageCut
        Border pixels marked invalid.
    size : (int, int)
        Transformed image size as (width, height).
    mid_tth : float
        Detector arm angle 2θ₀ in degrees.
    """

    def __init__(self, geometry: Geometry, cut: ImageCut,
                 size: Tuple[int, int], mid_tth: float):
        w, h = size
        self.geometry = geometry
        self.cut = cut
        self.size = (w, h)
        self.mid_tth = float(mid_tth)

        off_i, off_j = geometry.mid_pix_offset
        mid_i = w / 2.0 + off_i
        mid_j = h / 2.0 + off_j
        dx = (np.arange(w, dtype=float)[None, :] - mid_i) * geometry.pix_size
        dy = (np.arange(h, dtype=float)[:, None] - mid_j) * geometry.pix_size

        t0 = math.radians(self.mid_tth)
        dist = geometry.detector_distance
        x = dist * math.sin(t0) + dx * math.cos(t0)
        z = dist * math.cos(t0) - dx * math.sin(t0)
        x, y = np.broadcast_arrays(x, dy)
        z = np.broadcast_to(z, (h, w))

        tth = np.degrees(np.arctan2(np.hypot(x, y), z))
        gma = np.degrees(np.arctan2(y, x))
        valid = cut.mask(w, h) & np.isfinite(tth) & np.isfinite(gma)

        for arr in (tth, gma, valid):
            arr.setflags(write=False)
        self.tth = tth
        self.gma = gma
        self.valid = valid
        log.debug("AngleMap %dx%d at 2θ₀=%g: %d valid pixel(s)", w, h, self.mid_tth,
                  int(valid.sum()))

    def mask(self, gamma_range: Optional[Range] = None) -> np.ndarray:
        """Valid pixels, optionally restricted to a γ sector."""
        if gamma_range is None:
            return self.valid
        return self.valid & gamma_range.mask(self.gma)

    def range_tth(self, gamma_range: Optional[Range] = None) -> Range:
        return Range.of(self.tth[self.mask(gamma_range)])

    def range_gma(self) -> Range:
        return Range.of(self.gma[self.valid])

    def count_valid(self) -> int:
        return int(self.valid.sum())


# ---------------------------------------------------------------------------
# Pole-figure angles
# ---------------------------------------------------------------------------

def _rot_cw_x(a: float) -> np.ndarray:
    c, s = math.cos(a), math.sin(a)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, s], [0.0, -s, c]])


def _rot_cw_z(a: float) -> np.ndarray:
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, s, 0.0], [-s, c, 0.0], [0.0, 0.0, 1.0]])


def _rot_ccw_z(a: float) -> np.ndarray:
    return _rot_cw_z(-a)


def calculate_alpha_beta(omg: float, phi: float, chi: float,
                         tth: float, gma: float) -> Tuple[float, float]:
    """Pole-figure angles (α, β) in degrees for one scattering vector.

    The unit vector along y is rotated by 2θ/2, γ and the goniometer angles
    ω, χ, φ.  α is the polar angle folded into the upper hemisphere
    (0° … 90°); β is the azimuth in [0°, 360°).
    """
    r = np.radians
    v = (_rot_cw_z(r(phi)) @ _rot_cw_x(r(chi)) @ _rot_cw_z(r(omg))
         @ _rot_cw_x(r(gma)) @ _rot_ccw_z(r(tth) / 2.0) @ np.array([0.0, 1.0, 0.0]))
    alpha = math.acos(float(np.clip(v[2], -1.0, 1.0)))
    beta = math.atan2(v[0], v[1])
    if alpha > math.pi / 2:
        alpha = math.pi - alpha
        beta += math.pi if beta < 0 else -math.pi
    if beta < 0:
        beta += 2 * math.pi
    return math.degrees(alpha), math.degrees(beta)
