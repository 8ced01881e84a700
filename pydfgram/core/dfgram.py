"""
Diffractograms: 2-D images reduced to intensity versus 2θ.

Reduction of a Sequence (one cluster, or all selected measurements)
-------------------------------------------------------------------
1. Every member image is transformed (rotation/mirror) and, if a correction
   set is active, multiplied pixel-wise by the correction factors.
2. Pixels that are valid in the member's angle map, inside the γ sector (if
   any) and finite after correction are histogrammed by 2θ with
   ``np.bincount``: one pass for the intensity sums, one for the counts.
3. Each bin becomes ``sum / count × intensity_scale`` (or the plain sum),
   times ``1 / denominator`` of the normalization mode.  Empty bins are
   dropped, so the curve never contains zero-filled gaps.

A :class:`Dfgram` then adds the baseline fit, the background-subtracted
curve and one raw analysis plus one optional fit per peak.  It is built in
one go by :func:`build_dfgram` and never modified afterwards.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence as SequenceT, Tuple

import numpy as np

from pydfgram.core.angle_map import AngleMap
from pydfgram.core.cluster import Measurement, Sequence
from pydfgram.core.curve import Curve
from pydfgram.core.fit import FitOutcome, RawOutcome, fit_peak, fit_polynomial
from pydfgram.core.ranges import Range
from pydfgram.core.settings import Baseline, NormMode, Params, PeakSettings

log = logging.getLogger(__name__)

AngleMapFor = Callable[[Measurement], AngleMap]


# ===========================================================================
# Binning
# ===========================================================================

def normalization_factor(seq: Sequence, mode: NormMode) -> float:
    """Multiplier ``1 / denominator`` for *mode*; 1 for ``NormMode.NONE``."""
    if mode is NormMode.NONE:
        return 1.0
    denominator = {
        NormMode.MONITOR: seq.monitor_count,
        NormMode.DELTA_MONITOR: seq.delta_monitor_count,
        NormMode.TIME: seq.time,
        NormMode.DELTA_TIME: seq.delta_time,
    }[mode]
    if not (math.isfinite(denominator) and denominator > 0):
        log.warning("Normalization %s: denominator %r is not positive",
                    mode.value, denominator)
        raise ValueError(
            f"cannot normalize by {mode.value}: denominator is {denominator!r}"
        )
    return 1.0 / denominator


def collect_intensities(
    seq: Sequence,
    angle_map_for: AngleMapFor,
    params: Params,
    tth_range: Range,
    num_bins: int,
    corr_factors: Optional[np.ndarray] = None,
    gamma_range: Optional[Range] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Accumulate pixel intensities of all members into 2θ bins.

    Returns
    -------
    sums, counts : ndarray
        Per-bin sum of (corrected) intensities and number of contributing
        pixels, both of length *num_bins*.
    """
    sums = np.zeros(num_bins)
    counts = np.zeros(num_bins, dtype=np.int64)
    width = tth_range.width
    transform = params.image_transform

    for m in seq.members:
        image = np.asarray(transform.apply(m.image), dtype=float)
        amap = angle_map_for(m)
        mask = amap.mask(gamma_range) & np.isfinite(image)
        if corr_factors is not None:
            if corr_factors.shape != image.shape:
                raise ValueError(
                    f"correction image shape {corr_factors.shape} does not match "
                    f"image shape {image.shape}"
                )
            mask &= np.isfinite(corr_factors)
            image = image * np.where(mask, corr_factors, 0.0)

        tth = amap.tth[mask]
        if tth.size == 0:
            continue
        if width > 0:
            idx = np.floor((tth - tth_range.min) / width * num_bins).astype(np.int64)
            np.clip(idx, 0, num_bins - 1, out=idx)
        else:
            idx = np.zeros(tth.size, dtype=np.int64)
        sums += np.bincount(idx, weights=image[mask], minlength=num_bins)
        counts += np.bincount(idx, minlength=num_bins)

    return sums, counts


def sequence_to_curve(
    seq: Sequence,
    angle_map_for: AngleMapFor,
    params: Params,
    corr_factors: Optional[np.ndarray] = None,
    gamma_range: Optional[Range] = None,
) -> Curve:
    """Reduce the images of *seq* to one normalized intensity-vs-2θ curve."""
    tth_range = seq.range_tth(angle_map_for, gamma_range)
    if not tth_range.is_valid():
        log.debug("No valid pixel in γ sector %s", gamma_range)
        return Curve()

    num_bins = params.num_bins
    if num_bins is None:
        w, _ = params.image_transform.transformed_size(seq.image_size)
        num_bins = max(1, params.image_cut.count_columns(w))

    factor = normalization_factor(seq, params.norm_mode)
    sums, counts = collect_intensities(
        seq, angle_map_for, params, tth_range, num_bins, corr_factors, gamma_range
    )
    filled = counts > 0
    if params.intensity_scaled_avg:
        values = sums[filled] / counts[filled] * params.intensity_scale
    else:
        values = sums[filled]

    step = tth_range.width / num_bins
    centers = tth_range.min + (np.arange(num_bins) + 0.5) * step
    return Curve(centers[filled], values * factor)


# ===========================================================================
# Dfgram
# ===========================================================================

class Dfgram:
    """Raw curve, baseline fit and peak analyses of one reduced Sequence.

    ``bg_fit`` is None when no baseline ranges are configured, otherwise the
    polynomial fit outcome.  ``peak_fits[i]`` is None for ``Raw`` peaks.
    """

    def __init__(
        self,
        curve: Curve,
        bg_fit: Optional[FitOutcome],
        curve_minus_bg: Curve,
        raw_outcomes: SequenceT[RawOutcome],
        peak_fits: SequenceT[Optional[FitOutcome]],
        peaks: SequenceT[PeakSettings],
        gamma_range: Range = Range(),
    ):
        self.curve = curve
        self.bg_fit = bg_fit
        self.curve_minus_bg = curve_minus_bg
        self.raw_outcomes: Tuple[RawOutcome, ...] = tuple(raw_outcomes)
        self.peak_fits: Tuple[Optional[FitOutcome], ...] = tuple(peak_fits)
        self.peaks: Tuple[PeakSettings, ...] = tuple(peaks)
        self.gamma_range = gamma_range

    @property
    def num_peaks(self) -> int:
        return len(self.peaks)

    def _check_peak(self, i: int) -> None:
        if not 0 <= i < len(self.peaks):
            raise IndexError(f"peak index {i} out of range")

    def get_bg_as_curve(self) -> Curve:
        """Baseline sampled at the curve's x; zeros without a successful fit."""
        if self.bg_fit is None or not self.bg_fit.success:
            return Curve(self.curve.xs, np.zeros(self.curve.size))
        return Curve(self.curve.xs, self.bg_fit.y(self.curve.xs))

    def get_curve_minus_bg(self) -> Curve:
        return self.curve_minus_bg

    def get_peak_window(self, i: int) -> Curve:
        """Background-subtracted points inside the range of peak *i*."""
        self._check_peak(i)
        return self.curve_minus_bg.intersect(self.peaks[i].range)

    def get_peak_as_curve(self, i: int) -> Curve:
        """Fitted peak *i* sampled over its window; empty if not fitted."""
        fit = self.peak_fit(i)
        if fit is None or not fit.success:
            return Curve()
        xs = self.get_peak_window(i).xs
        return Curve(xs, fit.y(xs))

    def raw_outcome(self, i: int) -> RawOutcome:
        self._check_peak(i)
        return self.raw_outcomes[i]

    def peak_fit(self, i: int) -> Optional[FitOutcome]:
        self._check_peak(i)
        return self.peak_fits[i]

    def __repr__(self):
        return f"Dfgram(n={self.curve.size}, peaks={len(self.peaks)})"


def build_dfgram(
    curve: Curve,
    baseline: Baseline,
    peaks: SequenceT[PeakSettings],
    gamma_range: Range = Range(),
) -> Dfgram:
    """Fit baseline and peaks to *curve*."""
    bg_fit: Optional[FitOutcome] = None
    curve_minus_bg = curve
    if baseline.is_active():
        bg_fit = fit_polynomial(baseline.polynom_degree, curve, baseline.ranges)
        if bg_fit.success:
            curve_minus_bg = curve.subtract(bg_fit.y)
        else:
            log.warning("Baseline fit failed: %s", bg_fit.message)

    raw_outcomes: List[RawOutcome] = []
    peak_fits: List[Optional[FitOutcome]] = []
    for peak in peaks:
        window = curve_minus_bg.intersect(peak.range)
        raw = RawOutcome.from_curve(window)
        raw_outcomes.append(raw)
        if peak.is_raw:
            peak_fits.append(None)
            continue
        fit = fit_peak(peak.function_name, window, raw, peak.guess)
        if not fit.success:
            log.debug("Peak %s in %s: %s", peak.function_name, peak.range, fit.message)
        peak_fits.append(fit)

    return Dfgram(curve, bg_fit, curve_minus_bg, raw_outcomes, peak_fits, peaks, gamma_range)
