"""
Per-cluster peak tables.

One :class:`PeakInfo` row describes one peak in one cluster and γ slice:
the cluster's averaged metadata, the γ sector, the pole-figure angles α/β
of the peak position, and center / height / FWHM / intensity with errors.

Rows for ``Raw`` peaks, and rows whose fit failed, carry the raw window
statistics with zero errors; ``is_raw`` tells them apart from fitted values
and ``success`` is False when a configured fit did not succeed.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List

from pydfgram.core.angle_map import calculate_alpha_beta
from pydfgram.core.cluster import Cluster
from pydfgram.core.dfgram import Dfgram
from pydfgram.core.fit import DoubleWithError, PeakOutcome
from pydfgram.core.metadata import Metadata
from pydfgram.core.ranges import Range

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeakInfo:
    cluster_index: int
    i_slice: int
    metadata: Metadata
    gamma_range: Range
    alpha: float
    beta: float
    center: DoubleWithError
    height: DoubleWithError
    fwhm: DoubleWithError
    intensity: DoubleWithError
    function_name: str
    success: bool
    is_raw: bool

    def to_dict(self) -> Dict:
        """Flat row: metadata keys, then angles, then values and errors."""
        row: Dict = dict(self.metadata.to_dict())
        row.update({
            "cluster": self.cluster_index,
            "slice": self.i_slice,
            "gamma_min": self.gamma_range.min,
            "gamma_max": self.gamma_range.max,
            "alpha": self.alpha,
            "beta": self.beta,
            "function": self.function_name,
            "success": self.success,
            "raw": self.is_raw,
        })
        for name in ("center", "height", "fwhm", "intensity"):
            q = getattr(self, name)
            row[name] = q.value
            row[name + "_error"] = q.error
        return row


def _angle(md: Metadata, key: str) -> float:
    # goniometer angles absent from the loader's metadata count as 0
    value = md.numeric(key)
    return value if math.isfinite(value) else 0.0


def make_peak_info(cluster: Cluster, i_slice: int, dfgram: Dfgram, i_peak: int) -> PeakInfo:
    """Table row for peak *i_peak* of *dfgram*, computed from *cluster*."""
    raw = dfgram.raw_outcome(i_peak)
    fit = dfgram.peak_fit(i_peak)
    peak = dfgram.peaks[i_peak]

    if fit is not None and fit.success:
        outcome: PeakOutcome = fit.peak_outcome()
        success, is_raw = True, False
    else:
        outcome = raw.peak_outcome()
        success = fit is None and raw.count > 0
        is_raw = True

    md = cluster.avg_metadata
    tth = outcome.center.value
    gma = dfgram.gamma_range.center
    if math.isfinite(tth) and math.isfinite(gma):
        alpha, beta = calculate_alpha_beta(
            _angle(md, "omg"), _angle(md, "phi"), _angle(md, "chi"), tth, gma
        )
    else:
        alpha = beta = math.nan

    return PeakInfo(
        cluster_index=cluster.index,
        i_slice=i_slice,
        metadata=md,
        gamma_range=dfgram.gamma_range,
        alpha=alpha,
        beta=beta,
        center=outcome.center,
        height=outcome.height,
        fwhm=outcome.fwhm,
        intensity=outcome.intensity,
        function_name=peak.function_name,
        success=success,
        is_raw=is_raw,
    )


def peak_infos(session, i_peak: int) -> List[PeakInfo]:
    """Rows for peak *i_peak* over every selected cluster and γ slice."""
    if not 0 <= i_peak < len(session.peaks):
        raise IndexError(f"peak index {i_peak} out of range")
    rows: List[PeakInfo] = []
    for cluster in session.active_clusters():
        for i_slice in range(session.params.num_slices):
            dfgram = session.dfgram(cluster, i_slice)
            rows.append(make_peak_info(cluster, i_slice, dfgram, i_peak))
    log.debug("Peak %d: %d table row(s)", i_peak, len(rows))
    return rows
