"""
Session: the aggregate root of the reduction and fit pipeline.

A ``Session`` owns the loaded data (:class:`Dataset`), the correction set,
all settings and the caches.  Collaborators (GUI, batch scripts) read the
data through read-only accessors and change settings only through the
setters below; every setter invalidates the caches whose values depend on
what it changes, before it returns:

=====================================  ===========  ========  ===========
setting                                angle maps   dfgrams   avg dfgram
=====================================  ===========  ========  ===========
geometry, image cut, image transform   yes          yes       yes
files added/removed                    yes          yes       yes
binning, correction                    .            yes       yes
cluster selection                      .            .         yes
normalization, scaling, bins, slices   .            yes       yes
baseline, peaks                        .            yes       yes
=====================================  ===========  ========  ===========

Usage example
-------------
>>> session = Session()
>>> session.add_file("scan1", measurements)
>>> session.set_binning(3)
>>> session.add_baseline_range(Range(10, 12))
>>> session.add_peak(PeakSettings(Range(15, 17), "Gaussian"))
>>> dfgram = session.dfgram(session.cluster_at(0))
>>> dfgram.peak_fit(0).success
True
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Hashable, List, Optional, Sequence as SequenceT, Tuple

import numpy as np

from pydfgram.core.angle_map import AngleMap
from pydfgram.core.cluster import Cluster, Datafile, Measurement, Sequence
from pydfgram.core.corrset import Corrset
from pydfgram.core.dataset import Dataset
from pydfgram.core.dfgram import Dfgram, build_dfgram, sequence_to_curve
from pydfgram.core.geometry import Geometry, ImageCut, ImageTransform
from pydfgram.core.lazy_cache import KeyedCache, VectorCache
from pydfgram.core.ranges import Range, Ranges
from pydfgram.core.settings import Baseline, NormMode, Params, PeakSettings

log = logging.getLogger(__name__)


class Session:
    """All data, settings and cached results of one analysis."""

    def __init__(self, params: Optional[Params] = None):
        self._dataset = Dataset()
        self._corrset = Corrset()
        self._params = params if params is not None else Params()
        self._baseline = Baseline()
        self._peaks: List[PeakSettings] = []

        self._angle_maps: KeyedCache[AngleMap, float] = KeyedCache("angle map")
        self._dfgrams: VectorCache[Dfgram] = VectorCache("dfgram")
        self._avg_dfgrams: KeyedCache[Dfgram, int] = KeyedCache("averaged dfgram")

    # ── invalidation ─────────────────────────────────────────────────────

    def _invalidate_dfgrams(self) -> None:
        self._dfgrams.invalidate_all()
        self._avg_dfgrams.invalidate()

    def _invalidate_geometry(self) -> None:
        self._angle_maps.invalidate()
        self._invalidate_dfgrams()

    # ── data files ───────────────────────────────────────────────────────

    def add_file(self, name: str, measurements: SequenceT[Measurement]) -> Datafile:
        datafile = self._dataset.add_file(name, measurements)
        self._invalidate_geometry()
        return datafile

    def remove_file(self, i: int) -> Datafile:
        datafile = self._dataset.remove_file(i)
        self._invalidate_geometry()
        return datafile

    def clear(self) -> None:
        """Remove all files and the correction set; settings are kept."""
        self._dataset.clear()
        self._corrset.remove()
        self._invalidate_geometry()

    def set_binning(self, binning: int) -> None:
        self._dataset.set_binning(binning)
        self._invalidate_dfgrams()

    def set_cluster_selected(self, i: int, on: bool) -> None:
        self._dataset.set_selected(i, on)
        self._avg_dfgrams.invalidate()

    @property
    def files(self) -> Tuple[Datafile, ...]:
        return self._dataset.files

    @property
    def binning(self) -> int:
        return self._dataset.binning

    @property
    def clusters(self) -> Tuple[Cluster, ...]:
        return self._dataset.clusters

    def count_clusters(self) -> int:
        return self._dataset.count_clusters()

    def cluster_at(self, i: int) -> Cluster:
        return self._dataset.cluster_at(i)

    def active_clusters(self) -> List[Cluster]:
        """Selected clusters, in dataset order."""
        return self._dataset.active_clusters()

    @property
    def highlight(self) -> int:
        """Index of the cluster shown in detail, -1 without data."""
        return self._dataset.highlight

    def set_highlight(self, i: int) -> None:
        # display state only; no cached value depends on it
        self._dataset.set_highlight(i)

    def highlighted_cluster(self) -> Optional[Cluster]:
        return self._dataset.highlighted_cluster()

    def image_size(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the transformed images, None without data."""
        size = self._dataset.image_size()
        if size is None:
            return None
        return self._params.image_transform.transformed_size(size)

    def range_inten(self) -> Range:
        """Intensity range over all clusters, for fixed axis scaling."""
        return self._dataset.range_inten()

    # ── correction set ───────────────────────────────────────────────────

    def load_correction(self, name: str, measurements: SequenceT[Measurement]) -> None:
        measurements = list(measurements)
        size = self._dataset.image_size()
        if size is not None and measurements and measurements[0].size != size:
            raise ValueError(
                f"correction image size {measurements[0].size} does not match "
                f"session image size {size}"
            )
        self._corrset.load(name, measurements)
        self._invalidate_dfgrams()

    def remove_correction(self) -> None:
        self._corrset.remove()
        self._invalidate_dfgrams()

    def set_correction_enabled(self, on: bool) -> None:
        self._corrset.enabled = bool(on)
        self._invalidate_dfgrams()

    def has_correction(self) -> bool:
        return self._corrset.has_file()

    @property
    def correction_name(self) -> Optional[str]:
        return self._corrset.name

    @property
    def correction_enabled(self) -> bool:
        return self._corrset.enabled

    # ── reduction parameters ─────────────────────────────────────────────

    @property
    def params(self) -> Params:
        return self._params

    def set_params(self, params: Params) -> None:
        self._params = params
        self._invalidate_geometry()

    def _replace_params(self, geometry_changed: bool, **changes) -> None:
        self._params = dataclasses.replace(self._params, **changes)
        if geometry_changed:
            self._invalidate_geometry()
        else:
            self._invalidate_dfgrams()

    def set_geometry(self, geometry: Geometry) -> None:
        self._replace_params(True, geometry=geometry)

    def set_image_cut(self, cut: ImageCut) -> None:
        self._replace_params(True, image_cut=cut)

    def set_image_transform(self, transform: ImageTransform) -> None:
        self._replace_params(True, image_transform=transform)

    def set_norm_mode(self, mode: NormMode) -> None:
        self._replace_params(False, norm_mode=NormMode(mode))

    def set_intensity_scaled_avg(self, on: bool, scale: Optional[float] = None) -> None:
        changes = {"intensity_scaled_avg": bool(on)}
        if scale is not None:
            changes["intensity_scale"] = float(scale)
        self._replace_params(False, **changes)

    def set_num_bins(self, num_bins: Optional[int]) -> None:
        self._replace_params(False, num_bins=num_bins)

    def set_num_slices(self, num_slices: int) -> None:
        self._replace_params(False, num_slices=num_slices)

    # ── baseline and peaks ───────────────────────────────────────────────

    @property
    def baseline(self) -> Baseline:
        """Copy of the baseline settings; change them with the setters."""
        return Baseline(Ranges(self._baseline.ranges), self._baseline.polynom_degree)

    def set_baseline(self, baseline: Baseline) -> None:
        self._baseline = Baseline(Ranges(baseline.ranges), baseline.polynom_degree)
        self._invalidate_dfgrams()

    def set_baseline_degree(self, degree: int) -> None:
        self.set_baseline(Baseline(self._baseline.ranges, degree))

    def add_baseline_range(self, rng: Range) -> None:
        self._baseline.ranges.add(rng)
        self._invalidate_dfgrams()

    def remove_baseline_range(self, i: int) -> Range:
        if not 0 <= i < len(self._baseline.ranges):
            raise IndexError(f"baseline range index {i} out of range")
        rng = self._baseline.ranges.remove_at(i)
        self._invalidate_dfgrams()
        return rng

    @property
    def peaks(self) -> Tuple[PeakSettings, ...]:
        return tuple(self._peaks)

    def add_peak(self, peak: PeakSettings) -> int:
        self._peaks.append(peak)
        self._invalidate_dfgrams()
        return len(self._peaks) - 1

    def _check_peak(self, i: int) -> None:
        if not 0 <= i < len(self._peaks):
            raise IndexError(f"peak index {i} out of range")

    def set_peak(self, i: int, peak: PeakSettings) -> None:
        self._check_peak(i)
        self._peaks[i] = peak
        self._invalidate_dfgrams()

    def remove_peak(self, i: int) -> PeakSettings:
        self._check_peak(i)
        peak = self._peaks.pop(i)
        self._invalidate_dfgrams()
        return peak

    def clear_peaks(self) -> None:
        self._peaks.clear()
        self._invalidate_dfgrams()

    # ── derived data ─────────────────────────────────────────────────────

    def angle_map(self, mid_tth: float) -> AngleMap:
        """Angle map of the current geometry for detector arm angle *mid_tth*."""
        return self._angle_maps.get(float(mid_tth), self._compute_angle_map)

    def _compute_angle_map(self, mid_tth: float) -> AngleMap:
        size = self.image_size()
        if size is None:
            raise ValueError("no data loaded: image size unknown")
        p = self._params
        return AngleMap(p.geometry, p.image_cut, size, mid_tth)

    def angle_map_for(self, measurement: Measurement) -> AngleMap:
        return self.angle_map(measurement.mid_tth)

    def _corr_factors(self) -> Optional[np.ndarray]:
        if not self._corrset.is_active():
            return None
        size = self._dataset.image_size()
        if size is not None and self._corrset.image_size != size:
            raise ValueError(
                f"correction image size {self._corrset.image_size} does not match "
                f"session image size {size}"
            )
        return self._corrset.factors(self._params.image_transform)

    def gamma_range(self, seq: Sequence, i_slice: int) -> Range:
        """γ sector *i_slice* of *seq* (the full γ range for a single slice)."""
        n = self._params.num_slices
        if not 0 <= i_slice < n:
            raise IndexError(f"slice {i_slice} out of range for {n} slice(s)")
        full = seq.range_gma_full(self.angle_map_for)
        return full if n == 1 else full.slice(i_slice, n)

    def _reduce(self, seq: Sequence, i_slice: int) -> Dfgram:
        gamma_range = self.gamma_range(seq, i_slice)
        # one slice: no γ filter, so pixels on the sector boundary are kept
        gamma_filter = gamma_range if self._params.num_slices > 1 else None
        curve = sequence_to_curve(seq, self.angle_map_for, self._params,
                                  self._corr_factors(), gamma_filter)
        return build_dfgram(curve, self._baseline, self._peaks, gamma_range)

    def dfgram(self, cluster: Cluster, i_slice: int = 0) -> Dfgram:
        """Diffractogram of *cluster* in γ slice *i_slice*, cached."""
        n = self._params.num_slices
        if not 0 <= i_slice < n:
            raise IndexError(f"slice {i_slice} out of range for {n} slice(s)")
        return self._dfgrams.value_for((cluster, i_slice), self._compute_dfgram)

    def _compute_dfgram(self, unit: Hashable) -> Dfgram:
        cluster, i_slice = unit
        return self._reduce(cluster, i_slice)

    def avg_dfgram(self, i_slice: int = 0) -> Dfgram:
        """Diffractogram of all selected measurements reduced together."""
        return self._avg_dfgrams.get(i_slice, self._compute_avg_dfgram)

    def _compute_avg_dfgram(self, i_slice: int) -> Dfgram:
        return self._reduce(self._dataset.all_active_measurements(), i_slice)

    def peak_infos(self, i_peak: int):
        """Peak table rows over all selected clusters and γ slices."""
        from pydfgram.core.peak_info import peak_infos
        return peak_infos(self, i_peak)

    # ── settings round-trip ──────────────────────────────────────────────

    def to_dict(self) -> Dict:
        return {
            "params": self._params.to_dict(),
            "binning": self._dataset.binning,
            "baseline": self._baseline.to_dict(),
            "peaks": [p.to_dict() for p in self._peaks],
            "correction_enabled": self._corrset.enabled,
            "selection": [c.selected for c in self._dataset.clusters],
        }

    def settings_from_dict(self, d: Dict) -> None:
        """Apply settings produced by :meth:`to_dict`; missing keys keep defaults."""
        self.set_params(Params.from_dict(d.get("params", {})))
        self._dataset.set_binning(int(d.get("binning", 1)))
        self.set_baseline(Baseline.from_dict(d.get("baseline", {})))
        self._peaks = [PeakSettings.from_dict(p) for p in d.get("peaks", [])]
        self._corrset.enabled = bool(d.get("correction_enabled", True))
        selection = d.get("selection", [])
        if len(selection) == self._dataset.count_clusters():
            for i, on in enumerate(selection):
                self._dataset.set_selected(i, on)
        elif selection:
            log.warning("Ignoring cluster selection of %d entries for %d cluster(s)",
                        len(selection), self._dataset.count_clusters())
        self._invalidate_geometry()
