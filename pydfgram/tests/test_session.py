"""
Unit tests for the Session aggregate.

Tests cover:
  - cached diffractograms are reused until a setting changes
  - every setter invalidates the caches that depend on it
  - angle maps are cached per arm angle and rebuilt on geometry changes
  - γ slices, averaged diffractograms and peak tables
  - correction set integration and its failure modes
  - peak settings and clusters handed out are read-only
  - γ slices count every pixel exactly once
  - settings round-trip through to_dict / settings_from_dict
"""

import dataclasses

import numpy as np
import pytest

from pydfgram.core.angle_map import AngleMap
from pydfgram.core.cluster import Measurement
from pydfgram.core.geometry import Geometry, ImageCut, ImageTransform
from pydfgram.core.metadata import Metadata
from pydfgram.core.ranges import Range
from pydfgram.core.session import Session
from pydfgram.core.settings import NormMode, Params, PeakSettings

GEOMETRY = Geometry(detector_distance=200.0)
SIZE = (60, 12)
PEAK_TTH = 40.0


def _measurements(n=4, mid_tth=PEAK_TTH):
    """n images with a Gaussian ring at 2θ = 40° on a flat background."""
    tth = AngleMap(GEOMETRY, ImageCut(), SIZE, mid_tth).tth
    image = 5.0 + 100.0 * np.exp(-4.0 * np.log(2.0) * (tth - PEAK_TTH) ** 2 / 3.0 ** 2)
    return [
        Measurement(image * (1.0 + 0.1 * i),
                    Metadata(tth=mid_tth, omg=20.0, mon=100.0 * (i + 1), t=2.0))
        for i in range(n)
    ]


def _session(n=4, binning=1):
    session = Session(Params(geometry=GEOMETRY))
    session.add_file("scan", _measurements(n))
    session.set_binning(binning)
    return session


def _count_computes(session):
    """Wrap the diffractogram compute callback with a call counter."""
    calls = []
    compute = session._compute_dfgram

    def counting(unit):
        calls.append(unit)
        return compute(unit)

    session._compute_dfgram = counting
    return calls


class TestCaching:
    def test_reuse_without_changes(self):
        """Asking twice for the same cluster computes once."""
        session = _session()
        calls = _count_computes(session)
        cluster = session.cluster_at(0)
        first = session.dfgram(cluster)
        second = session.dfgram(cluster)
        assert first is second
        assert len(calls) == 1

    @pytest.mark.parametrize("change", [
        lambda s: s.set_norm_mode(NormMode.MONITOR),
        lambda s: s.set_geometry(Geometry(detector_distance=300.0)),
        lambda s: s.set_image_cut(ImageCut(left=1)),
        lambda s: s.set_image_transform(ImageTransform(0, True)),
        lambda s: s.set_intensity_scaled_avg(False),
        lambda s: s.set_num_bins(25),
        lambda s: s.add_baseline_range(Range(30.0, 33.0)),
        lambda s: s.set_baseline_degree(1),
        lambda s: s.add_peak(PeakSettings(Range(36.0, 44.0))),
        lambda s: s.set_correction_enabled(False),
    ])
    def test_setter_invalidates(self, change):
        """After a settings change the next access recomputes."""
        session = _session()
        calls = _count_computes(session)
        cluster = session.cluster_at(0)
        session.dfgram(cluster)
        change(session)
        session.dfgram(cluster)
        assert len(calls) == 2

    @pytest.mark.parametrize("change", [
        lambda s: s.set_peak(0, PeakSettings(Range(36.0, 44.0), "Lorentzian")),
        lambda s: s.remove_peak(0),
        lambda s: s.clear_peaks(),
        lambda s: s.remove_baseline_range(0),
        lambda s: s.remove_correction(),
    ])
    def test_removal_invalidates(self, change):
        """Replacing or removing a setting also recomputes."""
        session = _session()
        session.add_baseline_range(Range(30.0, 33.0))
        session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian"))
        session.load_correction("flat", [Measurement(np.full(SIZE[::-1], 7.0))])
        calls = _count_computes(session)
        cluster = session.cluster_at(0)
        session.dfgram(cluster)
        change(session)
        session.dfgram(cluster)
        assert len(calls) == 2

    def test_binning_change_builds_new_clusters(self):
        session = _session(n=4, binning=1)
        old = session.cluster_at(0)
        session.dfgram(old)
        session.set_binning(2)
        new = session.cluster_at(0)
        assert new is not old
        assert new.size == 2
        assert session.dfgram(new).curve.size > 0

    def test_selection_does_not_touch_cluster_dfgrams(self):
        session = _session()
        calls = _count_computes(session)
        cluster = session.cluster_at(0)
        session.dfgram(cluster)
        session.set_cluster_selected(1, False)
        session.dfgram(cluster)
        assert len(calls) == 1

    def test_angle_map_cache(self):
        session = _session()
        amap = session.angle_map(PEAK_TTH)
        assert session.angle_map(PEAK_TTH) is amap
        session.set_geometry(Geometry(detector_distance=250.0))
        rebuilt = session.angle_map(PEAK_TTH)
        assert rebuilt is not amap
        assert rebuilt.geometry.detector_distance == 250.0

    def test_transform_changes_map_size(self):
        session = _session()
        session.set_image_transform(ImageTransform(1))
        assert session.angle_map(PEAK_TTH).size == (SIZE[1], SIZE[0])
        assert session.dfgram(session.cluster_at(0)).curve.size > 0

    def test_no_data(self):
        with pytest.raises(ValueError, match="no data"):
            Session().angle_map(0.0)


class TestDerived:
    def test_peak_fit_at_ring(self):
        session = _session()
        session.add_baseline_range(Range(30.0, 34.0))
        session.add_baseline_range(Range(46.0, 50.0))
        session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian"))
        df = session.dfgram(session.cluster_at(0))
        fit = df.peak_fit(0)
        assert fit.success, fit.message
        assert fit.peak_outcome().center.value == pytest.approx(PEAK_TTH, abs=0.2)

    def test_gamma_slices(self):
        """Two slices split the full γ range of the cluster in halves."""
        session = _session()
        session.set_num_slices(2)
        cluster = session.cluster_at(0)
        lower = session.dfgram(cluster, 0)
        upper = session.dfgram(cluster, 1)
        assert lower.gamma_range.max == pytest.approx(upper.gamma_range.min)
        assert lower.curve.size > 0 and upper.curve.size > 0
        with pytest.raises(IndexError):
            session.dfgram(cluster, 2)

    def test_slices_count_each_pixel_once(self):
        """Summed over all slices, a flat image gives the unsliced total."""
        session = Session(Params(geometry=GEOMETRY, intensity_scaled_avg=False))
        session.add_file("flat", [Measurement(np.ones(SIZE[::-1]), Metadata(tth=PEAK_TTH))])
        cluster = session.cluster_at(0)
        total = session.dfgram(cluster).curve.ys.sum()
        assert total == session.angle_map(PEAK_TTH).count_valid()
        for n in (2, 3, 7):
            session.set_num_slices(n)
            sliced = sum(session.dfgram(cluster, i).curve.ys.sum() for i in range(n))
            assert sliced == pytest.approx(total)

    def test_avg_dfgram_of_identical_clusters(self):
        """Averaging equal images gives the same curve as one of them."""
        session = Session(Params(geometry=GEOMETRY))
        ms = _measurements(1) * 3
        session.add_file("same", [Measurement(m.image, m.metadata) for m in ms])
        avg = session.avg_dfgram()
        single = session.dfgram(session.cluster_at(0))
        np.testing.assert_allclose(avg.curve.xs, single.curve.xs)
        np.testing.assert_allclose(avg.curve.ys, single.curve.ys)
        assert session.avg_dfgram() is avg

    def test_avg_dfgram_follows_selection(self):
        session = _session()
        first = session.avg_dfgram()
        session.set_cluster_selected(0, False)
        assert session.avg_dfgram() is not first
        for i in range(session.count_clusters()):
            session.set_cluster_selected(i, False)
        with pytest.raises(ValueError, match="no active clusters"):
            session.avg_dfgram()

    def test_peak_infos(self):
        """One row per selected cluster and slice, with pole-figure angles."""
        session = _session(n=4)
        session.set_num_slices(2)
        session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian"))
        session.set_cluster_selected(3, False)
        rows = session.peak_infos(0)
        assert len(rows) == 3 * 2
        assert [(r.cluster_index, r.i_slice) for r in rows][:2] == [(0, 0), (0, 1)]
        for row in rows:
            assert 0.0 <= row.alpha <= 90.0
            assert 0.0 <= row.beta < 360.0
            assert row.metadata.omg == 20.0
        with pytest.raises(IndexError):
            session.peak_infos(1)

    def test_raw_peak_infos(self):
        session = _session(n=1)
        session.add_peak(PeakSettings(Range(35.0, 45.0), "Raw"))
        row = session.peak_infos(0)[0]
        assert row.is_raw and row.success
        assert row.center.error == 0.0
        assert row.to_dict()["function"] == "Raw"

    def test_delta_normalization_fails_per_cluster(self):
        """Δmonitor of single-measurement clusters cannot normalize."""
        session = _session(n=2, binning=1)
        session.set_norm_mode(NormMode.DELTA_MONITOR)
        with pytest.raises(ValueError):
            session.dfgram(session.cluster_at(0))
        session.set_binning(2)
        assert session.dfgram(session.cluster_at(0)).curve.size > 0

    def test_range_inten(self):
        session = _session(n=2)
        rge = session.range_inten()
        assert rge.min == pytest.approx(5.0, rel=1e-3)
        assert rge.max > 100.0


class TestCorrection:
    def test_flat_correction_changes_nothing(self):
        session = _session(n=1)
        cluster = session.cluster_at(0)
        plain = session.dfgram(cluster).curve
        session.load_correction("flat", [Measurement(np.full(SIZE[::-1], 7.0))])
        corrected = session.dfgram(cluster).curve
        np.testing.assert_allclose(corrected.ys, plain.ys)

    def test_correction_size_mismatch(self):
        session = _session(n=1)
        with pytest.raises(ValueError, match="does not match"):
            session.load_correction("bad", [Measurement(np.ones((3, 3)))])

    def test_correction_without_positive_pixel(self):
        session = _session(n=1)
        session.load_correction("dark", [Measurement(np.zeros(SIZE[::-1]))])
        with pytest.raises(ValueError, match="no positive pixel"):
            session.dfgram(session.cluster_at(0))
        session.set_correction_enabled(False)
        assert session.dfgram(session.cluster_at(0)).curve.size > 0

    def test_empty_correction(self):
        with pytest.raises(ValueError):
            _session(n=1).load_correction("none", [])


class TestReadOnlyViews:
    def test_peak_settings_are_frozen(self):
        """A peak handed out by ``peaks`` cannot change behind the cache."""
        session = _session(n=1)
        session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian", {"fwhm": 3.0}))
        calls = _count_computes(session)
        cluster = session.cluster_at(0)
        assert session.dfgram(cluster).peaks[0].function_name == "Gaussian"

        peak = session.peaks[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            peak.function_name = "Lorentzian"
        with pytest.raises(TypeError):
            peak.guess["fwhm"] = 1.0
        assert session.dfgram(cluster).peaks[0].function_name == "Gaussian"
        assert len(calls) == 1

        session.set_peak(0, dataclasses.replace(peak, function_name="Lorentzian"))
        assert session.dfgram(cluster).peaks[0].function_name == "Lorentzian"
        assert len(calls) == 2

    def test_guess_is_copied(self):
        guess = {"fwhm": 2.0}
        peak = PeakSettings(Range(35.0, 45.0), guess=guess)
        guess["fwhm"] = 9.0
        assert peak.guess == {"fwhm": 2.0}

    def test_no_public_containers(self):
        """Data and correction set are reached only through Session."""
        session = _session(n=4, binning=2)
        assert not hasattr(session, "dataset")
        assert not hasattr(session, "corrset")
        assert [f.name for f in session.files] == ["scan"]
        assert session.binning == 2
        assert session.count_clusters() == 2
        assert session.clusters[1] is session.cluster_at(1)
        assert session.highlight == 0
        session.set_highlight(1)
        assert session.highlighted_cluster() is session.cluster_at(1)

    def test_cluster_selection_only_via_session(self):
        session = _session()
        cluster = session.cluster_at(0)
        first = session.avg_dfgram()
        with pytest.raises(AttributeError):
            cluster.selected = False
        assert session.avg_dfgram() is first
        session.set_cluster_selected(0, False)
        assert not cluster.selected
        assert session.active_clusters() == [session.cluster_at(i) for i in (1, 2, 3)]
        assert session.avg_dfgram() is not first

    def test_correction_accessors(self):
        session = _session(n=1)
        assert not session.has_correction()
        assert session.correction_name is None
        session.load_correction("flat", [Measurement(np.full(SIZE[::-1], 7.0))])
        assert session.has_correction()
        assert session.correction_name == "flat"
        assert session.correction_enabled
        session.set_correction_enabled(False)
        assert not session.correction_enabled


class TestSettingsRoundTrip:
    def test_to_dict_round_trip(self):
        session = _session(n=4, binning=2)
        session.set_norm_mode(NormMode.TIME)
        session.set_num_slices(3)
        session.set_image_cut(ImageCut(1, 2, 3, 4))
        session.add_baseline_range(Range(30.0, 33.0))
        session.add_peak(PeakSettings(Range(36.0, 44.0), "PseudoVoigt", {"fwhm": 2.5}))
        session.set_cluster_selected(1, False)
        state = session.to_dict()

        other = Session()
        other.add_file("scan", _measurements(4))
        other.settings_from_dict(state)
        assert other.to_dict() == state
        assert other.params.norm_mode is NormMode.TIME
        assert other.peaks[0].guess == {"fwhm": 2.5}

    def test_missing_keys_use_defaults(self):
        session = Session()
        session.settings_from_dict({})
        assert session.params == Params()
        assert session.baseline.polynom_degree == 2
        assert session.peaks == ()
