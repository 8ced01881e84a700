"""
Unit tests for the HDF5 export of diffractograms.

Tests cover:
  - save/load round-trip of curves, settings and peak parameters
  - averaged diffractograms are written on request
  - an existing results group is replaced, other groups are kept
  - a save that fails part-way keeps the previous results
  - loading a file without results raises KeyError
"""

import tempfile
from pathlib import Path

import h5py
import numpy as np
import pytest

from pydfgram.core.angle_map import AngleMap
from pydfgram.core.cluster import Measurement
from pydfgram.core.geometry import Geometry, ImageCut
from pydfgram.core.metadata import Metadata
from pydfgram.core.ranges import Range
from pydfgram.core.session import Session
from pydfgram.core.settings import NormMode, Params, PeakSettings
from pydfgram.io import hdf5_dfgram
from pydfgram.io.hdf5_dfgram import load_dfgrams, save_dfgrams

GEOMETRY = Geometry(detector_distance=200.0)
SIZE = (60, 12)


def _session(n=3):
    tth = AngleMap(GEOMETRY, ImageCut(), SIZE, 40.0).tth
    image = 5.0 + 100.0 * np.exp(-4.0 * np.log(2.0) * (tth - 40.0) ** 2 / 9.0)
    session = Session(Params(geometry=GEOMETRY))
    session.add_file("scan", [
        Measurement(image, Metadata(tth=40.0, mon=100.0, comment=f"frame {i}"))
        for i in range(n)
    ])
    session.add_baseline_range(Range(30.0, 34.0))
    session.add_baseline_range(Range(46.0, 50.0))
    session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian"))
    session.add_peak(PeakSettings(Range(38.0, 42.0), "Raw"))
    return session


class TestHDF5Dfgram:
    def test_save_load_round_trip(self):
        session = _session()
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "out.h5"
            n = save_dfgrams(path, session)
            loaded = load_dfgrams(path)

        assert n == 3
        assert loaded["n_dfgrams"] == 3
        assert loaded["n_peaks"] == 2
        assert loaded["norm_mode"] == "none"
        np.testing.assert_allclose(loaded["baseline_ranges"], [[30.0, 34.0], [46.0, 50.0]])
        assert [p["function"] for p in loaded["peak_settings"]] == ["Gaussian", "Raw"]

        cluster = session.cluster_at(1)
        dfgram = session.dfgram(cluster)
        d = loaded["dfgrams"][1]
        assert d["cluster"] == 1
        assert d["file"] == "scan"
        assert d["metadata"]["comment"] == "frame 1"
        np.testing.assert_allclose(d["tth"], dfgram.curve.xs)
        np.testing.assert_allclose(d["intensity"], dfgram.curve.ys)
        np.testing.assert_allclose(d["intensity_minus_bg"], dfgram.curve_minus_bg.ys)
        assert set(d["background_params"]) == {"p0", "p1", "p2"}

        gauss, raw = d["peaks"]
        fit = dfgram.peak_fit(0)
        assert gauss["success"] is True
        assert gauss["params"]["center"]["value"] == pytest.approx(fit.parameter_at(1).value)
        assert gauss["params"]["center"]["error"] == pytest.approx(fit.parameter_at(1).error)
        assert raw["params"] == {}
        assert raw["raw"]["center"] == pytest.approx(dfgram.raw_outcome(1).center)

    def test_average_written_on_request(self):
        session = _session()
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "out.h5"
            save_dfgrams(path, session)
            assert load_dfgrams(path)["averages"] == []
            save_dfgrams(path, session, include_average=True)
            loaded = load_dfgrams(path)
        assert len(loaded["averages"]) == 1
        np.testing.assert_allclose(loaded["averages"][0]["intensity"],
                                   session.avg_dfgram().curve.ys)

    def test_replaces_results_keeps_other_groups(self):
        session = _session()
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "out.h5"
            with h5py.File(path, "w") as f:
                f.create_dataset("entry/sasdata/I", data=np.arange(3.0))
            save_dfgrams(path, session)
            session.set_cluster_selected(0, False)
            save_dfgrams(path, session)
            loaded = load_dfgrams(path)
            with h5py.File(path, "r") as f:
                assert "entry/sasdata/I" in f
        assert loaded["n_dfgrams"] == 2

    def test_failed_save_keeps_previous_results(self):
        """A save that fails while deriving leaves the earlier results intact."""
        session = _session(n=4)
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "out.h5"
            assert save_dfgrams(path, session) == 4
            session.set_norm_mode(NormMode.DELTA_MONITOR)
            with pytest.raises(ValueError, match="denominator"):
                save_dfgrams(path, session)
            loaded = load_dfgrams(path)
            with h5py.File(path, "r") as f:
                assert list(f["entry"].keys()) == ["dfgram_results"]
        assert loaded["n_dfgrams"] == 4
        assert loaded["norm_mode"] == "none"
        assert len(loaded["dfgrams"]) == 4

    def test_failed_write_removes_partial_group(self, monkeypatch):
        """An error while writing drops the partial group, old results stay."""
        session = _session()
        write = hdf5_dfgram._write_dfgram
        calls = []

        def failing_write(grp, dfgram):
            calls.append(grp.name)
            if len(calls) == 2:
                raise OSError("disk full")
            write(grp, dfgram)

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "out.h5"
            save_dfgrams(path, session)
            monkeypatch.setattr(hdf5_dfgram, "_write_dfgram", failing_write)
            with pytest.raises(OSError):
                save_dfgrams(path, session)
            with h5py.File(path, "r") as f:
                assert list(f["entry"].keys()) == ["dfgram_results"]
            assert load_dfgrams(path)["n_dfgrams"] == 3

    def test_missing_group(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "empty.h5"
            with h5py.File(path, "w") as f:
                f.create_group("entry")
            with pytest.raises(KeyError):
                load_dfgrams(path)
