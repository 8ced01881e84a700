"""
Unit tests for the headless batch API.

Tests cover:
  - derive_all fills the cache and builds peak tables
  - per-cluster failures are counted, not raised, and the remaining
    clusters still get peak table rows
  - derive_all_in_background returns a Future with the same result
  - reduce_from_config: config validation, setup and HDF5 export
"""

import json

import numpy as np

from pydfgram.batch import (
    derive_all,
    derive_all_in_background,
    reduce_from_config,
    write_config,
)
from pydfgram.core.angle_map import AngleMap
from pydfgram.core.cluster import Measurement
from pydfgram.core.geometry import Geometry, ImageCut
from pydfgram.core.metadata import Metadata
from pydfgram.core.ranges import Range
from pydfgram.core.session import Session
from pydfgram.core.settings import NormMode, Params, PeakSettings
from pydfgram.io.hdf5_dfgram import load_dfgrams

GEOMETRY = Geometry(detector_distance=200.0)
SIZE = (60, 12)


def _measurements(n=4):
    tth = AngleMap(GEOMETRY, ImageCut(), SIZE, 40.0).tth
    image = 5.0 + 100.0 * np.exp(-4.0 * np.log(2.0) * (tth - 40.0) ** 2 / 9.0)
    return [Measurement(image, Metadata(tth=40.0, mon=100.0 + i)) for i in range(n)]


def _session(n=4):
    session = Session(Params(geometry=GEOMETRY))
    session.add_file("scan", _measurements(n))
    session.add_peak(PeakSettings(Range(35.0, 45.0), "Gaussian"))
    return session


class TestDeriveAll:
    def test_all_clusters(self):
        session = _session()
        seen = []
        result = derive_all(session, progress=lambda done, total: seen.append((done, total)))
        assert result["success"]
        assert result["n_dfgrams"] == 4
        assert seen[-1] == (4, 4)
        assert len(result["peak_infos"]) == 1
        assert len(result["peak_infos"][0]) == 4

    def test_failures_are_counted(self):
        session = _session()
        session.set_norm_mode(NormMode.DELTA_MONITOR)
        result = derive_all(session)
        assert not result["success"]
        assert result["n_failed"] == 4
        assert result["errors"][0][0] == 0
        assert result["peak_infos"] == [[]]

    def test_peak_tables_of_derived_clusters(self):
        """With one failing cluster, the others still get peak table rows."""
        session = _session()
        session.set_binning(3)
        session.set_norm_mode(NormMode.DELTA_MONITOR)
        result = derive_all(session)
        assert not result["success"]
        assert result["n_dfgrams"] == 1
        assert [e[0] for e in result["errors"]] == [1]
        rows = result["peak_infos"][0]
        assert [row.cluster_index for row in rows] == [0]
        assert "peak tables cover the 1 derived" in result["message"]

    def test_no_active_clusters(self):
        result = derive_all(Session())
        assert not result["success"]
        assert result["message"] == "no active clusters"

    def test_background(self):
        session = _session()
        future = derive_all_in_background(session)
        result = future.result(timeout=60)
        assert result["success"]
        assert result["n_dfgrams"] == 4


class TestReduceFromConfig:
    def test_round_trip(self, tmp_path):
        template = _session()
        template.set_binning(2)
        config = tmp_path / "config.json"
        write_config(template, config)
        out = tmp_path / "out.h5"

        result = reduce_from_config([("scan", _measurements())], config, out)
        assert result["success"], result["message"]
        assert result["n_dfgrams"] == 2
        assert result["session"].binning == 2
        assert load_dfgrams(out)["n_dfgrams"] == 2

    def test_missing_header(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"session": {}}))
        result = reduce_from_config([("scan", _measurements())], config)
        assert not result["success"]

    def test_missing_session_section(self, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"_pydfgram_config": {}}))
        result = reduce_from_config([("scan", _measurements())], config)
        assert not result["success"]
        assert "session" in result["message"]

    def test_bad_data(self, tmp_path):
        config = tmp_path / "config.json"
        write_config(_session(), config)
        result = reduce_from_config([("scan", [])], config)
        assert not result["success"]
