"""
HDF5 save / load of diffractograms and their fits.

Group path inside the file:
    entry/dfgram_results   (NXprocess)

Structure
---------
dfgram_results/
    (attrs)  n_dfgrams, n_slices, n_peaks, norm_mode, polynom_degree,
             timestamp, program, NX_class
    baseline_ranges      — (N, 2) float64, 2θ
    peak_01/ … peak_NN/  — settings only
        (attrs)  function, range_min, range_max
    dfgram_0001/ … dfgram_NNNN/
        (attrs)  cluster, slice, file, offset, size, gamma_min, gamma_max
        tth                 — 1-D float64, bin centers in degrees
        intensity           — 1-D float64, normalized intensity
        background          — 1-D float64, baseline on tth (zeros if none)
        intensity_minus_bg  — 1-D float64
        metadata/
            (attrs)  averaged metadata of the cluster
        background_params/, background_params_std/
            p0 … pN   — float64 scalar each (only for a successful fit)
        peak_01/ … peak_NN/
            (attrs)  function, success, message
            raw/
                (attrs)  count, center, height, fwhm, centroid, intensity
            params/, params_std/
                height, center, fwhm[, eta]  — float64 scalar each
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import h5py
import numpy as np

from pydfgram.core.dfgram import Dfgram
from pydfgram.core.fit import FitOutcome

log = logging.getLogger(__name__)

_GROUP = "entry/dfgram_results"
_SCRATCH = "entry/dfgram_results_partial"
_PROGRAM = "pydfgram"
_RAW_KEYS = ("count", "center", "height", "fwhm", "centroid", "intensity")


def _write_fit(grp: h5py.Group, name: str, fit: FitOutcome) -> None:
    p_grp = grp.create_group(name)
    ps_grp = grp.create_group(name + "_std")
    for pn, p in fit.as_dict().items():
        p_grp.create_dataset(pn, data=float(p.value), dtype="float64")
        ps_grp.create_dataset(pn, data=float(p.error), dtype="float64")


def _write_dfgram(grp: h5py.Group, dfgram: Dfgram) -> None:
    curve = dfgram.curve
    for key, data in (
        ("tth", curve.xs),
        ("intensity", curve.ys),
        ("background", dfgram.get_bg_as_curve().ys),
        ("intensity_minus_bg", dfgram.get_curve_minus_bg().ys),
    ):
        grp.create_dataset(key, data=np.asarray(data, float), dtype="float64")
    grp["tth"].attrs["units"] = "deg"

    if dfgram.bg_fit is not None and dfgram.bg_fit.success:
        _write_fit(grp, "background_params", dfgram.bg_fit)

    for i in range(dfgram.num_peaks):
        pk_grp = grp.create_group(f"peak_{i + 1:02d}")
        fit = dfgram.peak_fit(i)
        pk_grp.attrs["function"] = dfgram.peaks[i].function_name
        pk_grp.attrs["success"] = bool(fit.success) if fit is not None else False
        pk_grp.attrs["message"] = fit.message if fit is not None else ""
        raw = dfgram.raw_outcome(i)
        raw_grp = pk_grp.create_group("raw")
        for key in _RAW_KEYS:
            raw_grp.attrs[key] = getattr(raw, key)
        if fit is not None and fit.success:
            _write_fit(pk_grp, "params", fit)


def _write_results(grp: h5py.Group, session, units, averages) -> None:
    params = session.params
    baseline = session.baseline
    peaks = session.peaks

    grp.attrs["NX_class"] = "NXprocess"
    grp.attrs["program"] = _PROGRAM
    grp.attrs["timestamp"] = datetime.now().isoformat()
    grp.attrs["n_slices"] = params.num_slices
    grp.attrs["n_peaks"] = len(peaks)
    grp.attrs["norm_mode"] = params.norm_mode.value
    grp.attrs["polynom_degree"] = baseline.polynom_degree
    grp.create_dataset(
        "baseline_ranges",
        data=np.asarray(baseline.ranges.to_list(), float).reshape(-1, 2),
        dtype="float64",
    )
    for i, peak in enumerate(peaks):
        pk = grp.create_group(f"peak_{i + 1:02d}")
        pk.attrs["function"] = peak.function_name
        pk.attrs["range_min"] = peak.range.min
        pk.attrs["range_max"] = peak.range.max

    for n, (cluster, i_slice, dfgram) in enumerate(units, start=1):
        d_grp = grp.create_group(f"dfgram_{n:04d}")
        d_grp.attrs["cluster"] = cluster.index
        d_grp.attrs["slice"] = i_slice
        d_grp.attrs["file"] = cluster.file.name
        d_grp.attrs["offset"] = cluster.offset
        d_grp.attrs["size"] = cluster.size
        d_grp.attrs["gamma_min"] = dfgram.gamma_range.min
        d_grp.attrs["gamma_max"] = dfgram.gamma_range.max
        md_grp = d_grp.create_group("metadata")
        for key, value in cluster.avg_metadata.items():
            md_grp.attrs[key] = value
        _write_dfgram(d_grp, dfgram)

    for i_slice, dfgram in enumerate(averages):
        a_grp = grp.create_group(f"average_{i_slice + 1:02d}")
        a_grp.attrs["slice"] = i_slice
        a_grp.attrs["gamma_min"] = dfgram.gamma_range.min
        a_grp.attrs["gamma_max"] = dfgram.gamma_range.max
        _write_dfgram(a_grp, dfgram)

    grp.attrs["n_dfgrams"] = len(units)


# ===========================================================================
# Save
# ===========================================================================

def save_dfgrams(filepath: Path, session, include_average: bool = False) -> int:
    """Write the diffractograms of all selected clusters and γ slices.

    Every diffractogram is computed before the file is touched, and the
    results are written into a scratch group that replaces
    ``entry/dfgram_results`` only once complete.  A failing computation or
    write therefore leaves earlier results in the file as they were.

    Parameters
    ----------
    filepath : Path
        HDF5 file to write into; created if missing.  An existing
        ``entry/dfgram_results`` group is replaced.
    session : Session
        Source of data and settings; diffractograms are computed on demand.
    include_average : bool
        Also write the averaged diffractogram of every slice as
        ``average_NN`` groups.

    Returns
    -------
    int
        Number of diffractograms written.

    Raises
    ------
    ValueError
        If a diffractogram cannot be computed (e.g. zero normalization
        denominator); the file is then left unchanged.
    """
    filepath = Path(filepath)
    n_slices = session.params.num_slices
    units = [
        (cluster, i_slice, session.dfgram(cluster, i_slice))
        for cluster in session.active_clusters()
        for i_slice in range(n_slices)
    ]
    averages = [session.avg_dfgram(i) for i in range(n_slices)] if include_average else []

    with h5py.File(filepath, "a") as f:
        if _SCRATCH in f:
            del f[_SCRATCH]
        grp = f.create_group(_SCRATCH)
        try:
            _write_results(grp, session, units, averages)
        except Exception:
            del f[_SCRATCH]
            raise
        if _GROUP in f:
            del f[_GROUP]
        f.move(_SCRATCH, _GROUP)

    log.info("Saved %d diffractogram(s) to %s", len(units), filepath)
    return len(units)


# ===========================================================================
# Load
# ===========================================================================

def _read_params(grp: h5py.Group, name: str) -> Dict[str, Dict[str, float]]:
    out: Dict[str, Dict[str, float]] = {}
    if name not in grp:
        return out
    std = grp[name + "_std"] if name + "_std" in grp else {}
    for pn, ds in grp[name].items():
        out[pn] = {
            "value": float(ds[()]),
            "error": float(std[pn][()]) if pn in std else np.nan,
        }
    return out


def _read_dfgram(grp: h5py.Group, n_peaks: int) -> Dict:
    def _arr(key) -> Optional[np.ndarray]:
        return np.array(grp[key], dtype=float) if key in grp else None

    peaks: List[Dict] = []
    for i in range(1, n_peaks + 1):
        key = f"peak_{i:02d}"
        if key not in grp:
            continue
        pk = grp[key]
        peaks.append({
            "function": str(pk.attrs.get("function", "")),
            "success": bool(pk.attrs.get("success", False)),
            "message": str(pk.attrs.get("message", "")),
            "raw": {k: float(v) for k, v in pk["raw"].attrs.items()} if "raw" in pk else {},
            "params": _read_params(pk, "params"),
        })

    return {
        "slice": int(grp.attrs.get("slice", 0)),
        "gamma_range": (float(grp.attrs.get("gamma_min", np.nan)),
                        float(grp.attrs.get("gamma_max", np.nan))),
        "tth": _arr("tth"),
        "intensity": _arr("intensity"),
        "background": _arr("background"),
        "intensity_minus_bg": _arr("intensity_minus_bg"),
        "background_params": _read_params(grp, "background_params"),
        "peaks": peaks,
    }


def load_dfgrams(filepath: Path) -> Dict:
    """Load diffractograms written by :func:`save_dfgrams`.

    Returns
    -------
    dict with keys:
        n_dfgrams, n_slices, n_peaks, norm_mode, polynom_degree, timestamp,
        baseline_ranges, peak_settings (list of dicts),
        dfgrams (list of dicts, each with cluster, file, offset, size,
        metadata, slice, gamma_range, tth, intensity, background,
        intensity_minus_bg, background_params, peaks),
        averages (list of dicts, empty unless saved)

    Raises
    ------
    KeyError
        If the ``entry/dfgram_results`` group is not found.
    """
    filepath = Path(filepath)

    with h5py.File(filepath, "r") as f:
        if _GROUP not in f:
            raise KeyError(f"No dfgram_results group in {filepath}")
        grp = f[_GROUP]
        attrs = dict(grp.attrs)
        n_dfgrams = int(attrs.get("n_dfgrams", 0))
        n_peaks = int(attrs.get("n_peaks", 0))
        n_slices = int(attrs.get("n_slices", 1))

        peak_settings = []
        for i in range(1, n_peaks + 1):
            pk = grp[f"peak_{i:02d}"]
            peak_settings.append({
                "function": str(pk.attrs["function"]),
                "range": [float(pk.attrs["range_min"]), float(pk.attrs["range_max"])],
            })

        dfgrams = []
        for i in range(1, n_dfgrams + 1):
            d_grp = grp[f"dfgram_{i:04d}"]
            d = _read_dfgram(d_grp, n_peaks)
            d.update({
                "cluster": int(d_grp.attrs["cluster"]),
                "file": str(d_grp.attrs.get("file", "")),
                "offset": int(d_grp.attrs.get("offset", 0)),
                "size": int(d_grp.attrs.get("size", 1)),
                "metadata": {
                    k: (v if isinstance(v, str) else float(v))
                    for k, v in d_grp["metadata"].attrs.items()
                } if "metadata" in d_grp else {},
            })
            dfgrams.append(d)

        averages = [
            _read_dfgram(grp[f"average_{i:02d}"], n_peaks)
            for i in range(1, n_slices + 1)
            if f"average_{i:02d}" in grp
        ]

        result = {
            "n_dfgrams": n_dfgrams,
            "n_slices": n_slices,
            "n_peaks": n_peaks,
            "norm_mode": str(attrs.get("norm_mode", "none")),
            "polynom_degree": int(attrs.get("polynom_degree", 0)),
            "timestamp": str(attrs.get("timestamp", "")),
            "baseline_ranges": np.array(grp["baseline_ranges"], dtype=float),
            "peak_settings": peak_settings,
            "dfgrams": dfgrams,
            "averages": averages,
        }

    log.info("Loaded %d diffractogram(s) from %s", n_dfgrams, filepath)
    return result
