"""
pydfgram.batch — headless (no-GUI) reduction API for scripting and automation.

Typical usage
-------------
Derive everything configured in a session:
    from pydfgram.batch import derive_all
    result = derive_all(session)
    if result['success']:
        print(result['n_dfgrams'], "diffractograms")

Keep an interactive thread responsive:
    future = derive_all_in_background(session, progress=print)
    ...
    result = future.result()

Reduce loaded files with settings from a config file and export to HDF5:
    from pydfgram.batch import reduce_from_config
    result = reduce_from_config([("scan1", measurements)], "pydfgram_config.json",
                                "scan1_dfgrams.h5")

The core never parses data files; callers hand in ``(name, measurements)``
pairs produced by their own loaders.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence as SequenceT, Tuple, Union

from pydfgram import __version__
from pydfgram.core.cluster import Measurement
from pydfgram.core.peak_info import make_peak_info
from pydfgram.core.session import Session

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
FileSpec = Tuple[str, SequenceT[Measurement]]

CONFIG_HEADER = '_pydfgram_config'

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _load_config(config_file: Union[str, Path]) -> Optional[Dict]:
    """Load and validate a pydfgram JSON config file.  Returns None on failure."""
    config_file = Path(config_file)
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        log.error("Cannot read config file '%s': %s", config_file, e)
        return None

    if not isinstance(config, dict) or CONFIG_HEADER not in config:
        log.error("'%s' is not a pydfgram configuration file (missing '%s' header).",
                  config_file, CONFIG_HEADER)
        return None

    return config


def write_config(session: Session, config_file: Union[str, Path]) -> None:
    """Write the settings of *session* as a config file for :func:`reduce_from_config`."""
    config = {CONFIG_HEADER: {'version': __version__}, 'session': session.to_dict()}
    with open(config_file, 'w') as f:
        json.dump(config, f, indent=2)
    log.info("Wrote config file %s", config_file)


# ---------------------------------------------------------------------------
# derive_all: every diffractogram (and peak table) of a session
# ---------------------------------------------------------------------------

def derive_all(
    session: Session,
    progress: Optional[ProgressCallback] = None,
    with_peaks: bool = True,
) -> Dict:
    """Compute the diffractogram of every selected cluster and γ slice.

    Failures of single clusters (e.g. a zero normalization denominator) are
    logged and counted; the remaining clusters are still processed, and the
    peak tables hold one row per diffractogram that could be derived.

    Parameters
    ----------
    session : Session
        Settings must not change while this runs.
    progress : callable or None
        Called as ``progress(done, total)`` after each diffractogram.
    with_peaks : bool
        Also build the peak tables (one list of ``PeakInfo`` per peak, over
        the derived diffractograms).

    Returns
    -------
    dict
        Always contains ``'success'`` (bool) and ``'message'`` (str), plus
        ``'n_dfgrams'``, ``'n_failed'``, ``'errors'`` (list of
        ``(cluster_index, slice, message)``) and ``'peak_infos'``.
    """
    clusters = session.active_clusters()
    n_slices = session.params.num_slices
    total = len(clusters) * n_slices
    if total == 0:
        return {'success': False, 'message': 'no active clusters',
                'n_dfgrams': 0, 'n_failed': 0, 'errors': [], 'peak_infos': []}

    log.info("Deriving %d diffractogram(s)", total)
    errors: List[Tuple[int, int, str]] = []
    derived = []
    done = 0
    for cluster in clusters:
        for i_slice in range(n_slices):
            try:
                derived.append((cluster, i_slice, session.dfgram(cluster, i_slice)))
            except ValueError as exc:
                log.warning("Cluster %d, slice %d: %s", cluster.index, i_slice, exc)
                errors.append((cluster.index, i_slice, str(exc)))
            done += 1
            if progress is not None:
                progress(done, total)

    peak_tables = []
    if with_peaks:
        peak_tables = [
            [make_peak_info(cluster, i_slice, dfgram, i_peak)
             for cluster, i_slice, dfgram in derived]
            for i_peak in range(len(session.peaks))
        ]

    n_ok = total - len(errors)
    if not errors:
        message = f"{n_ok} diffractogram(s) derived"
    else:
        message = f"{len(errors)} of {total} diffractogram(s) failed"
        if peak_tables and n_ok:
            message += f"; peak tables cover the {n_ok} derived"
    return {
        'success': not errors,
        'message': message,
        'n_dfgrams': n_ok,
        'n_failed': len(errors),
        'errors': errors,
        'peak_infos': peak_tables,
    }


def derive_all_in_background(
    session: Session,
    progress: Optional[ProgressCallback] = None,
    with_peaks: bool = True,
) -> "Future[Dict]":
    """Run :func:`derive_all` on one worker thread.

    The caller must not change session settings until the returned future
    is done; the worker is the only writer of the diffractogram cache
    meanwhile.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='pydfgram-derive')
    try:
        return executor.submit(derive_all, session, progress, with_peaks)
    finally:
        executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# reduce_from_config: headless run of loaded files
# ---------------------------------------------------------------------------

def reduce_from_config(
    files: Iterable[FileSpec],
    config_file: Union[str, Path],
    export_path: Optional[Union[str, Path]] = None,
    correction: Optional[FileSpec] = None,
    progress: Optional[ProgressCallback] = None,
) -> Dict:
    """Build a session from a config file, derive everything and export.

    Parameters
    ----------
    files : iterable of (name, measurements)
        Data files, already loaded.
    config_file : str or Path
        JSON file with a ``'_pydfgram_config'`` header and a ``'session'``
        section in :meth:`Session.to_dict` layout (see :func:`write_config`).
    export_path : str, Path or None
        HDF5 file to write the results into; nothing is written if None.
    correction : (name, measurements) or None
        Correction set images.

    Returns
    -------
    dict
        Result of :func:`derive_all` with ``'session'`` and, when exported,
        ``'export_path'`` added.  On a config or data error, a dict with
        ``'success': False`` and a ``'message'``.
    """
    config_file = Path(config_file)
    config = _load_config(config_file)
    if config is None:
        return {'success': False, 'message': f"Cannot load config: {config_file}"}

    session_cfg = config.get('session')
    if session_cfg is None:
        msg = f"No 'session' section in '{config_file.name}'"
        log.error(msg)
        return {'success': False, 'message': msg}

    session = Session()
    try:
        for name, measurements in files:
            session.add_file(name, measurements)
        if correction is not None:
            session.load_correction(*correction)
        session.settings_from_dict(session_cfg)
    except (ValueError, KeyError) as exc:
        log.error("Cannot set up session from '%s': %s", config_file.name, exc)
        return {'success': False, 'message': str(exc)}

    result = derive_all(session, progress)
    result['session'] = session

    if export_path is not None and result['success']:
        from pydfgram.io.hdf5_dfgram import save_dfgrams
        save_dfgrams(Path(export_path), session)
        result['export_path'] = Path(export_path)

    return result
