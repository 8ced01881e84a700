"""
pydfgram: reduction of 2-D diffraction images to diffractograms and peak fits

This package groups detector images into clusters, maps every pixel to its
scattering angles, bins intensities into 1-D diffractograms and fits a
polynomial baseline and peak shapes to them.

Modules:
    core: Data model, angle maps, diffractogram builder, fit engine, Session
    io: HDF5 export of diffractograms and fitted peaks
    state: JSON persistence of session settings
    batch: Headless derivation and config-driven runs

Example:
    >>> from pydfgram import Session, PeakSettings, Range
    >>> session = Session()
    >>> session.add_file("scan1", measurements)
    >>> session.add_peak(PeakSettings(Range(42.0, 46.0), "Gaussian"))
    >>> rows = session.peak_infos(0)
    >>> print(rows[0].center)
"""

__version__ = "0.1.0"

from pydfgram.core.cluster import Measurement
from pydfgram.core.metadata import Metadata
from pydfgram.core.ranges import Range, Ranges
from pydfgram.core.settings import Baseline, NormMode, Params, PeakSettings
from pydfgram.core.session import Session
from pydfgram.batch import derive_all, derive_all_in_background, reduce_from_config

__all__ = [
    "Measurement",
    "Metadata",
    "Range",
    "Ranges",
    "Baseline",
    "NormMode",
    "Params",
    "PeakSettings",
    "Session",
    "derive_all",
    "derive_all_in_background",
    "reduce_from_config",
]
