"""
Core reduction and fit modules for pydfgram.

This module contains:
- the data model (Metadata, Measurement, Sequence, Cluster, Dataset)
- lazy caches and angle maps
- the diffractogram builder and the fit engine
- the Session aggregate that owns all of it

Classes:
    Session: Aggregate root; all settings changes go through it
    Dfgram: Reduced curve with baseline and peak fits of one cluster
    FitOutcome: Result of one fit attempt
"""

from pydfgram.core.dfgram import Dfgram
from pydfgram.core.fit import DoubleWithError, FitOutcome
from pydfgram.core.session import Session

__all__ = ["Session", "Dfgram", "FitOutcome", "DoubleWithError"]
