"""
Data output utilities for pydfgram.

Functions:
    save_dfgrams: Write diffractograms and fits of a session to HDF5
    load_dfgrams: Read them back as plain dicts and arrays
"""

from pydfgram.io.hdf5_dfgram import load_dfgrams, save_dfgrams

__all__ = ["save_dfgrams", "load_dfgrams"]
