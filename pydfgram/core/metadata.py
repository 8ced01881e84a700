"""
Per-measurement metadata and its averaging over a group of measurements.

A ``Metadata`` record maps attribute names to scalars (float or str).
Numeric values are averaged and tabulated; ``mon`` and ``t`` are the
normalization sources.

Averaging policy (see :func:`average_metadata`)
-----------------------------------------------
* goniometer angles ``omg``, ``tth``, ``phi``, ``chi``: arithmetic mean.
  There is no wrap-around handling; the instrument only moves by small
  amounts around a set point within one group.
* additive quantities ``mon`` (monitor count) and ``t`` (exposure time):
  sum over the members.  ``deltaMon`` and ``deltaT`` are max − min of the
  members' ``mon`` and ``t``.
* any other numeric key: arithmetic mean.
* string keys: the value of the first member.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, Sequence, Union

import numpy as np

Scalar = Union[float, str]

ADDITIVE_KEYS = ("mon", "t")
DELTA_KEYS = {"deltaMon": "mon", "deltaT": "t"}


class Metadata(Mapping):
    """Immutable attribute record of one measurement (or of a group)."""

    def __init__(self, values: Union[Mapping, None] = None, **kwargs):
        data: Dict[str, Scalar] = {}
        for key, value in dict(values or {}, **kwargs).items():
            if isinstance(value, str):
                data[str(key)] = value
            else:
                data[str(key)] = float(value)
        self._data = data

    def __getitem__(self, key: str) -> Scalar:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"Metadata({self._data!r})"

    def numeric(self, key: str) -> float:
        """Numeric value of *key*; NaN if absent or not a number."""
        value = self._data.get(key, math.nan)
        return value if isinstance(value, float) else math.nan

    @property
    def omg(self) -> float:
        return self.numeric("omg")

    @property
    def tth(self) -> float:
        return self.numeric("tth")

    def to_dict(self) -> Dict[str, Scalar]:
        return dict(self._data)


def _finite(values: Iterable[float]) -> np.ndarray:
    arr = np.asarray(list(values), dtype=float)
    return arr[np.isfinite(arr)]


def average_metadata(records: Sequence[Metadata]) -> Metadata:
    """Combine the metadata of several measurements into one record."""
    if not records:
        raise ValueError("cannot average an empty list of metadata records")
    if len(records) == 1:
        out = records[0].to_dict()
        for delta, src in DELTA_KEYS.items():
            if src in out:
                out[delta] = 0.0
        return Metadata(out)

    out: Dict[str, Scalar] = {}
    keys = []
    for md in records:
        keys.extend(k for k in md if k not in keys)

    for key in keys:
        if key in DELTA_KEYS:
            continue
        first = records[0].get(key)
        if isinstance(first, str):
            out[key] = first
            continue
        vals = _finite(md.numeric(key) for md in records)
        if vals.size == 0:
            out[key] = math.nan
        elif key in ADDITIVE_KEYS:
            out[key] = float(vals.sum())
        else:
            out[key] = float(vals.mean())

    for delta, src in DELTA_KEYS.items():
        vals = _finite(md.numeric(src) for md in records)
        if vals.size:
            out[delta] = float(vals.max() - vals.min())

    return Metadata(out)
