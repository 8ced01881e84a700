"""
Measurements and their grouping into Sequences and Clusters.

Measurements are owned by the ``Datafile`` they were loaded with; Sequences
and Clusters only refer to them.  A Cluster is the unit of analysis: one
diffractogram (per γ slice) is derived from each Cluster.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence as SequenceT, Tuple

import numpy as np

from pydfgram.core.metadata import Metadata, average_metadata
from pydfgram.core.ranges import Range

log = logging.getLogger(__name__)


@dataclass(eq=False)
class Measurement:
    """One raw detector image with its metadata.

    ``image`` is a 2-D array indexed ``[row, column]``; it is stored as a
    read-only float array.
    """

    image: np.ndarray
    metadata: Metadata = field(default_factory=Metadata)

    def __post_init__(self):
        image = np.array(self.image, dtype=float)
        if image.ndim != 2 or image.size == 0:
            raise ValueError(f"Measurement image must be a non-empty 2-D array, got shape {image.shape}")
        image.setflags(write=False)
        self.image = image
        if not isinstance(self.metadata, Metadata):
            self.metadata = Metadata(self.metadata)

    @property
    def size(self) -> Tuple[int, int]:
        """Image size as (width, height)."""
        return self.image.shape[1], self.image.shape[0]

    @property
    def mid_tth(self) -> float:
        """Detector arm angle 2θ; 0 when the metadata does not carry one."""
        tth = self.metadata.tth
        return 0.0 if np.isnan(tth) else tth

    def range_inten(self) -> Range:
        return Range.of(self.image)


@dataclass(eq=False)
class Datafile:
    """The measurements loaded from one file, in acquisition order."""

    name: str
    measurements: List[Measurement]

    def __post_init__(self):
        if not self.measurements:
            raise ValueError(f"file {self.name!r} contains no measurements")
        self.measurements = list(self.measurements)
        sizes = {m.size for m in self.measurements}
        if len(sizes) != 1:
            raise ValueError(f"file {self.name!r} mixes image sizes {sorted(sizes)}")

    @property
    def image_size(self) -> Tuple[int, int]:
        return self.measurements[0].size

    def __len__(self) -> int:
        return len(self.measurements)


class Sequence:
    """An ordered group of one or more measurements of equal image size.

    Metadata averages, monitor/time sums and the intensity range are
    computed once, on construction.
    """

    def __init__(self, members: SequenceT[Measurement]):
        members = list(members)
        if not members:
            raise ValueError("a Sequence needs at least one Measurement")
        size = members[0].size
        for m in members[1:]:
            if m.size != size:
                raise ValueError(
                    f"image size mismatch inside Sequence: {m.size} != {size}"
                )
        self._members: Tuple[Measurement, ...] = tuple(members)
        self._image_size = size
        self._metadata = average_metadata([m.metadata for m in members])
        rge = Range()
        for m in members:
            rge = rge.extended(m.range_inten())
        self._range_inten = rge

    @property
    def members(self) -> Tuple[Measurement, ...]:
        return self._members

    def __len__(self) -> int:
        return len(self._members)

    @property
    def size(self) -> int:
        return len(self._members)

    @property
    def image_size(self) -> Tuple[int, int]:
        return self._image_size

    @property
    def avg_metadata(self) -> Metadata:
        return self._metadata

    @property
    def monitor_count(self) -> float:
        return self._metadata.numeric("mon")

    @property
    def delta_monitor_count(self) -> float:
        return self._metadata.numeric("deltaMon")

    @property
    def time(self) -> float:
        return self._metadata.numeric("t")

    @property
    def delta_time(self) -> float:
        return self._metadata.numeric("deltaT")

    def range_inten(self) -> Range:
        return self._range_inten

    def range_gma_full(self, angle_map_for: Callable) -> Range:
        """Union of the γ ranges of the members' angle maps."""
        rge = Range()
        for m in self._members:
            rge = rge.extended(angle_map_for(m).range_gma())
        return rge

    def range_tth(self, angle_map_for: Callable, gamma_range: Optional[Range] = None) -> Range:
        """Union of the 2θ ranges of the members, optionally within a γ sector."""
        rge = Range()
        for m in self._members:
            rge = rge.extended(angle_map_for(m).range_tth(gamma_range))
        return rge


class Cluster(Sequence):
    """A Sequence cut out of one file, with its position bookkeeping."""

    def __init__(
        self,
        members: SequenceT[Measurement],
        file: Datafile,
        index: int,
        offset: int,
        group_size: int,
    ):
        super().__init__(members)
        if offset < 0 or offset + len(self) > len(file):
            raise ValueError(
                f"cluster offset {offset} with size {len(self)} does not fit "
                f"file {file.name!r} of {len(file)} measurements"
            )
        self._file = file
        self._index = index
        self._offset = offset
        self._group_size = group_size
        self._selected = True

    @property
    def file(self) -> Datafile:
        return self._file

    @property
    def index(self) -> int:
        """Position among all clusters of the dataset."""
        return self._index

    @property
    def offset(self) -> int:
        """Index of the first member within its file."""
        return self._offset

    @property
    def selected(self) -> bool:
        """Included in averages and peak tables; changed through the Session."""
        return self._selected

    def is_incomplete(self) -> bool:
        return len(self) < self._group_size

    def __repr__(self):
        return (f"Cluster(index={self._index}, file={self._file.name!r}, "
                f"offset={self._offset}, size={len(self)})")


def partition(measurements: SequenceT[Measurement], binning: int) -> List[List[Measurement]]:
    """Split *measurements* into consecutive groups of *binning* elements.

    The last group is shorter when ``len(measurements)`` is not a multiple of
    *binning*; it is kept, not dropped.
    """
    if binning < 1:
        raise ValueError(f"binning factor must be >= 1, got {binning}")
    items = list(measurements)
    return [items[i:i + binning] for i in range(0, len(items), binning)]
