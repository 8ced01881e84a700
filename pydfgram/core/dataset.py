"""Loaded data files and their partition into clusters."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence as SequenceT, Tuple

from pydfgram.core.cluster import Cluster, Datafile, Measurement, Sequence, partition
from pydfgram.core.ranges import Range

log = logging.getLogger(__name__)


class Dataset:
    """All data files of a session, grouped into clusters.

    Clusters are rebuilt from scratch whenever a file is added or removed or
    the binning factor changes.  Rebuilding resets every ``selected`` flag
    to True.
    """

    def __init__(self, binning: int = 1):
        if binning < 1:
            raise ValueError(f"binning factor must be >= 1, got {binning}")
        self._files: List[Datafile] = []
        self._binning = binning
        self._clusters: List[Cluster] = []
        self._highlight: int = -1

    # ── files ────────────────────────────────────────────────────────────

    @property
    def files(self) -> Tuple[Datafile, ...]:
        return tuple(self._files)

    def add_file(self, name: str, measurements: SequenceT[Measurement]) -> Datafile:
        datafile = Datafile(name, list(measurements))
        size = self.image_size()
        if size is not None and datafile.image_size != size:
            raise ValueError(
                f"image size {datafile.image_size} of {name!r} differs from "
                f"session image size {size}"
            )
        self._files.append(datafile)
        log.info("Added file %r with %d measurement(s)", name, len(datafile))
        self._rebuild()
        return datafile

    def remove_file(self, i: int) -> Datafile:
        if not 0 <= i < len(self._files):
            raise IndexError(f"file index {i} out of range")
        datafile = self._files.pop(i)
        log.info("Removed file %r", datafile.name)
        self._rebuild()
        return datafile

    def clear(self) -> None:
        self._files.clear()
        self._rebuild()

    def image_size(self) -> Optional[Tuple[int, int]]:
        """Common (width, height) of all images, None without data."""
        return self._files[0].image_size if self._files else None

    # ── clusters ─────────────────────────────────────────────────────────

    @property
    def binning(self) -> int:
        return self._binning

    def set_binning(self, binning: int) -> None:
        if binning < 1:
            raise ValueError(f"binning factor must be >= 1, got {binning}")
        if binning == self._binning:
            return
        self._binning = binning
        self._rebuild()

    @property
    def clusters(self) -> Tuple[Cluster, ...]:
        return tuple(self._clusters)

    def count_clusters(self) -> int:
        return len(self._clusters)

    def cluster_at(self, i: int) -> Cluster:
        if not 0 <= i < len(self._clusters):
            raise IndexError(f"cluster index {i} out of range")
        return self._clusters[i]

    def set_selected(self, i: int, on: bool) -> None:
        self.cluster_at(i)._selected = bool(on)

    def active_clusters(self) -> List[Cluster]:
        return [c for c in self._clusters if c.selected]

    def all_active_measurements(self) -> Sequence:
        """All members of all selected clusters, as one Sequence."""
        members = [m for c in self.active_clusters() for m in c.members]
        if not members:
            raise ValueError("no active clusters")
        return Sequence(members)

    @property
    def highlight(self) -> int:
        return self._highlight

    def set_highlight(self, i: int) -> None:
        self.cluster_at(i)
        self._highlight = i

    def highlighted_cluster(self) -> Optional[Cluster]:
        if 0 <= self._highlight < len(self._clusters):
            return self._clusters[self._highlight]
        return None

    def range_inten(self) -> Range:
        rge = Range()
        for c in self._clusters:
            rge = rge.extended(c.range_inten())
        return rge

    def _rebuild(self) -> None:
        clusters: List[Cluster] = []
        for datafile in self._files:
            offset = 0
            for group in partition(datafile.measurements, self._binning):
                clusters.append(Cluster(group, datafile, len(clusters), offset, self._binning))
                offset += len(group)
        self._clusters = clusters
        if not clusters:
            self._highlight = -1
        elif not 0 <= self._highlight < len(clusters):
            self._highlight = 0
        log.debug("Partitioned %d file(s) into %d cluster(s) with binning %d",
                  len(self._files), len(clusters), self._binning)
