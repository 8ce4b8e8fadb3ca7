# src/strawbkg/physics/clusters.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List, Set

import numpy as np

from ..errors import DataConsistencyError
from .flags import BkgClusterFlag, HitFlag
from .hits import HitArrays


@dataclass(frozen=True, slots=True)
class ClusterMember:
    """Index into the event's HitCollection plus the hit flag at build time."""
    index: int
    flag: HitFlag


@dataclass
class BkgCluster:
    """
    Spatial/temporal group of hits.

    pos and t_ns are the multiplicity-weighted means of the member hits and are
    recomputed by every membership change.
    """
    pos: np.ndarray = field(default_factory=lambda: np.zeros(3))
    t_ns: float = 0.0
    hits: List[ClusterMember] = field(default_factory=list)
    flag: BkgClusterFlag = BkgClusterFlag(0)
    _members: Set[int] = field(default_factory=set, repr=False, compare=False)

    @property
    def indices(self) -> np.ndarray:
        return np.fromiter((m.index for m in self.hits), dtype=np.int64, count=len(self.hits))

    def add_hit(self, index: int, arrays: HitArrays) -> None:
        self.add_hits((index,), arrays)

    def add_hits(self, indices: Iterable[int], arrays: HitArrays) -> None:
        n = len(arrays)
        for i in indices:
            i = int(i)
            if i < 0 or i >= n:
                raise DataConsistencyError(f"Cluster member index {i} outside hit collection of size {n}")
            if i in self._members:
                raise DataConsistencyError(f"Hit {i} is already a member of this cluster")
            self.hits.append(ClusterMember(i, HitFlag(int(arrays.flag[i]))))
            self._members.add(i)
        self.update_centroid(arrays)

    def update_centroid(self, arrays: HitArrays) -> None:
        if not self.hits:
            self.pos = np.zeros(3)
            self.t_ns = 0.0
            return
        idx = self.indices
        w = arrays.nsh[idx].astype(np.float64)
        if w.sum() <= 0.0:
            w = np.ones_like(w)
        wsum = w.sum()
        self.pos = (w[:, None] * arrays.pos[idx]).sum(axis=0) / wsum
        self.t_ns = float((w * arrays.t_ns[idx]).sum() / wsum)

    @property
    def rho(self) -> float:
        """Transverse radius of the cluster centre."""
        return float(np.hypot(self.pos[0], self.pos[1]))
