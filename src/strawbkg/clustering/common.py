# src/strawbkg/clustering/common.py
from __future__ import annotations
from typing import Optional

import numpy as np

from ..physics.hits import HitArrays


def time_order(arrays: HitArrays) -> np.ndarray:
    """Indices of valid hits sorted by time, ties broken by input index."""
    idx = np.flatnonzero(arrays.valid)
    order = np.lexsort((idx, arrays.t_ns[idx]))
    return idx[order]


def separation(xy: np.ndarray, t: float, cxy: np.ndarray, ct: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Transverse distance and signed time difference between one hit and k centres.

    xy: (2,), cxy: (k, 2), ct: (k,)
    """
    d = cxy - xy[None, :]
    drho = np.sqrt(d[:, 0] * d[:, 0] + d[:, 1] * d[:, 1])
    return drho, t - ct


def combined_distance(drho: np.ndarray, dt: np.ndarray, time_scale: float) -> np.ndarray:
    return np.hypot(drho, time_scale * dt)


def nearest(dist: np.ndarray, allowed: np.ndarray, tie_tolerance: float) -> Optional[int]:
    """
    Index of the smallest allowed distance, or None.

    Candidates within tie_tolerance of the minimum resolve to the lowest index.
    """
    if not np.any(allowed):
        return None
    d = np.where(allowed, dist, np.inf)
    dmin = d.min()
    return int(np.flatnonzero(d <= dmin + tie_tolerance)[0])


class CentroidCache:
    """Transverse position and time of each cluster, kept in step with the clusters."""

    def __init__(self, capacity: int):
        self.xy = np.empty((max(capacity, 1), 2), dtype=np.float64)
        self.t = np.empty(max(capacity, 1), dtype=np.float64)
        self.k = 0

    def set(self, j: int, pos: np.ndarray, t_ns: float) -> None:
        self.xy[j] = pos[:2]
        self.t[j] = t_ns
        if j >= self.k:
            self.k = j + 1

    def view(self) -> tuple[np.ndarray, np.ndarray]:
        return self.xy[: self.k], self.t[: self.k]
