# src/strawbkg/clustering/tnt.py
from __future__ import annotations
from collections import deque
from typing import Dict, Optional

import numpy as np

from ..config.schemas import TNTCfg, TNTBCfg
from ..physics.clusters import BkgCluster
from ..physics.hits import HitArrays
from .common import CentroidCache, combined_distance, nearest, separation, time_order

_BLOCK = 512  # rows per pairwise-distance block


def neighbor_lists(arrays: HitArrays, distance: float, time: float) -> Dict[int, np.ndarray]:
    """
    For every valid hit, the ascending indices of the other valid hits within
    `distance` (transverse) and `time` of it.
    """
    idx = np.flatnonzero(arrays.valid)
    xy = arrays.pos[idx, :2]
    t = arrays.t_ns[idx]
    d2max = distance * distance
    out: Dict[int, np.ndarray] = {}
    for start in range(0, len(idx), _BLOCK):
        stop = min(start + _BLOCK, len(idx))
        dxy = xy[start:stop, None, :] - xy[None, :, :]
        d2 = (dxy * dxy).sum(axis=-1)
        dt = np.abs(t[start:stop, None] - t[None, :])
        close = (d2 <= d2max) & (dt <= time)
        for r in range(stop - start):
            close[r, start + r] = False
            out[int(idx[start + r])] = idx[np.flatnonzero(close[r])]
    return out


def _core_clusters(arrays: HitArrays, cfg: TNTCfg) -> list[BkgCluster]:
    neighbors = neighbor_lists(arrays, cfg.core_distance, cfg.core_time)
    core = {i for i, nb in neighbors.items() if len(nb) >= cfg.min_neighbors}

    clusters: list[BkgCluster] = []
    seen: set[int] = set()
    for seed in sorted(core):
        if seed in seen:
            continue
        component = [seed]
        seen.add(seed)
        queue = deque([seed])
        while queue:
            i = queue.popleft()
            for j in neighbors[i]:
                j = int(j)
                if j in core and j not in seen:
                    seen.add(j)
                    component.append(j)
                    queue.append(j)
        cluster = BkgCluster()
        cluster.add_hits(sorted(component), arrays)
        clusters.append(cluster)
    return clusters


def _association_scale(arrays: HitArrays, cfg: TNTBCfg) -> np.ndarray:
    sigma = np.hypot(arrays.wres, arrays.tres)
    return np.clip(sigma / cfg.reference_error, cfg.min_scale, 1.0)


def cluster_tnt(arrays: HitArrays, cfg: TNTCfg, scale: Optional[np.ndarray] = None) -> list[BkgCluster]:
    """
    Two-Niveau Threshold clustering.

    Pass 1 connects dense hits (>= min_neighbors within the core window) into
    core clusters. Pass 2 attaches the remaining hits, in time order, to the
    nearest cluster within the association window, scaled per hit by `scale`
    when given. Leftovers become singletons or are dropped.
    """
    clusters = _core_clusters(arrays, cfg)
    assigned = np.zeros(len(arrays), dtype=bool)
    cache = CentroidCache(len(arrays))
    for j, c in enumerate(clusters):
        assigned[c.indices] = True
        cache.set(j, c.pos, c.t_ns)

    leftovers: list[int] = []
    for i in time_order(arrays):
        if assigned[i]:
            continue
        j = None
        if clusters:
            s = 1.0 if scale is None else float(scale[i])
            cxy, ct = cache.view()
            drho, dt = separation(arrays.pos[i, :2], float(arrays.t_ns[i]), cxy, ct)
            allowed = (drho <= s * cfg.assoc_distance) & (np.abs(dt) <= cfg.assoc_time)
            j = nearest(combined_distance(drho, dt, cfg.time_scale), allowed, cfg.tie_tolerance)
        if j is None:
            leftovers.append(int(i))
            continue
        clusters[j].add_hit(int(i), arrays)
        cache.set(j, clusters[j].pos, clusters[j].t_ns)
        assigned[i] = True

    if cfg.keep_singletons:
        for i in sorted(leftovers):
            cluster = BkgCluster()
            cluster.add_hit(i, arrays)
            clusters.append(cluster)
    return clusters


def cluster_tntb(arrays: HitArrays, cfg: TNTBCfg) -> list[BkgCluster]:
    """TNT with the association distance shrunk for precise hits."""
    return cluster_tnt(arrays, cfg, scale=_association_scale(arrays, cfg))
