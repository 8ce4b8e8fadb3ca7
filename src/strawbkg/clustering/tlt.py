from __future__ import annotations

import numpy as np

from ..config.schemas import TLTCfg
from ..physics.clusters import BkgCluster
from ..physics.hits import HitArrays
from .common import CentroidCache, combined_distance, nearest, separation, time_order


def cluster_tlt(arrays: HitArrays, cfg: TLTCfg) -> list[BkgCluster]:
    """
    Two-Level Threshold clustering.

    Hits are visited in time order. Each joins the nearest cluster (combined
    position/time distance) whose centre lies within both cfg.distance and
    cfg.time; otherwise it seeds a new cluster.
    """
    clusters: list[BkgCluster] = []
    cache = CentroidCache(len(arrays))

    for i in time_order(arrays):
        j = None
        if clusters:
            cxy, ct = cache.view()
            drho, dt = separation(arrays.pos[i, :2], float(arrays.t_ns[i]), cxy, ct)
            allowed = (drho <= cfg.distance) & (np.abs(dt) <= cfg.time)
            j = nearest(combined_distance(drho, dt, cfg.time_scale), allowed, cfg.tie_tolerance)

        if j is None:
            clusters.append(BkgCluster())
            j = len(clusters) - 1
        clusters[j].add_hit(int(i), arrays)
        cache.set(j, clusters[j].pos, clusters[j].t_ns)

    return clusters
