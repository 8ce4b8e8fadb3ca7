from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ..config.schemas import QualityCfg
from ..errors import ConfigError, DataConsistencyError
from ..mva.classifier import MLPClassifier, check_input_names
from ..physics.clusters import BkgCluster
from ..physics.flags import HitFlag
from ..physics.hits import HitArrays, HitCollection
from ..physics.quality import FEATURE_NAMES, BkgQual, BkgQualStatus
from ..physics.stats import clamped_std, largest_gap, mean_var, weighted_mean_var


@dataclass
class QualityEvaluator:
    """
    Fill a BkgQual for one cluster and, when a classifier is attached, score it.

    evaluate() reads the hit collection and the cluster only.
    """
    cfg: QualityCfg
    classifier: Optional[MLPClassifier] = None
    feature_names: Optional[Sequence[str]] = None

    def __post_init__(self):
        self._cperr2 = float(self.cfg.cluster_position_error) ** 2
        if self.classifier is not None:
            names = self.classifier.input_names if self.feature_names is None else tuple(self.feature_names)
            check_input_names(self.classifier, names)
            unknown = [n for n in names if n not in FEATURE_NAMES]
            if unknown:
                raise ConfigError(f"Unknown classifier input(s) {unknown}; expected names from {FEATURE_NAMES}")
            self.feature_names = names

    # --- counting -----------------------------------------------------------

    @staticmethod
    def _active_members(cluster: BkgCluster) -> tuple[np.ndarray, np.ndarray]:
        """Indices of active members and a mask of which of them are stereo."""
        idx, stereo = [], []
        for m in cluster.hits:
            if m.flag.has_all(HitFlag.ACTIVE):
                idx.append(m.index)
                stereo.append(m.flag.has_all(HitFlag.STEREO))
        return np.asarray(idx, dtype=np.int64), np.asarray(stereo, dtype=bool)

    def count_hits(self, cluster: BkgCluster, arrays: HitArrays) -> tuple[int, int]:
        """Active and active-stereo hit counts, weighted by multiplicity."""
        idx, stereo = self._active_members(cluster)
        nsh = arrays.nsh[idx]
        return int(nsh.sum()), int(nsh[stereo].sum())

    def count_planes(self, idx: np.ndarray, arrays: HitArrays, qual: BkgQual) -> None:
        planes = arrays.plane[idx]
        bad = (planes < 0) | (planes >= self.cfg.n_planes)
        if np.any(bad):
            raise DataConsistencyError(
                f"Plane id {int(planes[bad][0])} outside detector with {self.cfg.n_planes} planes"
            )
        hitplanes = np.bincount(planes, weights=arrays.nsh[idx], minlength=self.cfg.n_planes)
        occupied = np.flatnonzero(hitplanes > 0)
        ipmin, ipmax = int(occupied[0]), int(occupied[-1])
        # every plane in the range is assumed to be physically present
        npexp = ipmax - ipmin + 1
        n_occ = len(occupied)
        qual.np = float(n_occ)
        qual.npexp = float(npexp)
        qual.npfrac = n_occ / float(npexp)
        qual.nphits = float(hitplanes.sum()) / n_occ

    # --- main entry ---------------------------------------------------------

    def evaluate(self, cluster: BkgCluster, hits: HitCollection) -> BkgQual:
        arrays = hits.arrays
        n = len(arrays)
        for m in cluster.hits:
            if m.index < 0 or m.index >= n:
                raise DataConsistencyError(f"Cluster references hit {m.index}; collection has {n}")

        qual = BkgQual(crho=cluster.rho)
        nactive, nstereo = self.count_hits(cluster, arrays)
        if nactive == 0 or nactive < self.cfg.min_active_hits or nstereo < self.cfg.min_stereo_hits:
            return qual

        qual.nhits = float(nactive)
        qual.sfrac = nstereo / float(nactive)

        idx, _ = self._active_members(cluster)
        self.count_planes(idx, arrays, qual)
        if qual.np < self.cfg.min_planes:
            return qual

        self._fill_spreads(cluster, idx, arrays, nactive, qual)
        qual.mark(BkgQualStatus.FILLED)

        if self.classifier is not None:
            features = np.array([qual.value(name) for name in self.feature_names], dtype=np.float64)
            qual.score = self.classifier.evaluate(features)
            qual.mark(BkgQualStatus.SCORED)
        return qual

    def _fill_spreads(self, cluster: BkgCluster, idx: np.ndarray, arrays: HitArrays,
                      nactive: int, qual: BkgQual) -> None:
        pos = arrays.pos[idx]
        wdir = arrays.wdir[idx]

        # transverse separation of each hit from the cluster centre
        psep = pos[:, :2] - cluster.pos[None, :2]
        rho = np.hypot(psep[:, 0], psep[:, 1])
        safe = np.where(rho > 0, rho, 1.0)
        pdir = np.where(rho[:, None] > 0, psep / safe[:, None], 0.0)

        # project the wire and transverse resolutions onto the radial direction
        tdir = np.column_stack([-wdir[:, 1], wdir[:, 0]])
        rwerr = arrays.wres[idx] * (pdir * wdir[:, :2]).sum(axis=1)
        rterr = arrays.tres[idx] * (pdir * tdir).sum(axis=1)
        rwt = 1.0 / np.sqrt(rwerr * rwerr + rterr * rterr + self._cperr2 / nactive)

        hrho, vrho = weighted_mean_var(rho, rwt)
        _, vt = mean_var(arrays.t_ns[idx] - cluster.t_ns)
        qual.hrho = hrho
        qual.shrho = clamped_std(vrho)
        qual.sdt = clamped_std(vt)

        z = np.sort(pos[:, 2])
        qual.zmin = float(z[0])
        qual.zmax = float(z[-1])
        qual.zgap = largest_gap(z)
