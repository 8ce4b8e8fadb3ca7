# src/strawbkg/flagging/propagate.py
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from ..errors import DataConsistencyError
from ..physics.clusters import BkgCluster
from ..physics.flags import BkgClusterFlag, HitFlag
from ..physics.hits import HitCollection, StrawHit
from ..physics.quality import BkgQual, BkgQualStatus


@dataclass
class PropagationResult:
    """
    hit_flags     : one merged flag per input hit (same order)
    from_clusters : per input hit, only the bits received from its cluster
    cluster_flags : hit-level flag each cluster handed to its members
    cluster_decisions : cluster-level ISO/BKG bits, one per cluster
    filtered      : hits surviving the reject mask, or None if not requested
    kept          : input indices of the filtered hits
    """
    hit_flags: List[HitFlag]
    from_clusters: List[HitFlag]
    cluster_flags: List[HitFlag]
    cluster_decisions: List[BkgClusterFlag]
    filtered: Optional[HitCollection] = None
    kept: Optional[List[int]] = None


@dataclass
class FlagPropagator:
    max_isolated: int = 0
    bkg_cut: float = 0.5
    reject_mask: HitFlag = HitFlag.BKG
    filter_output: bool = False

    def classify(self, cluster: BkgCluster, qual: BkgQual) -> tuple[HitFlag, BkgClusterFlag]:
        flag = HitFlag.BKGCLUST
        decision = BkgClusterFlag(0)
        if len(cluster.hits) <= self.max_isolated:
            flag |= HitFlag.ISOLATED
            decision |= BkgClusterFlag.ISO
        if qual.status == BkgQualStatus.SCORED and qual.score is not None and qual.score > self.bkg_cut:
            flag |= HitFlag.BKG
            decision |= BkgClusterFlag.BKG
        return flag, decision

    def apply(
        self,
        clusters: Sequence[BkgCluster],
        qualities: Sequence[BkgQual],
        hits: HitCollection,
    ) -> PropagationResult:
        if len(clusters) != len(qualities):
            raise DataConsistencyError(
                f"{len(clusters)} clusters but {len(qualities)} quality descriptors"
            )
        nch = len(hits)
        from_clusters = [HitFlag(0)] * nch
        cluster_flags: List[HitFlag] = []
        decisions: List[BkgClusterFlag] = []
        for cluster, qual in zip(clusters, qualities):
            flag, decision = self.classify(cluster, qual)
            cluster_flags.append(flag)
            decisions.append(decision)
            for m in cluster.hits:
                if m.index < 0 or m.index >= nch:
                    raise DataConsistencyError(f"Cluster references hit {m.index}; collection has {nch}")
                from_clusters[m.index] |= flag
        hit_flags = [h.flag | extra for h, extra in zip(hits, from_clusters)]

        filtered = None
        kept = None
        if self.filter_output:
            filtered = HitCollection(hits=[], parent=hits.parent)
            kept = []
            keep_sh = hits.sh_indices is not None
            if keep_sh:
                filtered.sh_indices = []
            for ich, (h, flag) in enumerate(zip(hits, hit_flags)):
                if flag.has_any(self.reject_mask):
                    continue
                filtered.hits.append(replace(h, flag=flag))
                kept.append(ich)
                if keep_sh:
                    filtered.sh_indices.append(hits.sh_indices[ich])

        return PropagationResult(hit_flags, from_clusters, cluster_flags, decisions, filtered, kept)


def check_straw_inputs(
    hits: HitCollection,
    straw_hits: Optional[Sequence[StrawHit]],
    straw_combo: Optional[HitCollection],
) -> None:
    """Raise DataConsistencyError unless the elementary inputs line up with `hits`."""
    if straw_hits is None or straw_combo is None:
        raise DataConsistencyError("Straw-level flagging requested but straw hit collections are missing")
    if len(straw_hits) != len(straw_combo):
        raise DataConsistencyError(
            f"Collection sizes don't match: {len(straw_hits)} straw hits vs "
            f"{len(straw_combo)} straw-level combined hits"
        )
    if hits.sh_indices is None or len(hits.sh_indices) != len(hits):
        raise DataConsistencyError("Combined hits carry no (or a short) straw hit reverse index")
    nsh = len(straw_hits)
    for ich, shids in enumerate(hits.sh_indices):
        for shid in shids:
            if shid < 0 or shid >= nsh:
                raise DataConsistencyError(f"Hit {ich} references straw hit {shid}; collection has {nsh}")


def propagate_to_straw_hits(
    hits: HitCollection,
    cluster_hit_flags: Sequence[HitFlag],
    straw_hits: Optional[Sequence[StrawHit]],
    straw_combo: Optional[HitCollection],
) -> List[HitFlag]:
    """
    Straw-level flags: the straw hits' own flags with the flag each combined
    hit received from its cluster OR-ed in through the reverse index.
    """
    check_straw_inputs(hits, straw_hits, straw_combo)
    if len(cluster_hit_flags) != len(hits):
        raise DataConsistencyError(
            f"{len(cluster_hit_flags)} flags for {len(hits)} combined hits"
        )
    shflags = [h.flag for h in straw_combo]
    for ich, flag in enumerate(cluster_hit_flags):
        for shid in hits.straw_hit_indices(ich):
            shflags[shid] |= flag
    return shflags
