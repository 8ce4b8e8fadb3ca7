"""Clusterer selection: a tag table of pure clustering functions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Union

from pydantic import BaseModel

from ..config.schemas import ClustererCfg, TLTCfg, TNTCfg, TNTBCfg
from ..errors import ConfigError
from ..physics.clusters import BkgCluster
from ..physics.hits import HitArrays, HitCollection
from .tlt import cluster_tlt
from .tnt import cluster_tnt, cluster_tntb

ClusterFn = Callable[[HitArrays, BaseModel], "list[BkgCluster]"]

VARIANTS: dict[str, ClusterFn] = {
    "TwoLevelThreshold": cluster_tlt,
    "TwoNiveauThreshold": cluster_tnt,
    "TwoNiveauThresholdB": cluster_tntb,
}

# legacy integer selector codes
_CODES = {1: "TwoLevelThreshold", 2: "TwoNiveauThreshold", 3: "TwoNiveauThresholdB"}
_SHORT = {"tlt": "TwoLevelThreshold", "tnt": "TwoNiveauThreshold", "tntb": "TwoNiveauThresholdB"}


def resolve_variant(selector: Union[int, str]) -> str:
    if isinstance(selector, bool):
        raise ConfigError(f"Unknown clusterer {selector!r}")
    if isinstance(selector, int):
        name = _CODES.get(selector)
    else:
        s = str(selector).strip()
        if s.isdigit():
            name = _CODES.get(int(s))
        else:
            name = s if s in VARIANTS else _SHORT.get(s.lower())
    if name is None:
        raise ConfigError(
            f"Unknown clusterer {selector!r}; expected one of {sorted(VARIANTS)} or codes {sorted(_CODES)}"
        )
    return name


def _check_thresholds(params: BaseModel) -> None:
    if isinstance(params, TLTCfg):
        positive = ("distance", "time")
    else:
        positive = ("core_distance", "core_time", "assoc_distance", "assoc_time")
        if params.min_neighbors < 1:
            raise ConfigError(f"min_neighbors must be >= 1, got {params.min_neighbors}")
    for name in positive:
        if getattr(params, name) <= 0:
            raise ConfigError(f"clusterer threshold {name} must be > 0, got {getattr(params, name)}")
    if params.time_scale < 0 or params.tie_tolerance < 0:
        raise ConfigError("time_scale and tie_tolerance must be >= 0")
    if isinstance(params, TNTBCfg):
        if params.reference_error <= 0 or not (0 < params.min_scale <= 1):
            raise ConfigError("reference_error must be > 0 and 0 < min_scale <= 1")


@dataclass
class BkgClusterer:
    """
    A configured clustering variant.

    init() validates and freezes the thresholds; find_clusters() may only be
    called afterwards.
    """
    variant: str
    params: BaseModel
    _frozen: BaseModel | None = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.variant

    def init(self) -> None:
        _check_thresholds(self.params)
        self._frozen = self.params.model_copy(deep=True)

    def find_clusters(self, hits: HitCollection) -> list[BkgCluster]:
        if self._frozen is None:
            raise RuntimeError(f"{self.variant} clusterer used before init()")
        return VARIANTS[self.variant](hits.arrays, self._frozen)


def make_clusterer(cfg: ClustererCfg) -> BkgClusterer:
    name = resolve_variant(cfg.variant)
    params: Union[TLTCfg, TNTCfg, TNTBCfg]
    if name == "TwoLevelThreshold":
        params = cfg.tlt
    elif name == "TwoNiveauThreshold":
        params = cfg.tnt
    else:
        params = cfg.tntb
    return BkgClusterer(variant=name, params=params)
