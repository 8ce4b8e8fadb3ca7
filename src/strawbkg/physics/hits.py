from __future__ import annotations
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .flags import HitFlag


@dataclass(frozen=True, slots=True)
class Hit:
    """
    Combined detector hit (read-only input).

    pos: position [mm], shape (3,)
    t_ns: time [ns]
    wdir: unit vector along the readout wire, shape (3,)
    wres: position resolution along the wire [mm]
    tres: position resolution transverse to the wire [mm]
    plane: detector plane id
    nsh: number of elementary straw hits combined into this hit
    flag: hit state bits
    """
    pos: np.ndarray
    t_ns: float
    wdir: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))
    wres: float = 1.0
    tres: float = 1.0
    plane: int = 0
    nsh: int = 1
    flag: HitFlag = HitFlag.ACTIVE


@dataclass(frozen=True, slots=True)
class StrawHit:
    """Elementary single-straw reading."""
    t_ns: float
    edep: float = 0.0
    plane: int = 0


@dataclass(frozen=True)
class HitArrays:
    """Column view of a HitCollection used by the numeric kernels."""
    pos: np.ndarray    # (N, 3)
    t_ns: np.ndarray   # (N,)
    wdir: np.ndarray   # (N, 3)
    wres: np.ndarray   # (N,)
    tres: np.ndarray   # (N,)
    plane: np.ndarray  # (N,) int
    nsh: np.ndarray    # (N,) int
    flag: np.ndarray   # (N,) int
    valid: np.ndarray  # (N,) bool

    def __len__(self) -> int:
        return len(self.t_ns)


@dataclass
class HitCollection:
    """
    Ordered hits of one event.

    parent: label of the collection these hits were derived from; carried over
        to filtered copies.
    sh_indices: optional reverse index, one tuple of elementary (straw) hit
        indices per hit.
    """
    hits: List[Hit] = field(default_factory=list)
    parent: Optional[str] = None
    sh_indices: Optional[List[Tuple[int, ...]]] = None

    def __len__(self) -> int:
        return len(self.hits)

    def __getitem__(self, i: int) -> Hit:
        return self.hits[i]

    def __iter__(self) -> Iterator[Hit]:
        return iter(self.hits)

    def straw_hit_indices(self, ich: int) -> Tuple[int, ...]:
        if self.sh_indices is None:
            raise LookupError("HitCollection has no straw hit reverse index")
        return self.sh_indices[ich]

    @cached_property
    def arrays(self) -> HitArrays:
        n = len(self.hits)
        pos = np.full((n, 3), np.nan, dtype=np.float64)
        wdir = np.zeros((n, 3), dtype=np.float64)
        t = np.full(n, np.nan, dtype=np.float64)
        wres = np.zeros(n, dtype=np.float64)
        tres = np.zeros(n, dtype=np.float64)
        plane = np.zeros(n, dtype=np.int64)
        nsh = np.zeros(n, dtype=np.int64)
        flag = np.zeros(n, dtype=np.int64)
        for i, h in enumerate(self.hits):
            pos[i] = np.asarray(h.pos, dtype=np.float64).reshape(3)
            wdir[i] = np.asarray(h.wdir, dtype=np.float64).reshape(3)
            t[i] = h.t_ns
            wres[i] = h.wres
            tres[i] = h.tres
            plane[i] = h.plane
            nsh[i] = h.nsh
            flag[i] = int(h.flag)
        valid = np.all(np.isfinite(pos), axis=1) & np.isfinite(t)
        cols = HitArrays(pos, t, wdir, wres, tres, plane, nsh, flag, valid)
        for a in (pos, t, wdir, wres, tres, plane, nsh, flag, valid):
            a.setflags(write=False)
        return cols


@dataclass
class BkgEvent:
    """
    One readout event.

    straw_hits / straw_combo are only needed when flags are propagated down to
    the elementary level; straw_combo holds one single-straw Hit per StrawHit
    (same order) and carries the elementary flags.
    """
    event_id: int
    hits: HitCollection
    straw_hits: Optional[Sequence[StrawHit]] = None
    straw_combo: Optional[HitCollection] = None
