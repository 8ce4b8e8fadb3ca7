# src/strawbkg/physics/quality.py
from __future__ import annotations
from dataclasses import dataclass, fields
from enum import IntEnum
from typing import Optional

SENTINEL = -1.0


class BkgQualStatus(IntEnum):
    UNSET = 0
    FILLED = 1
    SCORED = 2


@dataclass
class BkgQual:
    """
    Quality descriptor of one background cluster.

    Count-based fields (nhits, sfrac, np, npexp, npfrac, nphits) are set once
    the hit-count cut passes; the spread fields (hrho, shrho, sdt, zmin, zmax,
    zgap) only once the plane cut passes as well. Fields that were not
    computed stay None; value() maps them to SENTINEL for export and for the
    classifier feature vector.
    """
    crho: Optional[float] = None
    nhits: Optional[float] = None
    sfrac: Optional[float] = None
    np: Optional[float] = None
    npexp: Optional[float] = None
    npfrac: Optional[float] = None
    nphits: Optional[float] = None
    hrho: Optional[float] = None
    shrho: Optional[float] = None
    sdt: Optional[float] = None
    zmin: Optional[float] = None
    zmax: Optional[float] = None
    zgap: Optional[float] = None
    status: BkgQualStatus = BkgQualStatus.UNSET
    score: Optional[float] = None

    def value(self, name: str) -> float:
        if name not in FEATURE_NAMES:
            raise KeyError(f"Unknown quality field {name!r}; expected one of {FEATURE_NAMES}")
        v = getattr(self, name)
        return SENTINEL if v is None else float(v)

    def mark(self, status: BkgQualStatus) -> None:
        """Advance the status; it never moves backwards or skips FILLED."""
        if status < self.status or status > self.status + 1:
            raise ValueError(f"Illegal status transition {self.status.name} -> {status.name}")
        self.status = status


FEATURE_NAMES: tuple[str, ...] = tuple(
    f.name for f in fields(BkgQual) if f.name not in ("status", "score")
)
