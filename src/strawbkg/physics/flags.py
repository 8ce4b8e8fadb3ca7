# src/strawbkg/physics/flags.py
from __future__ import annotations
from enum import IntFlag
from typing import Iterable

from ..errors import ConfigError


class HitFlag(IntFlag):
    """
    Per-hit state bits.

    Upstream stages set ACTIVE/STEREO and the selection bits; this package only
    ever adds BKGCLUST, ISOLATED and BKG.
    """
    STEREO = 1 << 0
    ENERGYSEL = 1 << 1
    RADSEL = 1 << 2
    TIMESEL = 1 << 3
    TDIV = 1 << 4
    ISOLATED = 1 << 5
    OUTLIER = 1 << 6
    OTHER = 1 << 7
    BKG = 1 << 8
    TRKSEL = 1 << 9
    ACTIVE = 1 << 10
    DOUBLET = 1 << 11
    DEAD = 1 << 12
    NOISY = 1 << 13
    CALOSEL = 1 << 14
    BKGCLUST = 1 << 15

    def has_all(self, mask: "HitFlag") -> bool:
        return (self & mask) == mask

    def has_any(self, mask: "HitFlag") -> bool:
        return bool(self & mask)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "HitFlag":
        """
        Build a mask from bit names, e.g. ["Background", "Isolated"].
        Matching is case-insensitive; a few long-form aliases are accepted.
        """
        out = cls(0)
        for name in names:
            key = _FLAG_ALIASES.get(name.lower(), name.upper())
            try:
                out |= cls[key]
            except KeyError:
                raise ConfigError(f"Unknown hit flag name {name!r}") from None
        return out

    def names(self) -> list[str]:
        return [m.name for m in HitFlag if m in self]


_FLAG_ALIASES = {
    "background": "BKG",
    "bkgclust": "BKGCLUST",
    "bkgcluster": "BKGCLUST",
    "isolated": "ISOLATED",
    "active": "ACTIVE",
    "stereo": "STEREO",
}


class BkgClusterFlag(IntFlag):
    """Cluster-level decision bits."""
    ISO = 1 << 0
    BKG = 1 << 1
