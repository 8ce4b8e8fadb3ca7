from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple
import h5py
import numpy as np
from datetime import datetime, timezone
from pathlib import Path

from strawbkg.config.load import snapshot_config_toml
from strawbkg.physics.clusters import BkgCluster
from strawbkg.physics.flags import HitFlag
from strawbkg.physics.hits import BkgEvent, Hit, HitCollection, StrawHit
from strawbkg.physics.quality import FEATURE_NAMES, BkgQual

FORMAT_VERSION = "1.0"
SOFTWARE = "strawbkg 0.1.0"

_HIT_FLOAT_COLS = ("x", "y", "z", "t_ns", "wdir_x", "wdir_y", "wdir_z", "wres", "tres")
_HIT_INT_COLS = ("plane", "nsh", "flag")


def _stamp(f: h5py.File, cfg_path: str | None = None) -> None:
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = SOFTWARE
    if cfg_path is not None:
        f.attrs["config_text"] = snapshot_config_toml(cfg_path)


def _replace_or_create(grp: h5py.Group, name: str, data: np.ndarray, compress: bool = True) -> None:
    if name in grp:
        del grp[name]
    if compress and data.size:
        grp.create_dataset(name, data=data, compression="gzip")
    else:
        grp.create_dataset(name, data=data)


def _ptr(counts: Sequence[int]) -> np.ndarray:
    ptr = np.zeros(len(counts) + 1, dtype=np.int64)
    if len(counts):
        ptr[1:] = np.cumsum(np.asarray(counts, dtype=np.int64))
    return ptr


def _hit_columns(hits: Sequence[Hit]) -> Dict[str, np.ndarray]:
    """Flatten Hit objects into the flat column arrays of the file layout."""
    m = len(hits)
    cols = {k: np.empty(m, dtype=np.float64) for k in _HIT_FLOAT_COLS}
    cols.update({k: np.empty(m, dtype=np.int64) for k in _HIT_INT_COLS})
    for w, h in enumerate(hits):
        pos = np.asarray(h.pos, dtype=float).reshape(3)
        wdir = np.asarray(h.wdir, dtype=float).reshape(3)
        cols["x"][w], cols["y"][w], cols["z"][w] = pos
        cols["wdir_x"][w], cols["wdir_y"][w], cols["wdir_z"][w] = wdir
        cols["t_ns"][w] = h.t_ns
        cols["wres"][w] = h.wres
        cols["tres"][w] = h.tres
        cols["plane"][w] = h.plane
        cols["nsh"][w] = h.nsh
        cols["flag"][w] = int(h.flag)
    return cols


def _hits_from_columns(g: h5py.Group, start: int, stop: int) -> List[Hit]:
    c = {k: g[k][start:stop] for k in (*_HIT_FLOAT_COLS, *_HIT_INT_COLS)}
    out: List[Hit] = []
    for i in range(stop - start):
        out.append(Hit(
            pos=np.array([c["x"][i], c["y"][i], c["z"][i]], dtype=float),
            t_ns=float(c["t_ns"][i]),
            wdir=np.array([c["wdir_x"][i], c["wdir_y"][i], c["wdir_z"][i]], dtype=float),
            wres=float(c["wres"][i]),
            tres=float(c["tres"][i]),
            plane=int(c["plane"][i]),
            nsh=int(c["nsh"][i]),
            flag=HitFlag(int(c["flag"][i])),
        ))
    return out


def _write_hit_group(grp: h5py.Group, collections: Sequence[HitCollection]) -> None:
    flat = [h for col in collections for h in col]
    _replace_or_create(grp, "event_ptr", _ptr([len(col) for col in collections]), compress=False)
    for key, arr in _hit_columns(flat).items():
        _replace_or_create(grp, key, arr)


def _write_reverse_index(grp: h5py.Group, collections: Sequence[HitCollection]) -> None:
    """Per-hit straw hit indices as sh_ptr/sh_index; empty for collections without one."""
    sh_lists = []
    for col in collections:
        if col.sh_indices is None:
            sh_lists.extend([()] * len(col))
        else:
            sh_lists.extend(col.sh_indices)
    _replace_or_create(grp, "sh_ptr", _ptr([len(s) for s in sh_lists]), compress=False)
    _replace_or_create(grp, "sh_index", np.array([i for s in sh_lists for i in s], dtype=np.int64))
    grp.attrs["has_sh_index"] = bool(collections) and all(col.sh_indices is not None for col in collections)


# --- event input -------------------------------------------------------------

def write_events(path: str | Path, events: Sequence[BkgEvent]) -> Path:
    """
    Write events in the CSR layout read by read_events.

    /events/event_id          (N,)
    /hits/event_ptr           (N+1,)   pointers into the flat hit columns
    /hits/<column>            (M,)     x, y, z, t_ns, wdir_*, wres, tres, plane, nsh, flag
    /hits/sh_ptr, sh_index             per-hit straw hit indices (event-local)
    /straw_hits/...                    optional elementary level, same columns plus edep
    """
    p = Path(path)
    with h5py.File(p, "w") as f:
        _stamp(f)
        g_ev = f.require_group("events")
        _replace_or_create(g_ev, "event_id", np.array([ev.event_id for ev in events], dtype=np.int64))
        parents = [ev.hits.parent or "" for ev in events]
        g_ev.create_dataset("parent", data=np.array(parents, dtype=h5py.string_dtype()))

        g_hits = f.require_group("hits")
        _write_hit_group(g_hits, [ev.hits for ev in events])
        _write_reverse_index(g_hits, [ev.hits for ev in events])

        if events and all(ev.straw_combo is not None and ev.straw_hits is not None for ev in events):
            g_sh = f.require_group("straw_hits")
            _write_hit_group(g_sh, [ev.straw_combo for ev in events])
            raw = [s for ev in events for s in ev.straw_hits]
            _replace_or_create(g_sh, "raw_ptr", _ptr([len(ev.straw_hits) for ev in events]), compress=False)
            _replace_or_create(g_sh, "raw_t_ns", np.array([s.t_ns for s in raw], dtype=np.float64))
            _replace_or_create(g_sh, "raw_edep", np.array([s.edep for s in raw], dtype=np.float64))
            _replace_or_create(g_sh, "raw_plane", np.array([s.plane for s in raw], dtype=np.int64))
    return p


def read_events(path: str | Path, max_events: Optional[int] = None) -> List[BkgEvent]:
    p = Path(path)
    events: List[BkgEvent] = []
    with h5py.File(p, "r") as f:
        ids = f["events/event_id"][...]
        parents = f["events/parent"].asstr()[...] if "parent" in f["events"] else [""] * len(ids)
        g_hits = f["hits"]
        ptr = g_hits["event_ptr"][...]
        sh_ptr = g_hits["sh_ptr"][...]
        sh_index = g_hits["sh_index"][...]
        has_sh = bool(g_hits.attrs.get("has_sh_index", False))
        g_sh = f["straw_hits"] if "straw_hits" in f else None

        n = len(ids) if max_events is None else min(len(ids), max_events)
        for i in range(n):
            start, stop = int(ptr[i]), int(ptr[i + 1])
            sh_indices = None
            if has_sh:
                sh_indices = [
                    tuple(int(x) for x in sh_index[sh_ptr[k]:sh_ptr[k + 1]]) for k in range(start, stop)
                ]
            hits = HitCollection(
                hits=_hits_from_columns(g_hits, start, stop),
                parent=str(parents[i]) or None,
                sh_indices=sh_indices,
            )
            straw_hits = straw_combo = None
            if g_sh is not None:
                sp = g_sh["event_ptr"]
                straw_combo = HitCollection(hits=_hits_from_columns(g_sh, int(sp[i]), int(sp[i + 1])))
                rp = g_sh["raw_ptr"]
                r0, r1 = int(rp[i]), int(rp[i + 1])
                straw_hits = [
                    StrawHit(t_ns=float(t), edep=float(e), plane=int(pl))
                    for t, e, pl in zip(g_sh["raw_t_ns"][r0:r1], g_sh["raw_edep"][r0:r1], g_sh["raw_plane"][r0:r1])
                ]
            events.append(BkgEvent(int(ids[i]), hits, straw_hits=straw_hits, straw_combo=straw_combo))
    return events


# --- products ----------------------------------------------------------------

def write_init(path: str | Path, cfg_path: str | None = None, cfg_json: str | None = None) -> h5py.File:
    f = h5py.File(str(path), "w")
    _stamp(f, cfg_path)
    if cfg_json is not None:
        f.attrs["config_json"] = cfg_json  # effective config, CLI overrides applied
    f.require_group("products")
    return f


def write_flags(f: h5py.File, name: str, per_event: Sequence[Sequence[HitFlag]], event_ids: Sequence[int]) -> None:
    """Per-hit flags as a flat int column with an event pointer, under /products/<name>."""
    grp = f.require_group("products").require_group(name)
    _replace_or_create(grp, "event_id", np.asarray(event_ids, dtype=np.int64))
    _replace_or_create(grp, "event_ptr", _ptr([len(x) for x in per_event]), compress=False)
    flat = np.array([int(fl) for x in per_event for fl in x], dtype=np.int64)
    _replace_or_create(grp, "flag", flat)


def write_filtered(
    f: h5py.File,
    collections: Sequence[HitCollection],
    kept: Sequence[Sequence[int]],
    event_ids: Sequence[int],
) -> None:
    """
    /products/filtered : hit columns with event_ptr, sh_ptr/sh_index, source_index
                        (input position of each kept hit) and one parent label per event
    """
    grp = f.require_group("products").require_group("filtered")
    _replace_or_create(grp, "event_id", np.asarray(event_ids, dtype=np.int64))
    _write_hit_group(grp, collections)
    _write_reverse_index(grp, collections)
    _replace_or_create(grp, "source_index", np.array([i for k in kept for i in k], dtype=np.int64))
    if "parent" in grp:
        del grp["parent"]
    grp.create_dataset("parent", data=np.array([c.parent or "" for c in collections], dtype=h5py.string_dtype()))


def write_clusters(
    f: h5py.File,
    clusters: Sequence[Sequence[BkgCluster]],
    qualities: Sequence[Sequence[BkgQual]],
    event_ids: Sequence[int],
) -> None:
    """
    /products/clusters : event_ptr, pos (K,3), t_ns, flag, member_ptr, member_index
    /products/quality  : one column per descriptor field (absent = -1.0), status, score (NaN if unset)
    """
    flat_c = [c for per in clusters for c in per]
    flat_q = [q for per in qualities for q in per]

    g_c = f.require_group("products").require_group("clusters")
    _replace_or_create(g_c, "event_id", np.asarray(event_ids, dtype=np.int64))
    _replace_or_create(g_c, "event_ptr", _ptr([len(per) for per in clusters]), compress=False)
    pos = np.array([c.pos for c in flat_c], dtype=np.float64).reshape(len(flat_c), 3)
    _replace_or_create(g_c, "pos", pos)
    _replace_or_create(g_c, "t_ns", np.array([c.t_ns for c in flat_c], dtype=np.float64))
    _replace_or_create(g_c, "flag", np.array([int(c.flag) for c in flat_c], dtype=np.int64))
    _replace_or_create(g_c, "member_ptr", _ptr([len(c.hits) for c in flat_c]), compress=False)
    _replace_or_create(g_c, "member_index",
                       np.array([m.index for c in flat_c for m in c.hits], dtype=np.int64))

    g_q = f.require_group("products").require_group("quality")
    for name in FEATURE_NAMES:
        _replace_or_create(g_q, name, np.array([q.value(name) for q in flat_q], dtype=np.float64))
    _replace_or_create(g_q, "status", np.array([int(q.status) for q in flat_q], dtype=np.int8))
    score = np.array([np.nan if q.score is None else q.score for q in flat_q], dtype=np.float64)
    _replace_or_create(g_q, "score", score)


def read_flags(path: str | Path, name: str = "ch_flags") -> Tuple[np.ndarray, np.ndarray]:
    """Return (event_ptr, flag) for a flag product."""
    with h5py.File(str(path), "r") as f:
        grp = f["products"]
        if name not in grp:
            raise KeyError(f"{name} not found in /products of {path}")
        return grp[name]["event_ptr"][...], grp[name]["flag"][...]

