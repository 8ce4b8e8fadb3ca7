from __future__ import annotations
import numpy as np
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence
import typer

from ..io.event_store import write_events
from ..mva.classifier import MLPClassifier, save_npz_mlp
from ..physics.flags import HitFlag
from ..physics.hits import BkgEvent, Hit, HitCollection, StrawHit

N_PLANES = 36
PLANE_DZ_MM = 85.0
Z0_MM = -1500.0
RHO_MIN_MM, RHO_MAX_MM = 380.0, 700.0


@dataclass
class ToyGeometry:
    n_planes: int = N_PLANES
    dz_mm: float = PLANE_DZ_MM
    z0_mm: float = Z0_MM
    rho_min_mm: float = RHO_MIN_MM
    rho_max_mm: float = RHO_MAX_MM

    def plane_z(self, plane: int) -> float:
        return self.z0_mm + plane * self.dz_mm

    def wire_dir(self, plane: int) -> np.ndarray:
        # alternate the straw orientation by 30 degrees plane to plane
        phi = np.radians(30.0 * (plane % 6))
        return np.array([np.cos(phi), np.sin(phi), 0.0])


def _make_hit(rng, geom: ToyGeometry, xy, plane: int, t_ns: float, nsh: int) -> Hit:
    flag = HitFlag.ACTIVE
    if nsh > 1:
        flag |= HitFlag.STEREO
    return Hit(
        pos=np.array([xy[0], xy[1], geom.plane_z(plane)], dtype=float),
        t_ns=float(t_ns),
        wdir=geom.wire_dir(plane),
        wres=float(rng.uniform(20.0, 60.0)) if nsh == 1 else float(rng.uniform(3.0, 8.0)),
        tres=float(rng.uniform(3.0, 6.0)),
        plane=plane,
        nsh=nsh,
        flag=flag,
    )


def _signal_hits(rng, geom: ToyGeometry, t0: float) -> list[tuple]:
    """Helix-like track crossing the tracker: one hit per plane where it lands in the straw annulus."""
    radius = rng.uniform(220.0, 300.0)
    phi_c = rng.uniform(0.0, 2 * np.pi)
    centre = (radius + rng.uniform(180.0, 260.0)) * np.array([np.cos(phi_c), np.sin(phi_c)])
    phi0 = rng.uniform(0.0, 2 * np.pi)
    dphi_dz = rng.uniform(1.0, 1.6) / 1000.0  # rad/mm
    out = []
    for plane in range(geom.n_planes):
        z = geom.plane_z(plane)
        phi = phi0 + dphi_dz * (z - geom.z0_mm)
        xy = centre + radius * np.array([np.cos(phi), np.sin(phi)])
        rho = float(np.hypot(*xy))
        if not (geom.rho_min_mm <= rho <= geom.rho_max_mm):
            continue
        t = t0 + (z - geom.z0_mm) / 250.0 + rng.normal(0.0, 3.0)
        out.append((xy + rng.normal(0.0, 2.0, size=2), plane, t, False))
    return out


def _blob_hits(rng, geom: ToyGeometry, t0: float) -> list[tuple]:
    """Low-momentum electron: a tight curl over one to three adjacent planes."""
    rho = rng.uniform(geom.rho_min_mm, geom.rho_max_mm)
    phi = rng.uniform(0.0, 2 * np.pi)
    centre = rho * np.array([np.cos(phi), np.sin(phi)])
    first = int(rng.integers(0, geom.n_planes - 3))
    n_planes = int(rng.integers(1, 4))
    n_hits = int(rng.integers(4, 12))
    out = []
    for _ in range(n_hits):
        plane = first + int(rng.integers(0, n_planes))
        xy = centre + rng.normal(0.0, 8.0, size=2)
        out.append((xy, plane, t0 + rng.normal(0.0, 5.0), True))
    return out


def _noise_hits(rng, geom: ToyGeometry, n: int, t_window: tuple[float, float]) -> list[tuple]:
    out = []
    for _ in range(n):
        rho = rng.uniform(geom.rho_min_mm, geom.rho_max_mm)
        phi = rng.uniform(0.0, 2 * np.pi)
        plane = int(rng.integers(0, geom.n_planes))
        out.append((rho * np.array([np.cos(phi), np.sin(phi)]), plane, rng.uniform(*t_window), True))
    return out


def synth_event(
    event_id: int,
    rng: np.random.Generator,
    geom: Optional[ToyGeometry] = None,
    n_blobs: int = 5,
    n_noise: int = 10,
    with_signal: bool = True,
) -> tuple[BkgEvent, np.ndarray]:
    """
    Build one toy event with its elementary level.

    Returns the event and a per-hit truth array (True for background).
    """
    geom = geom or ToyGeometry()
    t0 = rng.uniform(600.0, 1200.0)
    raw: list[tuple] = []
    if with_signal:
        raw += _signal_hits(rng, geom, t0)
    for _ in range(n_blobs):
        raw += _blob_hits(rng, geom, rng.uniform(500.0, 1500.0))
    raw += _noise_hits(rng, geom, n_noise, (500.0, 1700.0))

    # hits arrive unordered from upstream
    order = rng.permutation(len(raw))
    hits: list[Hit] = []
    straw_hits: list[StrawHit] = []
    straw_combo: list[Hit] = []
    sh_indices: list[tuple[int, ...]] = []
    truth = np.zeros(len(raw), dtype=bool)
    for k, j in enumerate(order):
        xy, plane, t, is_bkg = raw[j]
        nsh = 2 if rng.random() < 0.4 else 1
        hit = _make_hit(rng, geom, xy, plane, t, nsh)
        hits.append(hit)
        truth[k] = is_bkg
        ids = []
        for _ in range(nsh):
            ids.append(len(straw_hits))
            straw_hits.append(StrawHit(t_ns=t + rng.normal(0.0, 1.0), edep=float(rng.uniform(0.5, 4.0)) * 1e-3, plane=plane))
            straw_combo.append(_make_hit(rng, geom, xy, plane, t, 1))
        sh_indices.append(tuple(ids))

    event = BkgEvent(
        event_id=event_id,
        hits=HitCollection(hits=hits, parent="makeSH", sh_indices=sh_indices),
        straw_hits=straw_hits,
        straw_combo=HitCollection(hits=straw_combo, parent="makeSH"),
    )
    return event, truth


def toy_classifier(names: Sequence[str] = (
    "hrho", "shrho", "crho", "zmin", "zmax", "zgap", "np", "npfrac", "nhits",
)) -> MLPClassifier:
    """
    Hand-set single-layer scorer for smoke runs: compact clusters on few planes
    score high. Not a trained model.
    """
    coeff = {"hrho": -0.05, "shrho": -0.05, "np": -0.3, "npfrac": 0.5, "zgap": -0.005}
    W = np.array([[coeff.get(n, 0.0) for n in names]], dtype=float)
    b = np.array([2.0])
    return MLPClassifier(
        input_names=tuple(names),
        weights=(W,),
        biases=(b,),
        hidden_activation="tanh",
        output_activation="sigmoid",
    )


app = typer.Typer(help="Toy event generator for background flagging smoke runs")


@app.command()
def main(
    out: str = typer.Argument(..., help="Output HDF5 event file"),
    n_events: int = typer.Option(10, "--events", "-n", help="Number of events"),
    n_blobs: int = typer.Option(5, "--blobs", help="Background blobs per event"),
    n_noise: int = typer.Option(10, "--noise", help="Random noise hits per event"),
    seed: int = typer.Option(12345, "--seed", help="RNG seed"),
    weights: Optional[str] = typer.Option(None, "--weights", "-w", help="Also write the toy classifier here (.npz)"),
):
    """Write toy events (and optionally toy classifier weights)."""
    rng = np.random.default_rng(seed)
    events = [synth_event(i, rng, n_blobs=n_blobs, n_noise=n_noise)[0] for i in range(n_events)]
    path = write_events(out, events)
    typer.echo(f"Wrote {path} with {len(events)} events")
    if weights is not None:
        wpath = save_npz_mlp(Path(weights), toy_classifier())
        typer.echo(f"Wrote {wpath}")


if __name__ == "__main__":
    app()
