from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import typer

from strawbkg.clustering.registry import make_clusterer
from strawbkg.config.load import json_dumps, load_config, resolve_path
from strawbkg.config.schemas import Config
from strawbkg.flagging.propagate import FlagPropagator, check_straw_inputs, propagate_to_straw_hits
from strawbkg.io.event_store import read_events, write_clusters, write_filtered, write_flags, write_init
from strawbkg.mva.classifier import MLPClassifier, load_npz_mlp
from strawbkg.physics.clusters import BkgCluster
from strawbkg.physics.flags import BkgClusterFlag, HitFlag
from strawbkg.physics.hits import BkgEvent, HitCollection
from strawbkg.physics.quality import BkgQual
from strawbkg.quality.evaluator import QualityEvaluator


@dataclass
class EventProducts:
    """Everything FlagBkgHits produces for one event; None where not requested."""
    event_id: int
    hit_flags: Optional[List[HitFlag]] = None
    straw_flags: Optional[List[HitFlag]] = None
    filtered: Optional[HitCollection] = None
    filtered_index: Optional[List[int]] = None
    clusters: Optional[List[BkgCluster]] = None
    qualities: Optional[List[BkgQual]] = None


class FlagBkgHits:
    """
    Per-event background flagging: cluster, evaluate, propagate.

    Construction resolves the clusterer, flag mask and classifier (all fatal on
    error); begin_job() performs the one-time clusterer setup.
    """

    def __init__(
        self,
        cfg: Config,
        cfg_file: str | Path | None = None,
        classifier: Optional[MLPClassifier] = None,
    ):
        self.cfg = cfg
        self.clusterer = make_clusterer(cfg.clusterer)
        self.bkg_mask = HitFlag.from_names(cfg.flagging.background_mask)

        if cfg.mva.use and classifier is None:
            classifier = load_npz_mlp(resolve_path(cfg.mva.weights, cfg_file))
        if not cfg.mva.use:
            classifier = None
        self.evaluator = QualityEvaluator(
            cfg.quality,
            classifier=classifier,
            feature_names=cfg.mva.names if classifier is not None else None,
        )
        self.propagator = FlagPropagator(
            max_isolated=cfg.flagging.max_isolated,
            bkg_cut=cfg.mva.cut,
            reject_mask=self.bkg_mask,
            filter_output=cfg.flagging.filter_output,
        )
        self._ready = False

    def begin_job(self) -> None:
        self.clusterer.init()
        self._ready = True
        if self.cfg.run.diagnostics_level >= 1:
            print(f"[run] clusterer={self.clusterer.name} "
                  f"mva={'on' if self.evaluator.classifier is not None else 'off'} "
                  f"cut={self.cfg.mva.cut} mask={self.bkg_mask.names()}")

    def process_event(self, event: BkgEvent) -> EventProducts:
        if not self._ready:
            raise RuntimeError("FlagBkgHits.process_event called before begin_job()")
        fl = self.cfg.flagging
        diag = self.cfg.run.diagnostics_level
        iev = event.event_id
        if diag >= 1 and iev % self.cfg.run.print_frequency == 0:
            print(f"[event] FlagBkgHits: event={iev}")

        hits = event.hits
        # validate the elementary inputs before any flag is produced
        if fl.flag_straw_hits:
            check_straw_inputs(hits, event.straw_hits, event.straw_combo)

        clusters = self.clusterer.find_clusters(hits)
        qualities = [self.evaluator.evaluate(c, hits) for c in clusters]
        result = self.propagator.apply(clusters, qualities, hits)

        out = EventProducts(event_id=iev)
        if fl.filter_output:
            out.filtered = result.filtered
            out.filtered_index = result.kept
        if fl.flag_straw_hits:
            out.straw_flags = propagate_to_straw_hits(
                hits, result.from_clusters, event.straw_hits, event.straw_combo
            )
        if fl.flag_combo_hits:
            out.hit_flags = result.hit_flags
        if fl.save_bkg_clusters:
            for cluster, decision in zip(clusters, result.cluster_decisions):
                cluster.flag |= decision
            out.clusters = clusters
            out.qualities = qualities

        if diag >= 2:
            nbkg = sum(1 for d in result.cluster_decisions if d & BkgClusterFlag.BKG)
            niso = sum(1 for d in result.cluster_decisions if d & BkgClusterFlag.ISO)
            print(f"[event] {iev}: hits={len(hits)} clusters={len(clusters)} bkg={nbkg} iso={niso}")
        return out


def run_pipeline(
    cfg_path: str,
    *,
    input_path: Optional[str] = None,
    output_path: Optional[str] = None,
    diagnostics_level: Optional[int] = None,
    max_events: Optional[int] = None,
) -> Path:
    """
    Flag every event of an HDF5 event file and write the products.

    Keyword arguments override the corresponding TOML fields when not None.

    Returns
    -------
    Path to written HDF5 file.
    """
    cfg = load_config(cfg_path)

    # ---- apply CLI overrides on top of TOML ----
    if input_path is not None:
        cfg.io.input_path = input_path
    if output_path is not None:
        cfg.io.output_path = output_path
    if diagnostics_level is not None:
        cfg.run.diagnostics_level = diagnostics_level
    if max_events is not None:
        cfg.run.max_events = max_events

    diag_level = cfg.run.diagnostics_level
    fl = cfg.flagging

    if diag_level >= 1:
        print(f"[run] config = {cfg_path}")
        print(f"[run] input={cfg.io.input_path} -> output={cfg.io.output_path}")

    module = FlagBkgHits(cfg, cfg_file=cfg_path)
    module.begin_job()

    events = read_events(resolve_path(cfg.io.input_path, cfg_path), max_events=cfg.run.max_events)
    if diag_level >= 1:
        print(f"[pipeline] Got {len(events)} events")

    products = [module.process_event(ev) for ev in events]
    ids = [p.event_id for p in products]

    out_path = Path(cfg.io.output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    f = write_init(str(out_path), cfg_path, cfg_json=json_dumps(cfg.model_dump()))
    if fl.flag_combo_hits:
        write_flags(f, "ch_flags", [p.hit_flags for p in products], ids)
    if fl.flag_straw_hits:
        write_flags(f, "sh_flags", [p.straw_flags for p in products], ids)
    if fl.filter_output:
        write_filtered(f, [p.filtered for p in products], [p.filtered_index for p in products], ids)
    if fl.save_bkg_clusters:
        write_clusters(f, [p.clusters for p in products], [p.qualities for p in products], ids)
    f.close()

    if diag_level >= 1:
        nclus = sum(len(p.clusters) for p in products if p.clusters is not None)
        print(f"[pipeline] Wrote {len(products)} events to {out_path}"
              + (f" ({nclus} clusters saved)" if fl.save_bkg_clusters else ""))

    # Optional PNG export
    if cfg.vis.export_png_on_write and fl.flag_combo_hits and events:
        try:
            from strawbkg.vis.hdf import save_event_png
            out_png = save_event_png(
                str(resolve_path(cfg.io.input_path, cfg_path)),
                str(out_path),
                event_index=cfg.vis.event_index,
            )
            if diag_level >= 1:
                print(f"[pipeline] Wrote PNG {out_png}")
        except (KeyError, IndexError, OSError) as e:
            if diag_level >= 1:
                print(f"[pipeline] PNG export failed: {e!r}")

    return out_path


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="Background hit flagging (strawbkg.pipelines.core)")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML config file",
    ),
    input_path: Optional[str] = typer.Option(
        None,
        "--input",
        "-i",
        help="Override [io].input_path",
    ),
    output_path: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Override [io].output_path",
    ),
    diagnostics_level: Optional[int] = typer.Option(
        None,
        "--diag",
        help="Override [run].diagnostics_level (0, 1 or 2)",
    ),
    max_events: Optional[int] = typer.Option(
        None,
        "--max-events",
        help="Process at most this many events",
    ),
):
    """
    Run background flagging over one HDF5 event file.
    """
    out_path = run_pipeline(
        cfg_path,
        input_path=input_path,
        output_path=output_path,
        diagnostics_level=diagnostics_level,
        max_events=max_events,
    )
    typer.echo(str(out_path))


if __name__ == "__main__":
    app()
