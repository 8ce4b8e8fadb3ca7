import h5py
import numpy as np
import pytest

from strawbkg.config.schemas import Config
from strawbkg.errors import ConfigError, DataConsistencyError
from strawbkg.io.event_store import read_events, read_flags, write_events
from strawbkg.mva.classifier import MLPClassifier, save_npz_mlp
from strawbkg.physics.flags import BkgClusterFlag, HitFlag
from strawbkg.physics.hits import BkgEvent, Hit, HitCollection, StrawHit
from strawbkg.pipelines.core import FlagBkgHits, run_pipeline
from strawbkg.sim.synth import synth_event, toy_classifier
from strawbkg.vis.hdf import save_event_png

NAMES = ("hrho", "shrho", "crho", "zmin", "zmax", "zgap", "np", "npfrac", "nhits")


def _cfg(**flagging):
    return Config(
        run={"diagnostics_level": 0},
        mva={"use": False},
        flagging={"max_isolated": 1, **flagging},
    )


def _group_and_outlier():
    """A tight 20-hit group over four planes plus one far-away hit (index 20)."""
    hits = [
        Hit(pos=np.array([500.0 + 0.5 * i, 0.0, 10.0 * (i % 4)]), t_ns=1000.0 + 0.1 * i, plane=i % 4)
        for i in range(20)
    ]
    hits.append(Hit(pos=np.array([-500.0, 0.0, 0.0]), t_ns=1000.0))
    sh = [(i,) for i in range(21)]
    return HitCollection(hits=hits, parent="makeSH", sh_indices=sh)


def _straw_level(n):
    return (
        [StrawHit(t_ns=1000.0) for _ in range(n)],
        HitCollection(hits=[Hit(pos=np.zeros(3), t_ns=1000.0) for _ in range(n)]),
    )


def _module(cfg, **kw):
    m = FlagBkgHits(cfg, **kw)
    m.begin_job()
    return m


def test_process_before_begin_job():
    m = FlagBkgHits(_cfg())
    with pytest.raises(RuntimeError):
        m.process_event(BkgEvent(0, _group_and_outlier()))


def test_isolated_outlier_without_mva():
    out = _module(_cfg()).process_event(BkgEvent(0, _group_and_outlier()))
    assert len(out.hit_flags) == 21
    for f in out.hit_flags[:20]:
        assert f == HitFlag.ACTIVE | HitFlag.BKGCLUST
    assert out.hit_flags[20] == HitFlag.ACTIVE | HitFlag.BKGCLUST | HitFlag.ISOLATED
    assert out.filtered is None and out.clusters is None


def test_scored_group_is_filtered_out():
    cfg = Config(
        run={"diagnostics_level": 0},
        mva={"use": True, "weights": "never-read.npz"},
        flagging={"max_isolated": 1, "filter_output": True, "save_bkg_clusters": True},
    )
    clf = MLPClassifier(input_names=NAMES, weights=(np.zeros((1, 9)),), biases=(np.array([4.0]),))
    out = _module(cfg, classifier=clf).process_event(BkgEvent(3, _group_and_outlier()))

    assert all(f.has_all(HitFlag.BKG | HitFlag.BKGCLUST) for f in out.hit_flags[:20])
    assert not out.hit_flags[20].has_any(HitFlag.BKG)
    assert out.filtered_index == [20]
    assert out.filtered.parent == "makeSH"
    assert out.filtered.sh_indices == [(20,)]
    assert [c.flag for c in out.clusters] == [BkgClusterFlag.BKG, BkgClusterFlag.ISO]
    assert out.qualities[0].score > 0.5
    assert out.qualities[1].score is None


def test_straw_mismatch_raises_before_clustering(monkeypatch):
    m = _module(_cfg(flag_straw_hits=True))

    def _no_clustering(hits):
        raise AssertionError("clustering ran before the input check")

    monkeypatch.setattr(m.clusterer, "find_clusters", _no_clustering)
    straw_hits, _ = _straw_level(21)
    _, straw_combo = _straw_level(20)
    with pytest.raises(DataConsistencyError):
        m.process_event(BkgEvent(0, _group_and_outlier(), straw_hits=straw_hits, straw_combo=straw_combo))


def test_straw_flags_produced():
    straw_hits, straw_combo = _straw_level(21)
    m = _module(_cfg(flag_straw_hits=True))
    out = m.process_event(BkgEvent(0, _group_and_outlier(), straw_hits=straw_hits, straw_combo=straw_combo))
    assert len(out.straw_flags) == 21
    assert out.straw_flags[20] == HitFlag.ACTIVE | HitFlag.BKGCLUST | HitFlag.ISOLATED


def test_construction_errors(tmp_path):
    with pytest.raises(ConfigError):
        FlagBkgHits(Config(mva={"use": False}, clusterer={"variant": 7}))
    with pytest.raises(ConfigError):
        FlagBkgHits(Config(mva={"use": False}, flagging={"background_mask": ["Bogus"]}))
    with pytest.raises(FileNotFoundError):
        FlagBkgHits(Config(mva={"use": True, "weights": str(tmp_path / "nope.npz")}))


def _write_inputs(tmp_path, n_events=3):
    rng = np.random.default_rng(11)
    events = [synth_event(i, rng, n_blobs=3, n_noise=4)[0] for i in range(n_events)]
    write_events(tmp_path / "events.h5", events)
    save_npz_mlp(tmp_path / "bkg.npz", toy_classifier())
    out = tmp_path / "out" / "flags.h5"
    cfg_path = tmp_path / "flagbkg.toml"
    cfg_path.write_text(
        "[run]\n"
        "diagnostics_level = 0\n"
        "[io]\n"
        'input_path = "events.h5"\n'
        f'output_path = "{out.as_posix()}"\n'
        "[clusterer]\n"
        'variant = "TwoNiveauThreshold"\n'
        "[flagging]\n"
        "flag_straw_hits = true\n"
        "filter_output = true\n"
        "save_bkg_clusters = true\n"
        "[mva]\n"
        "use = true\n"
        'weights = "bkg.npz"\n'
    )
    return events, cfg_path, out


def test_run_pipeline_writes_products(tmp_path):
    events, cfg_path, out = _write_inputs(tmp_path)
    path = run_pipeline(str(cfg_path))
    assert path == out

    ptr, flags = read_flags(out, "ch_flags")
    assert len(ptr) == len(events) + 1
    assert ptr[-1] == sum(len(ev.hits) for ev in events)
    assert np.all(flags & int(HitFlag.ACTIVE))

    sptr, _ = read_flags(out, "sh_flags")
    assert sptr[-1] == sum(len(ev.straw_hits) for ev in events)

    with h5py.File(out, "r") as f:
        assert "TwoNiveauThreshold" in f.attrs["config_text"]
        assert "config_json" in f.attrs
        n_clusters = int(f["products/clusters/event_ptr"][-1])
        assert len(f["products/quality/status"]) == n_clusters
        src = f["products/filtered/source_index"][...]
        assert len(src) == int(f["products/filtered/event_ptr"][-1])
        assert list(f["products/filtered/parent"].asstr()[...]) == ["makeSH"] * len(events)
        assert bool(f["products/filtered"].attrs["has_sh_index"])


def test_run_pipeline_overrides_and_png(tmp_path):
    events, cfg_path, _ = _write_inputs(tmp_path, n_events=2)
    other = tmp_path / "other.h5"
    path = run_pipeline(str(cfg_path), output_path=str(other), max_events=1)
    assert path == other
    ptr, _ = read_flags(other)
    assert len(ptr) == 2

    png = save_event_png(str(tmp_path / "events.h5"), str(other), out_png=str(tmp_path / "ev0.png"))
    assert (tmp_path / "ev0.png").exists() and png.endswith("ev0.png")
    with pytest.raises(IndexError):
        save_event_png(str(tmp_path / "events.h5"), str(other), event_index=5)
    assert len(read_events(tmp_path / "events.h5")) == 2


def test_bad_classifier_inputs_fail_at_construction(tmp_path):
    names = ["hrho", "bogus"]
    clf = MLPClassifier(input_names=tuple(names), weights=(np.zeros((1, 2)),), biases=(np.zeros(1),))
    cfg = Config(run={"diagnostics_level": 0}, mva={"use": True, "weights": "unused.npz", "names": names})
    with pytest.raises(ConfigError):
        FlagBkgHits(cfg, classifier=clf)

    bad = tmp_path / "short_bounds.npz"
    np.savez(bad, input_names=np.array(NAMES), W0=np.zeros((1, 9)), b0=np.zeros(1),
             x_min=np.zeros(3), x_max=np.ones(3))
    with pytest.raises(ConfigError):
        FlagBkgHits(Config(run={"diagnostics_level": 0}, mva={"use": True, "weights": str(bad)}))
