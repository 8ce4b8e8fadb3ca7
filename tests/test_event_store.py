import h5py
import numpy as np

from strawbkg.io.event_store import (
    read_events, read_flags, write_clusters, write_events, write_filtered, write_flags, write_init,
)
from strawbkg.physics.clusters import BkgCluster
from strawbkg.physics.flags import HitFlag
from strawbkg.physics.hits import Hit, HitCollection, BkgEvent
from strawbkg.physics.quality import SENTINEL, BkgQual
from strawbkg.sim.synth import synth_event


def test_event_file_roundtrip(tmp_path):
    rng = np.random.default_rng(3)
    events = [synth_event(i, rng, n_blobs=2, n_noise=3)[0] for i in range(3)]
    path = write_events(tmp_path / "events.h5", events)

    back = read_events(path)
    assert [ev.event_id for ev in back] == [0, 1, 2]
    for ev, rb in zip(events, back):
        assert len(rb.hits) == len(ev.hits)
        assert rb.hits.parent == "makeSH"
        assert rb.hits.sh_indices == ev.hits.sh_indices
        np.testing.assert_allclose(rb.hits.arrays.pos, ev.hits.arrays.pos)
        np.testing.assert_array_equal(rb.hits.arrays.flag, ev.hits.arrays.flag)
        assert len(rb.straw_hits) == len(ev.straw_hits) == len(rb.straw_combo)

    with h5py.File(path, "r") as f:
        assert f.attrs["format_version"] == "1.0"
        assert "created_utc" in f.attrs

    assert len(read_events(path, max_events=2)) == 2


def test_events_without_straw_level(tmp_path):
    hits = HitCollection([Hit(pos=np.array([1.0, 2.0, 3.0]), t_ns=5.0, flag=HitFlag.ACTIVE | HitFlag.STEREO)])
    path = write_events(tmp_path / "plain.h5", [BkgEvent(7, hits)])
    (ev,) = read_events(path)
    assert ev.event_id == 7
    assert ev.hits.sh_indices is None
    assert ev.straw_hits is None and ev.straw_combo is None
    assert ev.hits[0].flag == HitFlag.ACTIVE | HitFlag.STEREO


def test_products_layout(tmp_path):
    col = HitCollection([Hit(pos=np.array([500.0 + i, 0.0, 0.0]), t_ns=0.0) for i in range(3)])
    c = BkgCluster()
    c.add_hits([0, 2], col.arrays)
    q = BkgQual(crho=c.rho)

    out = tmp_path / "products.h5"
    f = write_init(out, cfg_json='{"run":{}}')
    write_flags(f, "ch_flags", [[HitFlag.ACTIVE] * 3, [HitFlag.BKG]], [10, 11])
    write_clusters(f, [[c], []], [[q], []], [10, 11])
    f.close()

    ptr, flags = read_flags(out)
    np.testing.assert_array_equal(ptr, [0, 3, 4])
    assert flags[-1] == int(HitFlag.BKG)
    with h5py.File(out, "r") as f:
        assert f.attrs["config_json"] == '{"run":{}}'
        np.testing.assert_array_equal(f["products/clusters/event_ptr"][...], [0, 1, 1])
        np.testing.assert_array_equal(f["products/clusters/member_index"][...], [0, 2])
        assert f["products/quality/crho"][0] == c.rho
        assert f["products/quality/hrho"][0] == SENTINEL
        assert np.isnan(f["products/quality/score"][0])
        assert f["products/quality/status"][0] == 0


def test_filtered_keeps_reverse_index_and_parents(tmp_path):
    a = HitCollection([Hit(pos=np.zeros(3), t_ns=1.0)] * 2, parent="makeSH", sh_indices=[(0, 1), (3,)])
    b = HitCollection([Hit(pos=np.ones(3), t_ns=2.0)], parent="makeSH2", sh_indices=[(4,)])

    out = tmp_path / "filtered.h5"
    f = write_init(out)
    write_filtered(f, [a, b], [[0, 2], [5]], [1, 2])
    f.close()

    with h5py.File(out, "r") as f:
        g = f["products/filtered"]
        assert list(g["parent"].asstr()[...]) == ["makeSH", "makeSH2"]
        assert bool(g.attrs["has_sh_index"])
        np.testing.assert_array_equal(g["event_ptr"][...], [0, 2, 3])
        np.testing.assert_array_equal(g["sh_ptr"][...], [0, 2, 3, 4])
        np.testing.assert_array_equal(g["sh_index"][...], [0, 1, 3, 4])
        np.testing.assert_array_equal(g["source_index"][...], [0, 2, 5])
