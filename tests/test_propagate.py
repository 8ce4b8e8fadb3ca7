import numpy as np
import pytest

from strawbkg.errors import DataConsistencyError
from strawbkg.flagging.propagate import FlagPropagator, check_straw_inputs, propagate_to_straw_hits
from strawbkg.physics.clusters import BkgCluster
from strawbkg.physics.flags import BkgClusterFlag, HitFlag
from strawbkg.physics.hits import Hit, HitCollection, StrawHit
from strawbkg.physics.quality import BkgQual, BkgQualStatus

BASE = HitFlag.ACTIVE | HitFlag.STEREO | HitFlag.DOUBLET


def _hits(n, parent="makeSH", sh_indices=None):
    hits = [Hit(pos=np.array([500.0 + i, 0.0, 0.0]), t_ns=1000.0, flag=BASE) for i in range(n)]
    return HitCollection(hits=hits, parent=parent, sh_indices=sh_indices)


def _cluster(col, indices):
    c = BkgCluster()
    c.add_hits(indices, col.arrays)
    return c


def _scored(score):
    q = BkgQual()
    q.mark(BkgQualStatus.FILLED)
    q.score = score
    q.mark(BkgQualStatus.SCORED)
    return q


def test_flags_only_grow():
    col = _hits(5)
    clusters = [_cluster(col, [0, 1, 2]), _cluster(col, [3])]
    res = FlagPropagator(max_isolated=1).apply(clusters, [_scored(0.9), BkgQual()], col)
    for h, f in zip(col, res.hit_flags):
        assert f.has_all(h.flag)
    assert res.hit_flags[4] == BASE
    assert res.from_clusters[4] == HitFlag(0)


def test_cluster_bits():
    col = _hits(5)
    clusters = [_cluster(col, [0, 1, 2]), _cluster(col, [3])]
    res = FlagPropagator(max_isolated=1, bkg_cut=0.5).apply(clusters, [_scored(0.9), BkgQual()], col)
    assert res.cluster_decisions == [BkgClusterFlag.BKG, BkgClusterFlag.ISO]
    assert res.hit_flags[0] == BASE | HitFlag.BKGCLUST | HitFlag.BKG
    assert res.hit_flags[3] == BASE | HitFlag.BKGCLUST | HitFlag.ISOLATED
    assert col[0].flag == BASE  # inputs untouched


@pytest.mark.parametrize("qual, is_bkg", [
    (BkgQual(), False),
    (_scored(0.5), False),   # cut is strict
    (_scored(0.51), True),
])
def test_background_needs_score_above_cut(qual, is_bkg):
    col = _hits(3)
    res = FlagPropagator(bkg_cut=0.5).apply([_cluster(col, [0, 1, 2])], [qual], col)
    assert res.hit_flags[0].has_any(HitFlag.BKG) is is_bkg


def test_filtered_output_keeps_order_parent_and_index():
    col = _hits(5, sh_indices=[(0,), (1,), (2,), (3, 4), (5,)])
    clusters = [_cluster(col, [1, 3]), _cluster(col, [0])]
    prop = FlagPropagator(max_isolated=0, filter_output=True)
    res = prop.apply(clusters, [_scored(0.99), _scored(0.1)], col)
    assert res.kept == [0, 2, 4]
    assert res.filtered.parent == "makeSH"
    assert res.filtered.sh_indices == [(0,), (2,), (5,)]
    assert [h.flag for h in res.filtered] == [res.hit_flags[i] for i in (0, 2, 4)]
    assert res.filtered[0].flag.has_all(HitFlag.BKGCLUST)


def test_length_and_index_checks():
    col = _hits(3)
    with pytest.raises(DataConsistencyError):
        FlagPropagator().apply([_cluster(col, [0])], [], col)
    other = _cluster(_hits(6), [5])
    with pytest.raises(DataConsistencyError):
        FlagPropagator().apply([other], [BkgQual()], col)


def _straw_level(n):
    straw_hits = [StrawHit(t_ns=1000.0) for _ in range(n)]
    straw_combo = HitCollection(
        hits=[Hit(pos=np.zeros(3), t_ns=1000.0, flag=HitFlag.ACTIVE | HitFlag.NOISY) for _ in range(n)]
    )
    return straw_hits, straw_combo


def test_straw_flags_follow_reverse_index():
    col = _hits(2, sh_indices=[(0, 1), (2,)])
    res = FlagPropagator().apply([_cluster(col, [0])], [_scored(0.8)], col)
    straw_hits, straw_combo = _straw_level(3)
    shflags = propagate_to_straw_hits(col, res.from_clusters, straw_hits, straw_combo)
    base = HitFlag.ACTIVE | HitFlag.NOISY
    assert shflags == [base | HitFlag.BKGCLUST | HitFlag.BKG] * 2 + [base]


def test_straw_size_mismatch_is_fatal():
    col = _hits(2, sh_indices=[(0,), (1,)])
    straw_hits, _ = _straw_level(3)
    _, straw_combo = _straw_level(2)
    with pytest.raises(DataConsistencyError, match="sizes"):
        check_straw_inputs(col, straw_hits, straw_combo)


def test_straw_index_problems():
    straw_hits, straw_combo = _straw_level(2)
    with pytest.raises(DataConsistencyError):
        check_straw_inputs(_hits(2), straw_hits, straw_combo)
    with pytest.raises(DataConsistencyError):
        check_straw_inputs(_hits(2, sh_indices=[(0,), (7,)]), straw_hits, straw_combo)
    with pytest.raises(DataConsistencyError):
        check_straw_inputs(_hits(2, sh_indices=[(0,), (1,)]), None, straw_combo)


def test_filtered_hits_only_change_flags():
    hits = [
        Hit(pos=np.array([500.0 + i, 10.0 * i, -3.0 * i]), t_ns=900.0 + 7.0 * i,
            wdir=np.array([np.cos(0.3 * i), np.sin(0.3 * i), 0.0]),
            wres=2.0 + i, tres=0.5 * (i + 1), plane=i, nsh=1 + i % 2, flag=BASE)
        for i in range(4)
    ]
    col = HitCollection(hits=hits, parent="makeSH")
    res = FlagPropagator(max_isolated=1, filter_output=True).apply(
        [_cluster(col, [1]), _cluster(col, [2, 3])], [BkgQual(), _scored(0.2)], col
    )
    assert res.kept == [0, 1, 2, 3]
    for src, out in zip(col, res.filtered):
        np.testing.assert_array_equal(out.pos, src.pos)
        np.testing.assert_array_equal(out.wdir, src.wdir)
        assert (out.t_ns, out.wres, out.tres, out.plane, out.nsh) == (
            src.t_ns, src.wres, src.tres, src.plane, src.nsh)
    assert res.filtered[1].flag == BASE | HitFlag.BKGCLUST | HitFlag.ISOLATED
    assert res.filtered[0].flag == BASE
