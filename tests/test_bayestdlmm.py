import numpy as np
import pandas as pd
import pytest
from scipy import stats
from scipy.special import expit

from bayestdlmm import (
    TDLMM,
    run_chains,
    sim_dlmm,
    ConfigurationError,
    NumericalDegeneracyError,
)
from bayestdlmm.tree import Tree
from bayestdlmm.exposure_data import ExposureData
from bayestdlmm.state import ChainState
from bayestdlmm.marginal import evaluate_pair
from bayestdlmm.samplers import rhalfcauchy_fc, sample_exposure_prob, update_kappa
from bayestdlmm.utils import sample_int, dirichlet_logpdf

# =============================================================================
# Fixtures for simulated exposure data
# =============================================================================
@pytest.fixture
def dlmm_data():
    rng = np.random.default_rng(42)
    exposures, Z, y = sim_dlmm(150, rng, n_exp=2, n_lags=8, window=(3, 5), mix_effect=0.2)
    return exposures, Z, y

@pytest.fixture
def small_model(dlmm_data):
    exposures, Z, y = dlmm_data
    return TDLMM(exposures, y, Z, n_trees=3, iters=20, burnin=20, seed=1)

@pytest.fixture
def grown_tree():
    rng = np.random.default_rng(7)
    X = rng.standard_normal((60, 10))
    Z = np.ones((60, 1))
    tree = Tree(0, ExposureData(X, Z, 'e1'), rng, debug=True)
    step_prob = np.array([0.25, 0.25, 0.4, 0.1])
    n_grown = 0
    while n_grown < 3:
        _, success = tree.propose('grow', step_prob)
        if success:
            tree.accept()
            n_grown += 1
        else:
            tree.reject()
    return tree, step_prob

# =============================================================================
# Tests for sim_dlmm
# =============================================================================
def test_sim_dlmm():
    """Test that sim_dlmm returns exposures, design and outcome with the expected shapes."""
    rng = np.random.default_rng(42)
    exposures, Z, y = sim_dlmm(100, rng, n_exp=3, n_lags=12)
    assert list(exposures.keys()) == ['e1', 'e2', 'e3']
    for X in exposures.values():
        assert isinstance(X, pd.DataFrame)
        assert X.shape == (100, 12)
    assert isinstance(Z, pd.DataFrame)
    assert 'intercept' in Z.columns
    assert isinstance(y, pd.Series)
    assert y.shape[0] == 100

# =============================================================================
# Tests for samplers
# =============================================================================
def test_sample_int_skips_zero_weights():
    rng = np.random.default_rng(0)
    draws = [sample_int(rng, [0., 0., 0., 1.]) for _ in range(500)]
    assert set(draws) == {3}
    draws = [sample_int(rng, [2., 0., 1.]) for _ in range(500)]
    assert 1 not in draws

def test_half_cauchy_chain_matches_prior():
    """
    Chaining the full conditional with no data must leave the standard
    half-Cauchy invariant.
    """
    rng = np.random.default_rng(2024)
    n = 100_000
    x2 = 1.
    draws = np.empty(n)
    for i in range(n):
        x2, _ = rhalfcauchy_fc(x2, 0., 0., rng)
        draws[i] = np.sqrt(x2)
    res = stats.kstest(draws, stats.halfcauchy.cdf)
    assert res.statistic < 0.02

def test_half_cauchy_non_finite_is_fatal():
    rng = np.random.default_rng(0)
    with pytest.raises(NumericalDegeneracyError):
        rhalfcauchy_fc(1., 1., np.inf, rng, what='nu')

def test_dirichlet_draws_on_simplex():
    rng = np.random.default_rng(3)
    for _ in range(200):
        p, log_p = sample_exposure_prob(np.array([5., 0., 1.]), 1., rng)
        assert np.isclose(p.sum(), 1.)
        assert np.all(p > 0)
        assert np.allclose(np.exp(log_p), p, atol=1e-12)

def test_dirichlet_small_concentration_stays_positive():
    rng = np.random.default_rng(4)
    for _ in range(2000):
        p, log_p = sample_exposure_prob(np.array([10., 0., 0.]), 1e-3, rng)
        assert np.all(p > 0)
        assert np.all(np.isfinite(log_p))
        assert np.isclose(np.logaddexp.reduce(log_p), 0.)

def test_update_kappa_stays_positive():
    rng = np.random.default_rng(3)
    log_p = np.log(np.array([0.6, 0.3, 0.1]))
    kappa = 1.
    for _ in range(100):
        kappa, accepted = update_kappa(kappa, log_p, rng)
        assert kappa > 0
        assert isinstance(accepted, bool)
    assert np.isfinite(dirichlet_logpdf(log_p, np.full(3, kappa)))

def test_kappa_chain_with_unused_exposures():
    rng = np.random.default_rng(5)
    counts = np.array([40., 0., 0.])
    kappa = 1.
    with np.errstate(divide='raise', invalid='raise'):
        for _ in range(500):
            p, log_p = sample_exposure_prob(counts, kappa, rng)
            kappa, _ = update_kappa(kappa, log_p, rng)
            assert np.isfinite(kappa) and kappa > 0
            assert np.all(p > 0)

def test_update_kappa_non_finite_is_fatal():
    rng = np.random.default_rng(3)
    with pytest.raises(NumericalDegeneracyError):
        update_kappa(1., np.array([0., np.nan, -1.]), rng)

# =============================================================================
# Tests for Tree
# =============================================================================
def test_tree_partitions_lag_axis(grown_tree):
    tree, _ = grown_tree
    assert tree.is_valid()
    terms = tree.list_terminal()
    assert len(terms) == 4
    assert terms[0].tmin == 1 and terms[-1].tmax == 10
    assert sum(node.width for node in terms) == 10

def test_tree_show(grown_tree, capsys):
    tree, _ = grown_tree
    assert tree.get_root().depth == 0
    tree.show()
    out = capsys.readouterr().out
    assert '[1, 10]' in out

def test_reject_leaves_tree_identical(grown_tree):
    tree, step_prob = grown_tree
    before = [(node.get_window(), node.get_basis().copy()) for node in tree.list_terminal()]
    version = tree.version
    for move in ('grow', 'prune', 'change'):
        tree.propose(move, step_prob)
        tree.reject()
    after = tree.list_terminal()
    assert len(after) == len(before)
    for (window, basis), node in zip(before, after):
        assert node.get_window() == window
        assert np.array_equal(node.get_basis(), basis)
    assert tree.version == version
    assert tree.is_valid()

def test_one_resolution_per_proposal(grown_tree):
    tree, step_prob = grown_tree
    rng = np.random.default_rng(11)
    for i in range(10000):
        move = ('grow', 'prune', 'change')[sample_int(rng, [1., 1., 1.])]
        _, success = tree.propose(move, step_prob)
        if success and rng.uniform() < 0.5:
            tree.accept()
        else:
            tree.reject()
        if i % 50 == 0:
            assert tree.is_valid()
    assert tree.is_valid()
    c = tree.move_counters
    assert c['proposed'] == c['accepted'] + c['rejected']
    assert c['failed'] <= c['rejected']

def test_pending_proposal_must_be_resolved(grown_tree):
    tree, step_prob = grown_tree
    _, success = tree.propose('prune', step_prob)
    assert success
    with pytest.raises(RuntimeError):
        tree.propose('grow', step_prob)
    tree.reject()

def test_prune_stump_fails():
    rng = np.random.default_rng(0)
    tree = Tree(0, ExposureData(rng.standard_normal((20, 5)), np.ones((20, 1))), rng)
    log_ratio, success = tree.propose('prune', np.ones(4))
    assert not success and log_ratio == 0.
    assert tree.proposed is None
    tree.reject()
    assert tree.move_counters['failed'] == 1

def test_grow_ratio_matches_tree_prior():
    """
    On a stump with uniform split weights the grow ratio equals the prior
    ratio, the move probability ratio and the inverse split proposal.
    """
    rng = np.random.default_rng(5)
    n_lags = 9
    tree = Tree(0, ExposureData(rng.standard_normal((20, n_lags)), np.ones((20, 1))), rng)
    step_prob = np.array([0.3, 0.2, 0.4, 0.1])
    log_ratio, success = tree.propose('grow', step_prob)
    assert success
    delta_prior = tree.proposed.calc_log_tree_prob() - tree.calc_log_tree_prob()
    expected = np.log(0.2) - np.log(0.9) + delta_prior + np.log(n_lags - 1)
    assert np.isclose(log_ratio, expected)
    tree.accept()

def test_single_lag_tree_cannot_grow():
    rng = np.random.default_rng(0)
    tree = Tree(0, ExposureData(rng.standard_normal((20, 1)), np.ones((20, 1))), rng)
    _, success = tree.propose('grow', np.ones(4))
    assert not success
    tree.reject()
    assert tree.get_n_leaves() == 1

# =============================================================================
# Tests for the marginal likelihood engine
# =============================================================================
def _grow_pair(model, n_grow=2):
    pair = model.pairs[0]
    for tree in (pair.tree1, pair.tree2):
        for _ in range(n_grow):
            _, success = tree.propose('grow', model.state.step_prob)
            if success:
                tree.accept()
            else:
                tree.reject()
    return pair

def test_cholesky_identities(small_model):
    state = small_model.state
    pair = _grow_pair(small_model)
    ZtR = state.Zw.T @ state.R
    mhr = evaluate_pair(pair.tree1.list_terminal(), pair.tree2.list_terminal(), state, ZtR,
                        1.5, 0.8, 1.2, 0.5)
    p = mhr.p_xd
    assert p == mhr.n_term1 + mhr.n_term2 + mhr.n_term1 * mhr.n_term2
    assert np.allclose(mhr.v_theta_chol @ mhr.v_theta_chol.T, mhr.v_theta, atol=1e-8)
    assert np.allclose(mhr.precision @ mhr.v_theta, np.eye(p), atol=1e-6)
    assert np.isclose(mhr.log_vtheta_chol, 0.5 * np.linalg.slogdet(mhr.v_theta)[1])

def test_interaction_columns_layout(small_model):
    state = small_model.state
    pair = _grow_pair(small_model)
    t1, t2 = pair.tree1.list_terminal(), pair.tree2.list_terminal()
    mhr = evaluate_pair(t1, t2, state, state.Zw.T @ state.R, 1., 1., 1., 1.)
    p1, p2 = len(t1), len(t2)
    i, j = p1 - 1, p2 - 1
    assert np.array_equal(mhr.Xd[:, p1 + p2 + i * p2 + j], t1[i].get_basis() * t2[j].get_basis())

def test_no_interaction_without_mix_variance(small_model):
    state = small_model.state
    pair = small_model.pairs[0]
    mhr = evaluate_pair(pair.tree1.list_terminal(), pair.tree2.list_terminal(), state,
                        state.Zw.T @ state.R, 1., 1., 1., 0.)
    assert not mhr.has_mix
    assert mhr.p_xd == mhr.n_term1 + mhr.n_term2

def test_non_positive_definite_precision_is_fatal(small_model):
    state = small_model.state
    pair = small_model.pairs[0]
    with pytest.raises(NumericalDegeneracyError, match='tree pair 0'):
        evaluate_pair(pair.tree1.list_terminal(), pair.tree2.list_terminal(), state,
                      state.Zw.T @ state.R, 1., -1e-12, 1., 0., label='0')

def test_switch_to_current_exposure_is_noop(small_model):
    pair = small_model.pairs[0]
    version = pair.tree1.version
    new_tree, success = pair.propose_switch(0, pair.tree1.exposure, small_model.exposures)
    assert new_tree is None and not success
    assert pair.tree1.version == version

def test_switch_refreshes_bases(small_model):
    pair = _grow_pair(small_model)
    old_exp = pair.tree2.exposure
    new_exp = 1 - old_exp
    new_tree, success = pair.propose_switch(1, new_exp, small_model.exposures)
    assert success
    assert pair.tree2.exposure == old_exp
    for node in new_tree.list_terminal():
        assert np.array_equal(node.get_basis(), small_model.exposures[new_exp].basis_column(node.tmin, node.tmax))
    pair.tree2.replace_subtree(new_tree)
    assert pair.tree2.exposure == new_exp
    assert pair.tree2.is_valid()

def test_non_positive_residual_sum_of_squares_is_fatal(small_model):
    state = small_model.state
    pair = _grow_pair(small_model)
    t1, t2 = pair.tree1.list_terminal(), pair.tree2.list_terminal()
    ZtR = state.Zw.T @ state.R
    mhr0 = evaluate_pair(t1, t2, state, ZtR, 1., 1., 1., 1.)
    mhr = evaluate_pair(t1[:1], t2, state, ZtR, 1., 1., 1., 1.)
    with pytest.raises(NumericalDegeneracyError, match='residual sum of squares'):
        pair.log_mh_ratio(state, 0, 0., mhr, mhr0, 1., 1., 1., 1., 1., (-1e6, 0.))

# =============================================================================
# Tests for the Gaussian cross-product cache
# =============================================================================
def _evaluate_current(pair, state):
    t1, t2 = pair.tree1.list_terminal(), pair.tree2.list_terminal()
    mix_var = state.mix_var(pair.tree1.exposure, pair.tree2.exposure)
    return evaluate_pair(t1, t2, state, state.Zw.T @ state.R, 1., 1., 1., mix_var)

def test_cached_block_matches_fresh_evaluation(dlmm_data, monkeypatch):
    gaps = []

    def checked_evaluate(nodes1, nodes2, state, ZtR, *args, temp_v=None, label=''):
        mhr = evaluate_pair(nodes1, nodes2, state, ZtR, *args, temp_v=temp_v, label=label)
        if temp_v is not None:
            fresh = evaluate_pair(nodes1, nodes2, state, ZtR, *args, label=label)
            scale = max(1., np.abs(fresh.temp_v).max())
            gaps.append(np.abs(mhr.temp_v - fresh.temp_v).max() / scale)
            assert np.isclose(mhr.beta, fresh.beta, rtol=1e-8, atol=1e-10)
            assert np.isclose(mhr.log_vtheta_chol, fresh.log_vtheta_chol, rtol=1e-8, atol=1e-10)
        return mhr

    monkeypatch.setattr('bayestdlmm.tree_pair.evaluate_pair', checked_evaluate)
    exposures, Z, y = dlmm_data
    model = TDLMM(exposures, y, Z, n_trees=4, iters=40, burnin=20, seed=6)
    res = model.run()
    assert len(gaps) > 0
    assert max(gaps) < 1e-8
    assert res['cache_counters']['cache_hits'] == len(gaps)

    state = model.state
    for pair in model.pairs:
        assert pair.cache_valid
        assert pair.cache_stamp[:2] == (pair.tree1.version, pair.tree2.version)
        assert np.allclose(pair.cache_temp_v, _evaluate_current(pair, state).temp_v, atol=1e-8)

def test_cache_stale_after_accepted_change(small_model):
    state = small_model.state
    pair = small_model.pairs[0]
    mhr = _evaluate_current(pair, state)
    pair._store_cache(state, mhr)
    assert pair._cached_temp_v(state, mhr.has_mix) is mhr.temp_v
    hits = state.cache_counters['cache_hits']

    success = False
    while not success:
        _, success = pair.tree2.propose('grow', state.step_prob)
        if success:
            pair.tree2.accept()
        else:
            pair.tree2.reject()
    assert pair.cache_stamp[:2] != (pair.tree1.version, pair.tree2.version)
    assert pair._cached_temp_v(state, mhr.has_mix) is None
    assert state.cache_counters['cache_hits'] == hits

    new_exp = 1 - pair.tree1.exposure
    pair._store_cache(state, _evaluate_current(pair, state))
    pair.tree1.set_exposure(new_exp, small_model.exposures[new_exp])
    assert pair._cached_temp_v(state, mhr.has_mix) is None

def test_cache_survives_rejected_proposal(small_model):
    state = small_model.state
    pair = small_model.pairs[0]
    mhr = _evaluate_current(pair, state)
    pair._store_cache(state, mhr)
    before = mhr.temp_v.copy()
    _, success = pair.tree2.propose('grow', state.step_prob)
    pair.tree2.reject()
    assert pair._cached_temp_v(state, mhr.has_mix) is mhr.temp_v
    assert np.array_equal(pair.cache_temp_v, before)
    assert state.cache_counters['cache_hits'] == 1

def test_cache_keyed_on_interaction_flag(small_model):
    state = small_model.state
    pair = small_model.pairs[0]
    mhr = _evaluate_current(pair, state)
    pair._store_cache(state, mhr)
    assert pair._cached_temp_v(state, not mhr.has_mix) is None

# =============================================================================
# Tests for the interaction table layout
# =============================================================================
def test_mix_var_reads_lower_triangle():
    rng = np.random.default_rng(0)
    state = ChainState(np.zeros(5), np.ones((5, 1)), 2, 1, rng, interaction=1)
    state.mu_mix[1, 0] = 3.
    state.mu_mix[0, 1] = 7.
    assert state.mix_var(0, 1) == state.mix_var(1, 0) == 3.
    assert state.mix_var(0, 0) == 0.
    assert state.mix_pairs() == [(1, 0)]
    state.interaction = 2
    state.mu_mix[1, 1] = 5.
    assert state.mix_var(1, 1) == 5.
    assert sorted(state.mix_pairs()) == [(0, 0), (1, 0), (1, 1)]
    state.interaction = 0
    assert state.mix_var(1, 0) == 0.

@pytest.mark.parametrize('exps', [(0, 1), (1, 0)])
def test_interaction_accumulators_use_lower_triangle(dlmm_data, exps):
    exposures, Z, y = dlmm_data
    model = TDLMM(exposures, y, Z, n_trees=1, iters=5, burnin=5, interaction=2, seed=12)
    state = model.state
    pair = model.pairs[0]
    pair.tree1.set_exposure(exps[0], model.exposures[exps[0]])
    pair.tree2.set_exposure(exps[1], model.exposures[exps[1]])
    state.step_prob = np.array([0.25, 0.25, 0.5, 0.])
    state.reset_accumulators()
    pair.update(state, model.exposures)
    assert state.tree1_exp[0] == exps[0] and state.tree2_exp[0] == exps[1]
    assert state.mix_count[1, 0] == 1 and state.mix_count[0, 1] == 0
    assert state.tot_term_mix[1, 0] == state.n_term[0] * state.n_term2[0]
    assert state.tot_term_mix[0, 1] == 0 and state.sum_term_t2_mix[0, 1] == 0
    assert state.mix_inf[1, 0] == state.tau[0]

# =============================================================================
# Tests for TDLMM (Gaussian)
# =============================================================================
def test_tdlmm_run_gaussian(dlmm_data):
    exposures, Z, y = dlmm_data
    model = TDLMM(exposures, y, Z, n_trees=4, iters=30, burnin=20, thinning=2,
                  diagnostics=True, seed=3, debug=True)
    res = model.run()
    n_rec = 15
    assert res['sigma2'].shape == (n_rec,)
    assert res['gamma'].shape == (n_rec, Z.shape[1])
    assert res['tau'].shape == (n_rec, 4)
    assert res['mu_exp'].shape == (n_rec, 2)
    assert res['mu_mix'].shape == (n_rec, 3)
    assert res['exp_count'].sum(axis=1).tolist() == [8.] * n_rec
    assert np.all(res['sigma2'] > 0) and np.all(res['nu'] > 0) and np.all(res['tau'] > 0)
    assert res['fhat'].shape == (len(y),)
    assert not res['interrupted']
    assert res['family_counters'] == {}
    for key in ['timings', 'setup', 'move_counters', 'cache_counters', 'family_counters']:
        assert key in res

    dlm = res['dlm']
    assert list(dlm.columns[:8]) == ['iter', 'tree', 'side', 'exposure', 'tmin', 'tmax', 'est', 'exp_var']
    assert dlm['iter'].min() == 1 and dlm['iter'].max() == n_rec
    assert set(dlm['exp_name']) <= {'e1', 'e2'}
    mix = res['mix']
    assert np.all(mix['exp1'] <= mix['exp2'])

    accept = res['tree_accept']
    assert len(accept) == 2 * 4 * 50
    assert set(accept['success']) <= {0, 1, 2}
    c = res['move_counters']
    assert c['proposed'] == c['accepted'] + c['rejected']

def test_residual_invariant_after_run(small_model):
    small_model.run()
    state = small_model.state
    assert state.residual_gap() < 1e-8
    assert np.allclose(state.fhat, state.rmat.sum(axis=1))

def test_run_twice_raises(small_model):
    small_model.run()
    with pytest.raises(RuntimeError):
        small_model.run()

def test_same_seed_same_chain(dlmm_data):
    exposures, Z, y = dlmm_data
    res1 = TDLMM(exposures, y, Z, n_trees=2, iters=10, burnin=5, seed=9).run()
    res2 = TDLMM(exposures, y, Z, n_trees=2, iters=10, burnin=5, seed=np.random.default_rng(9)).run()
    assert np.array_equal(res1['sigma2'], res2['sigma2'])
    assert res1['dlm'].equals(res2['dlm'])

def test_closed_form_ridge():
    """
    With one exposure, stumps only and no interaction, each tree of the pair
    contributes a single cumulative-exposure column and the model is a ridge
    regression on [Z | x | x] with prior N(0, 100 sigma2) on the fixed
    effects and N(0, sigma2 nu) on each tree coefficient. Given the global
    scale of the previous iteration, the draws must centre on the
    corresponding posterior mean.
    """
    rng = np.random.default_rng(123)
    exposures, Z, y = sim_dlmm(400, rng, n_exp=1, n_lags=5, window=(1, 5), effect=0.5)
    model = TDLMM(exposures, y, Z, n_trees=1, iters=600, burnin=200, step_prob=[0, 0, 0, 1],
                  interaction=0, shrinkage=0, seed=4)
    res = model.run()
    assert np.all(res['term_nodes'] == 1) and np.all(res['term_nodes2'] == 1)
    theta = res['dlm'].groupby('iter')['est'].sum().to_numpy()

    Zm, yv = Z.to_numpy(), y.to_numpy()
    x = exposures['e1'].to_numpy().sum(axis=1)
    W = np.column_stack([Zm, x, x])
    WtW, Wty = W.T @ W, W.T @ yv
    p = Zm.shape[1]
    means = np.array([np.linalg.solve(WtW + np.diag(np.r_[np.full(p, 0.01), 1. / nu, 1. / nu]), Wty)
                      for nu in res['nu'][:-1]])

    def centred(draws, expected):
        d = draws - expected
        return abs(d.mean()) < 4. * d.std() / np.sqrt(len(d))

    assert centred(theta[1:], means[:, p] + means[:, p + 1])
    for j in range(p):
        assert centred(res['gamma'][1:, j], means[:, j])

def test_exposure_prob_warmup(dlmm_data):
    exposures, Z, y = dlmm_data
    res = TDLMM(exposures, y, Z, n_trees=3, iters=5, burnin=40,
                exp_prob_warmup_iter=1000, exp_prob_warmup_frac=2., seed=2).run()
    assert np.allclose(res['exp_prob'], 0.5)
    res = TDLMM(exposures, y, Z, n_trees=3, iters=5, burnin=0, seed=2).run()
    assert not np.allclose(res['exp_prob'], 0.5)
    assert np.allclose(res['exp_prob'].sum(axis=1), 1.)

def test_estimated_kappa(dlmm_data):
    exposures, Z, y = dlmm_data
    res = TDLMM(exposures, y, Z, n_trees=3, iters=20, burnin=0, mix_prior=-1, seed=2).run()
    assert np.all(res['kappa'] > 0)
    assert np.all(res['exp_prob'] > 0)
    for p, kappa in zip(res['exp_prob'], res['kappa']):
        assert np.isfinite(dirichlet_logpdf(np.log(p), np.full(len(p), kappa)))
    assert res['setup']['mix_prior'] == -1

def test_interrupt(dlmm_data):
    exposures, Z, y = dlmm_data
    calls = []
    def interrupt():
        calls.append(1)
        return len(calls) > 5
    model = TDLMM(exposures, y, Z, n_trees=2, iters=20, burnin=2, interrupt=interrupt, seed=2)
    res = model.run()
    assert res['interrupted']
    assert model.state.b == 5
    assert res['sigma2'].shape == (3,)

def test_run_chains(dlmm_data):
    exposures, Z, y = dlmm_data
    out = run_chains(2, exposures, y, Z, n_trees=2, iters=10, burnin=5, seed=10, n_jobs=1)
    assert len(out) == 2
    assert out[0]['setup']['seed'] == 10 and out[1]['setup']['seed'] == 11
    assert not np.array_equal(out[0]['sigma2'], out[1]['sigma2'])

# =============================================================================
# Tests for the logistic and ZINB families
# =============================================================================
def test_tdlmm_run_logistic(dlmm_data):
    exposures, Z, y = dlmm_data
    rng = np.random.default_rng(8)
    yb = (rng.uniform(size=len(y)) < expit(y - y.mean())).astype(float)
    model = TDLMM(exposures, yb, Z, family='logistic', n_trees=3, iters=15, burnin=10, seed=5, debug=True)
    res = model.run()
    assert np.all(res['sigma2'] == 1.)
    assert np.all(np.isfinite(res['gamma']))
    assert np.all(model.state.omega > 0)
    assert model.state.residual_gap() < 1e-8

def test_tdlmm_run_zinb(dlmm_data):
    exposures, Z, _ = dlmm_data
    rng = np.random.default_rng(8)
    n = Z.shape[0]
    counts = rng.negative_binomial(5, 0.5, size=n).astype(float)
    counts[rng.uniform(size=n) < 0.3] = 0.
    model = TDLMM(exposures, counts, Z, family='zinb', n_trees=3, iters=15, burnin=10, seed=5)
    res = model.run()
    assert res['b1'].shape == (15, Z.shape[1])
    assert np.array_equal(res['b2'], res['gamma'])
    assert np.all(res['r'] > 0)
    assert np.all(model.state.omega[counts == 0] == 0)
    fc = res['family_counters']
    assert fc['r_proposed'] == 1 + 10 + 15
    assert 0 <= fc['r_accepted'] <= fc['r_proposed']

# =============================================================================
# Tests for configuration errors
# =============================================================================
def test_config_errors(dlmm_data):
    exposures, Z, y = dlmm_data
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y[:-1], Z)
    with pytest.raises(ConfigurationError):
        TDLMM({'e1': exposures['e1'], 'e2': exposures['e2'].iloc[:, :5]}, y, Z)
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, family='poisson')
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, step_prob=[0.5, 0.5, 0.])
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, mix_prior=0)
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, split_prob=np.ones(3))
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, exp_prob=[1.])
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, shrinkage=4)
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, family='logistic')
    with pytest.raises(ConfigurationError):
        TDLMM(exposures, y, Z, family='zinb')

def test_invalid_seed(dlmm_data):
    exposures, Z, y = dlmm_data
    with pytest.raises(ValueError):
        TDLMM(exposures, y, Z, seed='abc')
