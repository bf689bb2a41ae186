"""Treed distributed lag mixture models (TDLMM).

This module implements the TDLMM class, which runs a Markov chain over an
ensemble of tree pairs. Each tree partitions the lag axis of one exposure;
the two trees of a pair contribute main effects and an interaction surface to
the linear predictor. Effects are regularized by a horseshoe-type hierarchy
of half-Cauchy scales (global, per tree, per exposure, per pair of
exposures), and exposures are selected through a Dirichlet-distributed
probability vector.
"""

import time
import numpy as np
import pandas as pd
import numpy.typing as npt
from typing import Sequence, Mapping, Callable
from tqdm import tqdm
import humanize
from joblib import Parallel, delayed
from .exposure_data import ExposureData
from .tree import Tree
from .tree_pair import TreePair
from .state import ChainState
from .family import Family, get_family
from .chain_log import ChainLog
from .samplers import rhalfcauchy_fc, sample_exposure_prob, update_kappa
from .utils import sample_int
from .exceptions import ConfigurationError


class TDLMM():
    """
    Bayesian treed distributed lag mixture model.

    Parameters
    ----------
    exposures : Mapping[str, array-like] or Sequence[array-like]
        One `n x L` matrix per exposure, columns ordered by lag. All
        exposures must share the same number of lags.
    y : pd.Series or array-like
        Outcome. Counts of successes for the logistic family, nonnegative
        integers for the ZINB family.
    Z : pd.DataFrame, array-like or None, optional
        Fixed-effect design. None means an intercept only (default None).
    Z_zi : pd.DataFrame, array-like or None, optional
        Zero-inflation design (ZINB only). None means `Z` (default None).
    family : str, optional
        'gaussian', 'logistic' or 'zinb' (default 'gaussian').
    n_trees : int, optional
        Number of tree pairs (default 20).
    iters : int, optional
        Number of iterations after burn-in (default 1000).
    burnin : int, optional
        Number of burn-in iterations (default 1000).
    thinning : int, optional
        Thinning factor (default 1).
    step_prob : Sequence[float], optional
        Probabilities of the moves (grow, prune, change, switch exposure)
        (default [0.25, 0.25, 0.4, 0.1]).
    tree_prior : tuple of float, optional
        (alpha, beta) of the split prior alpha (1+depth)^-beta (default (0.95, 2)).
    split_prob : Sequence[float] or None, optional
        Weights over the split locations 2..L (default uniform).
    shrinkage : int, optional
        0 none, 1 exposure-level, 2 tree-level only, 3 both (default 3).
    interaction : int, optional
        0 off, 1 cross-exposure only, 2 including self-interaction (default 2).
    mix_prior : float, optional
        Dirichlet concentration of the exposure-selection probabilities.
        A negative value means the concentration is estimated, starting at 1 (default 1).
    exp_prob : Sequence[float] or None, optional
        Initial exposure-selection probabilities (default uniform).
    exp_prob_warmup_iter : int, optional
        The selection probabilities are updated once the iteration exceeds
        this value... (default 1000)
    exp_prob_warmup_frac : float, optional
        ...or this fraction of the burn-in (default 0.5).
    binomial_size : array-like or None, optional
        Number of trials per observation, logistic family (default ones).
    init_params : array-like or None, optional
        Initial fixed effects, logistic family (default zeros).
    nb_dispersion : float, optional
        Initial negative-binomial dispersion, ZINB family (default 5).
    update_dispersion : bool, optional
        Whether to sample the dispersion, ZINB family (default True).
    fixed_effect_prior_var : float, optional
        Prior variance of the fixed effects (default 100).
    diagnostics : bool, optional
        If True, store one acceptance record per tree per iteration (default False).
    interrupt : Callable[[], bool] or None, optional
        Polled at the start of every iteration; returning True stops the chain.
    verbose : str, optional
        Verbosity level. Any non-empty string shows a progress bar.
    seed : int or np.random.Generator, optional
        Random seed or generator (default 45).
    debug : bool, optional
        If True, enables debugging assertions (default False).
    """
    def __init__(self, exposures: Mapping[str, npt.ArrayLike] | Sequence[npt.ArrayLike],
                 y: pd.Series | npt.ArrayLike,
                 Z: pd.DataFrame | npt.ArrayLike | None = None,
                 Z_zi: pd.DataFrame | npt.ArrayLike | None = None,
                 family: str = 'gaussian', n_trees: int = 20,
                 iters: int = 1000, burnin: int = 1000, thinning: int = 1,
                 step_prob: Sequence[float] = [0.25, 0.25, 0.4, 0.1],
                 tree_prior: tuple[float, float] = (0.95, 2.), split_prob: Sequence[float] | None = None,
                 shrinkage: int = 3, interaction: int = 2, mix_prior: float = 1.,
                 exp_prob: Sequence[float] | None = None,
                 exp_prob_warmup_iter: int = 1000, exp_prob_warmup_frac: float = 0.5,
                 binomial_size: npt.ArrayLike | None = None, init_params: npt.ArrayLike | None = None,
                 nb_dispersion: float = 5., update_dispersion: bool = True,
                 fixed_effect_prior_var: float = 100.,
                 diagnostics: bool = False, interrupt: Callable[[], bool] | None = None,
                 verbose: str = '', seed: int | np.random.Generator = 45, debug: bool = False):

        if isinstance(exposures, Mapping):
            self.exposure_names = [str(k) for k in exposures.keys()]
            exp_list = list(exposures.values())
        else:
            exp_list = list(exposures)
            self.exposure_names = [f'e{i+1}' for i in range(len(exp_list))]
        if len(exp_list) == 0:
            raise ConfigurationError('At least one exposure is required')

        self.y = np.asarray(y, dtype=float).ravel()
        n = self.y.shape[0]
        if Z is None:
            Z = np.ones((n, 1))
        self.Z = np.asarray(Z, dtype=float)
        if self.Z.ndim == 1:
            self.Z = self.Z[:, None]
        self.Z_zi = self.Z if Z_zi is None else np.asarray(Z_zi, dtype=float)
        if self.Z_zi.ndim == 1:
            self.Z_zi = self.Z_zi[:, None]

        self.family_name = family
        self.n_trees = n_trees
        self.iters = iters
        self.burnin = burnin
        self.thinning = thinning
        self.step_prob = np.array(step_prob, dtype=float)
        self.alpha, self.beta = float(tree_prior[0]), float(tree_prior[1])
        self.shrinkage = shrinkage
        self.interaction = interaction
        self.mix_prior = float(mix_prior)
        self.estimate_kappa = self.mix_prior < 0
        self.exp_prob_warmup_iter = exp_prob_warmup_iter
        self.exp_prob_warmup_frac = exp_prob_warmup_frac
        self.fixed_effect_prior_var = fixed_effect_prior_var
        self.diagnostics = diagnostics
        self.interrupt = interrupt
        self.verbose = verbose
        self.debug = debug
        self.orig_seed = seed

        if isinstance(seed, (int, float, np.integer, np.floating)):
            self.rng = np.random.default_rng(int(seed))
        elif isinstance(seed, np.random.Generator):
            self.rng = seed
        else:
            raise ValueError(f'Seed must be an int or a numpy random generator, {type(seed)} was given..')

        self._check_config(exp_list, split_prob, exp_prob, binomial_size)

        self.exposures = [ExposureData(X, self.Z, name) for X, name in zip(exp_list, self.exposure_names)]
        self.n_exp = len(self.exposures)
        self.n_lags = self.exposures[0].n_lags
        self.split_prob = np.ones(self.n_lags - 1) if split_prob is None else np.asarray(split_prob, dtype=float)
        self.exp_prob = np.ones(self.n_exp) if exp_prob is None else np.asarray(exp_prob, dtype=float)
        self.n_rec = iters // thinning

        if family == 'gaussian':
            self.family: Family = get_family(family, prior_var=fixed_effect_prior_var)
        elif family == 'logistic':
            size = np.ones(n) if binomial_size is None else np.asarray(binomial_size, dtype=float)
            init = None if init_params is None else np.asarray(init_params, dtype=float)
            self.family = get_family(family, size=size, init_params=init, prior_var=fixed_effect_prior_var)
        else:
            self.family = get_family(family, Z_zi=self.Z_zi, r=nb_dispersion, update_r=update_dispersion,
                                     prior_var=fixed_effect_prior_var)

        self.has_run = False
        self._init()

    def _check_config(self, exp_list: list, split_prob, exp_prob, binomial_size):
        """
        Validate dimensions and options. Raises ConfigurationError before any
        iteration runs.
        """
        n = self.y.shape[0]
        if n == 0:
            raise ConfigurationError('Outcome is empty')
        if not np.all(np.isfinite(self.y)):
            raise ConfigurationError('Outcome contains missing or infinite values')
        if self.Z.shape[0] != n:
            raise ConfigurationError(f'Fixed-effect design has {self.Z.shape[0]} rows, outcome has {n}')
        if self.Z_zi.shape[0] != n:
            raise ConfigurationError(f'Zero-inflation design has {self.Z_zi.shape[0]} rows, outcome has {n}')
        shapes = [np.shape(X) for X in exp_list]
        for name, shape in zip(self.exposure_names, shapes):
            if len(shape) != 2:
                raise ConfigurationError(f'Exposure {name} must be a 2-dimensional n x L matrix')
            if shape[0] != n:
                raise ConfigurationError(f'Exposure {name} has {shape[0]} rows, outcome has {n}')
            if shape[1] != shapes[0][1]:
                raise ConfigurationError(f'Exposure {name} has {shape[1]} lags, expected {shapes[0][1]}')
        n_lags, n_exp = shapes[0][1], len(exp_list)
        if n_lags < 1:
            raise ConfigurationError('Exposures must have at least one lag')

        if self.family_name not in ('gaussian', 'logistic', 'zinb'):
            raise ConfigurationError(f'Unknown family {self.family_name}')
        if self.shrinkage not in (0, 1, 2, 3):
            raise ConfigurationError('shrinkage must be 0, 1, 2 or 3')
        if self.interaction not in (0, 1, 2):
            raise ConfigurationError('interaction must be 0, 1 or 2')
        if self.n_trees < 1:
            raise ConfigurationError('n_trees must be positive')
        if self.iters < 0 or self.burnin < 0 or self.thinning < 1:
            raise ConfigurationError('iters and burnin must be nonnegative, thinning positive')
        if len(self.step_prob) != 4 or np.any(self.step_prob < 0) or self.step_prob.sum() <= 0:
            raise ConfigurationError('step_prob must contain four nonnegative weights (grow, prune, change, switch)')
        if not (0 < self.alpha < 1) or self.beta < 0:
            raise ConfigurationError('tree_prior must satisfy 0 < alpha < 1 and beta >= 0')
        if self.mix_prior == 0:
            raise ConfigurationError('mix_prior must be positive, or negative to estimate it')
        if split_prob is not None:
            sp = np.asarray(split_prob, dtype=float)
            if sp.shape != (n_lags - 1,) or np.any(sp < 0):
                raise ConfigurationError(f'split_prob must contain {n_lags - 1} nonnegative weights')
        if exp_prob is not None:
            ep = np.asarray(exp_prob, dtype=float)
            if ep.shape != (n_exp,) or np.any(ep < 0) or ep.sum() <= 0:
                raise ConfigurationError(f'exp_prob must contain {n_exp} nonnegative weights')

        if self.family_name == 'logistic':
            size = np.ones(n) if binomial_size is None else np.asarray(binomial_size, dtype=float)
            if size.shape != (n,) or np.any(size <= 0):
                raise ConfigurationError('binomial_size must contain one positive value per observation')
            if np.any(self.y < 0) or np.any(self.y > size):
                raise ConfigurationError('Logistic outcome must lie between 0 and binomial_size')
        if self.family_name == 'zinb':
            if np.any(self.y < 0) or np.any(self.y != np.round(self.y)):
                raise ConfigurationError('ZINB outcome must contain nonnegative integers')
            if not np.any(self.y > 0):
                raise ConfigurationError('ZINB outcome has no positive counts')

    def _init(self):
        """
        Build the chain state, the trees and the initial draws of the
        variance and shrinkage parameters.
        """
        if len(self.verbose) > 0:
            print(f'Running {self.family_name} TDLMM with {self.n_exp} exposures, {self.n_lags} lags, {self.n_trees} tree pairs')

        kappa = 1. if self.estimate_kappa else self.mix_prior
        state = ChainState(self.y, self.Z, self.n_exp, self.n_trees, self.rng, family=self.family_name,
                           shrinkage=self.shrinkage, interaction=self.interaction, step_prob=self.step_prob,
                           exp_prob=self.exp_prob, kappa=kappa, diagnostics=self.diagnostics, debug=self.debug)
        self.state = state

        self.pairs: list[TreePair] = []
        for t in range(self.n_trees):
            m1 = sample_int(self.rng, state.exp_prob)
            m2 = sample_int(self.rng, state.exp_prob)
            tree1 = Tree(m1, self.exposures[m1], self.rng, self.alpha, self.beta, self.split_prob, self.debug)
            tree2 = Tree(m2, self.exposures[m2], self.rng, self.alpha, self.beta, self.split_prob, self.debug)
            state.tree1_exp[t], state.tree2_exp[t] = m1, m2
            self.pairs.append(TreePair(t, tree1, tree2))

        self.family.init_state(state)
        self.family.reestimate(state)

        state.nu, _ = rhalfcauchy_fc(state.nu, self.n_trees, 0., self.rng, what='nu')
        if self.shrinkage > 1:
            for t in range(self.n_trees):
                state.tau[t], _ = rhalfcauchy_fc(state.tau[t], 0., 0., self.rng, what=f'tau of tree pair {t}')
        state.rmat[:] = 0.

    def run(self):
        """
        Run the MCMC algorithm.

        Returns
        -------
        dict
            Recorded draws (see ChainLog.to_dict), plus timings, setup,
            move counters, cache and family acceptance counters and whether
            the chain was interrupted.
        """
        if self.has_run:
            raise RuntimeError('The chain has already run. Build a new TDLMM object to rerun.')
        start_time = time.time()
        out = self._run()
        end_time = time.time()

        tot_mh_steps = self.state.b
        elap_time = max(end_time - start_time, 1e-9)
        elap_time_human = humanize.precisedelta(int(elap_time))
        if self.verbose:
            print(f'Elapsed time: {elap_time_human}, Tot iters: {tot_mh_steps}, Iters/min: {int(tot_mh_steps/elap_time*60)}/min')

        timings = {'elap_time': elap_time, 'tot_mh_steps': tot_mh_steps, 'iters/min': int(tot_mh_steps/elap_time*60), 'elap_time_human': elap_time_human}
        out.update({'timings': timings})
        setup = {'family': self.family_name, 'n_trees': self.n_trees, 'iters': self.iters, 'burnin': self.burnin,
                 'thinning': self.thinning, 'step_prob': self.step_prob / self.step_prob.sum(),
                 'tree_prior': (self.alpha, self.beta), 'split_prob': self.split_prob, 'shrinkage': self.shrinkage,
                 'interaction': self.interaction, 'mix_prior': self.mix_prior, 'exp_prob': self.exp_prob,
                 'exposure_names': self.exposure_names, 'n_lags': self.n_lags, 'seed': self.orig_seed,
                 'debug': self.debug, 'verbose': self.verbose}
        move_counters = {k: sum(p.tree1.move_counters[k] + p.tree2.move_counters[k] for p in self.pairs)
                         for k in self.pairs[0].tree1.move_counters}
        out.update({'setup': setup, 'move_counters': move_counters, 'cache_counters': dict(self.state.cache_counters),
                    'family_counters': self.family.counters()})
        return out

    def _run(self) -> dict:
        """
        Execute the main MCMC loop.

        Returns
        -------
        dict
            Recorded draws and the interruption flag.
        """
        self.has_run = True
        state = self.state
        family_params = self.family.record()
        n_zi = len(family_params['b1']) if 'b1' in family_params else 0
        self.chain_log = ChainLog(self.n_rec, state, n_zi=n_zi)
        interrupted = False

        tot_iters = self.burnin + self.iters
        if len(self.verbose) > 0:
            _range = tqdm(range(1, tot_iters + 1))
        else:
            _range = range(1, tot_iters + 1)
        for b in _range:
            if self.interrupt is not None and self.interrupt():
                interrupted = True
                if len(self.verbose) > 0:
                    print(f'Chain interrupted before iteration {b}')
                break
            self._update_once(b)

            if self.debug:
                assert state.residual_gap() < 1e-6 * (1 + np.abs(state.ystar).max())
                for pair in self.pairs:
                    assert pair.tree1.is_valid() and pair.tree2.is_valid()

        out = self.chain_log.to_dict(self.exposure_names)
        out['interrupted'] = interrupted
        return out

    def _update_once(self, b: int):
        """
        One iteration of the chain: update every tree pair against the
        leave-one-out residual, then the family parameters, the shrinkage
        scales and the exposure-selection probabilities.
        """
        state = self.state
        state.b = b
        if b > self.burnin and (b - self.burnin) % self.thinning == 0:
            state.record = (b - self.burnin) // self.thinning
        else:
            state.record = 0

        T = self.n_trees
        state.R += state.rmat[:, 0]
        state.fhat = np.zeros(state.n)
        state.reset_accumulators()
        for t, pair in enumerate(self.pairs):
            pair.update(state, self.exposures, self.chain_log)
            state.fhat += state.rmat[:, t]
            if t < T - 1:
                state.R += state.rmat[:, t + 1] - state.rmat[:, t]

        state.R = state.ystar - state.fhat
        state.update_totals()

        self.family.reestimate(state)

        state.nu, _ = rhalfcauchy_fc(state.nu, state.tot_term, state.sum_term_t2 / state.sigma2, state.rng,
                                     what=f'nu at iteration {b}')
        sigmanu = state.sigma2 * state.nu
        if self.shrinkage in (1, 3):
            for i in range(self.n_exp):
                state.mu_exp[i], _ = rhalfcauchy_fc(state.mu_exp[i], state.tot_term_exp[i],
                                                    state.sum_term_t2_exp[i] / sigmanu, state.rng,
                                                    what=f'exposure scale {i} at iteration {b}')
                if self.interaction:
                    for j in range(i, self.n_exp):
                        if j > i or self.interaction == 2:
                            state.mu_mix[j, i], _ = rhalfcauchy_fc(state.mu_mix[j, i], state.tot_term_mix[j, i],
                                                                   state.sum_term_t2_mix[j, i] / sigmanu, state.rng,
                                                                   what=f'interaction scale ({j}, {i}) at iteration {b}')

        if b > self.exp_prob_warmup_iter or b > self.exp_prob_warmup_frac * self.burnin:
            state.exp_prob, state.log_exp_prob = sample_exposure_prob(state.exp_count, state.kappa, state.rng)
            if self.estimate_kappa:
                state.kappa, _ = update_kappa(state.kappa, state.log_exp_prob, state.rng)

        if state.record > 0:
            self.chain_log.record_iteration(state, self.family.record())


def _run_chain(args, kwargs, seed):
    return TDLMM(*args, seed=seed, **kwargs).run()


def run_chains(n_chains: int, *args, seed: int = 45, n_jobs: int = -1, **kwargs) -> list[dict]:
    """
    Run independent chains in parallel, with seeds seed, seed+1, ...

    Parameters
    ----------
    n_chains : int
        Number of chains.
    *args, **kwargs
        Passed to TDLMM.
    seed : int, optional
        Seed of the first chain (default 45).
    n_jobs : int, optional
        Number of parallel jobs, as in joblib (default -1, all cores).

    Returns
    -------
    list of dict
        The output of `TDLMM.run` for every chain.
    """
    return Parallel(n_jobs)(delayed(_run_chain)(args, kwargs, seed + i) for i in range(n_chains))
