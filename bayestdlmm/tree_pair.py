"""Tree pairs and their Metropolis-Hastings update.

A tree pair holds two lag partition trees, each assigned to an exposure, that
contribute jointly to the linear predictor through their main effects and
(optionally) the interaction surface formed by products of their terminal
basis columns. Each iteration every tree of the pair gets one proposal
(grow, prune, change or switch exposure), accepted or rejected on the
marginal likelihood of the pair.
"""

import numpy as np
from .tree import Tree, MOVES
from .exposure_data import ExposureData
from .state import ChainState
from .marginal import PairEvaluation, evaluate_pair
from .samplers import rhalfcauchy_fc
from .exceptions import NumericalDegeneracyError
from .utils import sample_int
from .mytyping import NDArrayFloat

SWITCH = 3


class TreePair():
    """
    Two trees sharing an interaction slot.

    The Gaussian family caches the cross-product block of the pair. The cache
    carries an explicit validity flag and is stamped with the versions of
    both trees and the interaction flag it was computed for; any committed
    change of either tree makes the stamp stale.

    Attributes
    ----------
    t : int
        Index of the pair.
    tree1, tree2 : Tree
        The two trees.
    cache_valid : bool
        Whether `cache_temp_v` holds a usable cross-product block.
    cache_stamp : tuple
        (tree1 version, tree2 version, interaction flag) of the cached block.
    """
    def __init__(self, t: int, tree1: Tree, tree2: Tree):
        self.t = t
        self.tree1 = tree1
        self.tree2 = tree2
        self.cache_temp_v: NDArrayFloat | None = None
        self.cache_valid = False
        self.cache_stamp: tuple = ()

    def _stamp(self, has_mix: bool) -> tuple:
        return (self.tree1.version, self.tree2.version, has_mix)

    def _cached_temp_v(self, state: ChainState, has_mix: bool) -> NDArrayFloat | None:
        if state.family != 'gaussian':
            return None
        if self.cache_valid and self.cache_stamp == self._stamp(has_mix):
            state.cache_counters['cache_hits'] += 1
            return self.cache_temp_v
        return None

    def _store_cache(self, state: ChainState, mhr: PairEvaluation):
        if state.family != 'gaussian':
            return
        self.cache_temp_v = mhr.temp_v
        self.cache_stamp = self._stamp(mhr.has_mix)
        self.cache_valid = True
        state.cache_counters['cache_fills'] += 1

    def propose_switch(self, side: int, new_exp: int, exposures: list[ExposureData]) -> tuple[Tree | None, bool]:
        """
        Build a clone of one tree reassigned to another exposure.

        Parameters
        ----------
        side : int
            0 for tree1, 1 for tree2.
        new_exp : int
            Proposed exposure index.
        exposures : list of ExposureData

        Returns
        -------
        tuple
            (clone with refreshed terminal bases, success). Proposing the
            current exposure fails and changes nothing.
        """
        tree = self.tree1 if side == 0 else self.tree2
        if new_exp == tree.exposure:
            return None, False
        new_tree = tree.clone()
        new_tree.set_exposure(new_exp, exposures[new_exp])
        return new_tree, True

    def log_mh_ratio(self, state: ChainState, side: int, step_mhr: float, mhr: PairEvaluation,
                     mhr0: PairEvaluation, tree_var: float, new_exp_var: float, exp_var: float,
                     new_mix_var: float, mix_var: float, gauss_terms: tuple[float, float]) -> float:
        """
        Log Metropolis-Hastings ratio of a candidate evaluation against the baseline.

        Parameters
        ----------
        state : ChainState
        side : int
            0 if tree1 is being updated, 1 for tree2.
        step_mhr : float
            Proposal log-ratio of the structural move (0 for exposure switches).
        mhr, mhr0 : PairEvaluation
            Candidate and baseline evaluations.
        tree_var : float
        new_exp_var, exp_var : float
            Exposure variance of the updated tree under candidate and baseline.
        new_mix_var, mix_var : float
            Interaction variance under candidate and baseline.
        gauss_terms : tuple
            (R'R, R'Z Vg Z'R), used by the Gaussian family only.

        Raises
        ------
        NumericalDegeneracyError
            If the ratio is not a number.
        """
        n_new = mhr.n_term1 if side == 0 else mhr.n_term2
        n_old = mhr0.n_term1 if side == 0 else mhr0.n_term2
        ratio = step_mhr + mhr.log_vtheta_chol - mhr0.log_vtheta_chol
        if state.family == 'gaussian':
            RtR, RtZVgZtR = gauss_terms
            new_ss = 0.5 * (RtR - RtZVgZtR - mhr.beta) + state.xi_inv_sigma2
            old_ss = 0.5 * (RtR - RtZVgZtR - mhr0.beta) + state.xi_inv_sigma2
            if not (new_ss > 0 and old_ss > 0):
                raise NumericalDegeneracyError(f'Non-positive residual sum of squares at iteration {state.b}, tree pair {self.t}: '
                                               f'candidate {new_ss}, current {old_ss}')
            ratio -= 0.5 * (state.n + 1.) * (np.log(new_ss) - np.log(old_ss))
        else:
            ratio += 0.5 * (mhr.beta - mhr0.beta)
        ratio -= 0.5 * (np.log(tree_var * new_exp_var) * n_new - np.log(tree_var * exp_var) * n_old)

        if new_mix_var != 0:
            ratio -= 0.5 * np.log(tree_var * new_mix_var) * mhr.n_term1 * mhr.n_term2
        if mix_var != 0:
            ratio += 0.5 * np.log(tree_var * mix_var) * mhr0.n_term1 * mhr0.n_term2
        if np.isnan(ratio):
            raise NumericalDegeneracyError(f'Acceptance ratio is NaN at iteration {state.b}, tree pair {self.t}')
        return float(ratio)

    def update(self, state: ChainState, exposures: list[ExposureData], chain_log=None):
        """
        Run one Metropolis-Hastings step on each tree of the pair, then draw
        the coefficients of the pair, update the tree shrinkage scale,
        accumulate the exposure statistics and write the pair fit into
        `state.rmat[:, t]`.

        Parameters
        ----------
        state : ChainState
            Chain state. `state.R` must exclude the current fit of this pair.
        exposures : list of ExposureData
        chain_log : ChainLog or None, optional
            Receives terminal-node records and acceptance diagnostics.
        """
        t = self.t
        rng = state.rng
        label = str(t)
        tree_var = state.nu * state.tau[t]
        exps = [self.tree1.exposure, self.tree2.exposure]
        exp_vars = [state.mu_exp[exps[0]], state.mu_exp[exps[1]]]
        mix_var = state.mix_var(exps[0], exps[1])
        ZtR = state.Zw.T @ state.R
        gauss_terms: tuple[float, float] | None = None
        terms = [self.tree1.list_terminal(), self.tree2.list_terminal()]

        # baseline
        temp_v = self._cached_temp_v(state, mix_var != 0)
        mhr0 = evaluate_pair(terms[0], terms[1], state, ZtR, tree_var, exp_vars[0], exp_vars[1],
                             mix_var, temp_v=temp_v, label=label)
        if temp_v is None:
            self._store_cache(state, mhr0)

        for side, tree in enumerate((self.tree1, self.tree2)):
            other = exps[1 - side]
            new_exp, new_exp_var, new_mix_var = exps[side], exp_vars[side], mix_var
            step_mhr, ratio = 0., np.nan
            new_tree: Tree | None = None

            step = sample_int(rng, state.step_prob)
            if len(terms[side]) == 1 and step < SWITCH:
                step = 0

            if step < SWITCH:
                step_mhr, success = tree.propose(MOVES[step], state.step_prob)
                new_terms = tree.list_terminal(include_proposed=True)
            else:
                new_exp = sample_int(rng, state.exp_prob)
                new_tree, success = self.propose_switch(side, new_exp, exposures)
                if success:
                    new_exp_var = state.mu_exp[new_exp]
                    new_mix_var = state.mix_var(new_exp, other)
                    new_terms = new_tree.list_terminal()

            accepted = False
            if success:
                if side == 0:
                    mhr = evaluate_pair(new_terms, terms[1], state, ZtR, tree_var, new_exp_var, exp_vars[1],
                                        new_mix_var, label=label)
                else:
                    mhr = evaluate_pair(terms[0], new_terms, state, ZtR, tree_var, exp_vars[0], new_exp_var,
                                        new_mix_var, label=label)
                if state.family == 'gaussian' and gauss_terms is None:
                    gauss_terms = (float(state.R @ state.R), float(ZtR @ state.Vg @ ZtR))
                ratio = self.log_mh_ratio(state, side, step_mhr, mhr, mhr0, tree_var, new_exp_var,
                                          exp_vars[side], new_mix_var, mix_var, gauss_terms or (0., 0.))

                if np.log(rng.uniform()) < ratio:
                    accepted = True
                    mhr0 = mhr
                    if step == SWITCH:
                        exps[side], exp_vars[side], mix_var = new_exp, new_exp_var, new_mix_var
                        tree.replace_subtree(new_tree)
                    else:
                        tree.accept()
                    self._store_cache(state, mhr0)
                    terms[side] = tree.list_terminal()
                elif step < SWITCH:
                    tree.reject()
            elif step < SWITCH:
                tree.reject()

            if state.diagnostics and chain_log is not None:
                chain_log.add_accept(state.b, t, side, step, 2 if accepted else int(success),
                                     exps[side], len(terms[side]), step_mhr, ratio)

        self._finalize(state, mhr0, exps, exp_vars, mix_var, terms, chain_log)

    def _finalize(self, state: ChainState, mhr0: PairEvaluation, exps: list[int], exp_vars: list[float],
                  mix_var: float, terms: list, chain_log):
        t = self.t
        m1, m2 = exps
        mhr0.draw(state.rng, state.sigma2)

        tau_t2 = mhr0.term1_t2 / exp_vars[0] + mhr0.term2_t2 / exp_vars[1]
        tot_term = mhr0.n_term1 + mhr0.n_term2
        if mix_var != 0:
            tau_t2 += mhr0.mix_t2 / mix_var
            tot_term += mhr0.n_term1 * mhr0.n_term2
        if state.shrinkage > 1:
            state.tau[t], _ = rhalfcauchy_fc(state.tau[t], tot_term, tau_t2 / (state.sigma2 * state.nu),
                                             state.rng, what=f'tau of tree pair {t} at iteration {state.b}')
        tau = state.tau[t]

        state.n_term[t] = mhr0.n_term1
        state.n_term2[t] = mhr0.n_term2
        state.tree1_exp[t] = m1
        state.tree2_exp[t] = m2
        state.exp_count[m1] += 1
        state.exp_count[m2] += 1
        state.exp_inf[m1] += tau
        state.exp_inf[m2] += tau
        state.tot_term_exp[m1] += mhr0.n_term1
        state.tot_term_exp[m2] += mhr0.n_term2
        state.sum_term_t2_exp[m1] += mhr0.term1_t2 / tau
        state.sum_term_t2_exp[m2] += mhr0.term2_t2 / tau
        if mix_var != 0:
            hi, lo = max(m1, m2), min(m1, m2)
            state.mix_count[hi, lo] += 1
            state.tot_term_mix[hi, lo] += mhr0.n_term1 * mhr0.n_term2
            state.sum_term_t2_mix[hi, lo] += mhr0.mix_t2 / tau
            state.mix_inf[hi, lo] += tau

        state.rmat[:, t] = mhr0.fitted()

        if state.record > 0 and chain_log is not None:
            chain_log.add_terminal_records(state.record, t, mhr0, exps, exp_vars, terms, tau, mix_var != 0)
