"""Storage of the posterior draws of a chain.

Scalar and vector parameters are stored in preallocated arrays, one row per
recorded iteration. Terminal-node effects, interaction effects and acceptance
diagnostics have a variable number of entries per iteration and are appended
as rows, then converted to pandas DataFrames at the end of the run.
"""

import numpy as np
import pandas as pd
from .state import ChainState
from .marginal import PairEvaluation

DLM_COLUMNS = ['iter', 'tree', 'side', 'exposure', 'tmin', 'tmax', 'est', 'exp_var']
MIX_COLUMNS = ['iter', 'tree', 'exp1', 'tmin1', 'tmax1', 'exp2', 'tmin2', 'tmax2', 'est']
ACCEPT_COLUMNS = ['iter', 'tree', 'side', 'step', 'success', 'exposure', 'n_term', 'step_mhr', 'ratio']
STEP_NAMES = ['grow', 'prune', 'change', 'switch']


class ChainLog():
    """
    Recorded draws of one chain.

    Parameters
    ----------
    n_rec : int
        Number of recorded iterations.
    state : ChainState
        Used for the dimensions of the stored parameters.
    n_zi : int, optional
        Number of zero-inflation coefficients (ZINB only).
    """
    def __init__(self, n_rec: int, state: ChainState, n_zi: int = 0):
        self.n_rec = n_rec
        self.n_recorded = 0
        self.mix_pairs = state.mix_pairs()
        T, n_exp, n_mix = state.n_trees, state.n_exp, len(self.mix_pairs)

        self.gamma = np.zeros((n_rec, state.p))
        self.sigma2 = np.zeros(n_rec)
        self.nu = np.zeros(n_rec)
        self.kappa = np.zeros(n_rec)
        self.tau = np.zeros((n_rec, T))
        self.term_nodes = np.zeros((n_rec, T))
        self.term_nodes2 = np.zeros((n_rec, T))
        self.tree1_exp = np.zeros((n_rec, T), dtype=int)
        self.tree2_exp = np.zeros((n_rec, T), dtype=int)
        self.mu_exp = np.zeros((n_rec, n_exp))
        self.exp_prob = np.zeros((n_rec, n_exp))
        self.exp_count = np.zeros((n_rec, n_exp))
        self.exp_inf = np.zeros((n_rec, n_exp))
        self.mu_mix = np.zeros((n_rec, n_mix))
        self.mix_count = np.zeros((n_rec, n_mix))
        self.mix_inf = np.zeros((n_rec, n_mix))
        self.fhat_sum = np.zeros(state.n)
        self.is_zinb = state.family == 'zinb'
        if self.is_zinb:
            self.b1 = np.zeros((n_rec, n_zi))
            self.r = np.zeros(n_rec)

        self.dlm_rows: list[tuple] = []
        self.mix_rows: list[tuple] = []
        self.accept_rows: list[tuple] = []

    def add_accept(self, b: int, t: int, side: int, step: int, success: int, exposure: int,
                   n_term: int, step_mhr: float, ratio: float):
        self.accept_rows.append((b, t, side, step, success, exposure, n_term, step_mhr, ratio))

    def add_terminal_records(self, record: int, t: int, mhr0: PairEvaluation, exps: list[int],
                             exp_vars: list[float], terms: list, tau: float, has_mix: bool):
        """
        Append one row per terminal node of both trees and, if the pair has
        an interaction, one row per pair of terminal nodes. Interaction rows
        list the exposure with the smaller index first.
        """
        m1, m2 = exps
        for i, node in enumerate(terms[0]):
            self.dlm_rows.append((record, t, 0, m1, node.tmin, node.tmax, mhr0.draw1[i], tau * exp_vars[0]))
        for j, node in enumerate(terms[1]):
            self.dlm_rows.append((record, t, 1, m2, node.tmin, node.tmax, mhr0.draw2[j], tau * exp_vars[1]))
        if not has_mix:
            return
        k = 0
        for node1 in terms[0]:
            for node2 in terms[1]:
                if m1 <= m2:
                    row = (record, t, m1, node1.tmin, node1.tmax, m2, node2.tmin, node2.tmax, mhr0.draw_mix[k])
                else:
                    row = (record, t, m2, node2.tmin, node2.tmax, m1, node1.tmin, node1.tmax, mhr0.draw_mix[k])
                self.mix_rows.append(row)
                k += 1

    def record_iteration(self, state: ChainState, family_params: dict):
        """
        Store the parameters of a recorded iteration at row `state.record - 1`.
        """
        r = state.record - 1
        self.fhat_sum += state.fhat
        self.gamma[r] = state.gamma
        self.sigma2[r] = state.sigma2
        self.nu[r] = state.nu
        self.kappa[r] = state.kappa
        self.tau[r] = state.tau
        self.term_nodes[r] = state.n_term
        self.term_nodes2[r] = state.n_term2
        self.tree1_exp[r] = state.tree1_exp
        self.tree2_exp[r] = state.tree2_exp
        self.mu_exp[r] = state.mu_exp
        self.exp_prob[r] = state.exp_prob
        self.exp_count[r] = state.exp_count
        self.exp_inf[r] = state.exp_inf
        if len(self.mix_pairs) > 0:
            hi, lo = map(list, zip(*self.mix_pairs))
            self.mu_mix[r] = state.mu_mix[hi, lo]
            self.mix_count[r] = state.mix_count[hi, lo]
            self.mix_inf[r] = state.mix_inf[hi, lo]
        if self.is_zinb:
            self.b1[r] = family_params['b1']
            self.r[r] = family_params['r']
        self.n_recorded = state.record

    def to_dict(self, exposure_names: list[str] | None = None) -> dict:
        """
        Collect the recorded draws. Arrays are truncated to the iterations
        actually recorded, so an interrupted chain returns what it has.

        Returns
        -------
        dict
            DataFrames 'dlm', 'mix', 'tree_accept' and one array per parameter.
        """
        k = self.n_recorded
        dlm = pd.DataFrame(self.dlm_rows, columns=DLM_COLUMNS)
        mix = pd.DataFrame(self.mix_rows, columns=MIX_COLUMNS)
        accept = pd.DataFrame(self.accept_rows, columns=ACCEPT_COLUMNS)
        accept['move'] = pd.Categorical.from_codes(accept['step'].astype(int), STEP_NAMES) if len(accept) > 0 \
            else pd.Categorical([], categories=STEP_NAMES)
        if exposure_names is not None:
            names = np.array(exposure_names)
            dlm['exp_name'] = names[dlm['exposure'].to_numpy(dtype=int)]
        out = {
            'dlm': dlm, 'mix': mix, 'tree_accept': accept,
            'gamma': self.gamma[:k], 'sigma2': self.sigma2[:k], 'nu': self.nu[:k],
            'kappa': self.kappa[:k], 'tau': self.tau[:k],
            'term_nodes': self.term_nodes[:k], 'term_nodes2': self.term_nodes2[:k],
            'tree1_exp': self.tree1_exp[:k], 'tree2_exp': self.tree2_exp[:k],
            'mu_exp': self.mu_exp[:k], 'exp_prob': self.exp_prob[:k],
            'exp_count': self.exp_count[:k], 'exp_inf': self.exp_inf[:k],
            'mu_mix': self.mu_mix[:k], 'mix_count': self.mix_count[:k], 'mix_inf': self.mix_inf[:k],
            'mix_pairs': self.mix_pairs,
            'fhat': self.fhat_sum / k if k > 0 else self.fhat_sum,
        }
        if self.is_zinb:
            out.update({'b1': self.b1[:k], 'b2': self.gamma[:k], 'r': self.r[:k]})
        return out
