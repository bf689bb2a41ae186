"""Chain state for bayestdlmm.

A ChainState holds everything the sampler mutates during one chain: the
working response and residual, the fixed-effect projector, the per-tree fitted
columns, every variance and shrinkage scale, the exposure-selection
probabilities and the per-iteration accumulators. It is created by the driver
and passed explicitly to every component, so independent chains never share
state.
"""

import numpy as np
from .mytyping import NDArrayFloat, NDArrayInt


class ChainState():
    """
    Mutable state of a single chain.

    Attributes
    ----------
    rng : np.random.Generator
        The single random stream of the chain.
    family : str
        'gaussian', 'logistic' or 'zinb'.
    shrinkage : int
        0 none, 1 exposure-level, 2 tree-level only, 3 both.
    interaction : int
        0 off, 1 cross-exposure only, 2 including self-interaction.
    step_prob : NDArrayFloat
        Normalized probabilities of (grow, prune, change, switch exposure).
    y, ystar, R, fhat : NDArrayFloat
        Outcome, working response, residual (ystar - fhat) and total tree fit.
    Z, Zw, Vg, VgChol : NDArrayFloat
        Fixed-effect design, its weighted version, the prior-augmented
        inverse cross-product and its Cholesky factor.
    omega : NDArrayFloat
        Working weights (Polya-Gamma weights for logistic and ZINB).
    nb_idx : NDArrayInt
        Observations entering the count sub-likelihood (ZINB).
    rmat : NDArrayFloat
        `n x T` matrix, column t is the current fit of tree pair t.
    """
    def __init__(self, y: NDArrayFloat, Z: NDArrayFloat, n_exp: int, n_trees: int,
                 rng: np.random.Generator, family: str = 'gaussian', shrinkage: int = 3,
                 interaction: int = 2, step_prob: NDArrayFloat | None = None,
                 exp_prob: NDArrayFloat | None = None, kappa: float = 1.0,
                 diagnostics: bool = False, debug: bool = False):
        self.rng = rng
        self.family = family
        self.shrinkage = shrinkage
        self.interaction = interaction
        self.diagnostics = diagnostics
        self.debug = debug
        if step_prob is None:
            step_prob = np.array([0.25, 0.25, 0.4, 0.1])
        self.step_prob = np.asarray(step_prob, dtype=float) / np.sum(step_prob)

        self.n, self.p = Z.shape
        self.n_exp = n_exp
        self.n_trees = n_trees

        # data and working response
        self.y = y
        self.ystar = y.astype(float).copy()
        self.R = self.ystar.copy()
        self.fhat = np.zeros(self.n)
        self.Z = Z
        self.Zw = Z
        VgInv = Z.T @ Z + np.eye(self.p) / 100.
        self.Vg = np.linalg.inv(VgInv)
        self.VgChol = np.linalg.cholesky(self.Vg)
        self.gamma = np.zeros(self.p)
        self.omega = np.ones(self.n)
        self.nb_idx: NDArrayInt = np.arange(self.n)

        # variances and shrinkage
        self.sigma2 = 1.
        self.xi_inv_sigma2 = 1.
        self.nu = 1.
        self.tau = np.ones(n_trees)
        self.mu_exp = np.ones(n_exp)
        self.mu_mix = np.ones((n_exp, n_exp))

        # exposure selection
        if exp_prob is None:
            exp_prob = np.ones(n_exp)
        self.exp_prob = np.asarray(exp_prob, dtype=float) / np.sum(exp_prob)
        with np.errstate(divide='ignore'):
            self.log_exp_prob = np.log(self.exp_prob)
        self.kappa = kappa

        # tree bookkeeping
        self.rmat = np.zeros((self.n, n_trees))
        self.n_term = np.ones(n_trees)
        self.n_term2 = np.ones(n_trees)
        self.tree1_exp = np.zeros(n_trees, dtype=int)
        self.tree2_exp = np.zeros(n_trees, dtype=int)

        # iteration
        self.b = 0
        self.record = 0
        self.cache_counters = {'cache_hits': 0, 'cache_fills': 0}

        self.reset_accumulators()
        self.tot_term = 0.
        self.sum_term_t2 = 0.

    def reset_accumulators(self):
        """Zero the per-iteration counters accumulated across tree pairs."""
        n_exp = self.n_exp
        self.exp_count = np.zeros(n_exp)
        self.exp_inf = np.zeros(n_exp)
        self.tot_term_exp = np.zeros(n_exp)
        self.sum_term_t2_exp = np.zeros(n_exp)
        self.mix_count = np.zeros((n_exp, n_exp))
        self.mix_inf = np.zeros((n_exp, n_exp))
        self.tot_term_mix = np.zeros((n_exp, n_exp))
        self.sum_term_t2_mix = np.zeros((n_exp, n_exp))

    def mix_var(self, m1: int, m2: int) -> float:
        """
        Interaction variance of a pair of exposures, 0 if the pair has no
        interaction. The table is read at (max index, min index).
        """
        if self.interaction and (self.interaction == 2 or m1 != m2):
            return float(self.mu_mix[max(m1, m2), min(m1, m2)])
        return 0.

    def mix_pairs(self) -> list[tuple[int, int]]:
        """(max, min) exposure index pairs that carry an interaction scale."""
        if not self.interaction:
            return []
        return [(j, i) for i in range(self.n_exp) for j in range(i, self.n_exp)
                if j > i or self.interaction == 2]

    def update_totals(self):
        """Total term count and sum of squares across exposures and interactions."""
        self.sum_term_t2 = self.sum_term_t2_exp.sum()
        self.tot_term = self.tot_term_exp.sum()
        if self.interaction:
            self.sum_term_t2 += self.sum_term_t2_mix.sum()
            self.tot_term += self.tot_term_mix.sum()

    def residual_gap(self) -> float:
        """Largest deviation between the stored residual and ystar minus the tree fits."""
        return float(np.max(np.abs(self.ystar - self.rmat.sum(axis=1) - self.R)))
