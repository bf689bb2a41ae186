"""Marginal likelihood of a tree pair.

Given the terminal nodes of the two trees of a pair, the coefficients of their
basis columns (and of the interaction columns) have a conjugate Gaussian
posterior once the fixed effects are integrated out. This module builds the
combined design, factorizes the posterior precision and returns everything
the Metropolis-Hastings step and the shrinkage updates need.
"""

import numpy as np
import scipy.linalg
from .node import Node
from .state import ChainState
from .exceptions import NumericalDegeneracyError
from .mytyping import NDArrayFloat


class PairEvaluation():
    """
    Result of evaluating a pair of terminal-node sets.

    Attributes
    ----------
    Xd : NDArrayFloat
        Combined design, tree1 columns, tree2 columns, then interaction
        columns ordered as `p1 + p2 + i*p2 + j`.
    n_term1, n_term2 : int
        Terminal counts of the two trees.
    has_mix : bool
        Whether interaction columns are included.
    temp_v : NDArrayFloat
        Weighted cross-product minus its projection on the fixed effects,
        without the prior diagonal.
    precision : NDArrayFloat
        Posterior precision of the coefficients (up to the residual variance).
    v_theta, v_theta_chol : NDArrayFloat
        Posterior covariance and its lower Cholesky factor.
    theta_hat : NDArrayFloat
        Posterior mean.
    beta : float
        theta_hat' (projected residual), the quadratic form of the
        acceptance ratio.
    log_vtheta_chol : float
        Sum of the log diagonal of `v_theta_chol`.
    """
    def __init__(self, Xd: NDArrayFloat, n_term1: int, n_term2: int, has_mix: bool,
                 temp_v: NDArrayFloat, precision: NDArrayFloat, v_theta: NDArrayFloat,
                 v_theta_chol: NDArrayFloat, theta_hat: NDArrayFloat, beta: float):
        self.Xd = Xd
        self.n_term1 = n_term1
        self.n_term2 = n_term2
        self.has_mix = has_mix
        self.temp_v = temp_v
        self.precision = precision
        self.v_theta = v_theta
        self.v_theta_chol = v_theta_chol
        self.theta_hat = theta_hat
        self.beta = beta
        self.log_vtheta_chol = float(np.sum(np.log(np.diag(v_theta_chol))))
        self.draw_all: NDArrayFloat | None = None

    @property
    def p_xd(self) -> int:
        return self.Xd.shape[1]

    def draw(self, rng: np.random.Generator, sigma2: float) -> NDArrayFloat:
        """
        Draw the coefficients from their posterior and split them by block.

        Parameters
        ----------
        rng : np.random.Generator
        sigma2 : float
            Current residual variance.

        Returns
        -------
        NDArrayFloat
            The full coefficient draw.
        """
        p1, p2 = self.n_term1, self.n_term2
        noise = rng.standard_normal(self.p_xd) * np.sqrt(sigma2)
        self.draw_all = self.theta_hat + self.v_theta_chol @ noise
        self.draw1 = self.draw_all[:p1]
        self.draw2 = self.draw_all[p1:p1+p2]
        self.draw_mix = self.draw_all[p1+p2:]
        self.term1_t2 = float(self.draw1 @ self.draw1)
        self.term2_t2 = float(self.draw2 @ self.draw2)
        self.mix_t2 = float(self.draw_mix @ self.draw_mix)
        return self.draw_all

    def fitted(self) -> NDArrayFloat:
        if self.draw_all is None:
            raise ValueError('Coefficients have not been drawn yet')
        return self.Xd @ self.draw_all


def build_design(nodes1: list[Node], nodes2: list[Node], has_mix: bool) -> NDArrayFloat:
    """
    Stack the terminal basis columns of both trees and, if requested, their
    elementwise products.
    """
    X1 = np.column_stack([node.get_basis() for node in nodes1])
    X2 = np.column_stack([node.get_basis() for node in nodes2])
    if not has_mix:
        return np.hstack([X1, X2])
    Xmix = (X1[:, :, None] * X2[:, None, :]).reshape(X1.shape[0], -1)
    return np.hstack([X1, X2, Xmix])


def evaluate_pair(nodes1: list[Node], nodes2: list[Node], state: ChainState, ZtR: NDArrayFloat,
                  tree_var: float, m1_var: float, m2_var: float, mix_var: float,
                  temp_v: NDArrayFloat | None = None, label: str = '') -> PairEvaluation:
    """
    Evaluate the conjugate posterior of a pair of terminal-node sets.

    Parameters
    ----------
    nodes1, nodes2 : list of Node
        Terminal nodes of tree1 and tree2, ordered along the lag axis.
    state : ChainState
        Current chain state; reads the residual, weights and fixed-effect projector.
    ZtR : NDArrayFloat
        Weighted fixed-effect cross-product of the residual, `Zw' R`.
    tree_var : float
        Tree-level variance (global scale times tree scale).
    m1_var, m2_var : float
        Exposure variances of the two trees.
    mix_var : float
        Interaction variance. Zero disables the interaction columns.
    temp_v : NDArrayFloat or None, optional
        Cached cross-product block (Gaussian family only). If None it is computed.
    label : str, optional
        Identifies the tree pair in error messages.

    Returns
    -------
    PairEvaluation

    Raises
    ------
    NumericalDegeneracyError
        If the posterior precision is not positive definite.
    """
    p1, p2 = len(nodes1), len(nodes2)
    has_mix = mix_var != 0
    Xd = build_design(nodes1, nodes2, has_mix)
    p_xd = Xd.shape[1]

    diag_var = np.empty(p_xd)
    diag_var[:p1] = 1.0 / (m1_var * tree_var)
    diag_var[p1:p1+p2] = 1.0 / (m2_var * tree_var)
    diag_var[p1+p2:] = 1.0 / (mix_var * tree_var) if has_mix else 0.

    if state.family == 'gaussian':
        # main-effect cross-products are cached on the nodes
        ZtX = np.empty((state.p, p_xd))
        ZtX[:, :p1] = np.column_stack([node.get_ztx() for node in nodes1])
        ZtX[:, p1:p1+p2] = np.column_stack([node.get_ztx() for node in nodes2])
        if has_mix:
            ZtX[:, p1+p2:] = state.Zw.T @ Xd[:, p1+p2:]
    else:
        ZtX = state.Zw.T @ Xd
    VgZtX = state.Vg @ ZtX

    if state.family == 'gaussian':
        if temp_v is None:
            temp_v = Xd.T @ Xd - ZtX.T @ VgZtX
        XtVzInvR = Xd.T @ state.R
    elif state.family == 'logistic':
        Xdw = state.omega[:, None] * Xd
        temp_v = Xdw.T @ Xd - ZtX.T @ VgZtX
        XtVzInvR = Xdw.T @ state.R
    else:
        idx = state.nb_idx
        Xs = Xd[idx]
        Xdw = state.omega[idx, None] * Xs
        temp_v = Xdw.T @ Xs - ZtX.T @ VgZtX
        XtVzInvR = Xdw.T @ state.R[idx]

    XtVzInvR = XtVzInvR - VgZtX.T @ ZtR
    precision = temp_v + np.diag(diag_var)
    precision = 0.5 * (precision + precision.T)

    try:
        c_and_lower = scipy.linalg.cho_factor(precision, lower=True)
        v_theta = scipy.linalg.cho_solve(c_and_lower, np.eye(p_xd))
        v_theta = 0.5 * (v_theta + v_theta.T)
        v_theta_chol = np.linalg.cholesky(v_theta)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NumericalDegeneracyError(f'Posterior precision is not positive definite at iteration {state.b}, tree pair {label} '
                                       f'({p1} x {p2} terminal nodes, interaction={has_mix}): {e}') from e

    theta_hat = v_theta @ XtVzInvR
    beta = float(theta_hat @ XtVzInvR)
    return PairEvaluation(Xd, p1, p2, has_mix, temp_v, precision, v_theta, v_theta_chol, theta_hat, beta)
