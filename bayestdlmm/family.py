"""Outcome families for bayestdlmm.

Each family refreshes, once per iteration, the fixed-effect coefficients, the
family-specific weights and variance, and the working response and residual
seen by the tree updates. Logistic and zero-inflated negative-binomial
outcomes are handled with Polya-Gamma augmentation, which makes the working
response conditionally Gaussian with known per-observation precisions.
"""

import numpy as np
from scipy.special import expit
from scipy.stats import nbinom
from polyagamma import random_polyagamma
from .state import ChainState
from .samplers import rhalfcauchy_fc
from .exceptions import AbstractMethodError, NumericalDegeneracyError
from .mytyping import NDArrayFloat


def _prior_inverse(A: NDArrayFloat, prior_var: float) -> tuple[NDArrayFloat, NDArrayFloat]:
    '''Inverse of A + I/prior_var and the lower Cholesky factor of the inverse.'''
    V = np.linalg.inv(A + np.eye(A.shape[0]) / prior_var)
    V = 0.5 * (V + V.T)
    try:
        return V, np.linalg.cholesky(V)
    except np.linalg.LinAlgError as e:
        raise NumericalDegeneracyError(f'Fixed-effect covariance is not positive definite: {e}') from e


class Family():
    """
    Base class of the outcome families.

    Parameters
    ----------
    prior_var : float, optional
        Prior variance of the fixed-effect coefficients (default 100).
    """
    name = ''

    def __init__(self, prior_var: float = 100.):
        self.prior_var = prior_var

    def init_state(self, state: ChainState):
        """
        Set the initial working response and weights. Called once before the
        first re-estimation.
        """
        raise AbstractMethodError()

    def reestimate(self, state: ChainState):
        """
        Refresh fixed-effect coefficients, family weights, variance and the
        working residual. Mutates `state` in place.
        """
        raise AbstractMethodError()

    def record(self) -> dict:
        '''Family-specific parameters to store at recorded iterations.'''
        return {}

    def counters(self) -> dict:
        '''Acceptance counters of family-specific Metropolis steps.'''
        return {}

    def _draw_gamma(self, state: ChainState) -> NDArrayFloat:
        '''Draw the fixed effects given the current residual, weights and variance.'''
        ZtR = state.Zw.T @ state.R
        noise = state.rng.standard_normal(state.p) * np.sqrt(state.sigma2)
        return state.Vg @ ZtR + state.VgChol @ noise


class GaussianFamily(Family):
    """
    Continuous outcome with Gaussian errors. The residual variance has a
    half-Cauchy prior on its square root.
    """
    name = 'gaussian'

    def init_state(self, state: ChainState):
        state.ystar = state.y.astype(float)
        state.Zw = state.Z
        state.Vg, state.VgChol = _prior_inverse(state.Z.T @ state.Z, self.prior_var)
        state.R = state.ystar - state.fhat

    def reestimate(self, state: ChainState):
        state.gamma = self._draw_gamma(state)
        e = state.R - state.Z @ state.gamma
        state.sigma2, state.xi_inv_sigma2 = rhalfcauchy_fc(
            state.sigma2, state.n + state.tot_term, e @ e + state.sum_term_t2 / state.nu,
            state.rng, what='sigma2')
        state.R = state.ystar - state.fhat


class LogisticFamily(Family):
    """
    Binomial outcome with logit link, `y` successes out of `size` trials.

    Parameters
    ----------
    size : NDArrayFloat
        Number of trials per observation.
    init_params : NDArrayFloat or None, optional
        Initial fixed-effect coefficients (default zeros).
    """
    name = 'logistic'

    def __init__(self, size: NDArrayFloat, init_params: NDArrayFloat | None = None, prior_var: float = 100.):
        super().__init__(prior_var)
        self.size = np.asarray(size, dtype=float)
        self.init_params = init_params

    def _update_weights(self, state: ChainState):
        state.omega = random_polyagamma(self.size, state.fhat + state.Z @ state.gamma, random_state=state.rng)
        state.Zw = state.omega[:, None] * state.Z
        state.Vg, state.VgChol = _prior_inverse(state.Z.T @ state.Zw, self.prior_var)
        state.ystar = self.kappa / state.omega
        state.R = state.ystar - state.fhat

    def init_state(self, state: ChainState):
        self.kappa = state.y - 0.5 * self.size
        state.sigma2 = 1.
        if self.init_params is not None:
            state.gamma = np.asarray(self.init_params, dtype=float)
        self._update_weights(state)

    def reestimate(self, state: ChainState):
        state.gamma = self._draw_gamma(state)
        self._update_weights(state)


class ZINBFamily(Family):
    """
    Zero-inflated negative-binomial count outcome.

    Observations with a positive count form the at-risk set entering the
    count sub-likelihood; zeros are attributed to the zero-inflation
    component. The zero-inflation coefficients `b1` follow a Polya-Gamma
    logistic regression of the zero indicator on `Z_zi`. The count
    coefficients `b2` play the role of the fixed effects of the tree model.

    Parameters
    ----------
    Z_zi : NDArrayFloat
        Design of the zero-inflation component.
    r : float, optional
        Initial dispersion (default 5).
    update_r : bool, optional
        Whether to update the dispersion by random-walk Metropolis-Hastings on log r.
    r_step : float, optional
        Standard deviation of the log r random walk (default 0.1).
    """
    name = 'zinb'

    def __init__(self, Z_zi: NDArrayFloat, r: float = 5., update_r: bool = True,
                 r_step: float = 0.1, prior_var: float = 100.):
        super().__init__(prior_var)
        self.Z_zi = Z_zi
        self.r = float(r)
        self.update_r = update_r
        self.r_step = r_step
        self.r_accepted = 0
        self.r_proposed = 0

    def init_state(self, state: ChainState):
        y = state.y
        self.at_risk = y > 0
        state.nb_idx = np.flatnonzero(self.at_risk)
        self.zero_ind = (~self.at_risk).astype(float)
        self.b1 = np.zeros(self.Z_zi.shape[1])
        self.omega1 = np.ones(state.n)
        state.sigma2 = 1.
        state.omega = np.where(self.at_risk, 1., 0.)
        self._update_working_response(state)

    def _update_working_response(self, state: ChainState):
        w = np.where(self.at_risk, state.omega, 0.)
        state.Zw = w[:, None] * state.Z
        state.Vg, state.VgChol = _prior_inverse(state.Zw.T @ state.Z, self.prior_var)
        ystar = np.zeros(state.n)
        ystar[self.at_risk] = 0.5 * (state.y[self.at_risk] - self.r) / state.omega[self.at_risk]
        state.ystar = ystar
        state.R = state.ystar - state.fhat

    def _update_zero_inflation(self, state: ChainState):
        Z1 = self.Z_zi
        self.omega1 = random_polyagamma(1., Z1 @ self.b1, random_state=state.rng)
        V1, V1Chol = _prior_inverse(Z1.T @ (self.omega1[:, None] * Z1), self.prior_var)
        mean = V1 @ (Z1.T @ (self.zero_ind - 0.5))
        self.b1 = mean + V1Chol @ state.rng.standard_normal(Z1.shape[1])

    def _nb_loglik(self, r: float, eta: NDArrayFloat, y: NDArrayFloat) -> float:
        # mean r * exp(eta)
        return float(np.sum(nbinom.logpmf(y, r, expit(-eta))))

    def _update_dispersion(self, state: ChainState, eta: NDArrayFloat):
        y = state.y[self.at_risk]
        new_r = self.r * np.exp(self.r_step * state.rng.standard_normal())
        self.r_proposed += 1
        ratio = self._nb_loglik(new_r, eta, y) - self._nb_loglik(self.r, eta, y)
        if np.log(state.rng.uniform()) < ratio:
            self.r = float(new_r)
            self.r_accepted += 1

    def reestimate(self, state: ChainState):
        self._update_zero_inflation(state)
        state.gamma = self._draw_gamma(state)
        eta = (state.Z @ state.gamma + state.fhat)[self.at_risk]
        if self.update_r:
            self._update_dispersion(state, eta)
        omega = np.zeros(state.n)
        omega[self.at_risk] = random_polyagamma(state.y[self.at_risk] + self.r, eta, random_state=state.rng)
        state.omega = omega
        self._update_working_response(state)

    def record(self) -> dict:
        return {'b1': self.b1.copy(), 'r': self.r}

    def counters(self) -> dict:
        return {'r_accepted': self.r_accepted, 'r_proposed': self.r_proposed}


def get_family(family: str, **kwargs) -> Family:
    """
    Build the family object from its name.

    Parameters
    ----------
    family : str
        'gaussian', 'logistic' or 'zinb'.
    **kwargs
        Passed to the family constructor.
    """
    families = {'gaussian': GaussianFamily, 'logistic': LogisticFamily, 'zinb': ZINBFamily}
    if family not in families:
        raise ValueError(f'Unknown family {family}')
    return families[family](**kwargs)
