"""Scale and probability samplers for bayestdlmm.

This module implements the half-Cauchy full conditional used for every
shrinkage scale of the model (global, per tree, per exposure and per pair of
exposures) and the Dirichlet update of the exposure-selection probabilities.
"""

import numpy as np
from .utils import invgamma_rvs, dirichlet_logpdf, log_dirichlet_rvs
from .exceptions import NumericalDegeneracyError
from .mytyping import NDArrayFloat


def rhalfcauchy_fc(x2: float, a: float, b: float, rng: np.random.Generator,
                   what: str = 'scale') -> tuple[float, float]:
    """
    Draw a squared half-Cauchy scale from its full conditional.

    Uses the mixture representation x^2 | y ~ IG(1/2, 1/y), y ~ IG(1/2, 1).
    The auxiliary 1/y is drawn first as Gamma(1, x^2/(x^2+1)), then
    x^2 ~ IG((a+1)/2, b/2 + 1/y). With a = b = 0 this is a pure prior draw.

    Parameters
    ----------
    x2 : float
        Current value of the squared scale.
    a : float
        Degrees contributed by the data (number of terms).
    b : float
        Sum of squares contributed by the data, already divided by any
        variance it is conditioned on.
    rng : np.random.Generator
        The random number generator.
    what : str, optional
        Name of the scale, used in error messages.

    Returns
    -------
    tuple
        (new squared scale, auxiliary 1/y).

    Raises
    ------
    NumericalDegeneracyError
        If the draw is not a finite positive number.
    """
    y_inv = rng.gamma(1.0, x2 / (x2 + 1.0))
    new_x2 = invgamma_rvs(0.5 * (a + 1.0), 0.5 * b + y_inv, rng)
    if not np.isfinite(new_x2) or new_x2 <= 0:
        raise NumericalDegeneracyError(f'Invalid draw for {what}: {new_x2} (current={x2}, a={a}, b={b})')
    return float(new_x2), float(y_inv)


def sample_exposure_prob(counts: NDArrayFloat, kappa: float,
                         rng: np.random.Generator) -> tuple[NDArrayFloat, NDArrayFloat]:
    """
    Draw the exposure-selection probabilities from Dirichlet(counts + kappa).

    The draw is made in log space. Components whose probability underflows
    are stored as the smallest positive float, so every exposure stays
    selectable by the switch move.

    Parameters
    ----------
    counts : NDArrayFloat
        Number of trees currently assigned to each exposure.
    kappa : float
        Shared concentration.
    rng : np.random.Generator

    Returns
    -------
    tuple
        (probability vector, its finite log-probabilities)
    """
    log_p = log_dirichlet_rvs(np.asarray(counts, dtype=float) + kappa, rng)
    p = np.maximum(np.exp(log_p), np.finfo(float).tiny)
    return p / p.sum(), log_p


def update_kappa(kappa: float, log_exp_prob: NDArrayFloat, rng: np.random.Generator,
                 step: float = 0.5) -> tuple[float, bool]:
    """
    Metropolis-Hastings update of the shared Dirichlet concentration.

    Random walk on log kappa with a Gamma(1, 1) prior on kappa. The target
    is the symmetric Dirichlet density of the current exposure-selection
    log-probabilities.

    Parameters
    ----------
    kappa : float
        Current concentration.
    log_exp_prob : NDArrayFloat
        Log of the current exposure-selection probabilities.
    rng : np.random.Generator
    step : float, optional
        Standard deviation of the log-scale random walk (default 0.5).

    Returns
    -------
    tuple
        (new kappa, whether the proposal was accepted)

    Raises
    ------
    NumericalDegeneracyError
        If the acceptance ratio is not finite.
    """
    new_kappa = kappa * np.exp(step * rng.standard_normal())
    n_exp = len(log_exp_prob)
    # Gamma(1, 1) prior plus the log-scale Jacobian
    ratio = dirichlet_logpdf(log_exp_prob, np.full(n_exp, new_kappa)) - \
        dirichlet_logpdf(log_exp_prob, np.full(n_exp, kappa)) - \
        (new_kappa - kappa) + np.log(new_kappa) - np.log(kappa)
    if not np.isfinite(ratio):
        raise NumericalDegeneracyError(f'Non-finite acceptance ratio for kappa: {ratio} (current={kappa}, proposed={new_kappa})')
    if np.log(rng.uniform()) < ratio:
        return float(new_kappa), True
    return kappa, False
