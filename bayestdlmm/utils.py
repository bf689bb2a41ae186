"""Utility functions for bayestdlmm.

This module provides helper functions for sampling from distributions,
computing log-probability densities, a generic choice function and a
simulator for distributed lag mixture data.
"""

from typing import Sequence, TypeVar
import numpy as np
from scipy.special import gammaln, gammainccinv, logsumexp
import pandas as pd
from .mytyping import NDArrayFloat

elem = TypeVar("elem")


def my_choice(rng: np.random.Generator, a: Sequence[elem], replace: bool = False, p: Sequence[float]|None = None) -> elem:
    """
    Sample a random element from a generic sequence using the provided random generator.

    Parameters
    ----------
    rng : np.random.Generator
        The random number generator.
    a : Sequence[elem]
        The sequence to sample from.
    replace : bool, optional
        Whether the sampling is done with replacement (default is False).
    p : Sequence[float] or None, optional
        The probability weights associated with each element (default is None).

    Returns
    -------
    elem
        A randomly selected element from the sequence.
    """
    sampled_idx = rng.choice(len(a), replace=replace, p=p)
    return a[sampled_idx]

def sample_int(rng: np.random.Generator, probs: Sequence[float] | NDArrayFloat) -> int:
    """
    Sample an index with probability proportional to `probs`.

    A single uniform on [0, sum(probs)) is compared against the running sum
    of the weights, so the weights need not be normalized.

    Parameters
    ----------
    rng : np.random.Generator
        The random number generator.
    probs : array-like
        Nonnegative weights.

    Returns
    -------
    int
        An index between 0 and len(probs) - 1.
    """
    cum = np.cumsum(probs)
    u = rng.uniform(0, cum[-1])
    return min(int(np.searchsorted(cum, u, side='right')), len(cum) - 1)

def invgamma_rvs(a, scale, rng):
    """
    Sample a random variate from an inverse gamma distribution.

    Parameters
    ----------
    a : float
        The shape parameter.
    scale : float
        The scale parameter.
    rng : np.random.Generator
        The random number generator.

    Returns
    -------
    float
        A random variate from the inverse gamma distribution, scaled accordingly.
    """
    U = rng.uniform()
    Y = 1.0 / gammainccinv(a, U)
    return Y * scale

def dirichlet_logpdf(log_x, alpha):
    """
    Compute the log probability density function of a Dirichlet distribution.

    Parameters
    ----------
    log_x : array-like
        The logarithm of the point (vector) at which to evaluate the log-pdf.
        Working with logs keeps components that underflow in probability
        scale finite.
    alpha : array-like
        The concentration parameters of the Dirichlet distribution.

    Returns
    -------
    float
        The log probability density.
    """
    return gammaln(np.sum(alpha)) - np.sum(gammaln(alpha)) + np.sum((alpha-1)*np.asarray(log_x))

def log_dirichlet_rvs(alpha, rng):
    """
    Draw the logarithm of a Dirichlet vector.

    Each log-gamma variate is drawn as log G(a+1) + log(U)/a, which stays
    finite for small shapes where G(a) itself underflows to zero, and the
    vector is normalized with log-sum-exp.

    Parameters
    ----------
    alpha : array-like
        Positive concentration parameters.
    rng : np.random.Generator
        The random number generator.

    Returns
    -------
    NDArrayFloat
        Log-probabilities, finite in every component.
    """
    alpha = np.asarray(alpha, dtype=float)
    # 1 - U lies in (0, 1]
    log_g = np.log(rng.gamma(alpha + 1.)) + np.log1p(-rng.uniform(size=alpha.shape)) / alpha
    return log_g - logsumexp(log_g)


def sim_dlmm(n, rng, n_exp=3, n_lags=20, window=(6, 10), effect=0.5, mix_effect=0.0, n_cov=2, sigma=1.0):
    """
    Simulate data from a distributed lag mixture model.

    Exposures are autocorrelated over the lag axis. The outcome depends on the
    cumulative exposure of the first exposure over `window` (1-based, inclusive)
    and, when `mix_effect` is nonzero, on its product with the same window of
    the second exposure.

    Parameters
    ----------
    n : int
        Number of observations.
    rng : np.random.Generator
        Random generator.
    n_exp : int, optional
        Number of exposures (default 3).
    n_lags : int, optional
        Number of lags per exposure (default 20).
    window : tuple of int, optional
        Critical window of the main effect (default (6, 10)).
    effect : float, optional
        Effect per unit of cumulative exposure inside the window (default 0.5).
    mix_effect : float, optional
        Interaction effect between the first two exposures (default 0).
    n_cov : int, optional
        Number of covariates besides the intercept (default 2).
    sigma : float, optional
        Noise standard deviation (default 1).

    Returns
    -------
    tuple
        (exposures, Z, y) where exposures is a dict of DataFrames keyed by
        exposure name, Z is a DataFrame with an intercept column and y a Series.
    """
    exposures = {}
    for m in range(n_exp):
        x = np.empty((n, n_lags))
        x[:, 0] = rng.standard_normal(n)
        for l in range(1, n_lags):
            x[:, l] = 0.8 * x[:, l-1] + 0.6 * rng.standard_normal(n)
        exposures[f'e{m+1}'] = pd.DataFrame(x, columns=[f'lag{l+1}' for l in range(n_lags)])

    Z = pd.DataFrame(rng.standard_normal((n, n_cov)), columns=[f'c{i+1}' for i in range(n_cov)])
    Z.insert(0, 'intercept', 1.0)

    tmin, tmax = window
    e1 = exposures['e1'].to_numpy()[:, tmin-1:tmax].sum(axis=1)
    f = effect * e1
    if mix_effect != 0 and n_exp > 1:
        e2 = exposures['e2'].to_numpy()[:, tmin-1:tmax].sum(axis=1)
        f = f + mix_effect * e1 * e2
    gamma = np.linspace(1, 0.5, Z.shape[1])
    y = pd.Series(Z.to_numpy() @ gamma + f + sigma * rng.standard_normal(n))
    return exposures, Z, y
