"""Exposure data for bayestdlmm.

Each exposure is observed over `L` lags for every observation. Trees partition
the lag axis, and the basis column of a node is the per-observation sum of the
exposure over the node's lag window. Cumulative sums are precomputed so that
any window costs a single column difference.
"""

import numpy as np
import pandas as pd
from .mytyping import NDArrayFloat
from .exceptions import ConfigurationError


class ExposureData():
    """
    Precomputed lag basis for a single exposure.

    Parameters
    ----------
    X : pd.DataFrame or array-like
        The `n x L` exposure matrix, columns ordered by lag.
    Z : NDArrayFloat
        The `n x p` fixed-effect design.
    name : str, optional
        Exposure name, used in records and error messages.

    Attributes
    ----------
    n : int
        Number of observations.
    n_lags : int
        Number of lags.
    Tcalc : NDArrayFloat
        Row-wise cumulative sum of the exposure with a leading zero column,
        shape `n x (L+1)`.
    """
    def __init__(self, X: pd.DataFrame | NDArrayFloat, Z: NDArrayFloat, name: str = ''):
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ConfigurationError(f'Exposure {name} must be a 2-dimensional n x L matrix')
        if not np.all(np.isfinite(X)):
            raise ConfigurationError(f'Exposure {name} contains missing or infinite values')
        if Z.shape[0] != X.shape[0]:
            raise ConfigurationError(f'Exposure {name} has {X.shape[0]} rows, fixed-effect design has {Z.shape[0]}')
        self.name = name
        self.n, self.n_lags = X.shape
        self.Z = Z
        self.Tcalc: NDArrayFloat = np.hstack([np.zeros((self.n, 1)), np.cumsum(X, axis=1)])

    def basis_column(self, tmin: int, tmax: int) -> NDArrayFloat:
        """
        Return the exposure summed over lags tmin..tmax (1-based, inclusive).

        Parameters
        ----------
        tmin : int
        tmax : int

        Returns
        -------
        NDArrayFloat
            Vector of length n.
        """
        if tmin < 1 or tmax > self.n_lags or tmin > tmax:
            raise ValueError(f'Invalid lag window [{tmin}, {tmax}] for {self.n_lags} lags')
        return self.Tcalc[:, tmax] - self.Tcalc[:, tmin - 1]

    def cross_product_with_fixed_effects(self, x: NDArrayFloat) -> NDArrayFloat:
        return self.Z.T @ x

    def update_node_vals(self, node):
        """
        Refresh the cached basis column and fixed-effect cross-product of a node.

        Parameters
        ----------
        node : Node
            A terminal node; its window is read and its cache overwritten.
        """
        x = self.basis_column(node.tmin, node.tmax)
        node.update_basis(x, self.cross_product_with_fixed_effects(x))
