"""Node data class for bayestdlmm.

This module defines the class that encapsulates the data associated with a
node of a lag partition tree: the lag window covered by the node, the split
location (if the node is internal) and, for terminal nodes, the cached basis
column and its cross-product with the fixed-effect design.
"""

import numpy as np
from copy import deepcopy
from .mytyping import NDArrayFloat
from .exceptions import InvalidTreeError


class NodeData():
    """
    Data associated with a node of a lag partition tree.

    Lags are 1-based and windows are inclusive on both ends. A split at
    location `s` sends lags tmin..s-1 to the left child and s..tmax to the
    right child.

    Attributes
    ----------
    tmin : int
        First lag covered by the node.
    tmax : int
        Last lag covered by the node.
    split : int or None
        Split location if the node is internal, None otherwise.
    x : NDArrayFloat or None
        Basis column (exposure summed over the window), cached on terminal nodes.
    ztx : NDArrayFloat or None
        Cross-product of the fixed-effect design with `x`.
    debug : bool
        If True, enables additional debugging checks.
    """
    def __init__(self, tmin: int, tmax: int, debug: bool = False, split: int | None = None):
        if tmin < 1 or tmax < tmin:
            raise InvalidTreeError(f'Invalid lag window [{tmin}, {tmax}]')
        self.tmin = tmin
        self.tmax = tmax
        self.debug = debug
        self.split: int | None = None
        self.x: NDArrayFloat | None = None
        self.ztx: NDArrayFloat | None = None
        if split is not None:
            self.update_split_info(split)

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, memo: dict|None = None) -> 'NodeData':
        '''Copy the node data. If light, the cached arrays are shared rather than copied.'''
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k in ('x', 'ztx') and light:
                setattr(result, k, v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    @property
    def width(self) -> int:
        return self.tmax - self.tmin + 1

    def get_window(self) -> tuple[int, int]:
        return self.tmin, self.tmax

    def get_split_windows(self, split: int | None = None) -> tuple[tuple[int, int], tuple[int, int]]:
        """
        Return the lag windows of the two children for a split location.

        Parameters
        ----------
        split : int or None, optional
            The split location. If None, uses the current split.

        Returns
        -------
        tuple
            ((left tmin, left tmax), (right tmin, right tmax))
        """
        if split is None:
            split = self.split
        if split is None:
            raise InvalidTreeError('Node has no split')
        return (self.tmin, split - 1), (split, self.tmax)

    def get_avail_splits(self) -> np.ndarray:
        '''Split locations available inside the window.'''
        return np.arange(self.tmin + 1, self.tmax + 1)

    def update_split_info(self, split: int):
        if split <= self.tmin or split > self.tmax:
            raise InvalidTreeError(f'Split {split} outside of window [{self.tmin}, {self.tmax}]')
        self.split = split

    def reset_split_info(self):
        self.split = None

    def update_basis(self, x: NDArrayFloat, ztx: NDArrayFloat):
        self.x = x
        self.ztx = ztx

    def clear_basis(self):
        self.x = None
        self.ztx = None

    def __repr__(self) -> str:
        if self.split is None:
            return f'[{self.tmin}, {self.tmax}]'
        return f'[{self.tmin}, {self.tmax}] | {self.split}'
