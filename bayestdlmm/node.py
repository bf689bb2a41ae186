"""Node class for bayestdlmm.

This module defines the Node class used to represent nodes of a lag partition
tree. It extends the Node implementation from treelib.
"""

from treelib import Node as TreelibNode
from copy import deepcopy
from .mytyping import NDArrayFloat
from .exceptions import InvalidTreeError
from .node_data import NodeData


class Node(TreelibNode):
    """
    Extended node class for lag partition trees.

    This class is mostly a wrapper around the NodeData object, which holds the
    lag window, the split location and the cached basis of the node.

    Attributes
    ----------
    is_l : bool
        Flag indicating if this node is a left child.
    _data : NodeData
        The node data (lag window and cached basis).
    debug : bool
        If True, enable debug checks.
    _depth : int
        The depth of the node.
    """
    def __init__(self, id: int, is_l: bool, data: NodeData, debug: bool):
        super().__init__(identifier=id)
        self.is_l: bool = is_l
        self._data: NodeData = data
        self.debug = debug
        self._depth = -1

    @property
    def id(self):
        return self.identifier

    @property
    def depth(self):
        return self._depth

    @depth.setter
    def depth(self, val: int):
        if val < 0:
            raise ValueError('Node depth must be non-negative')
        self._depth = val

    @property
    def tmin(self) -> int:
        return self._data.tmin

    @property
    def tmax(self) -> int:
        return self._data.tmax

    @property
    def width(self) -> int:
        return self._data.width

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, memo: dict|None = None) -> 'Node':
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_data':
                setattr(result, k, v.copy(light=light, memo=memo))
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def _gen_tags(self):
        """
        Generate a string tag for the node, used when printing the tree.
        """
        left_or_right = 'L' if self.is_l else 'R'
        self.tag = f'{left_or_right}_{self.identifier}_{self._data!r}'

    def get_window(self) -> tuple[int, int]:
        return self._data.get_window()

    def get_split(self) -> int | None:
        return self._data.split

    def get_split_windows(self, split: int | None = None) -> tuple[tuple[int, int], tuple[int, int]]:
        return self._data.get_split_windows(split)

    def get_avail_splits(self):
        return self._data.get_avail_splits()

    def update_split_info(self, split: int):
        self._data.update_split_info(split)

    def reset_split_info(self):
        self._data.reset_split_info()

    def get_basis(self) -> NDArrayFloat:
        """
        Return the cached basis column of a terminal node.

        Raises
        ------
        InvalidTreeError
            If the node has no cached basis (internal node).
        """
        if self._data.x is None:
            raise InvalidTreeError(f'Node {self.identifier} has no basis')
        return self._data.x

    def get_ztx(self) -> NDArrayFloat:
        if self._data.ztx is None:
            raise InvalidTreeError(f'Node {self.identifier} has no basis')
        return self._data.ztx

    def update_basis(self, x: NDArrayFloat, ztx: NDArrayFloat):
        self._data.update_basis(x, ztx)

    def clear_basis(self):
        self._data.clear_basis()
