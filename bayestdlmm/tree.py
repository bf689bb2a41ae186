"""Tree class for bayestdlmm.

This module defines the Tree class that extends treelib's Tree to partition
the lag axis of one exposure. It supports the structural proposals used by the
sampler (grow, prune, change) with copy-on-propose semantics: the candidate
tree lives in the `proposed` slot until `accept()` or `reject()` resolves it.
"""

import numpy as np
from treelib import Tree as TreelibTree
from copy import deepcopy
from .node import Node
from .node_data import NodeData
from .exposure_data import ExposureData
from .exceptions import InvalidTreeError
from .utils import my_choice, sample_int
from .mytyping import NDArrayFloat

MOVES = ('grow', 'prune', 'change')


class Tree(TreelibTree):
    """
    Lag partition tree built on the treelib Tree.

    The root covers lags 1..L of the assigned exposure. Terminal nodes carry
    the basis column of their window for that exposure.

    Attributes
    ----------
    id_counter : int
        Counter for unique node identifiers.
    rng : np.random.Generator
        Random generator used for sampling.
    exposure : int
        Index of the exposure the tree is assigned to.
    exp_data : ExposureData
        Basis provider of the assigned exposure.
    alpha, beta : float
        Depth split prior, a node at depth d splits with probability alpha (1+d)^-beta.
    split_prob : NDArrayFloat
        Weights over the split locations 2..L.
    version : int
        Incremented on every committed change of the terminal set.
    proposed : Tree or None
        Candidate tree of the pending proposal.
    move_counters : dict
        Number of proposals, acceptances, rejections and failed proposals.
    debug : bool
        If True, enables additional assertions.
    """
    node_class = Node
    def __init__(self, exposure: int, exp_data: ExposureData, rng: np.random.Generator,
                 alpha: float = 0.95, beta: float = 2., split_prob: NDArrayFloat | None = None,
                 debug: bool = False):
        super().__init__(node_class=self.node_class)
        self.id_counter: int = 0
        self.rng = rng
        self.debug = debug
        self.alpha = alpha
        self.beta = beta
        self.exposure = exposure
        self.exp_data = exp_data
        n_lags = exp_data.n_lags
        if split_prob is None:
            split_prob = np.ones(max(n_lags - 1, 0))
        self.split_prob = np.asarray(split_prob, dtype=float)
        self.version = 0
        self.proposed: Tree | None = None
        self.move_counters = {'proposed': 0, 'accepted': 0, 'rejected': 0, 'failed': 0}

        root = self.add_node(NodeData(1, n_lags, debug=debug), is_l=False)
        self.exp_data.update_node_vals(root)

    def add_node(self, data: NodeData, is_l: bool, parent: Node | None = None) -> Node:
        node = self.node_class(self.id_counter, is_l=is_l, data=data, debug=self.debug)
        node.depth = 0 if parent is None else parent.depth + 1
        super().add_node(node, parent)
        self.id_counter += 1
        return node

    def __deepcopy__(self, memo):
        return self.copy(light=False, memo=memo)

    def copy(self, light: bool = False, memo: dict|None = None) -> 'Tree':
        '''Copy the tree with all node info. If light, basis columns are shared. The pending proposal is not copied.'''
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_nodes':
                _nodes = {}
                for nid in self._nodes:
                    _nodes[nid] = self._nodes[nid].copy(light=light, memo=memo)
                setattr(result, k, _nodes)
            elif k in ('rng', 'exp_data'):
                setattr(result, k, v)
            elif k == 'proposed':
                setattr(result, k, None)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def clone(self) -> 'Tree':
        return self.copy(light=True)

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def get_node(self, node_id: int) -> Node:
        if (node := super().get_node(node_id)) is None:
            raise ValueError(f'Node {node_id} does not exist')
        return node

    def get_root(self) -> Node:
        return self.get_node(self.root)

    def get_leaves(self) -> list[Node]:
        return self.leaves()

    def get_n_leaves(self) -> int:
        return len(self.get_leaves())

    def is_stump(self) -> bool:
        return len(self.nodes) == 1

    def get_children(self, node: Node|int) -> list[Node]:
        """
        Get the children of the specified node, ordered as left then right.
        """
        nid = node.id if isinstance(node, Node) else node
        res = self.children(nid)
        if len(res) == 0:
            return []
        if self.debug:
            assert len(res) == 2
        if not res[0].is_l:
            res[0], res[1] = res[1], res[0]
        return res

    def get_parent(self, node: Node) -> Node:
        res = self.parent(node.id)
        if res is None:
            raise ValueError('Node has no parent')
        return res

    def get_parents_with_two_leaves(self) -> list[Node]:
        def filter_f(node: Node) -> bool:
            children = self.get_children(node)
            if len(children) == 0:
                return False
            return children[0].is_leaf() and children[1].is_leaf()
        return sorted(self.filter_nodes(filter_f), key=lambda node: node.tmin)

    def list_terminal(self, include_proposed: bool = False) -> list[Node]:
        """
        List the terminal nodes ordered along the lag axis.

        Parameters
        ----------
        include_proposed : bool, optional
            If True and a proposal is pending, list the terminals of the
            candidate tree instead.

        Returns
        -------
        list
            Terminal nodes sorted by their first lag.
        """
        tree = self.proposed if (include_proposed and self.proposed is not None) else self
        return sorted(tree.get_leaves(), key=lambda node: node.tmin)

    # -------------------------------------------------------------------------
    # Prior
    # -------------------------------------------------------------------------

    def get_p_split(self, depth: int, width: int) -> float:
        """
        Probability that a node at `depth` covering `width` lags is split.
        A node covering a single lag cannot be split.
        """
        if width < 2:
            return 0.
        return self.alpha/(1+depth)**self.beta

    def _log_term(self, depth: int, width: int) -> float:
        return np.log1p(-self.get_p_split(depth, width))

    def calc_log_tree_prob(self) -> float:
        """
        Log prior probability of the tree structure, including the split
        location weights of every internal node.
        """
        res = 0.
        for node in self.all_nodes_itr():
            if node.is_leaf():
                res += self._log_term(node.depth, node.width)
            else:
                cands = node.get_avail_splits()
                w = self.split_prob[cands - 2]
                with np.errstate(divide='ignore'):
                    res += np.log(self.get_p_split(node.depth, node.width)) + np.log(self.split_prob[node.get_split() - 2]/w.sum())
        return res

    # -------------------------------------------------------------------------
    # Proposals
    # -------------------------------------------------------------------------

    def _move_prob(self, step_prob: NDArrayFloat) -> tuple[float, float]:
        '''Normalized grow probability on a tree with more than one terminal, and on a stump.'''
        p = np.asarray(step_prob, dtype=float)
        p = p / p.sum()
        return p[0], p[0] + p[1] + p[2]

    def _sample_split(self, node: Node, exclude: int | None = None) -> tuple[int, float, float]:
        '''Sample a split location in the node window, proportional to split_prob. Returns (split, weight, total weight).'''
        cands = node.get_avail_splits()
        w = self.split_prob[cands - 2].copy()
        tot = w.sum()
        if exclude is not None:
            w[cands == exclude] = 0
        if len(cands) == 0 or w.sum() <= 0:
            raise InvalidTreeError(f'No available split for node {node.id}')
        s = int(cands[sample_int(self.rng, w)])
        return s, self.split_prob[s - 2], tot

    def _split_node(self, node: Node, split: int):
        node.update_split_info(split)
        node.clear_basis()
        (l_min, l_max), (r_min, r_max) = node.get_split_windows()
        for is_l, (tmin, tmax) in ((True, (l_min, l_max)), (False, (r_min, r_max))):
            child = self.add_node(NodeData(tmin, tmax, debug=self.debug), is_l=is_l, parent=node)
            self.exp_data.update_node_vals(child)

    def _grow(self, step_prob: NDArrayFloat) -> float:
        p_grow, p_grow_stump = self._move_prob(step_prob)
        p_prune = np.asarray(step_prob, dtype=float)[1] / np.sum(step_prob)
        leaves = self.get_leaves()
        b = len(leaves)
        node = my_choice(self.rng, leaves)
        if node.width < 2:
            raise InvalidTreeError('Cannot split a single-lag node')
        split, _, _ = self._sample_split(node)
        self._split_node(node, split)

        d = node.depth
        l_child, r_child = self.get_children(node)
        n_prune = len(self.get_parents_with_two_leaves())
        with np.errstate(divide='ignore'):
            trans = np.log(p_prune) - np.log(n_prune) - np.log(p_grow_stump if b == 1 else p_grow) + np.log(b)
            prior = np.log(self.get_p_split(d, node.width)) + self._log_term(d+1, l_child.width) + \
                self._log_term(d+1, r_child.width) - self._log_term(d, node.width)
        return trans + prior

    def _prune(self, step_prob: NDArrayFloat) -> float:
        if self.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot prune.')
        p_grow, p_grow_stump = self._move_prob(step_prob)
        p_prune = np.asarray(step_prob, dtype=float)[1] / np.sum(step_prob)
        cands = self.get_parents_with_two_leaves()
        if len(cands) == 0:
            raise InvalidTreeError('No available nodes to prune')
        n_prune = len(cands)
        node: Node = my_choice(self.rng, cands)
        l_child, r_child = self.get_children(node)
        l_width, r_width = l_child.width, r_child.width

        removed = self.remove_node(l_child.id) + self.remove_node(r_child.id)
        if self.debug:
            assert removed == 2
        node.reset_split_info()
        self.exp_data.update_node_vals(node)

        b = self.get_n_leaves()
        d = node.depth
        with np.errstate(divide='ignore'):
            trans = np.log(p_grow_stump if b == 1 else p_grow) - np.log(b) - np.log(p_prune) + np.log(n_prune)
            prior = self._log_term(d, node.width) - np.log(self.get_p_split(d, node.width)) - \
                self._log_term(d+1, l_width) - self._log_term(d+1, r_width)
        return trans + prior

    def _change(self, step_prob: NDArrayFloat) -> float:
        if self.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot change.')
        cands = self.get_parents_with_two_leaves()
        node: Node = my_choice(self.rng, cands)
        old_split = node.get_split()
        l_child, r_child = self.get_children(node)
        old_widths = (l_child.width, r_child.width)

        new_split, _, tot = self._sample_split(node, exclude=old_split)
        self.remove_node(l_child.id)
        self.remove_node(r_child.id)
        self._split_node(node, new_split)
        l_child, r_child = self.get_children(node)

        d = node.depth
        with np.errstate(divide='ignore'):
            prior = self._log_term(d+1, l_child.width) + self._log_term(d+1, r_child.width) - \
                self._log_term(d+1, old_widths[0]) - self._log_term(d+1, old_widths[1])
            trans = np.log(tot - self.split_prob[old_split - 2]) - np.log(tot - self.split_prob[new_split - 2])
        return prior + trans

    def propose(self, move: str, step_prob: NDArrayFloat) -> tuple[float, bool]:
        """
        Propose a structural change of the tree.

        The candidate is built on a copy held in `proposed`. The caller must
        resolve every proposal, successful or not, with exactly one call to
        `accept()` or `reject()`.

        Parameters
        ----------
        move : str
            One of 'grow', 'prune', 'change'.
        step_prob : NDArrayFloat
            Probabilities of (grow, prune, change, switch exposure), used in
            the grow/prune proposal ratio.

        Returns
        -------
        tuple
            (proposal log-ratio including the tree prior ratio, success)
        """
        if move not in MOVES:
            raise ValueError(f'Unknown move {move}')
        if self.proposed is not None:
            raise RuntimeError('Previous proposal has not been accepted or rejected')
        self.move_counters['proposed'] += 1
        new_tree = self.copy(light=True)
        try:
            if move == 'grow':
                log_ratio = new_tree._grow(step_prob)
            elif move == 'prune':
                log_ratio = new_tree._prune(step_prob)
            else:
                log_ratio = new_tree._change(step_prob)
        except InvalidTreeError:
            self.move_counters['failed'] += 1
            return 0., False

        if self.debug:
            if not new_tree.is_valid():
                raise ValueError('not-a-tree returned, BUG!!')
        self.proposed = new_tree
        return float(log_ratio), True

    def accept(self):
        if self.proposed is not None:
            self._adopt(self.proposed)
        self.proposed = None
        self.move_counters['accepted'] += 1

    def reject(self):
        self.proposed = None
        self.move_counters['rejected'] += 1

    def _adopt(self, other: 'Tree'):
        self._nodes = other._nodes
        self.root = other.root
        self.id_counter = other.id_counter
        self.mark_updated()

    def replace_subtree(self, other: 'Tree'):
        """
        Replace the whole partition (and exposure assignment) with the one of
        `other`, which must be a clone of this tree.
        """
        if other._identifier != self._identifier:
            raise ValueError('Can only replace with a clone of the same tree')
        self._adopt(other)
        self.exposure = other.exposure
        self.exp_data = other.exp_data

    def mark_updated(self):
        self.version += 1

    def set_exposure(self, exposure: int, exp_data: ExposureData):
        """
        Reassign the tree to another exposure and refresh every terminal basis.
        """
        self.exposure = exposure
        self.exp_data = exp_data
        for node in self.get_leaves():
            exp_data.update_node_vals(node)
        self.mark_updated()

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def is_valid(self) -> bool:
        """
        Check whether the tree is valid.

        Every internal node must have a left and a right child covering the two
        halves of its window, terminal nodes must cover the lag axis without
        gaps and carry the basis of their window for the assigned exposure.

        Returns
        -------
        bool
            True if the tree passes all validity checks.
        """
        for node in self.all_nodes_itr():
            children = self.get_children(node)
            if not node.is_leaf():
                assert len(children) == 2
                l_child, r_child = children
                assert l_child.is_l and not r_child.is_l
                (l_min, l_max), (r_min, r_max) = node.get_split_windows()
                assert l_child.get_window() == (l_min, l_max)
                assert r_child.get_window() == (r_min, r_max)
            else:
                assert len(children) == 0
                assert node.get_split() is None
                assert np.array_equal(node.get_basis(), self.exp_data.basis_column(node.tmin, node.tmax))
            if node.is_root():
                assert node.depth == 0
            else:
                parent = self.get_parent(node)
                assert node.depth == 1 + parent.depth
                assert self.level(node.id) == node.depth

        leaves = self.list_terminal()
        assert leaves[0].tmin == 1 and leaves[-1].tmax == self.exp_data.n_lags
        for prev, nxt in zip(leaves[:-1], leaves[1:]):
            assert prev.tmax + 1 == nxt.tmin
        return True

    def show(self):
        """
        Print the tree. Update all the tags first.
        """
        for node in self.all_nodes_itr():
            node._gen_tags()
        res = str(self)
        print(res)
        return res
