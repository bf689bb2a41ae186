"""bayestdlmm: Bayesian treed distributed lag mixture models.

This package fits ensembles of lag partition tree pairs to outcomes measured
after repeated exposure to several time-varying mixtures. Each tree pair
estimates the main distributed lag effects of two exposures and their
interaction, with horseshoe-type shrinkage and Dirichlet exposure selection.

Available objects:
  - TDLMM, run_chains
  - Tree, Node, NodeData, TreePair
  - ExposureData, ChainState, ChainLog
  - Families: GaussianFamily, LogisticFamily, ZINBFamily
  - Samplers: rhalfcauchy_fc, sample_exposure_prob, update_kappa
  - Simulation: sim_dlmm
  - Exceptions: InvalidTreeError, NumericalDegeneracyError, ConfigurationError, AbstractMethodError
"""

__version__ = "0.1.0"

from .tdlmm import TDLMM, run_chains
from .tree import Tree
from .node import Node
from .node_data import NodeData
from .tree_pair import TreePair
from .exposure_data import ExposureData
from .state import ChainState
from .chain_log import ChainLog
from .marginal import PairEvaluation, evaluate_pair
from .family import GaussianFamily, LogisticFamily, ZINBFamily, get_family
from .samplers import rhalfcauchy_fc, sample_exposure_prob, update_kappa
from .utils import sim_dlmm, sample_int
from .exceptions import (
    InvalidTreeError,
    NumericalDegeneracyError,
    ConfigurationError,
    AbstractMethodError,
)
