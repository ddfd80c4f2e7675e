"""The four base learners of the weekly ensemble."""

from .ann import AnnCommittee, DenseLayer, FeedForwardNetwork
from .base import BaseLearner, Standardizer, safe_prob, sigmoid
from .bradley_terry import BradleyTerryLearner
from .logistic import LogisticLearner
from .tree import TreeLearner, choose_tree_params, laplace_alpha

MODEL_NAMES = ("logistic", "tree", "bt", "ann")

__all__ = [
    "AnnCommittee",
    "BaseLearner",
    "BradleyTerryLearner",
    "DenseLayer",
    "FeedForwardNetwork",
    "LogisticLearner",
    "MODEL_NAMES",
    "Standardizer",
    "TreeLearner",
    "choose_tree_params",
    "laplace_alpha",
    "safe_prob",
    "sigmoid",
]
