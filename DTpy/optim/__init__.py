"""
Optimization algorithms for DTpy.

Optimizers update variable bindings from gradients computed by the evaluator.
"""

from .optimizer import Optimizer
from .sgd import SGD

__all__ = ["Optimizer", "SGD"]
