"""
DTpy: Lazy tensor expressions with shape inference and symbolic derivatives

Expressions build a memoized graph whose shapes are inferred by unification
as it grows. Derivatives are ordinary graph nodes, and nothing is computed
until a graph is evaluated (or dry-run to check a model without weights).
"""

import logging

from .config import Config, configure_logging, get_config, reset_config, set_config
from .core import (
    DTError,
    Evaluator,
    Function,
    Graph,
    Node,
    Variable,
    check,
    differentiate,
    get_default_graph,
    gradients,
    live_check,
    reset_default_graph,
    run_live_checks,
)
from .ops import Add, Multiply, Reshape

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "Node",
    "Variable",
    "Function",
    "Graph",
    "Evaluator",
    "get_default_graph",
    "reset_default_graph",
    "gradients",
    "differentiate",
    "live_check",
    "check",
    "run_live_checks",
    "DTError",
    "Config",
    "get_config",
    "set_config",
    "reset_config",
    "configure_logging",
    "Add",
    "Multiply",
    "Reshape",
]
