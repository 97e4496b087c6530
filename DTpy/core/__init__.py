"""
Core functionality for DTpy.

This module contains the fundamental building blocks: shapes and their
unification arena, graph nodes, the graph builder, the differentiation
engine and the evaluator.
"""

from .autograd import (
    AutogradEngine,
    DerivativeKind,
    GradientRequest,
    differentiate,
    get_autograd_engine,
    gradients,
)
from .context import Context
from .errors import (
    BackendExecutionError,
    DimensionMismatch,
    DTError,
    DuplicateVariableName,
    EvaluationTimeout,
    NoGradientDefined,
    RankMismatch,
    ShapeError,
    ShapeUnderdetermined,
    UnboundVariable,
)
from .evaluator import (
    Evaluator,
    ExecutionEngine,
    LiveCheckResult,
    NumpyEngine,
    check,
    dry_run_mode,
    live_check,
    run_live_checks,
)
from .function import Function
from .graph import ExecutionPlan, Graph, get_default_graph, reset_default_graph
from .node import Node, Variable
from .scope import Scope
from .shape import Dim, Shape, ShapeArena

__all__ = [
    "Node",
    "Variable",
    "Function",
    "Context",
    "Graph",
    "ExecutionPlan",
    "get_default_graph",
    "reset_default_graph",
    "Scope",
    "Dim",
    "Shape",
    "ShapeArena",
    "AutogradEngine",
    "get_autograd_engine",
    "DerivativeKind",
    "GradientRequest",
    "gradients",
    "differentiate",
    "Evaluator",
    "ExecutionEngine",
    "NumpyEngine",
    "LiveCheckResult",
    "check",
    "dry_run_mode",
    "live_check",
    "run_live_checks",
    "DTError",
    "ShapeError",
    "RankMismatch",
    "DimensionMismatch",
    "ShapeUnderdetermined",
    "DuplicateVariableName",
    "NoGradientDefined",
    "UnboundVariable",
    "BackendExecutionError",
    "EvaluationTimeout",
]
