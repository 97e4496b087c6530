from typing import Optional

from ..core.node import Node, Variable
from ..core.shape import ShapeLike
from ..ops.basic import matmul
from ..ops.sources import Fill, TruncatedNormal


def weight_variable(x: Node, shape: ShapeLike, name: str, stddev: float = 0.1) -> Variable:
    """
    Declares a variable initialized from a truncated normal.

    ``-1`` entries of ``shape`` are left to be inferred from how the variable
    is used (typically an input channel count).
    """
    graph = x.graph
    init = graph.build(TruncatedNormal, (), {"shape": shape, "stddev": stddev, "dtype": x.dtype})
    return graph.declare_variable(init, name)


def fill_variable(x: Node, shape: ShapeLike, name: str, value: float = 0.0) -> Variable:
    """Declares a variable initialized to a constant fill."""
    graph = x.graph
    init = graph.build(Fill, (), {"shape": shape, "value": value, "dtype": x.dtype})
    return graph.declare_variable(init, name)


def dense(x: Node, units: int, name: Optional[str] = None, has_bias: bool = True) -> Node:
    """
    Applies a linear transformation to the last axis of ``x``: y = xW + b

    Args:
        x: Input of shape [..., in_features]; ``in_features`` is inferred
        units: Size of each output sample
        name: Scope for the layer's variables
        has_bias: If False, the layer has no additive bias
    """
    with x.graph.scope(name or "dense"):
        weight = weight_variable(x, (-1, units), "weights")
        out = matmul(x, weight)
        if has_bias:
            out = out + fill_variable(x, (units,), "bias")
    return out
