"""
Operations module for DTpy.

This module contains the operation catalogue: every operation a graph node
can compute, with its shape rule, numpy kernel and gradient rule.
"""

from .basic import Add, Clip, MatMul, Multiply, Negate, Softmax, Subtract, matmul
from .cnn import Conv2D, Conv2DBackpropFilter, Conv2DBackpropInput
from .elementwise import Cast, Cos, Exp, Log, Relu, Sigmoid, Sin, Sqrt, Step, Tanh
from .matrix import Equal, Greater, GreaterEqual, Less, LessEqual, Transpose
from .pooling import MaxPool, MaxPoolGrad
from .power import Divide, Power
from .reduction import Max, Mean, ReducedSize, Sum
from .reshape import (
    AssertShape,
    BroadcastLike,
    Crop,
    ExpandDims,
    Pad,
    Reshape,
    ReshapeLike,
    Reverse,
    Squeeze,
    Stack,
    SumLike,
    Take,
    TakeGrad,
)
from .sources import Constant, Fill, OnesLike, Placeholder, TruncatedNormal, ZerosLike

__all__ = [
    # Sources
    "Constant",
    "Fill",
    "TruncatedNormal",
    "Placeholder",
    "ZerosLike",
    "OnesLike",
    # Basic operations
    "Add",
    "Subtract",
    "Multiply",
    "Negate",
    "MatMul",
    "matmul",
    "Softmax",
    "Clip",
    # Power operations
    "Power",
    "Divide",
    # Element-wise operations
    "Log",
    "Exp",
    "Sqrt",
    "Tanh",
    "Sigmoid",
    "Relu",
    "Sin",
    "Cos",
    "Step",
    "Cast",
    # Reduction operations
    "Sum",
    "Mean",
    "Max",
    "ReducedSize",
    # Matrix operations
    "Transpose",
    # Comparison operations
    "Greater",
    "GreaterEqual",
    "Less",
    "LessEqual",
    "Equal",
    # Structural operations
    "Reshape",
    "ReshapeLike",
    "ExpandDims",
    "Squeeze",
    "Reverse",
    "Stack",
    "Take",
    "TakeGrad",
    "Pad",
    "Crop",
    "BroadcastLike",
    "SumLike",
    "AssertShape",
    # CNN operations
    "Conv2D",
    "Conv2DBackpropInput",
    "Conv2DBackpropFilter",
    # Pooling operations
    "MaxPool",
    "MaxPoolGrad",
]
