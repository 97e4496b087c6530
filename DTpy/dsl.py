"""
A compact front end for writing models.

Literals (``v``, ``vec``, ``matrix``, ``pixel``), variables, derivative
helpers and the ``DT`` operation namespace all build on the default graph::

    from DTpy.dsl import DT, diff, v

    f = lambda x: x * x + 4 * x
    DT.Eval(diff(f, v(3.0)))   # 10.0
"""

from typing import Any, Callable, ContextManager, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .core.autograd import get_autograd_engine, gradients
from .core.evaluator import Bindings, Evaluator
from .core.graph import Graph, get_default_graph
from .core.node import Node, Variable
from .core.scope import Scope
from .core.shape import ShapeLike
from .nn.normalization import moments
from .ops.basic import Clip, Softmax
from .ops.cnn import Conv2D, Conv2DBackpropInput
from .ops.elementwise import Cast, Relu, Sqrt, Tanh
from .ops.pooling import MaxPool
from .ops.reduction import Max, Mean, Sum
from .ops.reshape import AssertShape, ExpandDims, Pad, Reshape, Reverse, Stack
from .ops.sources import Constant, Fill, TruncatedNormal

Axis = Optional[Union[int, Tuple[int, ...]]]


def _graph_of(*values: Any) -> Graph:
    for value in values:
        if isinstance(value, Node):
            return value.graph
    return get_default_graph()


def _as_node(value: Any) -> Node:
    if isinstance(value, Node):
        return value
    return get_default_graph().constant(value)


def _point(value: Any) -> Node:
    """
    The point a derivative is taken at.

    Literal points get a node of their own, so that equal literals inside the
    differentiated function (or added by gradient rules) are not mistaken for
    the argument.
    """
    if isinstance(value, Node):
        if value.op is not Constant:
            return value
        return value.graph.constant(value.params["value"], shared=False)
    return get_default_graph().constant(value, shared=False)


def v(x: float) -> Node:
    """A scalar constant."""
    return get_default_graph().constant(float(x))


def vec(xs: Sequence[float]) -> Node:
    """A vector constant."""
    return get_default_graph().constant(np.asarray(xs, dtype=float))


def matrix(rows: Sequence[Sequence[float]]) -> Node:
    """A matrix constant."""
    return get_default_graph().constant(np.asarray(rows, dtype=float))


def pixel(channels: Sequence[float]) -> Node:
    """A channel vector, e.g. a mean pixel that broadcasts over [H, W, C]."""
    return vec(channels)


def shape(dims: Sequence[int]) -> Tuple[int, ...]:
    """A shape literal; ``-1`` marks a dimension to be inferred."""
    return tuple(int(d) for d in dims)


def batch(items: Sequence[Any]) -> Node:
    """Stacks items along a new leading batch axis."""
    return Stack.apply(*[_as_node(item) for item in items], axis=0)


def variable(
    init: Any,
    name: str,
    trainable: bool = True,
    shape: ShapeLike = None,
) -> Variable:
    """Declares a variable in the graph of ``init`` under the current scope."""
    return _graph_of(init).declare_variable(init, name, trainable=trainable, shape=shape)


def placeholder(shape: ShapeLike, name: str, dtype: Any = None) -> Variable:
    """Declares an always-bound input; ``-1`` dims are sized at evaluation."""
    return get_default_graph().placeholder(shape, name, dtype=dtype)


# ----------------------------------------------------------------------
# Derivatives


def diff(f: Callable[[Node], Node], x: Any) -> Node:
    """Derivative of ``f`` at ``x`` (summed over outputs for non-scalar ``f``)."""
    x = _point(x)
    return gradients(f(x), [x])[0]


def grad(f: Callable[[Node], Node], x: Any) -> Node:
    """Gradient of a scalar function ``f`` at ``x``; shaped like ``x``."""
    return diff(f, x)


def jacobian(f: Callable[[Node], Node], x: Any) -> Node:
    x = _point(x)
    return get_autograd_engine(x.graph).jacobian(f(x), x)


def hessian(f: Callable[[Node], Node], x: Any) -> Node:
    x = _point(x)
    return get_autograd_engine(x.graph).hessian(f(x), x)


def divergence(f: Callable[[Node], Node], x: Any) -> Node:
    x = _point(x)
    return get_autograd_engine(x.graph).divergence(f(x), x)


def curl(f: Callable[[Node], Node], x: Any) -> Node:
    x = _point(x)
    return get_autograd_engine(x.graph).curl(f(x), x)


def curl_divergence(f: Callable[[Node], Node], x: Any) -> Tuple[Node, Node]:
    """Curl and divergence of one 3-vector field, sharing its graph."""
    x = _point(x)
    out = f(x)
    engine = get_autograd_engine(x.graph)
    return engine.curl(out, x), engine.divergence(out, x)


def eval_and_diff(f: Callable[[Node], Node], x: Any) -> Tuple[Node, Node]:
    """The value of ``f`` at ``x`` together with its derivative."""
    x = _point(x)
    out = f(x)
    return out, gradients(out, [x])[0]


# ----------------------------------------------------------------------
# Operations


class DT:
    """Operation namespace, named after the TensorFlow operations it mirrors."""

    @staticmethod
    def Stack(items: Sequence[Any], axis: int = 0) -> Node:
        return Stack.apply(*[_as_node(item) for item in items], axis=axis)

    @staticmethod
    def Dummy(shape: ShapeLike, name: str = "dummy") -> Variable:
        """
        An unbound placeholder for checking models.

        In a dry run it is fed zeros of its shape; in a normal evaluation it
        must be bound like any other variable.
        """
        graph = get_default_graph()
        unique, n = name, 0
        while graph.has_variable(graph.current_scope.qualify(unique)):
            n += 1
            unique = f"{name}_{n}"
        return graph.placeholder(shape, unique)

    @staticmethod
    def AssertShape(x: Any, shape: ShapeLike) -> Node:
        return AssertShape.apply(_as_node(x), shape=shape)

    @staticmethod
    def Cast(x: Any, dtype: Any) -> Node:
        return Cast.apply(_as_node(x), dtype=np.dtype(dtype).name)

    @staticmethod
    def ExpandDims(x: Any, axis: int = 0) -> Node:
        return ExpandDims.apply(_as_node(x), axis=axis)

    @staticmethod
    def Reshape(x: Any, shape: Sequence[int]) -> Node:
        return Reshape.apply(_as_node(x), shape=tuple(int(d) for d in shape))

    @staticmethod
    def Moments(x: Any, axes: Axis = None, keepdims: bool = True) -> Tuple[Node, Node]:
        """Mean and variance over ``axes``."""
        return moments(_as_node(x), axes, keepdims=keepdims)

    @staticmethod
    def Conv2D(
        input: Any, filter: Any, stride: Union[int, Sequence[int]] = 1, padding: str = "SAME"
    ) -> Node:
        return Conv2D.apply(input, filter, stride=stride, padding=padding)

    @staticmethod
    def Conv2DBackpropInput(
        filter: Any,
        out_backprop: Any,
        stride: Union[int, Sequence[int]] = 1,
        padding: str = "SAME",
        like: Optional[Node] = None,
    ) -> Node:
        inputs = (filter, out_backprop) if like is None else (filter, out_backprop, like)
        return Conv2DBackpropInput.apply(*inputs, stride=stride, padding=padding)

    @staticmethod
    def MaxPool(
        x: Any,
        ksize: Union[int, Sequence[int]] = 2,
        stride: Union[int, Sequence[int]] = 2,
        padding: str = "SAME",
    ) -> Node:
        return MaxPool.apply(_as_node(x), ksize=ksize, stride=stride, padding=padding)

    @staticmethod
    def ClipByValue(x: Any, low: float, high: float) -> Node:
        return Clip.apply(_as_node(x), min_val=float(low), max_val=float(high))

    @staticmethod
    def TruncatedNormal(
        shape: ShapeLike, stddev: float = 1.0, mean: float = 0.0, dtype: Any = None
    ) -> Node:
        params = {"shape": shape, "stddev": stddev, "mean": mean}
        if dtype is not None:
            params["dtype"] = np.dtype(dtype).name
        return get_default_graph().build(TruncatedNormal, (), params)

    @staticmethod
    def Zeros(shape: ShapeLike, dtype: Any = None) -> Node:
        params = {"shape": shape, "value": 0.0}
        if dtype is not None:
            params["dtype"] = np.dtype(dtype).name
        return get_default_graph().build(Fill, (), params)

    @staticmethod
    def Pad(x: Any, paddings: Sequence[Sequence[int]], value: float = 0.0) -> Node:
        pairs = tuple((int(before), int(after)) for before, after in paddings)
        return Pad.apply(_as_node(x), paddings=pairs, value=value)

    @staticmethod
    def Sum(x: Any, axis: Axis = None, keepdims: bool = False) -> Node:
        return Sum.apply(_as_node(x), axis=axis, keepdims=keepdims)

    @staticmethod
    def Mean(x: Any, axis: Axis = None, keepdims: bool = False) -> Node:
        return Mean.apply(_as_node(x), axis=axis, keepdims=keepdims)

    @staticmethod
    def Max(x: Any, axis: Axis = None, keepdims: bool = False) -> Node:
        return Max.apply(_as_node(x), axis=axis, keepdims=keepdims)

    @staticmethod
    def Reverse(x: Any, axis: int = 0) -> Node:
        return Reverse.apply(_as_node(x), axis=axis)

    @staticmethod
    def Relu(x: Any) -> Node:
        return Relu.apply(_as_node(x))

    @staticmethod
    def Tanh(x: Any) -> Node:
        return Tanh.apply(_as_node(x))

    @staticmethod
    def Sqrt(x: Any) -> Node:
        return Sqrt.apply(_as_node(x))

    @staticmethod
    def Softmax(x: Any, axis: int = -1) -> Node:
        return Softmax.apply(_as_node(x), axis=axis)

    @staticmethod
    def WithScope(name: str) -> ContextManager[Scope]:
        return get_default_graph().scope(name)

    @staticmethod
    def Eval(
        nodes: Union[Node, Sequence[Node]],
        weights: Optional[Bindings] = None,
        timeout: Optional[float] = None,
    ) -> Union[NDArray[Any], List[NDArray[Any]]]:
        """Evaluates ``nodes``; inside a live check this is a dry run."""
        graph = nodes.graph if isinstance(nodes, Node) else _graph_of(*nodes)
        return Evaluator(graph).evaluate(nodes, weights, timeout=timeout)
