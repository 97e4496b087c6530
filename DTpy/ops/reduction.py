from typing import Any, Dict, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.errors import RankMismatch
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Dim, Shape, ShapeArena
from .basic import Multiply
from .elementwise import Cast
from .matrix import Equal
from .power import Divide
from .reshape import BroadcastLike, ExpandDims

Axis = Optional[Union[int, Tuple[int, ...]]]


def _normalize_axes(axis: Axis, rank: int) -> Tuple[int, ...]:
    if axis is None:
        return tuple(range(rank))
    axes = (axis,) if isinstance(axis, int) else tuple(axis)
    for a in axes:
        if not -rank <= a < rank:
            raise RankMismatch(f"axis {a} is out of range for rank {rank}")
    return tuple(sorted(set(a % rank for a in axes)))


def _reduced_shape(arena: ShapeArena, x: Shape, axis: Axis, keepdims: bool) -> Shape:
    r = arena.resolve(x)
    if r.dims is None:
        if axis is None and not keepdims:
            return Shape.scalar()
        return arena.fresh_shape()
    axes = _normalize_axes(axis, len(r.dims))
    if keepdims:
        return Shape(tuple(Dim.known(1) if i in axes else d for i, d in enumerate(r.dims)))
    return Shape(tuple(d for i, d in enumerate(r.dims) if i not in axes))


def _restore_axes(grad: Node, x: Node, axis: Axis, keepdims: bool) -> Node:
    """Re-inserts reduced axes into ``grad`` so it broadcasts against ``x``."""
    if keepdims or axis is None:
        return grad
    rank = x.rank
    if rank is None:
        raise RankMismatch(
            "reduction gradient needs an input of known rank",
            x.graph.arena.describe(x.raw_shape),
        )
    for a in _normalize_axes(axis, rank):
        grad = ExpandDims.apply(grad, axis=a)
    return grad


class Sum(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: Axis = None, keepdims: bool = False) -> Shape:
        return _reduced_shape(arena, x, axis, keepdims)

    @staticmethod
    def forward(
        ctx: Context, x: NDArray[Any], axis: Axis = None, keepdims: bool = False
    ) -> NDArray[Any]:
        return np.sum(x, axis=axis, keepdims=keepdims)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        args = ctx.saved_arguments

        if ctx.needs_input_grad[0]:
            grad = _restore_axes(grad_output, x, args["axis"], args["keepdims"])
            Function.accumulate(grad_dict, x, BroadcastLike.apply(grad, x))


class Mean(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: Axis = None, keepdims: bool = False) -> Shape:
        return _reduced_shape(arena, x, axis, keepdims)

    @staticmethod
    def forward(
        ctx: Context, x: NDArray[Any], axis: Axis = None, keepdims: bool = False
    ) -> NDArray[Any]:
        return np.mean(x, axis=axis, keepdims=keepdims)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        args = ctx.saved_arguments

        if ctx.needs_input_grad[0]:
            grad = _restore_axes(grad_output, x, args["axis"], args["keepdims"])
            count = _reduced_count(x, args["axis"])
            grad = Divide.apply(BroadcastLike.apply(grad, x), count)
            Function.accumulate(grad_dict, x, grad)


def _reduced_count(x: Node, axis: Axis) -> Union[float, Node]:
    """Number of elements folded into each output, as a number if known."""
    sizes = x.static_shape
    if sizes is not None:
        axes = _normalize_axes(axis, len(sizes))
        picked = [sizes[a] for a in axes]
        if all(s is not None for s in picked):
            return float(np.prod(picked, dtype=np.int64))
    return ReducedSize.apply(x, axis=axis)


class Max(Function):
    """
    Maximum along axes. The gradient is split evenly between tied maxima.
    """

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: Axis = None, keepdims: bool = False) -> Shape:
        return _reduced_shape(arena, x, axis, keepdims)

    @staticmethod
    def forward(
        ctx: Context, x: NDArray[Any], axis: Axis = None, keepdims: bool = False
    ) -> NDArray[Any]:
        return np.max(x, axis=axis, keepdims=keepdims)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        args = ctx.saved_arguments
        axis, keepdims = args["axis"], args["keepdims"]

        if ctx.needs_input_grad[0]:
            peak = BroadcastLike.apply(_restore_axes(ctx.output, x, axis, keepdims), x)
            mask = Cast.apply(Equal.apply(x, peak), dtype=x.dtype)
            ties = BroadcastLike.apply(Sum.apply(mask, axis=axis, keepdims=True), x)
            grad = BroadcastLike.apply(_restore_axes(grad_output, x, axis, keepdims), x)
            grad = Divide.apply(Multiply.apply(grad, mask), ties)
            Function.accumulate(grad_dict, x, grad)


class ReducedSize(Function):
    """Scalar count of elements a reduction over ``axis`` folds together."""

    differentiable = False

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: Axis = None) -> Shape:
        return Shape.scalar()

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axis: Axis = None) -> NDArray[Any]:
        axes = _normalize_axes(axis, x.ndim)
        count = int(np.prod([x.shape[a] for a in axes], dtype=np.int64))
        return np.array(count, dtype=x.dtype)
