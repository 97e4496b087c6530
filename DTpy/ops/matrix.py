from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.errors import RankMismatch
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Shape, ShapeArena


class Transpose(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axes: Optional[Tuple[int, ...]] = None) -> Shape:
        r = arena.resolve(x)
        if r.dims is None:
            if axes is None:
                return arena.fresh_shape()
            r = arena.unify(r, Shape(tuple(arena.fresh_dim() for _ in axes)))
        if axes is None:
            return Shape(tuple(reversed(r.dims)))
        if sorted(a % len(r.dims) for a in axes) != list(range(len(r.dims))):
            raise RankMismatch(
                f"axes {tuple(axes)} are not a permutation of {len(r.dims)} axes",
                arena.describe(r),
            )
        return Shape(tuple(r.dims[a] for a in axes))

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axes: Optional[Tuple[int, ...]] = None) -> NDArray[Any]:
        if axes is None:
            return np.transpose(x)
        return np.transpose(x, axes)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        axes = ctx.saved_arguments["axes"]

        if ctx.needs_input_grad[0]:
            if axes is None:
                # For standard transpose, just transpose the gradient
                grad = Transpose.apply(grad_output)
            else:
                # For specific axes, need to invert the permutation
                inverse_axes = tuple(int(a) for a in np.argsort(axes))
                grad = Transpose.apply(grad_output, axes=inverse_axes)
            Function.accumulate(grad_dict, x, grad)


class _Compare(Function):
    """Base class for comparison operations; they have no gradient."""

    differentiable = False
    compare: Callable[..., NDArray[Any]] = staticmethod(np.equal)

    @staticmethod
    def infer_shape(arena: ShapeArena, x1: Shape, x2: Shape) -> Shape:
        return arena.broadcast(x1, x2)

    @staticmethod
    def infer_dtype(*dtypes: str) -> str:
        return "bool"

    @classmethod
    def forward(cls, ctx: Context, x1: NDArray[Any], x2: NDArray[Any]) -> NDArray[Any]:
        return cls.compare(x1, x2)


class Greater(_Compare):
    compare = staticmethod(np.greater)


class GreaterEqual(_Compare):
    compare = staticmethod(np.greater_equal)


class Less(_Compare):
    compare = staticmethod(np.less)


class LessEqual(_Compare):
    compare = staticmethod(np.less_equal)


class Equal(_Compare):
    compare = staticmethod(np.equal)
