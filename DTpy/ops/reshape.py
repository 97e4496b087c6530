from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.errors import DimensionMismatch, RankMismatch
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Dim, Shape, ShapeArena

_ONE = Dim.known(1)

Paddings = Tuple[Tuple[int, int], ...]


def _normalize_axis(axis: int, rank: int) -> int:
    if not -rank <= axis < rank:
        raise RankMismatch(f"axis {axis} is out of range for rank {rank}")
    return axis % rank


def _with_rank(arena: ShapeArena, shape: Shape, rank: int) -> Shape:
    """Resolves ``shape``, giving an unknown rank ``rank`` fresh dimensions."""
    resolved = arena.resolve(shape)
    if resolved.dims is None:
        resolved = arena.unify(resolved, Shape(tuple(arena.fresh_dim() for _ in range(rank))))
    return resolved


class Reshape(Function):
    """Reshape to a literal shape; one entry may be -1."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, shape: Tuple[int, ...]) -> Shape:
        if sum(1 for s in shape if s == -1) > 1:
            raise ValueError(f"Reshape: can only specify one unknown dimension in {list(shape)}")
        total = arena.num_elements(x)
        known = 1
        for s in shape:
            if s != -1:
                known *= s

        dims = []
        for s in shape:
            if s != -1:
                dims.append(Dim.known(s))
            elif total is None:
                dims.append(arena.fresh_dim())
            elif known == 0 or total % known:
                raise DimensionMismatch(
                    f"cannot reshape {total} elements into {list(shape)}", arena.describe(x)
                )
            else:
                dims.append(Dim.known(total // known))
        if total is not None and -1 not in shape and known != total:
            raise DimensionMismatch(
                f"cannot reshape {total} elements into {list(shape)}", arena.describe(x)
            )
        return Shape(tuple(dims))

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], shape: Tuple[int, ...]) -> NDArray[Any]:
        return np.reshape(x, shape)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, ReshapeLike.apply(grad_output, x))


class ReshapeLike(Function):
    """Reshape ``x`` to the shape of ``like``."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, like: Shape) -> Shape:
        have, want = arena.num_elements(x), arena.num_elements(like)
        if have is not None and want is not None and have != want:
            raise DimensionMismatch(
                f"cannot reshape {have} elements into {want}",
                arena.describe(x),
                arena.describe(like),
            )
        return like

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], like: NDArray[Any]) -> NDArray[Any]:
        return np.reshape(x, like.shape)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        x, _ = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, ReshapeLike.apply(grad_output, x))


class ExpandDims(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: int = 0) -> Shape:
        r = arena.resolve(x)
        if r.dims is None:
            return arena.fresh_shape()
        a = _normalize_axis(axis, len(r.dims) + 1)
        return Shape(r.dims[:a] + (_ONE,) + r.dims[a:])

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axis: int = 0) -> NDArray[Any]:
        return np.expand_dims(x, axis)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Squeeze.apply(grad_output, axis=ctx.saved_arguments["axis"])
            Function.accumulate(grad_dict, x, grad)


class Squeeze(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: int = 0) -> Shape:
        r = arena.resolve(x)
        if r.dims is None:
            return arena.fresh_shape()
        a = _normalize_axis(axis, len(r.dims))
        try:
            arena.unify_dim(r.dims[a], _ONE)
        except DimensionMismatch as err:
            raise DimensionMismatch(
                f"cannot squeeze axis {a}: {err.detail}", arena.describe(r)
            ) from None
        return arena.resolve(Shape(r.dims[:a] + r.dims[a + 1 :]))

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axis: int = 0) -> NDArray[Any]:
        return np.squeeze(x, axis)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = ExpandDims.apply(grad_output, axis=ctx.saved_arguments["axis"])
            Function.accumulate(grad_dict, x, grad)


class Reverse(Function):
    """Reverses the order of elements along one axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: int = 0) -> Shape:
        r = arena.resolve(x)
        if r.dims is not None:
            _normalize_axis(axis, len(r.dims))
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axis: int = 0) -> NDArray[Any]:
        return np.flip(x, axis)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Reverse.apply(grad_output, axis=ctx.saved_arguments["axis"])
            Function.accumulate(grad_dict, x, grad)


class Stack(Function):
    """Stacks equally shaped inputs along a new axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, *shapes: Shape, axis: int = 0) -> Shape:
        if not shapes:
            raise ValueError("Stack needs at least one input")
        shape = shapes[0]
        for other in shapes[1:]:
            shape = arena.unify(shape, other)
        r = arena.resolve(shape)
        if r.dims is None:
            return arena.fresh_shape()
        a = _normalize_axis(axis, len(r.dims) + 1)
        return Shape(r.dims[:a] + (Dim.known(len(shapes)),) + r.dims[a:])

    @staticmethod
    def forward(ctx: Context, *values: NDArray[Any], axis: int = 0) -> NDArray[Any]:
        return np.stack(values, axis=axis)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        axis = ctx.saved_arguments["axis"]
        for i, inp in enumerate(ctx.saved_tensors):
            if ctx.needs_input_grad[i]:
                Function.accumulate(grad_dict, inp, Take.apply(grad_output, index=i, axis=axis))


class Take(Function):
    """Selects one index along an axis, removing that axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, index: int, axis: int = 0) -> Shape:
        r = arena.resolve(x)
        if r.dims is None:
            return arena.fresh_shape()
        a = _normalize_axis(axis, len(r.dims))
        size = r.dims[a]
        if size.is_known and not -size.value <= index < size.value:
            raise DimensionMismatch(
                f"index {index} is out of range for axis {a} of size {size.value}",
                arena.describe(r),
            )
        return Shape(r.dims[:a] + r.dims[a + 1 :])

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], index: int, axis: int = 0) -> NDArray[Any]:
        return np.take(x, index, axis=axis)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        args = ctx.saved_arguments
        if ctx.needs_input_grad[0]:
            grad = TakeGrad.apply(grad_output, x, index=args["index"], axis=args["axis"])
            Function.accumulate(grad_dict, x, grad)


class TakeGrad(Function):
    """Scatters ``grad`` into zeros shaped like ``like`` at one index of an axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, grad: Shape, like: Shape, index: int, axis: int = 0) -> Shape:
        r = arena.resolve(like)
        if r.dims is not None:
            a = _normalize_axis(axis, len(r.dims))
            arena.unify(grad, Shape(r.dims[:a] + r.dims[a + 1 :]))
        return like

    @staticmethod
    def forward(
        ctx: Context, grad: NDArray[Any], like: NDArray[Any], index: int, axis: int = 0
    ) -> NDArray[Any]:
        out = np.zeros(like.shape, dtype=grad.dtype)
        where = [slice(None)] * like.ndim
        where[axis] = index
        out[tuple(where)] = grad
        return out

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        grad, _ = ctx.saved_tensors
        args = ctx.saved_arguments
        if ctx.needs_input_grad[0]:
            Function.accumulate(
                grad_dict, grad, Take.apply(grad_output, index=args["index"], axis=args["axis"])
            )


def _padded_dims(
    arena: ShapeArena, x: Shape, paddings: Paddings, sign: int
) -> Tuple[Dim, ...]:
    r = _with_rank(arena, x, len(paddings))
    if len(r.dims) != len(paddings):
        raise RankMismatch(
            f"{len(paddings)} paddings for rank {len(r.dims)}", arena.describe(r)
        )
    dims = []
    for d, (before, after) in zip(r.dims, paddings):
        if not d.is_known:
            dims.append(arena.fresh_dim())
            continue
        size = d.value + sign * (before + after)
        if size < 0:
            raise DimensionMismatch(
                f"cannot crop {before + after} from a dimension of size {d.value}",
                arena.describe(r),
            )
        dims.append(Dim.known(size))
    return tuple(dims)


class Pad(Function):
    """Constant padding: ``paddings`` holds (before, after) per axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, paddings: Paddings, value: float = 0.0) -> Shape:
        return Shape(_padded_dims(arena, x, paddings, 1))

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], paddings: Paddings, value: float = 0.0) -> NDArray[Any]:
        return np.pad(x, paddings, mode="constant", constant_values=value)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Crop.apply(grad_output, paddings=ctx.saved_arguments["paddings"])
            Function.accumulate(grad_dict, x, grad)


class Crop(Function):
    """Inverse of ``Pad``: removes (before, after) elements per axis."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, paddings: Paddings) -> Shape:
        return Shape(_padded_dims(arena, x, paddings, -1))

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], paddings: Paddings) -> NDArray[Any]:
        where = tuple(slice(before, size - after) for size, (before, after) in zip(x.shape, paddings))
        return x[where]

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Pad.apply(grad_output, paddings=ctx.saved_arguments["paddings"])
            Function.accumulate(grad_dict, x, grad)


class BroadcastLike(Function):
    """Broadcasts ``x`` to the shape of ``like``."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, like: Shape) -> Shape:
        arena.unify(arena.broadcast(x, like), like)
        return like

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], like: NDArray[Any]) -> NDArray[Any]:
        return np.broadcast_to(x, like.shape)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        x, _ = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, SumLike.apply(grad_output, x))


class SumLike(Function):
    """
    Sums ``x`` down to the shape of ``like``, undoing a broadcast: leading
    axes are summed away and axes where ``like`` has size 1 are summed with
    keepdims.
    """

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, like: Shape) -> Shape:
        arena.unify(arena.broadcast(like, x), x)
        return like

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], like: NDArray[Any]) -> NDArray[Any]:
        target = like.shape
        extra = x.ndim - len(target)
        out = x.sum(axis=tuple(range(extra))) if extra > 0 else x
        axes = tuple(i for i, (o, t) in enumerate(zip(out.shape, target)) if t == 1 and o != 1)
        if axes:
            out = out.sum(axis=axes, keepdims=True)
        return np.reshape(out, target)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        x, _ = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, BroadcastLike.apply(grad_output, x))


class AssertShape(Function):
    """
    Identity whose construction unifies ``x`` with a literal shape.

    A ``-1`` in the literal matches any size.
    """

    @staticmethod
    def infer_shape(
        arena: ShapeArena, x: Shape, shape: Union[Shape, Sequence[Optional[int]], None]
    ) -> Shape:
        arena.unify(x, arena.from_spec(shape))
        return x

    @staticmethod
    def forward(
        ctx: Context, x: NDArray[Any], shape: Union[Shape, Sequence[Optional[int]], None]
    ) -> NDArray[Any]:
        return x

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, grad_output)
