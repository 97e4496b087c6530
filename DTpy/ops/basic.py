from typing import Any, Dict

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.errors import DimensionMismatch, RankMismatch
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Shape, ShapeArena
from .matrix import Transpose
from .reshape import ExpandDims, SumLike, Squeeze


class Add(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, a: Shape, b: Shape) -> Shape:
        return arena.broadcast(a, b)

    @staticmethod
    def forward(ctx: Context, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        return a + b

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        a, b = ctx.saved_tensors

        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, a, Add._reduce_grad(grad_output, a))

        if ctx.needs_input_grad[1]:
            Function.accumulate(grad_dict, b, Add._reduce_grad(grad_output, b))

    @staticmethod
    def _reduce_grad(grad: Node, target: Node) -> Node:
        """
        Reduces the gradient to match the target's shape by summing over
        broadcast dimensions.
        """
        arena = target.graph.arena
        grad_shape = arena.resolve(grad.raw_shape)
        target_shape = arena.resolve(target.raw_shape)
        if grad_shape.dims is not None and grad_shape == target_shape:
            return grad
        return SumLike.apply(grad, target)


class Subtract(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, a: Shape, b: Shape) -> Shape:
        return arena.broadcast(a, b)

    @staticmethod
    def forward(ctx: Context, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        return a - b

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        a, b = ctx.saved_tensors

        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, a, Add._reduce_grad(grad_output, a))

        if ctx.needs_input_grad[1]:
            grad_b = Negate.apply(grad_output)
            Function.accumulate(grad_dict, b, Add._reduce_grad(grad_b, b))


class Multiply(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, a: Shape, b: Shape) -> Shape:
        return arena.broadcast(a, b)

    @staticmethod
    def forward(ctx: Context, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        return a * b

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        a, b = ctx.saved_tensors

        if ctx.needs_input_grad[0]:
            grad_a = Multiply.apply(grad_output, b)
            Function.accumulate(grad_dict, a, Add._reduce_grad(grad_a, a))

        if ctx.needs_input_grad[1]:
            grad_b = Multiply.apply(grad_output, a)
            Function.accumulate(grad_dict, b, Add._reduce_grad(grad_b, b))


class Negate(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape) -> Shape:
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return -x

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Negate.apply(grad_output))


class MatMul(Function):
    """
    Matrix product over the last two axes, batched over the leading ones.

    Both operands need rank >= 2 and the same rank; ``matmul`` adds the
    vector cases on top.
    """

    @staticmethod
    def infer_shape(arena: ShapeArena, a: Shape, b: Shape) -> Shape:
        ra, rb = arena.resolve(a), arena.resolve(b)
        if ra.dims is None or rb.dims is None:
            if ra.dims is not None and len(ra.dims) < 2:
                raise RankMismatch("matmul operands need rank >= 2", arena.describe(ra), "[*]")
            if rb.dims is not None and len(rb.dims) < 2:
                raise RankMismatch("matmul operands need rank >= 2", "[*]", arena.describe(rb))
            return arena.fresh_shape()
        if len(ra.dims) < 2 or len(rb.dims) < 2:
            raise RankMismatch(
                "matmul operands need rank >= 2", arena.describe(ra), arena.describe(rb)
            )
        if len(ra.dims) != len(rb.dims):
            raise RankMismatch(
                "matmul operands need equal rank", arena.describe(ra), arena.describe(rb)
            )

        batch = tuple(arena.unify_dim(x, y) for x, y in zip(ra.dims[:-2], rb.dims[:-2]))
        try:
            arena.unify_dim(ra.dims[-1], rb.dims[-2])
        except DimensionMismatch as err:
            raise DimensionMismatch(
                f"inner dimensions differ: {err.detail}", arena.describe(ra), arena.describe(rb)
            ) from None
        return arena.resolve(Shape(batch + (ra.dims[-2], rb.dims[-1])))

    @staticmethod
    def forward(ctx: Context, a: NDArray[Any], b: NDArray[Any]) -> NDArray[Any]:
        return np.matmul(a, b)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        a, b = ctx.saved_tensors

        if ctx.needs_input_grad[0]:
            grad_a = MatMul.apply(grad_output, _swap_last(b))
            Function.accumulate(grad_dict, a, grad_a)

        if ctx.needs_input_grad[1]:
            grad_b = MatMul.apply(_swap_last(a), grad_output)
            Function.accumulate(grad_dict, b, grad_b)


def _swap_last(x: Node) -> Node:
    rank = x.rank
    if rank is None:
        raise RankMismatch(
            "matmul gradient needs operands of known rank", x.graph.arena.describe(x.raw_shape)
        )
    axes = tuple(range(rank - 2)) + (rank - 1, rank - 2)
    return Transpose.apply(x, axes=axes)


def matmul(a: Any, b: Any) -> Node:
    """
    Matrix product with numpy's vector promotion: a rank-1 left operand is a
    row, a rank-1 right operand is a column, and the added axis is removed
    from the result.
    """
    from ..core.graph import get_default_graph

    graph = a.graph if isinstance(a, Node) else b.graph if isinstance(b, Node) else get_default_graph()
    a, b = graph.as_node(a), graph.as_node(b)
    left_vector, right_vector = a.rank == 1, b.rank == 1
    if left_vector:
        a = ExpandDims.apply(a, axis=0)
    if right_vector:
        b = ExpandDims.apply(b, axis=-1)
    result = MatMul.apply(a, b)
    if right_vector:
        result = Squeeze.apply(result, axis=-1)
    if left_vector:
        result = Squeeze.apply(result, axis=-2 if not right_vector else -1)
    return result


class Softmax(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, axis: int = -1) -> Shape:
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], axis: int = -1) -> NDArray[Any]:
        # Subtract max for numerical stability
        x_max = np.max(x, axis=axis, keepdims=True)
        exp_x = np.exp(x - x_max)
        return exp_x / np.sum(exp_x, axis=axis, keepdims=True)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        from .reduction import Sum

        (x,) = ctx.saved_tensors
        axis = ctx.saved_arguments["axis"]
        if ctx.needs_input_grad[0]:
            y = ctx.output
            dot = Sum.apply(Multiply.apply(grad_output, y), axis=axis, keepdims=True)
            grad = Multiply.apply(y, Subtract.apply(grad_output, dot))
            Function.accumulate(grad_dict, x, grad)


class Clip(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, min_val: float, max_val: float) -> Shape:
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], min_val: float, max_val: float) -> NDArray[Any]:
        return np.clip(x, min_val, max_val)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        from .elementwise import Cast
        from .matrix import GreaterEqual, LessEqual

        (x,) = ctx.saved_tensors
        args = ctx.saved_arguments
        if ctx.needs_input_grad[0]:
            above = Cast.apply(GreaterEqual.apply(x, args["min_val"]), dtype=x.dtype)
            below = Cast.apply(LessEqual.apply(x, args["max_val"]), dtype=x.dtype)
            grad = Multiply.apply(grad_output, Multiply.apply(above, below))
            Function.accumulate(grad_dict, x, grad)
