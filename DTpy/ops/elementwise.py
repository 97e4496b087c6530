from typing import Any, Dict

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Shape, ShapeArena
from .basic import Multiply, Negate, Subtract
from .power import Divide


class _Unary(Function):
    """Shape-preserving elementwise operation."""

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape, **params: Any) -> Shape:
        return x


class Log(_Unary):
    """
    Natural logarithm operation.

    Forward: f(x) = ln(x)
    Backward: f'(x) = 1/x

    Non-positive inputs give nan or -inf, as in numpy.
    """

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Divide.apply(grad_output, x))


class Exp(_Unary):
    """
    Exponential operation.

    Forward: f(x) = exp(x)
    Backward: f'(x) = exp(x)
    """

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.exp(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Multiply.apply(grad_output, ctx.output))


class Sqrt(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        with np.errstate(invalid="ignore"):
            return np.sqrt(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Divide.apply(grad_output, Multiply.apply(ctx.output, 2.0))
            Function.accumulate(grad_dict, x, grad)


class Tanh(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.tanh(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            y = ctx.output
            grad = Multiply.apply(grad_output, Subtract.apply(1.0, Multiply.apply(y, y)))
            Function.accumulate(grad_dict, x, grad)


class Sigmoid(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return 0.5 * (np.tanh(0.5 * x) + 1.0)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            y = ctx.output
            grad = Multiply.apply(grad_output, Multiply.apply(y, Subtract.apply(1.0, y)))
            Function.accumulate(grad_dict, x, grad)


class Relu(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.maximum(x, 0)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Multiply.apply(grad_output, Step.apply(x)))


class Sin(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.sin(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Multiply.apply(grad_output, Cos.apply(x)))


class Cos(_Unary):
    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.cos(x)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = Negate.apply(Multiply.apply(grad_output, Sin.apply(x)))
            Function.accumulate(grad_dict, x, grad)


class Step(_Unary):
    """Heaviside step: 1 where x > 0, else 0. Its gradient is zero."""

    differentiable = False

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return (x > 0).astype(x.dtype)


class Cast(_Unary):
    """Converts the element type; the gradient is cast back."""

    @staticmethod
    def infer_dtype(*dtypes: str, dtype: str) -> str:
        return np.dtype(dtype).name

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any], dtype: str) -> NDArray[Any]:
        return x.astype(dtype)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Cast.apply(grad_output, dtype=x.dtype))
