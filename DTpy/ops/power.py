from typing import Any, Dict

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Shape, ShapeArena
from .basic import Add, Multiply, Negate


class Power(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, base: Shape, exponent: float) -> Shape:
        return base

    @staticmethod
    def forward(ctx: Context, base: NDArray[Any], exponent: float) -> NDArray[Any]:
        """
        Computes element-wise power operation: base ^ exponent.

        Args:
            ctx: Evaluation context
            base: The base values
            exponent: The power to raise the base to, a scalar parameter

        Returns:
            The base raised to exponent
        """
        return np.power(base, exponent)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        """
        Builds the gradient of the power operation.

        For f(x) = x^n, the derivative is f'(x) = nx^(n-1)
        """
        (base,) = ctx.saved_tensors
        exponent = ctx.saved_arguments["exponent"]

        if not ctx.needs_input_grad[0] or exponent == 0:
            return
        if exponent == 1:
            Function.accumulate(grad_dict, base, grad_output)
            return
        lowered = base if exponent == 2 else Power.apply(base, exponent=exponent - 1)
        grad = Multiply.apply(grad_output, Multiply.apply(lowered, float(exponent)))
        Function.accumulate(grad_dict, base, grad)


class Divide(Function):
    @staticmethod
    def infer_shape(arena: ShapeArena, numerator: Shape, denominator: Shape) -> Shape:
        return arena.broadcast(numerator, denominator)

    @staticmethod
    def forward(ctx: Context, numerator: NDArray[Any], denominator: NDArray[Any]) -> NDArray[Any]:
        """
        Computes element-wise division: numerator / denominator.

        Division by zero follows IEEE semantics (inf or nan), like numpy.
        """
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.divide(numerator, denominator)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        """
        For f(x,y) = x/y:
        df/dx = 1/y
        df/dy = -x/y^2
        """
        numerator, denominator = ctx.saved_tensors

        if ctx.needs_input_grad[0]:
            grad = Divide.apply(grad_output, denominator)
            Function.accumulate(grad_dict, numerator, Add._reduce_grad(grad, numerator))

        if ctx.needs_input_grad[1]:
            grad = Negate.apply(
                Divide.apply(
                    Multiply.apply(grad_output, numerator),
                    Multiply.apply(denominator, denominator),
                )
            )
            Function.accumulate(grad_dict, denominator, Add._reduce_grad(grad, denominator))
