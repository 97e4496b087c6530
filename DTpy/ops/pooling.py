from typing import Any, Dict, Tuple

import numpy as np
from numpy.typing import NDArray

from ..core.context import Context
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Dim, Shape, ShapeArena
from .cnn import Stride, _check_padding, _pair, _rank4, _spatial_out, _windows


def _argmax_positions(
    x: NDArray[Any], ksize: Stride, stride: Stride, padding: str
) -> Tuple[Tuple[NDArray[Any], ...], Tuple[int, int], Tuple[int, int], Tuple[int, ...]]:
    """
    Index arrays into the padded input selecting each window's maximum.

    Ties go to the first maximum in row-major window order.
    """
    kernel, strides = _pair(ksize), _pair(stride)
    windows, ph, pw = _windows(x, kernel, strides, _check_padding(padding), fill=-np.inf)
    flat = windows.reshape(windows.shape[:4] + (kernel[0] * kernel[1],))
    rows, cols = np.divmod(flat.argmax(axis=-1), kernel[1])
    n, h, w, c = np.indices(rows.shape)
    padded_shape = (x.shape[0], x.shape[1] + sum(ph), x.shape[2] + sum(pw), x.shape[3])
    return (n, h * strides[0] + rows, w * strides[1] + cols, c), ph, pw, padded_shape


class MaxPool(Function):
    """Max pooling over [N, H, W, C] with "SAME" or "VALID" padding."""

    @staticmethod
    def infer_shape(
        arena: ShapeArena, x: Shape, ksize: Stride = 2, stride: Stride = 2, padding: str = "VALID"
    ) -> Shape:
        padding = _check_padding(padding)
        (kh, kw), (sh, sw) = _pair(ksize), _pair(stride)
        xd = _rank4(arena, x, "max_pool input")
        out_h = _spatial_out(arena, xd[1], Dim.known(kh), sh, padding)
        out_w = _spatial_out(arena, xd[2], Dim.known(kw), sw, padding)
        return Shape((xd[0], out_h, out_w, xd[3]))

    @staticmethod
    def forward(
        ctx: Context,
        x: NDArray[Any],
        ksize: Stride = 2,
        stride: Stride = 2,
        padding: str = "VALID",
    ) -> NDArray[Any]:
        windows, _, _ = _windows(x, _pair(ksize), _pair(stride), _check_padding(padding), -np.inf)
        return windows.max(axis=(-2, -1))

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            grad = MaxPoolGrad.apply(x, grad_output, **ctx.saved_arguments)
            Function.accumulate(grad_dict, x, grad)


class MaxPoolGrad(Function):
    """
    Routes the output gradient of ``MaxPool`` back to the position of each
    window's maximum. No gradient rule is defined.
    """

    @staticmethod
    def infer_shape(
        arena: ShapeArena,
        x: Shape,
        grad: Shape,
        ksize: Stride = 2,
        stride: Stride = 2,
        padding: str = "VALID",
    ) -> Shape:
        arena.unify(grad, MaxPool.infer_shape(arena, x, ksize, stride, padding))
        return x

    @staticmethod
    def forward(
        ctx: Context,
        x: NDArray[Any],
        grad: NDArray[Any],
        ksize: Stride = 2,
        stride: Stride = 2,
        padding: str = "VALID",
    ) -> NDArray[Any]:
        positions, ph, pw, padded_shape = _argmax_positions(x, ksize, stride, padding)
        dx = np.zeros(padded_shape, dtype=grad.dtype)
        np.add.at(dx, positions, grad)
        return dx[:, ph[0] : ph[0] + x.shape[1], pw[0] : pw[0] + x.shape[2], :]
