"""
2D convolution in NHWC layout with HWIO filters.

Padding follows the "SAME"/"VALID" convention: "VALID" uses no padding,
"SAME" pads so that the output size is ceil(input / stride), putting the odd
element of the padding after the data.
"""

from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from numpy.typing import NDArray

from ..core.context import Context
from ..core.errors import DimensionMismatch, RankMismatch
from ..core.function import Function
from ..core.node import Node
from ..core.shape import Dim, Shape, ShapeArena
from .reshape import _with_rank

Stride = Union[int, Sequence[int]]

PADDINGS = ("SAME", "VALID")


def _pair(value: Stride) -> Tuple[int, int]:
    """Normalizes an int, (h, w) or NHWC (1, h, w, 1) spatial parameter."""
    if isinstance(value, (int, np.integer)):
        return int(value), int(value)
    value = tuple(int(v) for v in value)
    if len(value) == 2:
        return value[0], value[1]
    if len(value) == 4:
        return value[1], value[2]
    raise ValueError(f"Expected an int, a pair or an NHWC 4-tuple, got {value}")


def _check_padding(padding: str) -> str:
    padding = padding.upper()
    if padding not in PADDINGS:
        raise ValueError(f"padding must be one of {PADDINGS}, got {padding!r}")
    return padding


def _output_size(size: int, kernel: int, stride: int, padding: str) -> int:
    if padding == "SAME":
        return -(-size // stride)
    return max(-(-(size - kernel + 1) // stride), 0)


def _pad_amounts(size: int, kernel: int, stride: int, padding: str) -> Tuple[int, int]:
    if padding == "VALID":
        return 0, 0
    out = -(-size // stride)
    total = max((out - 1) * stride + kernel - size, 0)
    return total // 2, total - total // 2


def _rank4(arena: ShapeArena, shape: Shape, role: str) -> Tuple[Dim, ...]:
    dims = _with_rank(arena, shape, 4).dims
    if len(dims) != 4:
        raise RankMismatch(f"{role} must be rank 4", arena.describe(shape))
    return dims


def _spatial_out(
    arena: ShapeArena, size: Dim, kernel: Dim, stride: int, padding: str
) -> Dim:
    if padding == "SAME" and size.is_known:
        return Dim.known(_output_size(size.value, 1, stride, padding))
    if size.is_known and kernel.is_known:
        return Dim.known(_output_size(size.value, kernel.value, stride, padding))
    return arena.fresh_dim()


def _windows(
    x: NDArray[Any],
    kernel: Tuple[int, int],
    stride: Tuple[int, int],
    padding: str,
    fill: float = 0.0,
) -> Tuple[NDArray[Any], Tuple[int, int], Tuple[int, int]]:
    """
    Strided sliding windows over the padded input.

    Returns:
        windows of shape (N, H_out, W_out, C, kh, kw), and the (before, after)
        padding applied to the height and width axes
    """
    ph = _pad_amounts(x.shape[1], kernel[0], stride[0], padding)
    pw = _pad_amounts(x.shape[2], kernel[1], stride[1], padding)
    if any(ph) or any(pw):
        x = np.pad(x, ((0, 0), ph, pw, (0, 0)), mode="constant", constant_values=fill)
    windows = sliding_window_view(x, kernel, axis=(1, 2))
    return windows[:, :: stride[0], :: stride[1]], ph, pw


def conv2d_forward(
    x: NDArray[Any], w: NDArray[Any], stride: Stride, padding: str
) -> NDArray[Any]:
    strides = _pair(stride)
    windows, _, _ = _windows(x, w.shape[:2], strides, _check_padding(padding))
    return np.einsum("nhwcij,ijco->nhwo", windows, w, optimize=True)


def conv2d_backprop_input(
    input_shape: Sequence[int],
    w: NDArray[Any],
    dy: NDArray[Any],
    stride: Stride,
    padding: str,
) -> NDArray[Any]:
    """Gradient of ``conv2d_forward`` with respect to its input."""
    padding = _check_padding(padding)
    n, height, width, channels = input_shape
    kh, kw = w.shape[:2]
    sh, sw = _pair(stride)
    ph = _pad_amounts(height, kh, sh, padding)
    pw = _pad_amounts(width, kw, sw, padding)
    out_h, out_w = dy.shape[1], dy.shape[2]

    dx = np.zeros(
        (n, height + sum(ph), width + sum(pw), channels), dtype=np.result_type(dy, w)
    )
    for i in range(kh):
        for j in range(kw):
            contribution = np.einsum("nhwo,co->nhwc", dy, w[i, j])
            dx[:, i : i + sh * out_h : sh, j : j + sw * out_w : sw, :] += contribution
    return dx[:, ph[0] : ph[0] + height, pw[0] : pw[0] + width, :]


def conv2d_backprop_filter(
    x: NDArray[Any],
    dy: NDArray[Any],
    filter_shape: Sequence[int],
    stride: Stride,
    padding: str,
) -> NDArray[Any]:
    """Gradient of ``conv2d_forward`` with respect to its filter."""
    kh, kw = filter_shape[:2]
    windows, _, _ = _windows(x, (kh, kw), _pair(stride), _check_padding(padding))
    return np.einsum("nhwcij,nhwo->ijco", windows, dy, optimize=True)


class Conv2D(Function):
    """
    2D convolution.

    Input [N, H, W, C_in], filter [kh, kw, C_in, C_out], result
    [N, H_out, W_out, C_out].
    """

    @staticmethod
    def infer_shape(
        arena: ShapeArena, x: Shape, w: Shape, stride: Stride = 1, padding: str = "SAME"
    ) -> Shape:
        padding = _check_padding(padding)
        sh, sw = _pair(stride)
        xd = _rank4(arena, x, "conv2d input")
        wd = _rank4(arena, w, "conv2d filter")
        try:
            arena.unify_dim(xd[3], wd[2])
        except DimensionMismatch as err:
            raise DimensionMismatch(
                f"input channels do not match filter: {err.detail}",
                arena.describe(x),
                arena.describe(w),
            ) from None
        xd, wd = arena.resolve(Shape(xd)).dims, arena.resolve(Shape(wd)).dims
        out_h = _spatial_out(arena, xd[1], wd[0], sh, padding)
        out_w = _spatial_out(arena, xd[2], wd[1], sw, padding)
        return Shape((xd[0], out_h, out_w, wd[3]))

    @staticmethod
    def forward(
        ctx: Context, x: NDArray[Any], w: NDArray[Any], stride: Stride = 1, padding: str = "SAME"
    ) -> NDArray[Any]:
        return conv2d_forward(x, w, stride, padding)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        x, w = ctx.saved_tensors
        args = ctx.saved_arguments

        if ctx.needs_input_grad[0]:
            grad_x = Conv2DBackpropInput.apply(w, grad_output, x, **args)
            Function.accumulate(grad_dict, x, grad_x)

        if ctx.needs_input_grad[1]:
            grad_w = Conv2DBackpropFilter.apply(x, grad_output, w, **args)
            Function.accumulate(grad_dict, w, grad_w)


class Conv2DBackpropInput(Function):
    """
    Transposed convolution: the gradient of ``Conv2D`` with respect to its
    input.

    Inputs are the filter [kh, kw, C_in, C_out], the output gradient
    [N, H, W, C_out] and optionally a node whose shape the result takes.
    Without it, the result is [N, H * stride, W * stride, C_in] for "SAME"
    padding and [N, (H - 1) * stride + kh, ...] for "VALID".
    """

    @staticmethod
    def infer_shape(
        arena: ShapeArena,
        w: Shape,
        dy: Shape,
        *like: Shape,
        stride: Stride = 1,
        padding: str = "SAME",
    ) -> Shape:
        padding = _check_padding(padding)
        sh, sw = _pair(stride)
        wd = _rank4(arena, w, "conv2d_transpose filter")
        dd = _rank4(arena, dy, "conv2d_transpose input")
        try:
            arena.unify_dim(dd[3], wd[3])
        except DimensionMismatch as err:
            raise DimensionMismatch(
                f"input channels do not match filter output channels: {err.detail}",
                arena.describe(dy),
                arena.describe(w),
            ) from None

        if like:
            ld = _rank4(arena, like[0], "conv2d_transpose result")
            arena.unify_dim(ld[0], dd[0])
            arena.unify_dim(ld[3], wd[2])
            return like[0]

        def grow(size: Dim, kernel: Dim, step: int) -> Dim:
            size, kernel = arena.resolve_dim(size), arena.resolve_dim(kernel)
            if padding == "SAME" and size.is_known:
                return Dim.known(size.value * step)
            if size.is_known and kernel.is_known:
                return Dim.known((size.value - 1) * step + kernel.value)
            return arena.fresh_dim()

        return arena.resolve(Shape((dd[0], grow(dd[1], wd[0], sh), grow(dd[2], wd[1], sw), wd[2])))

    @staticmethod
    def forward(
        ctx: Context,
        w: NDArray[Any],
        dy: NDArray[Any],
        *like: NDArray[Any],
        stride: Stride = 1,
        padding: str = "SAME",
    ) -> NDArray[Any]:
        if like:
            input_shape = like[0].shape
        else:
            sh, sw = _pair(stride)
            kh, kw, channels, _ = w.shape
            n, height, width, _ = dy.shape
            if _check_padding(padding) == "SAME":
                input_shape = (n, height * sh, width * sw, channels)
            else:
                input_shape = (n, (height - 1) * sh + kh, (width - 1) * sw + kw, channels)
        return conv2d_backprop_input(input_shape, w, dy, stride, padding)

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        w, dy = ctx.saved_tensors[:2]
        args = ctx.saved_arguments

        if ctx.needs_input_grad[0]:
            grad_w = Conv2DBackpropFilter.apply(grad_output, dy, w, **args)
            Function.accumulate(grad_dict, w, grad_w)

        if ctx.needs_input_grad[1]:
            grad_dy = Conv2D.apply(grad_output, w, **args)
            Function.accumulate(grad_dict, dy, grad_dy)


class Conv2DBackpropFilter(Function):
    """
    Gradient of ``Conv2D`` with respect to its filter.

    Inputs are the convolution input, the output gradient and the filter,
    whose shape the result takes. No gradient rule is defined.
    """

    @staticmethod
    def infer_shape(
        arena: ShapeArena,
        x: Shape,
        dy: Shape,
        w: Shape,
        stride: Stride = 1,
        padding: str = "SAME",
    ) -> Shape:
        _check_padding(padding)
        xd = _rank4(arena, x, "conv2d input")
        dd = _rank4(arena, dy, "conv2d output gradient")
        wd = _rank4(arena, w, "conv2d filter")
        arena.unify_dim(xd[0], dd[0])
        arena.unify_dim(xd[3], wd[2])
        arena.unify_dim(dd[3], wd[3])
        return w

    @staticmethod
    def forward(
        ctx: Context,
        x: NDArray[Any],
        dy: NDArray[Any],
        w: NDArray[Any],
        stride: Stride = 1,
        padding: str = "SAME",
    ) -> NDArray[Any]:
        return conv2d_backprop_filter(x, dy, w.shape, stride, padding)
