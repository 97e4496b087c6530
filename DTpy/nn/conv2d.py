from typing import Union

from ..core.node import Node, Variable
from ..ops.cnn import Conv2D, Conv2DBackpropInput
from ..ops.elementwise import Relu
from .linear import weight_variable
from .normalization import instance_norm

Stride = Union[int, tuple]


def conv_init_vars(
    x: Node, out_channels: int, filter_size: int, is_transpose: bool = False, name: str = "conv"
) -> Variable:
    """
    Declares the HWIO filter of a convolution.

    The input channel count is left as ``-1`` and inferred from the tensor the
    filter is applied to. A transposed convolution's filter lists its output
    channels first.
    """
    k = filter_size
    if is_transpose:
        shape = (k, k, out_channels, -1)
    else:
        shape = (k, k, -1, out_channels)
    return weight_variable(x, shape, f"{name}/weights")


def conv_layer(
    x: Node,
    out_channels: int,
    filter_size: int,
    stride: Stride,
    is_relu: bool = True,
    name: str = "conv",
) -> Node:
    """SAME-padded convolution followed by instance normalization (and ReLU)."""
    weights = conv_init_vars(x, out_channels, filter_size, name=name)
    out = instance_norm(Conv2D.apply(x, weights, stride=stride, padding="SAME"), name)
    return Relu.apply(out) if is_relu else out


def conv_transpose_layer(
    x: Node, out_channels: int, filter_size: int, stride: Stride, name: str = "conv_t"
) -> Node:
    """Upsampling counterpart of ``conv_layer``: each spatial size grows by ``stride``."""
    filters = conv_init_vars(x, out_channels, filter_size, is_transpose=True, name=name)
    out = Conv2DBackpropInput.apply(filters, x, stride=stride, padding="SAME")
    return Relu.apply(instance_norm(out, name))


def residual_block(x: Node, filter_size: int, name: str, channels: int = 128) -> Node:
    """
    Two stride-1 convolutions added back onto their input.

    ``channels`` must match the input's channel count.
    """
    tmp = conv_layer(x, channels, filter_size, 1, True, f"{name}_c1")
    return x + conv_layer(tmp, channels, filter_size, 1, False, f"{name}_c2")
