"""
Neural network layers for DTpy.

Layers are plain functions: each declares its variables under a scope in the
input's graph and returns the output node.
"""

from .conv2d import conv_init_vars, conv_layer, conv_transpose_layer, residual_block
from .linear import dense, fill_variable, weight_variable
from .normalization import batch_norm, instance_norm, moments

__all__ = [
    "dense",
    "weight_variable",
    "fill_variable",
    "moments",
    "instance_norm",
    "batch_norm",
    "conv_init_vars",
    "conv_layer",
    "conv_transpose_layer",
    "residual_block",
]
