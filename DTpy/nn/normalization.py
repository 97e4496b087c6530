from typing import Optional, Sequence, Tuple, Union

from ..core.node import Node
from ..ops.elementwise import Sqrt
from ..ops.reduction import Mean
from .linear import fill_variable

Axes = Optional[Union[int, Sequence[int]]]


def _axes(axes: Axes) -> Optional[Union[int, Tuple[int, ...]]]:
    if axes is None or isinstance(axes, int):
        return axes
    return tuple(axes)


def moments(x: Node, axes: Axes = None, keepdims: bool = True) -> Tuple[Node, Node]:
    """Mean and (biased) variance of ``x`` over ``axes``."""
    axes = _axes(axes)
    mean = Mean.apply(x, axis=axes, keepdims=True)
    centered = x - mean
    variance = Mean.apply(centered * centered, axis=axes, keepdims=keepdims)
    if not keepdims:
        mean = Mean.apply(x, axis=axes, keepdims=False)
    return mean, variance


def instance_norm(x: Node, name: str, epsilon: float = 1e-3) -> Node:
    """
    Normalizes each image of an NHWC batch over its spatial axes, then
    applies a learned scalar scale and shift.
    """
    with x.graph.scope(f"{name}/instance_norm"):
        mu, sigma_sq = moments(x, axes=(1, 2))
        shift = x.graph.declare_variable(0.0, "shift")
        scale = x.graph.declare_variable(1.0, "scale")
        normalized = (x - mu) / Sqrt.apply(sigma_sq + epsilon)
        return scale * normalized + shift


def batch_norm(x: Node, name: str, epsilon: float = 1e-5) -> Node:
    """
    Inference-mode batch normalization over the channel axis of an NHWC batch.

    Declares per-channel ``gamma``, ``beta``, ``running_mean`` and
    ``running_std`` variables under ``name``; the channel count is inferred
    from ``x``. ``running_std`` holds the running variance, as in the
    checkpoints this layer loads.
    """
    with x.graph.scope(name):
        gamma = fill_variable(x, (-1,), "gamma", 1.0)
        beta = fill_variable(x, (-1,), "beta", 0.0)
        mean = fill_variable(x, (-1,), "running_mean", 0.0)
        variance = fill_variable(x, (-1,), "running_std", 1.0)
        return gamma * (x - mean) / Sqrt.apply(variance + epsilon) + beta
