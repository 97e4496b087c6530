from typing import Any, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from ..config import get_config
from ..core.context import Context
from ..core.function import Function
from ..core.shape import Shape, ShapeArena

ShapeParam = Union[Shape, Tuple[Optional[int], ...]]


def _has_open_dims(shape: ShapeParam) -> bool:
    if isinstance(shape, Shape):
        return shape.dims is None or any(not d.is_known for d in shape.dims)
    return any(s is None or s == -1 for s in shape)


class Constant(Function):
    """
    A literal array.

    Identical literals share one node. A constant built with ``shared=False``
    is a node of its own, used as the point a derivative is taken at so that
    equal literals in the differentiated expression stay constants.
    """

    differentiable = False

    @classmethod
    def is_cacheable(cls, **params: Any) -> bool:
        return params.get("shared", True)

    @staticmethod
    def infer_shape(
        arena: ShapeArena, *shapes: Shape, value: NDArray[Any], shared: bool = True
    ) -> Shape:
        return Shape.of(*np.shape(value))

    @staticmethod
    def infer_dtype(*dtypes: str, value: NDArray[Any], shared: bool = True) -> str:
        return np.asarray(value).dtype.name

    @staticmethod
    def forward(ctx: Context, value: NDArray[Any], shared: bool = True) -> NDArray[Any]:
        return value


class Fill(Function):
    """
    An array of one repeated value.

    The kernel sizes its output from the node's static shape, so the shape
    must be fully resolved by the time the graph is finalized.
    """

    differentiable = False
    needs_static_shape = True

    @classmethod
    def is_cacheable(cls, **params: Any) -> bool:
        # Each "-1" in a literal shape is a distinct fresh variable
        return not _has_open_dims(params["shape"])

    @staticmethod
    def infer_shape(
        arena: ShapeArena, *shapes: Shape, shape: ShapeParam, value: float = 0.0, dtype: Optional[str] = None
    ) -> Shape:
        return arena.from_spec(shape)

    @staticmethod
    def infer_dtype(
        *dtypes: str, shape: ShapeParam, value: float = 0.0, dtype: Optional[str] = None
    ) -> str:
        return np.dtype(dtype or get_config().default_dtype).name

    @staticmethod
    def forward(
        ctx: Context, shape: ShapeParam, value: float = 0.0, dtype: Optional[str] = None
    ) -> NDArray[Any]:
        return np.full(ctx.output_shape, value, dtype=dtype or get_config().default_dtype)


class TruncatedNormal(Function):
    """
    Normally distributed values, redrawn when more than two standard
    deviations away from the mean.
    """

    differentiable = False
    memoize = False
    needs_static_shape = True

    @staticmethod
    def infer_shape(
        arena: ShapeArena,
        *shapes: Shape,
        shape: ShapeParam,
        mean: float = 0.0,
        stddev: float = 1.0,
        dtype: Optional[str] = None,
    ) -> Shape:
        return arena.from_spec(shape)

    @staticmethod
    def infer_dtype(
        *dtypes: str,
        shape: ShapeParam,
        mean: float = 0.0,
        stddev: float = 1.0,
        dtype: Optional[str] = None,
    ) -> str:
        return np.dtype(dtype or get_config().default_dtype).name

    @staticmethod
    def forward(
        ctx: Context,
        shape: ShapeParam,
        mean: float = 0.0,
        stddev: float = 1.0,
        dtype: Optional[str] = None,
    ) -> NDArray[Any]:
        rng = ctx.generator()
        values = rng.standard_normal(ctx.output_shape)
        outside = np.abs(values) > 2.0
        while np.any(outside):
            values[outside] = rng.standard_normal(int(outside.sum()))
            outside = np.abs(values) > 2.0
        return (values * stddev + mean).astype(dtype or get_config().default_dtype)


class Placeholder(Function):
    """
    Operation of every ``Variable`` node.

    Variables are created by ``Graph.declare_variable``; their values come
    from evaluation bindings (or, in a dry run, their initializer).
    """

    memoize = False

    @staticmethod
    def infer_shape(arena: ShapeArena, *shapes: Shape, **params: Any) -> Shape:
        raise TypeError("Variables are declared with Graph.declare_variable, not built")

    @staticmethod
    def forward(ctx: Context, *values: NDArray[Any], **params: Any) -> NDArray[Any]:
        raise RuntimeError("Variable values are supplied by evaluation bindings")


class ZerosLike(Function):
    differentiable = False

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape) -> Shape:
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.zeros_like(x)


class OnesLike(Function):
    differentiable = False

    @staticmethod
    def infer_shape(arena: ShapeArena, x: Shape) -> Shape:
        return x

    @staticmethod
    def forward(ctx: Context, x: NDArray[Any]) -> NDArray[Any]:
        return np.ones_like(x)
