import inspect
import logging
from abc import ABC, abstractmethod
from numbers import Number
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np
from numpy.typing import NDArray

from .context import Context
from .node import Node
from .shape import Shape, ShapeArena

logger = logging.getLogger(__name__)

_REGISTRY: Dict[str, Type["Function"]] = {}


class FrozenArray:
    """Hashable, read-only wrapper used to put arrays into memoization keys."""

    def __init__(self, array: NDArray[Any]):
        array = np.array(array, copy=True)
        array.setflags(write=False)
        self.array = array
        self._key = (array.dtype.str, array.shape, array.tobytes())

    def __hash__(self) -> int:
        return hash(self._key)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, FrozenArray) and self._key == other._key

    def __repr__(self) -> str:
        return f"FrozenArray(shape={self.array.shape}, dtype={self.array.dtype})"


def freeze(value: Any) -> Any:
    """Converts a parameter value into a hashable equivalent."""
    if isinstance(value, np.ndarray):
        return FrozenArray(value)
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, dict):
        return tuple(sorted((k, freeze(v)) for k, v in value.items()))
    if isinstance(value, np.dtype):
        return value.name
    return value


def thaw(value: Any) -> Any:
    """Inverse of ``freeze`` for values handed to kernels."""
    if isinstance(value, FrozenArray):
        return value.array
    return value


def freeze_params(params: Dict[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    return tuple(sorted((k, freeze(v)) for k, v in params.items()))


class Function(ABC):
    """
    Base class for all catalogue operations.

    A Function subclass is one entry of the operation registry. It bundles:

    - ``infer_shape``: the shape-transfer rule, run by the graph builder
    - ``infer_dtype``: the element-type rule
    - ``forward``: the numpy kernel run by the execution engine
    - ``backward`` (optional): the gradient rule, which builds graph nodes

    Because gradient rules are written with ordinary operations, the nodes
    they produce can be differentiated again.

    Attributes:
        tag: Registry key, the class name unless overridden
        differentiable: False for operations with a zero gradient everywhere
            (comparisons, shape-only helpers); they are skipped by the
            differentiation engine
        memoize: False for operations that must never be shared
        needs_static_shape: True for sources whose kernel needs a fully known
            output shape
    """

    tag: ClassVar[str] = "Function"
    differentiable: ClassVar[bool] = True
    memoize: ClassVar[bool] = True
    needs_static_shape: ClassVar[bool] = False

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "tag" not in cls.__dict__:
            cls.tag = cls.__name__
        # Underscore-prefixed classes are shared bases, not operations
        if cls.__name__.startswith("_"):
            return
        if cls.tag in _REGISTRY and _REGISTRY[cls.tag] is not cls:
            logger.debug("Re-registering operation %s", cls.tag)
        _REGISTRY[cls.tag] = cls

    @staticmethod
    @abstractmethod
    def infer_shape(arena: ShapeArena, *shapes: Shape, **params: Any) -> Shape:
        """
        Computes the output shape from the input shapes.

        Args:
            arena: The graph's shape arena, for unification and fresh variables
            *shapes: Input shapes (unresolved; use ``arena.resolve``)
            **params: Static parameters of the operation

        Returns:
            The output shape, possibly containing variables
        """
        raise NotImplementedError

    @staticmethod
    def infer_dtype(*dtypes: str, **params: Any) -> str:
        """Result element type; numpy promotion of the input types by default."""
        if not dtypes:
            from ..config import get_config

            return get_config().default_dtype
        return np.result_type(*dtypes).name

    @staticmethod
    @abstractmethod
    def forward(ctx: Context, *values: NDArray[Any], **params: Any) -> NDArray[Any]:
        """
        Computes the operation on concrete arrays.

        Args:
            ctx: Evaluation context (random generator, static output shape)
            *values: Input arrays
            **params: Static parameters of the operation

        Returns:
            The output array
        """
        raise NotImplementedError

    @staticmethod
    def backward(ctx: Context, grad_output: Node, grad_dict: Dict[int, Node]) -> None:
        """
        Adds the gradient of each input to ``grad_dict``.

        Args:
            ctx: Context with the inputs as saved tensors, the parameters as
                saved arguments, the node as ``output`` and
                ``needs_input_grad``
            grad_output: Node holding the gradient with respect to the output
            grad_dict: Maps node ids to their accumulated gradient nodes
        """
        raise NotImplementedError

    @classmethod
    def has_gradient(cls) -> bool:
        return cls.backward is not Function.backward

    @classmethod
    def default_params(cls) -> Dict[str, Any]:
        """Keyword defaults of the kernel, for parameters a node left implicit."""
        return {
            name: p.default
            for name, p in inspect.signature(cls.forward).parameters.items()
            if p.default is not inspect.Parameter.empty
        }

    @classmethod
    def is_cacheable(cls, **params: Any) -> bool:
        """Whether a node with these parameters may be shared."""
        return cls.memoize

    @classmethod
    def apply(cls, *args: Any, name: Optional[str] = None, **params: Any) -> Node:
        """
        Builds a node applying this operation to ``args``.

        Python numbers and arrays become constants. Numbers take the element
        type of the first node argument when it is a floating type.
        """
        from .graph import get_default_graph

        graphs = {id(a.graph): a.graph for a in args if isinstance(a, Node)}
        if len(graphs) > 1:
            raise ValueError(f"{cls.tag}: inputs belong to different graphs")
        graph = next(iter(graphs.values())) if graphs else get_default_graph()

        like = next((a.dtype for a in args if isinstance(a, Node)), None)
        if like is not None and not np.issubdtype(np.dtype(like), np.floating):
            like = None
        inputs = []
        for arg in args:
            if isinstance(arg, Node):
                inputs.append(arg)
            elif isinstance(arg, (Number, np.generic)) and not isinstance(arg, bool):
                inputs.append(graph.constant(arg, dtype=like))
            else:
                inputs.append(graph.constant(arg))
        return graph.build(cls, tuple(inputs), params, name=name)

    @staticmethod
    def accumulate(grad_dict: Dict[int, Node], node: Node, grad: Node) -> None:
        """Adds ``grad`` to the gradient accumulated for ``node``."""
        from ..ops.basic import Add

        if node.id not in grad_dict:
            grad_dict[node.id] = grad
        else:
            grad_dict[node.id] = Add.apply(grad_dict[node.id], grad)

    @classmethod
    def verify_backward(
        cls,
        inputs: Sequence[Any],
        epsilon: float = 1e-6,
        tolerance: float = 1e-5,
        **params: Any,
    ) -> bool:
        """
        Verifies this operation's gradient rule using numerical gradients.

        Builds the operation on placeholders in a private graph, differentiates
        the sum of its output and compares the evaluated gradients with central
        differences of the forward kernel.

        Args:
            inputs: Input arrays
            epsilon: Step for the numerical gradient
            tolerance: Maximum accepted relative error
            **params: Static parameters of the operation

        Returns:
            True if gradients match within tolerance, False otherwise
        """
        from .autograd import gradients
        from .evaluator import Evaluator
        from .graph import Graph

        arrays = [np.array(x, dtype=np.float64) for x in inputs]
        graph = Graph()
        placeholders = [
            graph.placeholder(a.shape, name=f"input{i}") for i, a in enumerate(arrays)
        ]
        out = graph.build(cls, tuple(placeholders), params)
        grads = gradients(out, placeholders)
        bindings = {p: a for p, a in zip(placeholders, arrays)}
        analytical = Evaluator(graph).evaluate(grads, bindings)

        frozen = {k: thaw(v) for k, v in freeze_params(params)}
        ctx = Context()

        def total(values: List[NDArray[Any]]) -> float:
            return float(np.sum(cls.forward(ctx, *values, **frozen)))

        for idx, arr in enumerate(arrays):
            numerical = np.zeros_like(arr)
            it = np.nditer(arr, flags=["multi_index"])
            while not it.finished:
                ix = it.multi_index
                old_value = arr[ix]

                arr[ix] = old_value + epsilon
                pos = total(arrays)
                arr[ix] = old_value - epsilon
                neg = total(arrays)
                arr[ix] = old_value

                numerical[ix] = (pos - neg) / (2 * epsilon)
                it.iternext()

            rel_error = np.max(
                np.abs(analytical[idx] - numerical)
                / (np.maximum(np.abs(analytical[idx]), np.abs(numerical)) + epsilon),
                initial=0.0,
            )
            if rel_error > tolerance:
                logger.debug("%s gradient mismatch on input %d: %g", cls.tag, idx, rel_error)
                return False

        return True


def get_function(tag: str) -> Type[Function]:
    """Looks up a registered operation by tag."""
    try:
        return _REGISTRY[tag]
    except KeyError:
        raise KeyError(f"Unknown operation: {tag}") from None


def registered_functions() -> Dict[str, Type[Function]]:
    return dict(_REGISTRY)
