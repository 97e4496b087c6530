from numbers import Number
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional, Tuple, Type, Union

import numpy as np
from numpy.typing import NDArray

from .shape import Shape

if TYPE_CHECKING:
    from .function import Function
    from .graph import Graph

Operand = Union["Node", Number, NDArray[Any]]


class Node:
    """
    A deferred tensor computation.

    Nodes are created only by ``Graph.build`` and never change afterwards.
    The shape a node was built with may contain dimension variables; reading
    ``shape`` resolves them through the graph's arena, so facts learnt later
    in the graph show up on nodes built earlier.

    Attributes:
        op: The ``Function`` subclass computing this node
        inputs: Input nodes, in order
        dtype: Element type name (a numpy dtype name)
        name: Scope-qualified name, if the node was named
        id: Sequential id, unique within the graph
    """

    # Make numpy defer to the reflected operators below
    __array_ufunc__ = None
    __array_priority__ = 1000

    def __init__(
        self,
        graph: "Graph",
        op: Type["Function"],
        inputs: Tuple["Node", ...],
        params: Tuple[Tuple[str, Any], ...],
        shape: Shape,
        dtype: str,
        name: Optional[str],
        node_id: int,
    ):
        object.__setattr__(self, "graph", graph)
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "inputs", tuple(inputs))
        object.__setattr__(self, "_params", params)
        object.__setattr__(self, "_shape", shape)
        object.__setattr__(self, "dtype", dtype)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "id", node_id)

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def tag(self) -> str:
        return self.op.tag

    @property
    def params(self) -> Dict[str, Any]:
        """Static parameters, with frozen arrays unwrapped."""
        from .function import thaw

        return {key: thaw(value) for key, value in self._params}

    @property
    def raw_shape(self) -> Shape:
        """The shape as built, before resolving variables."""
        return self._shape

    @property
    def shape(self) -> Shape:
        return self.graph.arena.resolve(self._shape)

    @property
    def static_shape(self) -> Optional[Tuple[Optional[int], ...]]:
        """Known sizes (None for open dims), or None if the rank is unknown."""
        return self.graph.arena.concrete(self._shape)

    @property
    def rank(self) -> Optional[int]:
        return self.shape.rank

    def __len__(self) -> int:
        sizes = self.static_shape
        if not sizes:
            raise TypeError(f"len() of a node without a leading dimension: {self!r}")
        if sizes[0] is None:
            raise TypeError(f"len() of a node whose leading dimension is unknown: {self!r}")
        return sizes[0]

    def __iter__(self) -> Iterator["Node"]:
        for i in range(len(self)):
            yield self[i]

    def __repr__(self) -> str:
        shape = self.graph.arena.describe(self._shape)
        name = f", name={self.name!r}" if self.name else ""
        return f"Node({self.tag}, shape={shape}, dtype={self.dtype}{name})"

    # Arithmetic operations, connected to Function implementations

    def __add__(self, other: Operand) -> "Node":
        from ..ops.basic import Add

        return Add.apply(self, other)

    def __radd__(self, other: Operand) -> "Node":
        from ..ops.basic import Add

        return Add.apply(other, self)

    def __sub__(self, other: Operand) -> "Node":
        from ..ops.basic import Subtract

        return Subtract.apply(self, other)

    def __rsub__(self, other: Operand) -> "Node":
        from ..ops.basic import Subtract

        return Subtract.apply(other, self)

    def __mul__(self, other: Operand) -> "Node":
        from ..ops.basic import Multiply

        return Multiply.apply(self, other)

    def __rmul__(self, other: Operand) -> "Node":
        from ..ops.basic import Multiply

        return Multiply.apply(other, self)

    def __truediv__(self, other: Operand) -> "Node":
        from ..ops.power import Divide

        return Divide.apply(self, other)

    def __rtruediv__(self, other: Operand) -> "Node":
        from ..ops.power import Divide

        return Divide.apply(other, self)

    def __neg__(self) -> "Node":
        from ..ops.basic import Negate

        return Negate.apply(self)

    def __pow__(self, exponent: float) -> "Node":
        from ..ops.power import Power

        return Power.apply(self, exponent=exponent)

    def __matmul__(self, other: Operand) -> "Node":
        from ..ops.basic import matmul

        return matmul(self, other)

    def __rmatmul__(self, other: Operand) -> "Node":
        from ..ops.basic import matmul

        return matmul(other, self)

    # Comparisons build nodes; == and != keep identity semantics so nodes
    # stay usable as dictionary keys.

    def __gt__(self, other: Operand) -> "Node":
        from ..ops.matrix import Greater

        return Greater.apply(self, other)

    def __ge__(self, other: Operand) -> "Node":
        from ..ops.matrix import GreaterEqual

        return GreaterEqual.apply(self, other)

    def __lt__(self, other: Operand) -> "Node":
        from ..ops.matrix import Less

        return Less.apply(self, other)

    def __le__(self, other: Operand) -> "Node":
        from ..ops.matrix import LessEqual

        return LessEqual.apply(self, other)

    def eq(self, other: Operand) -> "Node":
        from ..ops.matrix import Equal

        return Equal.apply(self, other)

    def __getitem__(self, index: Union[int, slice, Tuple[Union[int, slice], ...]]) -> "Node":
        """Integer indexing, with full slices (``x[0, :, :]``) keeping an axis."""
        from ..ops.reshape import Take

        if not isinstance(index, tuple):
            index = (index,)
        result = self
        axis = 0
        for item in index:
            if isinstance(item, slice):
                if item != slice(None):
                    raise TypeError("Only full slices ':' are supported in node indexing")
                axis += 1
            elif isinstance(item, (int, np.integer)):
                result = Take.apply(result, index=int(item), axis=axis)
            else:
                raise TypeError(f"Unsupported index type: {type(item).__name__}")
        return result

    # Method forms

    def reshape(self, *shape: int) -> "Node":
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])

        from ..ops.reshape import Reshape

        return Reshape.apply(self, shape=tuple(int(d) for d in shape))

    def transpose(self, *axes: int) -> "Node":
        from ..ops.matrix import Transpose

        return Transpose.apply(self, axes=tuple(axes) or None)

    @property
    def T(self) -> "Node":
        return self.transpose()

    def sum(self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False) -> "Node":
        from ..ops.reduction import Sum

        return Sum.apply(self, axis=axis, keepdims=keepdims)

    def mean(self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False) -> "Node":
        from ..ops.reduction import Mean

        return Mean.apply(self, axis=axis, keepdims=keepdims)

    def max(self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False) -> "Node":
        from ..ops.reduction import Max

        return Max.apply(self, axis=axis, keepdims=keepdims)

    def exp(self) -> "Node":
        from ..ops.elementwise import Exp

        return Exp.apply(self)

    def log(self) -> "Node":
        from ..ops.elementwise import Log

        return Log.apply(self)

    def sqrt(self) -> "Node":
        from ..ops.elementwise import Sqrt

        return Sqrt.apply(self)

    def tanh(self) -> "Node":
        from ..ops.elementwise import Tanh

        return Tanh.apply(self)

    def sigmoid(self) -> "Node":
        from ..ops.elementwise import Sigmoid

        return Sigmoid.apply(self)

    def relu(self) -> "Node":
        from ..ops.elementwise import Relu

        return Relu.apply(self)

    def softmax(self, axis: int = -1) -> "Node":
        from ..ops.basic import Softmax

        return Softmax.apply(self, axis=axis)

    def clip(self, min_val: float, max_val: float) -> "Node":
        from ..ops.basic import Clip

        return Clip.apply(self, min_val=min_val, max_val=max_val)

    def cast(self, dtype: Any) -> "Node":
        from ..ops.elementwise import Cast

        return Cast.apply(self, dtype=np.dtype(dtype).name)

    def expand_dims(self, axis: int = 0) -> "Node":
        from ..ops.reshape import ExpandDims

        return ExpandDims.apply(self, axis=axis)

    def squeeze(self, axis: int = 0) -> "Node":
        from ..ops.reshape import Squeeze

        return Squeeze.apply(self, axis=axis)

    def reverse(self, axis: int = 0) -> "Node":
        from ..ops.reshape import Reverse

        return Reverse.apply(self, axis=axis)

    def eval(self, bindings: Optional[Dict[Any, Any]] = None) -> NDArray[Any]:
        """Evaluates this node with the graph's default evaluator."""
        from .evaluator import Evaluator

        return Evaluator(self.graph).evaluate(self, bindings)


class Variable(Node):
    """
    A named graph entry point whose value is supplied at evaluation time.

    Attributes:
        initializer: Node computing an initial value, or None for placeholders
        trainable: Whether optimizers should update this variable
    """

    def __init__(
        self,
        graph: "Graph",
        op: Type["Function"],
        shape: Shape,
        dtype: str,
        name: str,
        node_id: int,
        initializer: Optional[Node] = None,
        trainable: bool = True,
    ):
        super().__init__(graph, op, (), (("name", name),), shape, dtype, name, node_id)
        object.__setattr__(self, "initializer", initializer)
        object.__setattr__(self, "trainable", trainable)

    def __repr__(self) -> str:
        shape = self.graph.arena.describe(self._shape)
        return f"Variable({self.name!r}, shape={shape}, dtype={self.dtype})"
