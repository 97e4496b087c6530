"""
Symbolic reverse-mode differentiation.

Gradients are graph nodes built from ordinary catalogue operations, so any
derivative can be differentiated again: Hessians, divergences and curls are
all nested applications of ``AutogradEngine.gradients``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from .context import Context
from .errors import DimensionMismatch, NoGradientDefined, ShapeUnderdetermined
from .graph import Graph, get_default_graph
from .node import Node

logger = logging.getLogger(__name__)


class DerivativeKind(Enum):
    TOTAL = "total"
    JACOBIAN = "jacobian"
    HESSIAN = "hessian"
    DIVERGENCE = "divergence"
    CURL = "curl"


@dataclass(frozen=True)
class GradientRequest:
    """
    A differentiation request.

    Attributes:
        output: The node to differentiate
        inputs: Nodes to differentiate with respect to
        kind: Which derivative to build
        grad_output: Seed gradient for ``TOTAL`` (ones when omitted)
    """

    output: Node
    inputs: Tuple[Node, ...]
    kind: DerivativeKind = DerivativeKind.TOTAL
    grad_output: Optional[Node] = None


class AutogradEngine:
    """
    Engine for building derivative graphs.

    The engine walks the forward graph of one output in reverse topological
    order, calling each operation's gradient rule. Only nodes that lie on a
    path to a requested input are visited.
    """

    def __init__(self, graph: Graph):
        self.graph = graph

    def gradients(
        self,
        output: Node,
        inputs: Sequence[Node],
        grad_output: Optional[Node] = None,
    ) -> List[Node]:
        """
        Builds the gradient of ``output`` with respect to each input.

        A non-scalar output is differentiated as the sum of its elements
        (the seed is ``OnesLike(output)``) unless ``grad_output`` is given.
        Inputs the output does not depend on get zeros of their shape.

        Raises:
            NoGradientDefined: If an operation on a path from an input to the
                output has no gradient rule
        """
        from ..ops.sources import OnesLike

        self._check_graph(output, *inputs)
        order = self._topological_sort(output)

        wanted = {inp.id for inp in inputs}
        relevant: Set[int] = set()
        for node in order:
            if node.id in wanted or any(inp.id in relevant for inp in node.inputs):
                relevant.add(node.id)

        grad_dict: Dict[int, Node] = {}
        if output.id in relevant:
            if grad_output is None:
                grad_output = OnesLike.apply(output)
            grad_dict[output.id] = self.graph.as_node(grad_output)

        for node in reversed(order):
            grad = grad_dict.get(node.id)
            if grad is None or not node.inputs:
                continue
            needs = tuple(inp.id in relevant for inp in node.inputs)
            if not any(needs) or not node.op.differentiable:
                continue
            if not node.op.has_gradient():
                raise NoGradientDefined(node.tag)

            ctx = Context(output=node, needs_input_grad=needs)
            ctx.save_for_backward(*node.inputs)
            ctx.save_arguments(**node.op.default_params())
            ctx.save_arguments(**node.params)
            node.op.backward(ctx, grad, grad_dict)

        logger.debug(
            "Differentiated %r with respect to %d inputs over %d nodes",
            output,
            len(inputs),
            len(relevant),
        )
        return [grad_dict[inp.id] if inp.id in grad_dict else self._zeros(inp) for inp in inputs]

    def jacobian(self, output: Node, inp: Node) -> Node:
        """
        Builds the [m, n] Jacobian of ``output`` (m elements) with respect to
        ``inp`` (n elements), one reverse pass per output element.

        Raises:
            ShapeUnderdetermined: If the number of output elements is unknown
        """
        from ..ops.reshape import Reshape, Stack, Take

        arena = self.graph.arena
        m = arena.num_elements(output.raw_shape)
        if m is None:
            raise ShapeUnderdetermined(
                "jacobian needs a statically known output size",
                arena.describe(output.raw_shape),
                op="jacobian",
                scope=str(self.graph.current_scope),
            )
        flat = output if output.rank == 1 else Reshape.apply(output, shape=(m,))
        rows = []
        for i in range(m):
            (grad,) = self.gradients(Take.apply(flat, index=i), [inp])
            rows.append(grad if grad.rank == 1 else Reshape.apply(grad, shape=(-1,)))
        return Stack.apply(*rows, axis=0)

    def hessian(self, output: Node, inp: Node) -> Node:
        """The Jacobian of the gradient of a scalar ``output``."""
        self._require_scalar(output, "hessian")
        (grad,) = self.gradients(output, [inp])
        return self.jacobian(grad, inp)

    def divergence(self, output: Node, inp: Node) -> Node:
        """Trace of the Jacobian of a vector field ``output`` of ``inp``."""
        from ..ops.reshape import Take

        jacobian = self._square_jacobian(output, inp, "divergence")
        n = self.graph.arena.num_elements(inp.raw_shape)
        total = None
        for i in range(n):
            term = Take.apply(Take.apply(jacobian, index=i), index=i)
            total = term if total is None else total + term
        return total

    def curl(self, output: Node, inp: Node) -> Node:
        """Curl of a 3-vector field ``output`` of a 3-vector ``inp``."""
        from ..ops.reshape import Stack, Take

        count = self.graph.arena.num_elements(inp.raw_shape)
        if count is not None and count != 3:
            raise DimensionMismatch(
                "curl is defined for 3-vector fields only",
                self.graph.arena.describe(output.raw_shape),
                self.graph.arena.describe(inp.raw_shape),
                op="curl",
                scope=str(self.graph.current_scope),
            )
        jacobian = self._square_jacobian(output, inp, "curl")

        def entry(i: int, j: int) -> Node:
            return Take.apply(Take.apply(jacobian, index=i), index=j)

        return Stack.apply(
            entry(2, 1) - entry(1, 2),
            entry(0, 2) - entry(2, 0),
            entry(1, 0) - entry(0, 1),
        )

    def differentiate(self, request: GradientRequest) -> List[Node]:
        """Builds the derivative ``request.kind`` for each requested input."""
        if request.kind is DerivativeKind.TOTAL:
            return self.gradients(request.output, request.inputs, request.grad_output)
        build = {
            DerivativeKind.JACOBIAN: self.jacobian,
            DerivativeKind.HESSIAN: self.hessian,
            DerivativeKind.DIVERGENCE: self.divergence,
            DerivativeKind.CURL: self.curl,
        }[request.kind]
        return [build(request.output, inp) for inp in request.inputs]

    def _topological_sort(self, output: Node) -> List[Node]:
        return self.graph.topological_order([output])

    def _check_graph(self, *nodes: Node) -> None:
        for node in nodes:
            if node.graph is not self.graph:
                raise ValueError(f"{node!r} belongs to another graph")

    def _zeros(self, inp: Node) -> Node:
        from ..ops.sources import Fill, ZerosLike

        sizes = self.graph.arena.concrete(inp.raw_shape)
        if sizes is not None and all(s is not None for s in sizes):
            return self.graph.build(
                Fill, (), {"shape": tuple(sizes), "value": 0.0, "dtype": inp.dtype}
            )
        return ZerosLike.apply(inp)

    def _require_scalar(self, output: Node, what: str) -> None:
        count = self.graph.arena.num_elements(output.raw_shape)
        if count is not None and count != 1:
            raise DimensionMismatch(
                f"{what} needs a scalar output",
                self.graph.arena.describe(output.raw_shape),
                op=what,
                scope=str(self.graph.current_scope),
            )

    def _square_jacobian(self, output: Node, inp: Node, what: str) -> Node:
        arena = self.graph.arena
        m, n = arena.num_elements(output.raw_shape), arena.num_elements(inp.raw_shape)
        if m is None or n is None:
            raise ShapeUnderdetermined(
                f"{what} needs statically known sizes",
                arena.describe(output.raw_shape),
                arena.describe(inp.raw_shape),
                op=what,
                scope=str(self.graph.current_scope),
            )
        if m != n:
            raise DimensionMismatch(
                f"{what} needs a field with as many elements as its argument",
                arena.describe(output.raw_shape),
                arena.describe(inp.raw_shape),
                op=what,
                scope=str(self.graph.current_scope),
            )
        return self.jacobian(output, inp)


def get_autograd_engine(graph: Optional[Graph] = None) -> AutogradEngine:
    """Returns an engine for ``graph`` (the default graph when omitted)."""
    return AutogradEngine(graph if graph is not None else get_default_graph())


def gradients(
    output: Node, inputs: Sequence[Node], grad_output: Optional[Node] = None
) -> List[Node]:
    """Gradients of ``output`` with respect to ``inputs``, as graph nodes."""
    return AutogradEngine(output.graph).gradients(output, inputs, grad_output)


def differentiate(
    output: Node,
    inputs: Union[Node, Sequence[Node]],
    kind: DerivativeKind = DerivativeKind.TOTAL,
    grad_output: Optional[Node] = None,
) -> Union[Node, List[Node]]:
    """
    Builds a derivative of ``output``.

    Returns a single node when ``inputs`` is a single node, else one node per
    input.
    """
    single = isinstance(inputs, Node)
    request = GradientRequest(
        output, (inputs,) if single else tuple(inputs), kind, grad_output
    )
    results = AutogradEngine(output.graph).differentiate(request)
    return results[0] if single else results

