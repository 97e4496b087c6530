"""
The expression graph builder.

``Graph.build`` is the only place graph structure is created. It runs the
operation's shape-transfer rule inside an arena transaction, collapses
structurally identical expressions into one node and records consumers.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Type

import numpy as np

from ..config import get_config
from .errors import DuplicateVariableName, ShapeError, ShapeUnderdetermined
from .function import Function, freeze_params
from .node import Node, Variable
from .scope import ROOT_SCOPE, Scope
from .shape import Shape, ShapeArena, ShapeLike

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """
    A finalized subgraph, ready to be handed to an execution engine.

    Attributes:
        outputs: Requested nodes
        order: Every node needed, in topological order
        static_shapes: Node id to known sizes (None for dynamic dims)
        dynamic_nodes: Ids of nodes with at least one dynamic dimension
    """

    outputs: List[Node]
    order: List[Node]
    static_shapes: Dict[int, Optional[Tuple[Optional[int], ...]]] = field(default_factory=dict)
    dynamic_nodes: Set[int] = field(default_factory=set)

    @property
    def variables(self) -> List[Variable]:
        return [n for n in self.order if isinstance(n, Variable)]


class Graph:
    """
    A lazily evaluated expression graph.

    Owns the shape arena, the memoization table, the variable registry and the
    current naming scope. Construction is serialized by a re-entrant lock
    because unification can change shapes anywhere in the graph.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self.name = name
        self.arena = ShapeArena()
        self._nodes: List[Node] = []
        self._memo: Dict[Tuple[Any, ...], Node] = {}
        self._consumers: Dict[int, List[Node]] = {}
        self._variables: Dict[str, Variable] = {}
        self._name_counts: Dict[str, int] = {}
        self._scope = ROOT_SCOPE
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        label = f" {self.name!r}" if self.name else ""
        return f"Graph{label}(nodes={len(self._nodes)}, variables={len(self._variables)})"

    # ------------------------------------------------------------------
    # Scopes

    @property
    def current_scope(self) -> Scope:
        return self._scope

    @contextmanager
    def scope(self, name: str) -> Iterator[Scope]:
        """
        Names created in the body are prefixed with ``name``.

        The parent scope is reinstated on every exit path, including when the
        body raises.
        """
        with self._lock:
            parent = self._scope
            self._scope = parent.child(name)
        try:
            yield self._scope
        finally:
            self._scope = parent

    def _unique_name(self, base: str) -> str:
        count = self._name_counts.get(base, 0)
        self._name_counts[base] = count + 1
        return base if count == 0 else f"{base}_{count}"

    # ------------------------------------------------------------------
    # Construction

    def build(
        self,
        function: Type[Function],
        inputs: Sequence[Node],
        params: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Node:
        """
        Returns the node computing ``function`` over ``inputs``.

        A structurally identical node that already exists is returned as is,
        keeping the name it was first built with.

        Raises:
            ShapeError: If the shape-transfer rule fails; the error names the
                operation and scope, and no node is created
        """
        params = params or {}
        inputs = tuple(inputs)
        frozen = freeze_params(params)
        with self._lock:
            for inp in inputs:
                if inp.graph is not self:
                    raise ValueError(f"{function.tag}: input {inp!r} belongs to another graph")

            key = None
            if function.is_cacheable(**params) and get_config().memoize:
                key = (function.tag, tuple(inp.id for inp in inputs), frozen)
                existing = self._memo.get(key)
                if existing is not None:
                    if name is not None and existing.name != self._scope.qualify(name):
                        logger.debug(
                            "Reusing %r; requested name '%s' is not applied",
                            existing,
                            self._scope.qualify(name),
                        )
                    return existing

            try:
                with self.arena.transaction():
                    shape = function.infer_shape(
                        self.arena, *(inp.raw_shape for inp in inputs), **params
                    )
                    dtype = function.infer_dtype(*(inp.dtype for inp in inputs), **params)
            except ShapeError as err:
                label = function.tag if name is None else f"{function.tag} '{name}'"
                located = err.located(label, str(self._scope))
                if located is err:
                    raise
                raise located from err

            node_name = None
            if name is not None or self._scope.path:
                node_name = self._unique_name(self._scope.qualify(name or function.tag))
            node = Node(self, function, inputs, frozen, shape, dtype, node_name, len(self._nodes))
            self._nodes.append(node)
            if key is not None:
                self._memo[key] = node
            for inp in inputs:
                self._consumers.setdefault(inp.id, []).append(node)

        logger.debug("Built %r", node)
        return node

    def constant(self, value: Any, dtype: Any = None, shared: bool = True) -> Node:
        """
        Builds (or reuses) a constant node holding ``value``.

        With ``shared=False`` a new node is built even when an equal literal
        already exists.
        """
        from ..ops.sources import Constant

        # Python numbers and lists take the default element type
        if dtype is None and not isinstance(value, (np.ndarray, np.generic)):
            if np.asarray(value).dtype.kind in "iuf":
                dtype = get_config().default_dtype
        array = np.asarray(value, dtype=dtype)
        params = {"value": array}
        if not shared:
            params["shared"] = False
        return self.build(Constant, (), params)

    def as_node(self, value: Any) -> Node:
        if isinstance(value, Node):
            if value.graph is not self:
                raise ValueError(f"{value!r} belongs to another graph")
            return value
        return self.constant(value)

    def declare_variable(
        self,
        initializer: Any,
        name: str,
        trainable: bool = True,
        shape: ShapeLike = None,
        dtype: Any = None,
    ) -> Variable:
        """
        Registers a named variable under the current scope.

        Args:
            initializer: Node (or value) computing the initial value, or None
                for a placeholder that must always be bound
            name: Name relative to the current scope
            trainable: Whether optimizers update this variable
            shape: Optional declared shape, unified with the initializer's
            dtype: Element type (defaults to the initializer's)

        Raises:
            DuplicateVariableName: If the qualified name is already declared
            ShapeError: If ``shape`` conflicts with the initializer's shape
        """
        from ..ops.sources import Placeholder

        with self._lock:
            qualified = self._scope.qualify(name)
            if qualified in self._variables:
                raise DuplicateVariableName(qualified)

            if initializer is not None:
                initializer = self.as_node(initializer)
                var_shape = initializer.raw_shape
                if shape is not None:
                    try:
                        with self.arena.transaction():
                            declared = self.arena.from_spec(shape)
                            self.arena.unify(var_shape, declared)
                    except ShapeError as err:
                        located = err.located(f"Variable '{qualified}'", str(self._scope))
                        if located is err:
                            raise
                        raise located from err
                dtype = np.dtype(dtype).name if dtype is not None else initializer.dtype
            else:
                var_shape = self.arena.from_spec(shape, dynamic=True)
                dtype = np.dtype(dtype or get_config().default_dtype).name

            var = Variable(
                self,
                Placeholder,
                var_shape,
                dtype,
                qualified,
                len(self._nodes),
                initializer=initializer,
                trainable=trainable,
            )
            self._nodes.append(var)
            self._variables[qualified] = var

        logger.debug("Declared %r", var)
        return var

    def placeholder(self, shape: ShapeLike, name: str, dtype: Any = None) -> Variable:
        """Declares an externally supplied input; ``-1``/``None`` dims are dynamic."""
        return self.declare_variable(None, name, trainable=False, shape=shape, dtype=dtype)

    # ------------------------------------------------------------------
    # Introspection

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes)

    @property
    def variables(self) -> List[Variable]:
        return list(self._variables.values())

    def get_variable(self, name: str) -> Variable:
        try:
            return self._variables[name]
        except KeyError:
            raise KeyError(f"No variable named '{name}'") from None

    def has_variable(self, name: str) -> bool:
        return name in self._variables

    def consumers(self, node: Node) -> List[Node]:
        return list(self._consumers.get(node.id, ()))

    def topological_order(
        self, outputs: Iterable[Node], include_initializers: bool = False
    ) -> List[Node]:
        """
        Every ancestor of ``outputs`` (inclusive), inputs before consumers.

        Args:
            outputs: Nodes to start from
            include_initializers: Also visit initializers of variables reached

        Raises:
            RuntimeError: If graph contains cycles
        """
        result: List[Node] = []
        state: Dict[int, int] = {}  # 1 = on stack, 2 = done

        def children(node: Node) -> Tuple[Node, ...]:
            if include_initializers and isinstance(node, Variable) and node.initializer is not None:
                return node.inputs + (node.initializer,)
            return node.inputs

        for root in outputs:
            if state.get(root.id) == 2:
                continue
            stack: List[Tuple[Node, int]] = [(root, 0)]
            state[root.id] = 1
            while stack:
                node, index = stack[-1]
                kids = children(node)
                if index < len(kids):
                    stack[-1] = (node, index + 1)
                    child = kids[index]
                    mark = state.get(child.id)
                    if mark == 1:
                        raise RuntimeError("Cycle detected in computation graph")
                    if mark is None:
                        state[child.id] = 1
                        stack.append((child, 0))
                else:
                    stack.pop()
                    state[node.id] = 2
                    result.append(node)
        return result

    def ancestors(self, node: Node) -> Set[int]:
        """Ids of ``node`` and every node it depends on."""
        return {n.id for n in self.topological_order([node])}

    def finalize(
        self,
        outputs: Sequence[Node],
        dynamic: bool = False,
        include_initializers: bool = False,
        known: Optional[Dict[Variable, Tuple[int, ...]]] = None,
    ) -> ExecutionPlan:
        """
        Resolves every shape needed to compute ``outputs``.

        Sizes in ``known`` are unified with the variables' shapes for the
        duration of planning only; the graph keeps no trace of them.

        Args:
            outputs: Requested nodes
            dynamic: Whether the execution engine can size open dimensions at
                run time
            include_initializers: Also plan initializers of reached variables
            known: Concrete sizes of bound variables

        Raises:
            ShapeError: If a bound value's shape conflicts with its variable
            ShapeUnderdetermined: If a shape is still open and cannot be
                resolved dynamically
        """
        with self._lock, self.arena.trial():
            for var, sizes in (known or {}).items():
                try:
                    self.arena.unify(var.raw_shape, Shape.of(*sizes))
                except ShapeError as err:
                    raise err.located(f"binding for '{var.name}'", "") from err
            return self._plan(outputs, dynamic, include_initializers)

    def _plan(
        self, outputs: Sequence[Node], dynamic: bool, include_initializers: bool
    ) -> ExecutionPlan:
        strict = get_config().strict_shapes
        order = self.topological_order(outputs, include_initializers=include_initializers)
        plan = ExecutionPlan(outputs=list(outputs), order=order)
        for node in order:
            sizes = self.arena.concrete(node.raw_shape)
            plan.static_shapes[node.id] = sizes
            if sizes is not None and all(s is not None for s in sizes):
                continue
            if dynamic and not strict and not node.op.needs_static_shape:
                plan.dynamic_nodes.add(node.id)
                logger.debug(
                    "%s has dynamic shape %s",
                    node.name or node.tag,
                    self.arena.describe(node.raw_shape),
                )
                continue
            raise ShapeUnderdetermined(
                "shape is not fully determined",
                self.arena.describe(node.raw_shape),
                op=node.name or node.tag,
                scope="",
            )
        logger.debug(
            "Finalized %d nodes (%d dynamic) for %d outputs",
            len(plan.order),
            len(plan.dynamic_nodes),
            len(plan.outputs),
        )
        return plan

    def validate(self) -> List[str]:
        """Returns warnings about the graph structure."""
        warnings: List[str] = []
        if not self._nodes:
            return warnings

        unused = [v.name for v in self._variables.values() if not self._consumers.get(v.id)]
        if unused:
            warnings.append(f"Found {len(unused)} unused variables: {', '.join(sorted(unused))}")

        open_nodes = [n for n in self._nodes if not self.arena.is_resolved(n.raw_shape)]
        if open_nodes:
            warnings.append(f"Found {len(open_nodes)} nodes with unresolved shapes")

        return warnings

    # ------------------------------------------------------------------
    # Default graph

    @contextmanager
    def as_default(self) -> Iterator["Graph"]:
        """Makes this graph the default for the current thread."""
        stack = _default_stack()
        stack.append(self)
        try:
            yield self
        finally:
            stack.pop()


_state = threading.local()
_global_graph: Optional[Graph] = None


def _default_stack() -> List[Graph]:
    stack = getattr(_state, "stack", None)
    if stack is None:
        stack = _state.stack = []
    return stack


def get_default_graph() -> Graph:
    """Returns the innermost ``as_default`` graph, or the global graph."""
    global _global_graph
    stack = _default_stack()
    if stack:
        return stack[-1]
    if _global_graph is None:
        _global_graph = Graph("default")
    return _global_graph


def reset_default_graph() -> Graph:
    """Replaces the global default graph with an empty one."""
    global _global_graph
    _global_graph = Graph("default")
    return _global_graph
