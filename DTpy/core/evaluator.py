"""
Evaluation of finalized graphs.

An ``Evaluator`` turns requested nodes into arrays: it resolves bindings,
finalizes the needed subgraph into an ``ExecutionPlan`` and hands it to an
``ExecutionEngine``. The graph is never modified by evaluation.

In dry-run mode (``Evaluator.dry_run`` or inside ``dry_run_mode``) unbound
variables take their initializer's value, and unbound placeholders take zeros
of their static shape, so a model can be checked end to end without weights.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from ..config import Config, get_config
from .context import Context
from .errors import BackendExecutionError, DTError, ShapeUnderdetermined, UnboundVariable
from .graph import ExecutionPlan, Graph, get_default_graph
from .node import Node, Variable

logger = logging.getLogger(__name__)

Bindings = Mapping[Union[Variable, str], Any]

_dry_run: ContextVar[bool] = ContextVar("dtpy_dry_run", default=False)


class ExecutionEngine(ABC):
    """
    Runs an ``ExecutionPlan``.

    Attributes:
        supports_dynamic_shapes: Whether the engine can size dimensions left
            open at finalize time from the arrays it computes
    """

    supports_dynamic_shapes: bool = False

    @abstractmethod
    def run(
        self, plan: ExecutionPlan, feeds: Dict[int, NDArray[Any]], ctx: Context
    ) -> List[NDArray[Any]]:
        """
        Computes ``plan.outputs``.

        Args:
            plan: The finalized subgraph
            feeds: Variable id to bound value
            ctx: Evaluation context (random generator, deadline)

        Returns:
            One array per plan output
        """
        raise NotImplementedError


class NumpyEngine(ExecutionEngine):
    """Executes each node's numpy kernel in topological order."""

    supports_dynamic_shapes = True

    def run(
        self, plan: ExecutionPlan, feeds: Dict[int, NDArray[Any]], ctx: Context
    ) -> List[NDArray[Any]]:
        values: Dict[int, NDArray[Any]] = {}
        for node in plan.order:
            ctx.check_deadline()
            if isinstance(node, Variable):
                values[node.id] = self._variable_value(node, feeds, values)
                continue

            args = [values[inp.id] for inp in node.inputs]
            ctx.output_shape = plan.static_shapes.get(node.id)
            try:
                result = np.asarray(node.op.forward(ctx, *args, **node.params))
            except DTError:
                raise
            except Exception as exc:
                raise BackendExecutionError(str(exc), op=node.name or node.tag) from exc
            self._check_shape(node, result, plan)
            values[node.id] = result

        ctx.check_deadline()
        return [values[out.id] for out in plan.outputs]

    @staticmethod
    def _variable_value(
        var: Variable, feeds: Dict[int, NDArray[Any]], values: Dict[int, NDArray[Any]]
    ) -> NDArray[Any]:
        if var.id in feeds:
            return feeds[var.id]
        if var.initializer is not None and var.initializer.id in values:
            return values[var.initializer.id].astype(var.dtype, copy=False)
        raise UnboundVariable(var.name)

    @staticmethod
    def _check_shape(node: Node, result: NDArray[Any], plan: ExecutionPlan) -> None:
        expected = plan.static_shapes.get(node.id)
        if expected is None:
            return
        if len(expected) != result.ndim or any(
            e is not None and e != actual for e, actual in zip(expected, result.shape)
        ):
            raise BackendExecutionError(
                f"kernel produced shape {list(result.shape)}, expected {list(expected)}",
                op=node.name or node.tag,
            )


class Evaluator:
    """
    Evaluates nodes of one graph.

    Args:
        graph: The graph whose nodes are evaluated (the default graph when
            omitted)
        engine: Execution engine (a ``NumpyEngine`` by default)
        config: Options (the active configuration by default)
    """

    def __init__(
        self,
        graph: Optional[Graph] = None,
        engine: Optional[ExecutionEngine] = None,
        config: Optional[Config] = None,
    ):
        self.graph = graph if graph is not None else get_default_graph()
        self.engine = engine or NumpyEngine()
        self.config = config

    def evaluate(
        self,
        nodes: Union[Node, Sequence[Node]],
        bindings: Optional[Bindings] = None,
        timeout: Optional[float] = None,
    ) -> Union[NDArray[Any], List[NDArray[Any]]]:
        """
        Computes the values of ``nodes``.

        Args:
            nodes: A node, or a sequence of nodes
            bindings: Values for variables, keyed by variable or qualified name
            timeout: Deadline in seconds (defaults to the configured one)

        Returns:
            An array for a single node, else a list of arrays

        Raises:
            UnboundVariable: If a needed variable has no binding; raised
                before any kernel runs
            ShapeError: If a binding's shape conflicts with its variable, or a
                shape cannot be determined
            BackendExecutionError: If a kernel fails
            EvaluationTimeout: If the deadline passes
        """
        return self._run(nodes, bindings, timeout, dry_run=_dry_run.get())

    def dry_run(
        self,
        nodes: Union[Node, Sequence[Node]],
        bindings: Optional[Bindings] = None,
        timeout: Optional[float] = None,
    ) -> Union[NDArray[Any], List[NDArray[Any]]]:
        """Like ``evaluate``, but unbound variables fall back to initializers."""
        return self._run(nodes, bindings, timeout, dry_run=True)

    def initialize(
        self,
        variables: Optional[Sequence[Variable]] = None,
        bindings: Optional[Bindings] = None,
    ) -> Dict[Variable, NDArray[Any]]:
        """
        Evaluates the initializers of ``variables`` (every variable with an
        initializer by default) and returns them as bindings.
        """
        if variables is None:
            variables = [v for v in self.graph.variables if v.initializer is not None]
        missing = [v.name for v in variables if v.initializer is None]
        if missing:
            raise UnboundVariable(missing[0], "has no initializer")
        if not variables:
            return {}
        values = self.evaluate([v.initializer for v in variables], bindings)
        return {v: np.asarray(value, dtype=v.dtype) for v, value in zip(variables, values)}

    # ------------------------------------------------------------------

    def _config(self) -> Config:
        return self.config or get_config()

    def _run(
        self,
        nodes: Union[Node, Sequence[Node]],
        bindings: Optional[Bindings],
        timeout: Optional[float],
        dry_run: bool,
    ) -> Union[NDArray[Any], List[NDArray[Any]]]:
        single = isinstance(nodes, Node)
        outputs = [nodes] if single else list(nodes)
        for node in outputs:
            if node.graph is not self.graph:
                raise ValueError(f"{node!r} belongs to another graph")

        feeds = self._normalize_bindings(bindings or {})
        roots = self._collect(outputs, feeds, dry_run) + outputs
        known = {var: value.shape for var, value in feeds.values()}
        plan = self.graph.finalize(
            roots, dynamic=self.engine.supports_dynamic_shapes, known=known
        )

        config = self._config()
        timeout = timeout if timeout is not None else config.eval_timeout
        ctx = Context(
            rng=np.random.default_rng(config.seed),
            deadline=None if timeout is None else time.monotonic() + timeout,
            timeout=timeout,
        )

        started = time.perf_counter()
        values = self.engine.run(plan, {key: value for key, (_, value) in feeds.items()}, ctx)
        logger.info(
            "%s %d nodes in %.3fs",
            "Dry-ran" if dry_run else "Evaluated",
            len(plan.order),
            time.perf_counter() - started,
        )
        values = values[len(values) - len(outputs) :]
        return values[0] if single else values

    def _normalize_bindings(self, bindings: Bindings) -> Dict[int, Tuple[Variable, NDArray[Any]]]:
        feeds: Dict[int, Tuple[Variable, NDArray[Any]]] = {}
        for key, value in bindings.items():
            if isinstance(key, Variable):
                if key.graph is not self.graph:
                    raise ValueError(f"{key!r} belongs to another graph")
                var = key
            elif self.graph.has_variable(key):
                var = self.graph.get_variable(key)
            else:
                raise UnboundVariable(str(key), "is not declared in this graph")
            feeds[var.id] = (var, np.asarray(value, dtype=var.dtype))
        return feeds

    def _collect(
        self,
        outputs: List[Node],
        feeds: Dict[int, Tuple[Variable, NDArray[Any]]],
        dry_run: bool,
    ) -> List[Node]:
        """
        Checks that every variable ``outputs`` need has a value. In a dry run
        unbound variables fall back to their initializers (whose own
        variables are checked in turn) and unbound placeholders to zeros.

        Returns:
            The initializers to compute, each after the ones it depends on

        Raises:
            UnboundVariable: Naming the first variable without a value
        """
        rounds: List[List[Node]] = []
        seen: set = set()
        missing: List[str] = []
        pending = list(outputs)
        while pending:
            extra: List[Node] = []
            for node in self.graph.topological_order(pending):
                if not isinstance(node, Variable) or node.id in seen:
                    continue
                seen.add(node.id)
                if node.id in feeds or not dry_run:
                    if node.id not in feeds:
                        missing.append(node.name)
                    continue
                if node.initializer is not None:
                    extra.append(node.initializer)
                else:
                    feeds[node.id] = (node, self._dummy(node))
            rounds.append(extra)
            pending = extra

        if missing:
            detail = "has no binding"
            if len(missing) > 1:
                detail += f" (also unbound: {', '.join(missing[1:])})"
            raise UnboundVariable(missing[0], detail)
        return [init for extra in reversed(rounds) for init in extra]

    def _dummy(self, var: Variable) -> NDArray[Any]:
        sizes = self.graph.arena.concrete(var.raw_shape)
        if sizes is None or any(s is None for s in sizes):
            raise ShapeUnderdetermined(
                "a dry run needs a static shape for unbound placeholders",
                self.graph.arena.describe(var.raw_shape),
                op=var.name,
                scope="",
            )
        logger.debug("Dry run feeds zeros to %s", var.name)
        return np.zeros(sizes, dtype=var.dtype)


@contextmanager
def dry_run_mode() -> Iterator[None]:
    """Makes every evaluation in the body a dry run."""
    token = _dry_run.set(True)
    try:
        yield
    finally:
        _dry_run.reset(token)


def in_dry_run() -> bool:
    return _dry_run.get()


@dataclass
class LiveCheckResult:
    """
    Outcome of one live check.

    Attributes:
        name: Qualified name of the checked function
        ok: Whether it built and dry-ran without a DTpy error
        error: The error raised, if any
        outputs: The function's return value when it passed
    """

    name: str
    ok: bool
    error: Optional[DTError] = None
    outputs: Any = None
    warnings: List[str] = field(default_factory=list)


_live_checks: List[Callable[[], Any]] = []


def live_check(fn: Callable[[], Any]) -> Callable[[], Any]:
    """Registers a zero-argument model function to be checked by ``run_live_checks``."""
    _live_checks.append(fn)
    return fn


def registered_live_checks() -> List[Callable[[], Any]]:
    return list(_live_checks)


def check(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> LiveCheckResult:
    """
    Builds and dry-runs ``fn`` in a fresh default graph.

    DTpy errors are logged and reported in the result instead of being
    raised; any other exception propagates.
    """
    name = getattr(fn, "__qualname__", repr(fn))
    graph = Graph(name)
    try:
        with graph.as_default(), dry_run_mode():
            outputs = fn(*args, **kwargs)
    except DTError as err:
        logger.error("Live check %s failed: %s", name, err)
        return LiveCheckResult(name, ok=False, error=err)
    warnings = graph.validate()
    for warning in warnings:
        logger.warning("Live check %s: %s", name, warning)
    logger.info("Live check %s passed", name)
    return LiveCheckResult(name, ok=True, outputs=outputs, warnings=warnings)


def run_live_checks(checks: Optional[Sequence[Callable[[], Any]]] = None) -> List[LiveCheckResult]:
    """Runs every registered live check (or ``checks``) and returns the results."""
    results = [check(fn) for fn in (checks if checks is not None else _live_checks)]
    failed = sum(1 for r in results if not r.ok)
    if failed:
        logger.warning("%d of %d live checks failed", failed, len(results))
    return results
