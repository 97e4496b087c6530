"""Error taxonomy for graph construction, differentiation and evaluation."""

from typing import Any, Optional


class DTError(Exception):
    """Base class for all DTpy errors."""


class ShapeError(DTError):
    """
    Shape unification failure.

    Raised from the shape arena with the two conflicting shapes, then located
    by the graph builder, which attaches the operation name and scope path.
    """

    def __init__(
        self,
        detail: str,
        left: Any = None,
        right: Any = None,
        op: Optional[str] = None,
        scope: Optional[str] = None,
    ):
        self.detail = detail
        self.left = left
        self.right = right
        self.op = op
        self.scope = scope
        super().__init__(str(self))

    def located(self, op: str, scope: str) -> "ShapeError":
        """Returns a copy of this error carrying the op name and scope path."""
        # An inner build already located the error
        if self.op is not None:
            return self
        return type(self)(self.detail, self.left, self.right, op=op, scope=scope)

    def __str__(self) -> str:
        where = ""
        if self.op is not None:
            where = f"{self.op}"
            if self.scope:
                where += f" in scope '{self.scope}'"
            where += ": "
        conflict = ""
        if self.left is not None or self.right is not None:
            conflict = f" ({self.left} vs {self.right})"
        return f"{where}{self.detail}{conflict}"


class RankMismatch(ShapeError):
    """Two shapes of different rank were unified."""


class DimensionMismatch(ShapeError):
    """Two different known dimensions were unified."""


class ShapeUnderdetermined(ShapeError):
    """A shape variable is still open when the graph is finalized."""


class DuplicateVariableName(DTError):
    """A variable with the same qualified name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Variable '{name}' is already declared in this graph")


class NoGradientDefined(DTError):
    """An operation on the differentiation path has no gradient rule."""

    def __init__(self, op: str):
        self.op = op
        super().__init__(f"No gradient defined for operation '{op}'")


class UnboundVariable(DTError):
    """A variable referenced by an evaluation has no value."""

    def __init__(self, name: str, detail: str = "has no binding"):
        self.name = name
        super().__init__(f"Variable '{name}' {detail}")


class BackendExecutionError(DTError):
    """Wraps a failure raised by the execution engine."""

    def __init__(self, message: str, op: Optional[str] = None):
        self.message = message
        self.op = op
        prefix = f"{op}: " if op else ""
        super().__init__(f"{prefix}{message}")


class EvaluationTimeout(DTError):
    """The evaluation deadline passed before the engine finished."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Evaluation exceeded its deadline of {timeout:.3f}s")
