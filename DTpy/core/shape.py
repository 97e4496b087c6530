"""
Shapes, dimensions and the unification arena.

A ``Shape`` is either a tuple of ``Dim`` or an unknown-rank marker. Dimension
variables and unknown ranks are indices into a ``ShapeArena``, a pair of
union-find tables owned by one graph. Shapes never hold mutable state
themselves, so the same ``Shape`` value can be shared by any number of nodes
and every read goes through ``ShapeArena.resolve``.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import DimensionMismatch, RankMismatch


@dataclass(frozen=True)
class Dim:
    """A dimension: a known size or a variable cell in a ``ShapeArena``."""

    value: Optional[int] = None
    var: Optional[int] = None

    @staticmethod
    def known(size: int) -> "Dim":
        return Dim(value=int(size))

    @property
    def is_known(self) -> bool:
        return self.var is None

    def __repr__(self) -> str:
        return str(self.value) if self.var is None else f"?d{self.var}"


@dataclass(frozen=True)
class Shape:
    """
    An ordered sequence of dimensions, or an unknown rank.

    Attributes:
        dims: The dimensions, or None when the rank is unknown
        rank_var: Arena cell of an unknown rank (None for an anonymous one)
    """

    dims: Optional[Tuple[Dim, ...]]
    rank_var: Optional[int] = None

    @classmethod
    def of(cls, *sizes: int) -> "Shape":
        """Builds a fully known shape: ``Shape.of(474, 712, 3)``."""
        if len(sizes) == 1 and isinstance(sizes[0], (tuple, list)):
            sizes = tuple(sizes[0])
        return cls(tuple(Dim.known(s) for s in sizes))

    @classmethod
    def scalar(cls) -> "Shape":
        return cls(())

    @property
    def is_unknown_rank(self) -> bool:
        return self.dims is None

    @property
    def rank(self) -> Optional[int]:
        return None if self.dims is None else len(self.dims)

    def __repr__(self) -> str:
        if self.dims is None:
            return "[*]" if self.rank_var is None else f"[*r{self.rank_var}]"
        return "[" + ", ".join(repr(d) for d in self.dims) + "]"


ShapeLike = Union[Shape, Sequence[Optional[int]], None]

_ONE = Dim.known(1)


class ShapeArena:
    """
    Union-find storage for dimension variables and unknown ranks.

    Dimension cells carry an optional known size; rank cells carry an optional
    tuple of dims. Every write made inside ``transaction`` or ``trial`` is
    recorded on a trail so it can be undone.
    """

    def __init__(self) -> None:
        self._parent: List[int] = []
        self._size: List[int] = []
        self._value: List[Optional[int]] = []
        self._dynamic: List[bool] = []
        self._names: List[Optional[str]] = []

        self._rank_parent: List[int] = []
        self._rank_value: List[Optional[Tuple[Dim, ...]]] = []

        self._trail: List[Tuple[Any, ...]] = []
        self._depth = 0

    def __len__(self) -> int:
        return len(self._parent)

    # ------------------------------------------------------------------
    # Cell creation

    def fresh_dim(self, name: Optional[str] = None, dynamic: bool = False) -> Dim:
        """Allocates a new dimension variable."""
        index = len(self._parent)
        self._parent.append(index)
        self._size.append(1)
        self._value.append(None)
        self._dynamic.append(dynamic)
        self._names.append(name)
        return Dim(var=index)

    def fresh_shape(self) -> Shape:
        """Allocates a shape of unknown rank."""
        index = len(self._rank_parent)
        self._rank_parent.append(index)
        self._rank_value.append(None)
        return Shape(None, rank_var=index)

    def from_spec(self, spec: ShapeLike, dynamic: bool = False) -> Shape:
        """
        Converts a user shape literal into a ``Shape``.

        ``None`` gives an unknown rank. Inside a sequence, ``-1`` and ``None``
        give fresh variables (marked dynamic when ``dynamic`` is set).
        """
        if isinstance(spec, Shape):
            return spec
        if spec is None:
            return self.fresh_shape()
        dims = []
        for size in spec:
            if size is None or (isinstance(size, int) and size == -1):
                dims.append(self.fresh_dim(dynamic=dynamic))
            elif isinstance(size, Dim):
                dims.append(size)
            else:
                size = int(size)
                if size < 0:
                    raise ValueError(f"Invalid dimension size {size} in shape {list(spec)}")
                dims.append(Dim.known(size))
        return Shape(tuple(dims))

    # ------------------------------------------------------------------
    # Trail

    def _record(self, entry: Tuple[Any, ...]) -> None:
        if self._depth:
            self._trail.append(entry)

    def _write_dim(self, index: int, **changes: Any) -> None:
        self._record(
            (
                "dim",
                index,
                self._parent[index],
                self._size[index],
                self._value[index],
                self._dynamic[index],
                self._names[index],
            )
        )
        if "parent" in changes:
            self._parent[index] = changes["parent"]
        if "size" in changes:
            self._size[index] = changes["size"]
        if "value" in changes:
            self._value[index] = changes["value"]
        if "dynamic" in changes:
            self._dynamic[index] = changes["dynamic"]
        if "name" in changes:
            self._names[index] = changes["name"]

    def _write_rank(self, index: int, **changes: Any) -> None:
        self._record(("rank", index, self._rank_parent[index], self._rank_value[index]))
        if "parent" in changes:
            self._rank_parent[index] = changes["parent"]
        if "value" in changes:
            self._rank_value[index] = changes["value"]

    def _undo(self, mark: int, dims: int, ranks: int) -> None:
        while len(self._trail) > mark:
            entry = self._trail.pop()
            if entry[0] == "dim":
                _, index, parent, size, value, dynamic, name = entry
                if index < len(self._parent):
                    self._parent[index] = parent
                    self._size[index] = size
                    self._value[index] = value
                    self._dynamic[index] = dynamic
                    self._names[index] = name
            else:
                _, index, parent, value = entry
                if index < len(self._rank_parent):
                    self._rank_parent[index] = parent
                    self._rank_value[index] = value
        del self._parent[dims:]
        del self._size[dims:]
        del self._value[dims:]
        del self._dynamic[dims:]
        del self._names[dims:]
        del self._rank_parent[ranks:]
        del self._rank_value[ranks:]

    @contextmanager
    def transaction(self) -> Iterator["ShapeArena"]:
        """Keeps the body's writes on success and undoes them if it raises."""
        mark, dims, ranks = len(self._trail), len(self._parent), len(self._rank_parent)
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._undo(mark, dims, ranks)
            raise
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._trail.clear()

    @contextmanager
    def trial(self) -> Iterator["ShapeArena"]:
        """Runs the body against the arena and always undoes its writes."""
        mark, dims, ranks = len(self._trail), len(self._parent), len(self._rank_parent)
        self._depth += 1
        try:
            yield self
        finally:
            self._undo(mark, dims, ranks)
            self._depth -= 1
            if self._depth == 0:
                self._trail.clear()

    # ------------------------------------------------------------------
    # Union-find

    def _find(self, index: int) -> int:
        root = index
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[index] != root:
            nxt = self._parent[index]
            self._write_dim(index, parent=root)
            index = nxt
        return root

    def _find_rank(self, index: int) -> int:
        root = index
        while self._rank_parent[root] != root:
            root = self._rank_parent[root]
        while self._rank_parent[index] != root:
            nxt = self._rank_parent[index]
            self._write_rank(index, parent=root)
            index = nxt
        return root

    def _union(self, a: int, b: int) -> int:
        # Union by size; ties go to the lower index so the result does not
        # depend on argument order.
        if (self._size[a], -a) < (self._size[b], -b):
            a, b = b, a
        self._write_dim(b, parent=a)
        self._write_dim(
            a,
            size=self._size[a] + self._size[b],
            dynamic=self._dynamic[a] or self._dynamic[b],
            name=self._names[a] or self._names[b],
        )
        return a

    def resolve_dim(self, dim: Dim) -> Dim:
        """Returns the known size of ``dim`` or its representative variable."""
        if dim.var is None:
            return dim
        root = self._find(dim.var)
        value = self._value[root]
        return Dim.known(value) if value is not None else Dim(var=root)

    def resolve(self, shape: Shape) -> Shape:
        """Returns ``shape`` with every bound variable replaced by its value."""
        dims = shape.dims
        if dims is None:
            if shape.rank_var is None:
                return shape
            root = self._find_rank(shape.rank_var)
            dims = self._rank_value[root]
            if dims is None:
                return Shape(None, rank_var=root)
        return Shape(tuple(self.resolve_dim(d) for d in dims))

    # ------------------------------------------------------------------
    # Unification

    def unify_dim(self, a: Dim, b: Dim) -> Dim:
        """Unifies two dimensions, raising ``DimensionMismatch`` on conflict."""
        a = self.resolve_dim(a)
        b = self.resolve_dim(b)
        if a.var is None and b.var is None:
            if a.value != b.value:
                raise DimensionMismatch(
                    f"dimension {a.value} does not match {b.value}", a.value, b.value
                )
            return a
        if a.var is not None and b.var is not None:
            if a.var == b.var:
                return a
            return Dim(var=self._union(a.var, b.var))
        if a.var is None:
            a, b = b, a
        self._write_dim(a.var, value=b.value)
        return b

    def unify(self, a: Shape, b: Shape) -> Shape:
        """
        Unifies two shapes and returns the most specific shape consistent
        with both.

        Raises:
            RankMismatch: If both ranks are known and differ
            DimensionMismatch: If two known dimensions differ
        """
        ra = self.resolve(a)
        rb = self.resolve(b)

        if ra.dims is None and rb.dims is None:
            if ra.rank_var is None:
                return rb
            if rb.rank_var is None or ra.rank_var == rb.rank_var:
                return ra
            keep, drop = sorted((ra.rank_var, rb.rank_var))
            self._write_rank(drop, parent=keep)
            return Shape(None, rank_var=keep)
        if ra.dims is None:
            if ra.rank_var is not None:
                self._write_rank(ra.rank_var, value=rb.dims)
            return rb
        if rb.dims is None:
            if rb.rank_var is not None:
                self._write_rank(rb.rank_var, value=ra.dims)
            return ra

        if len(ra.dims) != len(rb.dims):
            raise RankMismatch(
                f"rank {len(ra.dims)} does not match rank {len(rb.dims)}",
                self.describe(ra),
                self.describe(rb),
            )
        for axis, (x, y) in enumerate(zip(ra.dims, rb.dims)):
            try:
                self.unify_dim(x, y)
            except DimensionMismatch as err:
                raise DimensionMismatch(
                    f"axis {axis}: {err.detail}", self.describe(ra), self.describe(rb)
                ) from None
        return self.resolve(ra)

    def broadcast(self, a: Shape, b: Shape) -> Shape:
        """
        Shape of an elementwise operation between ``a`` and ``b``.

        NumPy trailing-dimension alignment: the shorter shape is padded with
        leading 1s; a known 1 takes the other side's dimension; anything else
        is unified, so a variable is never assumed to be 1. Unknown ranks are
        unified with the other operand.
        """
        ra = self.resolve(a)
        rb = self.resolve(b)
        if ra.dims is None or rb.dims is None:
            return self.unify(ra, rb)

        rank = max(len(ra.dims), len(rb.dims))
        da = (_ONE,) * (rank - len(ra.dims)) + ra.dims
        db = (_ONE,) * (rank - len(rb.dims)) + rb.dims
        out = []
        for axis, (x, y) in enumerate(zip(da, db)):
            if x == _ONE:
                out.append(y)
            elif y == _ONE:
                out.append(x)
            else:
                try:
                    out.append(self.unify_dim(x, y))
                except DimensionMismatch as err:
                    raise DimensionMismatch(
                        f"cannot broadcast axis {axis}: {err.detail}",
                        self.describe(ra),
                        self.describe(rb),
                    ) from None
        return self.resolve(Shape(tuple(out)))

    # ------------------------------------------------------------------
    # Queries

    def concrete(self, shape: Shape) -> Optional[Tuple[Optional[int], ...]]:
        """Known sizes of ``shape`` (None for open dims, or None if rank unknown)."""
        resolved = self.resolve(shape)
        if resolved.dims is None:
            return None
        return tuple(d.value for d in resolved.dims)

    def is_resolved(self, shape: Shape) -> bool:
        sizes = self.concrete(shape)
        return sizes is not None and all(s is not None for s in sizes)

    def open_dims(self, shape: Shape) -> List[Dim]:
        """Representative variables still open in ``shape``."""
        resolved = self.resolve(shape)
        if resolved.dims is None:
            return []
        return [d for d in resolved.dims if d.var is not None]

    def is_dynamic(self, dim: Dim) -> bool:
        resolved = self.resolve_dim(dim)
        return resolved.var is not None and self._dynamic[resolved.var]

    def num_elements(self, shape: Shape) -> Optional[int]:
        sizes = self.concrete(shape)
        if sizes is None or any(s is None for s in sizes):
            return None
        total = 1
        for s in sizes:
            total *= s
        return total

    def describe(self, shape: Shape) -> str:
        """Human-readable form, e.g. ``[474, 712, ?d3]``."""
        resolved = self.resolve(shape)
        if resolved.dims is None:
            return "[*]"
        parts = []
        for d in resolved.dims:
            if d.var is None:
                parts.append(str(d.value))
            else:
                name = self._names[d.var]
                parts.append(f"?{name}" if name else f"?d{d.var}")
        return "[" + ", ".join(parts) + "]"
