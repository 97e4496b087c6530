from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class Scope:
    """
    A hierarchical naming context.

    Scopes are immutable values: entering a scope produces a child value and
    leaving it reinstates the parent (see ``Graph.scope``).
    """

    path: Tuple[str, ...] = ()

    def child(self, name: str) -> "Scope":
        """Returns the scope nested under this one. ``a/b`` pushes two levels."""
        parts = tuple(part for part in name.split("/"))
        if not name or any(not part for part in parts):
            raise ValueError(f"Invalid scope name: {name!r}")
        return Scope(self.path + parts)

    def qualify(self, name: Optional[str]) -> str:
        """Prefixes ``name`` with this scope's path."""
        if not name:
            raise ValueError("Cannot qualify an empty name")
        return "/".join(self.path + (name,))

    @property
    def parent(self) -> "Scope":
        return Scope(self.path[:-1])

    def __str__(self) -> str:
        return "/".join(self.path)


ROOT_SCOPE = Scope()
