"""
Loading and saving variable values.

Weights live outside the graph as bindings; these helpers move them between
``.npz`` archives and bindings keyed by variable.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Union

import numpy as np
from numpy.typing import NDArray

from ..core.errors import UnboundVariable
from ..core.graph import Graph
from ..core.node import Variable

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_npz(path: PathLike) -> Dict[str, NDArray[Any]]:
    """
    Reads every array of an ``.npz`` archive.

    Keys are the member names with any ``.npy`` suffix removed.
    """
    path = Path(path)
    arrays: Dict[str, NDArray[Any]] = {}
    with np.load(path, allow_pickle=False) as archive:
        for key in archive.files:
            name = key[: -len(".npy")] if key.endswith(".npy") else key
            arrays[name] = archive[key]
    logger.info("Read %d arrays from %s", len(arrays), path)
    return arrays


def save_npz(path: PathLike, bindings: Mapping[Union[Variable, str], Any]) -> None:
    """Writes bindings to an ``.npz`` archive keyed by qualified variable name."""
    arrays = {
        (key.name if isinstance(key, Variable) else str(key)): np.asarray(value)
        for key, value in bindings.items()
    }
    np.savez(Path(path), **arrays)


def bindings_for(
    graph: Graph, arrays: Mapping[str, Any], strict: bool = False
) -> Dict[Variable, NDArray[Any]]:
    """
    Matches named arrays to the variables of ``graph``.

    Args:
        graph: Graph whose variables are bound
        arrays: Arrays keyed by qualified variable name
        strict: Raise on names no variable carries instead of skipping them

    Raises:
        UnboundVariable: In strict mode, for the first unknown name
    """
    bindings: Dict[Variable, NDArray[Any]] = {}
    unknown = []
    for name, value in arrays.items():
        if graph.has_variable(name):
            var = graph.get_variable(name)
            bindings[var] = np.asarray(value, dtype=var.dtype)
        else:
            unknown.append(name)

    if unknown:
        if strict:
            raise UnboundVariable(unknown[0], "is not declared in this graph")
        logger.warning(
            "Ignoring %d arrays with no matching variable: %s", len(unknown), ", ".join(unknown)
        )
    return bindings
