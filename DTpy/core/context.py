import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import EvaluationTimeout


@dataclass
class Context:
    """
    Context passed to an operation's kernel and to its gradient rule.

    During differentiation the context holds the node's inputs as saved
    tensors, its parameters as saved arguments, the node itself as ``output``
    and which inputs need a gradient. During evaluation it carries the
    per-evaluation random generator, the node's statically resolved output
    shape and the deadline.

    Attributes:
        _saved_tensors: Input nodes of the operation being differentiated
        _non_tensor_args: Parameters of the operation
        output: The node being differentiated
        needs_input_grad: Per input, whether a gradient must be produced
        rng: Random generator used by random kernels
        output_shape: Static output shape of the node being executed
        deadline: ``time.monotonic()`` value after which execution stops
        timeout: The timeout the deadline was derived from
    """

    _saved_tensors: List[Any] = field(default_factory=list)
    _non_tensor_args: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    needs_input_grad: Tuple[bool, ...] = ()
    rng: Optional[np.random.Generator] = None
    output_shape: Optional[Tuple[Optional[int], ...]] = None
    deadline: Optional[float] = None
    timeout: Optional[float] = None

    def save_for_backward(self, *args: Any) -> None:
        """
        Saves the nodes a gradient rule needs.

        Args:
            *args: Variable number of nodes to save
        """
        self._saved_tensors = list(args)

    def save_arguments(self, **kwargs: Any) -> None:
        """
        Saves additional arguments needed by a gradient rule.

        Args:
            **kwargs: Keyword arguments to save
        """
        self._non_tensor_args.update(kwargs)

    @property
    def saved_tensors(self) -> Tuple[Any, ...]:
        """Returns the saved nodes as a tuple."""
        return tuple(self._saved_tensors)

    @property
    def saved_arguments(self) -> Dict[str, Any]:
        """Returns the saved non-tensor arguments."""
        return self._non_tensor_args.copy()

    def generator(self) -> np.random.Generator:
        """Returns the random generator, creating an unseeded one if needed."""
        if self.rng is None:
            self.rng = np.random.default_rng()
        return self.rng

    def check_deadline(self) -> None:
        """Raises ``EvaluationTimeout`` once the deadline has passed."""
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise EvaluationTimeout(self.timeout or 0.0)

    def clear(self) -> None:
        """Clears all saved data from the context."""
        self._saved_tensors.clear()
        self._non_tensor_args.clear()
        self.output = None
        self.needs_input_grad = ()
        self.output_shape = None
