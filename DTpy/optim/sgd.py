from typing import Any, Dict, Iterable, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from ..core.node import Variable
from .optimizer import MutableBindings, Optimizer


class SGD(Optimizer):
    """
    Implements stochastic gradient descent with momentum.

    Args:
        params: Variables to optimize
        lr: Learning rate (default: 0.1)
        momentum: Momentum factor (default: 0)
        weight_decay: Weight decay (L2 penalty) (default: 0)
        dampening: Dampening for momentum (default: 0)
        nesterov: Enables Nesterov momentum (default: False)
    """

    def __init__(
        self,
        params: Iterable[Variable],
        lr: float = 0.1,
        momentum: float = 0.0,
        weight_decay: float = 0.0,
        dampening: float = 0.0,
        nesterov: bool = False,
    ) -> None:
        if lr < 0.0:
            raise ValueError(f"Invalid learning rate: {lr}")
        if momentum < 0.0:
            raise ValueError(f"Invalid momentum value: {momentum}")
        if weight_decay < 0.0:
            raise ValueError(f"Invalid weight_decay value: {weight_decay}")
        if nesterov and momentum == 0.0:
            raise ValueError("Nesterov momentum requires a positive momentum")

        defaults: Dict[str, Union[float, bool]] = dict(
            lr=lr,
            momentum=momentum,
            weight_decay=weight_decay,
            dampening=dampening,
            nesterov=nesterov,
        )
        super().__init__(params, defaults)

    def apply_gradients(self, grads: Sequence[NDArray[Any]], bindings: MutableBindings) -> None:
        """Performs a single optimization step."""

        for p, grad in zip(self._params, grads):
            key = self._key(p, bindings)
            data = np.asarray(bindings[key], dtype=p.dtype)
            grad = np.array(grad, dtype=p.dtype)

            # Apply weight decay
            if self.defaults["weight_decay"] != 0:
                grad = grad + self.defaults["weight_decay"] * data

            state = self.state.setdefault(p.id, {})

            # Update momentum buffer
            if self.defaults["momentum"] != 0:
                if "momentum_buffer" not in state:
                    buf = grad.copy()
                else:
                    buf = state["momentum_buffer"]
                    buf *= self.defaults["momentum"]
                    buf += (1 - self.defaults["dampening"]) * grad
                state["momentum_buffer"] = buf

                # Nesterov momentum
                if self.defaults["nesterov"]:
                    grad = grad + self.defaults["momentum"] * buf
                else:
                    grad = buf

            bindings[key] = data - self.defaults["lr"] * grad
