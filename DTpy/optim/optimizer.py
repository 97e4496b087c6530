import logging
from typing import Any, Dict, Iterable, List, MutableMapping, Sequence, Union, cast

from numpy.typing import NDArray

from ..core.autograd import gradients
from ..core.errors import UnboundVariable
from ..core.evaluator import Evaluator
from ..core.node import Node, Variable

logger = logging.getLogger(__name__)

# State dictionary maps variable ids to their states
OptState = Dict[int, Dict[str, Any]]
OptDefaults = Dict[str, Any]
StateDict = Dict[str, Union[OptState, OptDefaults]]
MutableBindings = MutableMapping[Union[Variable, str], Any]


class Optimizer:
    """
    Base class for all optimizers.

    Variables hold no values of their own, so an optimizer updates a bindings
    dictionary in place: ``step`` evaluates the loss and its gradients under
    the current bindings and hands the gradient arrays to
    ``apply_gradients``. Gradient nodes are built once per loss and reused.

    Args:
        params: Trainable variables to optimize
        defaults: Dictionary of default hyperparameter values for the optimizer
    """

    def __init__(self, params: Iterable[Variable], defaults: OptDefaults) -> None:
        self.defaults = defaults
        self._params: List[Variable] = []
        self.state: OptState = {}
        self._grad_nodes: Dict[int, List[Node]] = {}
        for p in params:
            self._add_param(p)

    def _add_param(self, param: Variable) -> None:
        if not isinstance(param, Variable):
            raise TypeError(f"Optimizers update variables, got {param!r}")
        if not param.trainable:
            raise ValueError(f"Variable '{param.name}' is not trainable")
        if param.id not in self.state:
            self.state[param.id] = {}
            self._params.append(param)

    @property
    def params(self) -> List[Variable]:
        return list(self._params)

    def gradients(self, loss: Node) -> List[Node]:
        """Gradient nodes of ``loss`` with respect to every parameter."""
        grads = self._grad_nodes.get(loss.id)
        if grads is None:
            grads = gradients(loss, self._params)
            self._grad_nodes[loss.id] = grads
            logger.debug("Built gradients of %r for %d variables", loss, len(grads))
        return grads

    def step(self, loss: Node, bindings: MutableBindings) -> NDArray[Any]:
        """
        Performs a single optimization step.

        Args:
            loss: Node to minimize
            bindings: Values for every variable the loss needs; parameter
                entries are replaced with their updated values

        Returns:
            The loss before the update
        """
        values = Evaluator(loss.graph).evaluate([loss] + self.gradients(loss), bindings)
        self.apply_gradients(values[1:], bindings)
        return values[0]

    def apply_gradients(self, grads: Sequence[NDArray[Any]], bindings: MutableBindings) -> None:
        """
        Updates each parameter's binding from its gradient.

        This method should be overridden by all optimizers to implement
        their specific parameter update rules.

        Raises:
            NotImplementedError: If not implemented by subclass
        """
        raise NotImplementedError

    @staticmethod
    def _key(param: Variable, bindings: MutableBindings) -> Union[Variable, str]:
        if param in bindings:
            return param
        if param.name in bindings:
            return param.name
        raise UnboundVariable(param.name, "has no binding to update")

    def add_param_group(self, param_group: Dict[str, Any]) -> None:
        """
        Add a group of variables to the optimized parameters.

        Args:
            param_group: Dictionary whose "params" entry holds a variable or
                a collection of variables
        """
        params = param_group["params"]
        if isinstance(params, Variable):
            param_group["params"] = [params]
        elif isinstance(params, set):
            param_group["params"] = list(params)

        for param in cast(List[Variable], param_group["params"]):
            self._add_param(param)
        self._grad_nodes.clear()

    def state_dict(self) -> StateDict:
        """
        Returns the state of the optimizer as a dictionary.

        The state dictionary has two main components:
        - 'state': Maps variable ids to their optimization state
        - 'defaults': Contains the default hyperparameters
        """
        return {"state": self.state, "defaults": self.defaults}

    def load_state_dict(self, state_dict: StateDict) -> None:
        """
        Loads the optimizer state from a dictionary.

        Args:
            state_dict: Dictionary containing optimizer state and defaults
        """
        self.state = cast(OptState, state_dict["state"])
        self.defaults = cast(OptDefaults, state_dict["defaults"])
