import pytest
import numpy as np

from DTpy.core import Graph, UnboundVariable
from DTpy.dsl import DT
from DTpy.ops import matmul
from DTpy.optim import SGD, Optimizer


class TestOptimizers:
    """Base test class for all optimizers."""

    def setup_method(self):
        """Setup method run before each test."""
        self.graph = Graph()
        self.param = self.graph.declare_variable(np.zeros(3), "w")
        self.loss = DT.Sum(self.param * self.param)
        self.initial = np.array([1.0, 2.0, 3.0])

    def _run(self, optimizer, steps, bindings=None):
        bindings = bindings if bindings is not None else {self.param: self.initial.copy()}
        for _ in range(steps):
            optimizer.step(self.loss, bindings)
        return bindings


class TestSGD(TestOptimizers):
    """Tests for SGD optimizer."""

    def test_basic_sgd(self):
        """Test basic SGD functionality."""
        optimizer = SGD([self.param], lr=0.1)

        bindings = self._run(optimizer, 1)

        # grad of sum(w^2) is 2w, so w <- w - 0.2w
        assert np.allclose(bindings[self.param], 0.8 * self.initial)

    def test_step_returns_loss(self):
        optimizer = SGD([self.param], lr=0.1)
        bindings = {self.param: self.initial.copy()}

        loss = optimizer.step(self.loss, bindings)

        assert float(loss) == pytest.approx(14.0)

    def test_sgd_momentum(self):
        """Test SGD with momentum."""
        optimizer = SGD([self.param], lr=0.1, momentum=0.9)

        bindings = self._run(optimizer, 2)

        # buf1 = 2w0, w1 = 0.8w0; buf2 = 0.9 * 2w0 + 1.6w0, w2 = w1 - 0.34w0
        assert np.allclose(bindings[self.param], 0.46 * self.initial)
        state = optimizer.state[self.param.id]
        assert np.allclose(state["momentum_buffer"], 3.4 * self.initial)

    def test_sgd_nesterov(self):
        """Test SGD with Nesterov momentum."""
        optimizer = SGD([self.param], lr=0.1, momentum=0.9, nesterov=True)

        bindings = self._run(optimizer, 1)

        assert np.allclose(bindings[self.param], 0.62 * self.initial)

    def test_sgd_weight_decay(self):
        """Test SGD with weight decay."""
        optimizer = SGD([self.param], lr=0.1, weight_decay=0.1)

        bindings = self._run(optimizer, 1)

        assert np.allclose(bindings[self.param], 0.79 * self.initial)

    def test_bindings_by_name(self):
        """Test that parameters bound by name are updated under their name"""
        optimizer = SGD([self.param], lr=0.1)

        bindings = self._run(optimizer, 1, {"w": self.initial.copy()})

        assert list(bindings) == ["w"]
        assert np.allclose(bindings["w"], 0.8 * self.initial)

    def test_missing_binding(self):
        optimizer = SGD([self.param], lr=0.1)

        with pytest.raises(UnboundVariable):
            optimizer.step(self.loss, {})

    def test_invalid_arguments(self):
        """Test that invalid hyperparameters are rejected"""
        with pytest.raises(ValueError):
            SGD([self.param], lr=-0.1)
        with pytest.raises(ValueError):
            SGD([self.param], momentum=-0.5)
        with pytest.raises(ValueError):
            SGD([self.param], weight_decay=-1.0)
        with pytest.raises(ValueError):
            SGD([self.param], nesterov=True)

    def test_non_trainable_parameters(self):
        x = self.graph.placeholder((3,), "x")
        frozen = self.graph.declare_variable(np.ones(3), "frozen", trainable=False)

        with pytest.raises(ValueError):
            SGD([x])
        with pytest.raises(ValueError):
            SGD([frozen])
        with pytest.raises(TypeError):
            SGD([self.graph.constant([1.0])])

    def test_gradient_nodes_are_reused(self):
        optimizer = SGD([self.param], lr=0.1)
        count = len(self.graph.nodes)

        first = optimizer.gradients(self.loss)
        built = len(self.graph.nodes)
        second = optimizer.gradients(self.loss)

        assert built > count
        assert first is second
        assert len(self.graph.nodes) == built

    def test_add_param_group(self):
        other = self.graph.declare_variable(np.zeros(2), "v")
        loss = self.loss + DT.Sum(other * 3.0)
        optimizer = SGD([self.param], lr=0.1)

        optimizer.add_param_group({"params": other})
        bindings = {self.param: self.initial.copy(), other: np.zeros(2)}
        optimizer.step(loss, bindings)

        assert optimizer.params == [self.param, other]
        assert np.allclose(bindings[other], [-0.3, -0.3])

    def test_state_dict(self):
        """Test saving and restoring optimizer state"""
        optimizer = SGD([self.param], lr=0.1, momentum=0.9)
        self._run(optimizer, 1)

        state = optimizer.state_dict()
        restored = SGD([self.param], lr=0.5, momentum=0.9)
        restored.load_state_dict(state)

        assert restored.defaults["lr"] == 0.1
        assert np.allclose(
            restored.state[self.param.id]["momentum_buffer"], 2.0 * self.initial
        )

    def test_base_class_is_abstract(self):
        optimizer = Optimizer([self.param], {})

        with pytest.raises(NotImplementedError):
            optimizer.step(self.loss, {self.param: self.initial.copy()})


class TestConvergence:
    """Tests that optimization actually fits models"""

    def test_linear_regression(self):
        graph = Graph()
        rng = np.random.default_rng(0)
        xs = rng.standard_normal((100, 3))
        true_coeffs = np.array([1.5, -2.0, 0.5])
        ys = xs @ true_coeffs

        coeffs = graph.declare_variable(np.zeros(3), "coeffs")
        residual = matmul(graph.constant(xs), coeffs) - graph.constant(ys)
        loss = DT.Sum(residual ** 2)
        optimizer = SGD([coeffs], lr=0.001)

        bindings = {coeffs: np.zeros(3)}
        first = optimizer.step(loss, bindings)
        for _ in range(200):
            last = optimizer.step(loss, bindings)

        assert float(last) < float(first)
        assert np.allclose(bindings[coeffs], true_coeffs, atol=1e-3)
