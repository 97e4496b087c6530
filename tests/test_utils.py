import logging

import pytest
import numpy as np

from DTpy.core import Evaluator, Graph, UnboundVariable
from DTpy.utils import bindings_for, read_npz, save_npz


class TestWeightFiles:
    """Test suite for reading and writing variable values."""

    def setup_method(self):
        self.graph = Graph()
        with self.graph.scope("conv1"):
            self.weights = self.graph.declare_variable(np.zeros((2, 2)), "weights")
        self.bias = self.graph.declare_variable(np.zeros(2), "bias")

    def test_read_strips_npy_suffix(self, tmp_path):
        """Test that member names lose a doubled .npy suffix"""
        path = tmp_path / "weights.npz"
        np.savez(path, **{"a.npy": np.arange(3.0), "b": np.ones(2)})

        arrays = read_npz(path)

        assert sorted(arrays) == ["a", "b"]
        assert np.array_equal(arrays["a"], [0.0, 1.0, 2.0])

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "model.npz"
        values = {self.weights: np.eye(2), "bias": np.array([1.0, 2.0])}

        save_npz(path, values)
        arrays = read_npz(path)

        assert sorted(arrays) == ["bias", "conv1/weights"]
        bindings = bindings_for(self.graph, arrays)
        assert np.array_equal(bindings[self.weights], np.eye(2))
        assert np.array_equal(bindings[self.bias], [1.0, 2.0])

    def test_loaded_bindings_evaluate(self, tmp_path):
        path = tmp_path / "model.npz"
        save_npz(path, {self.weights: [[1.0, 2.0], [3.0, 4.0]], self.bias: [0.5, 0.5]})
        y = self.graph.constant([1.0, 1.0]) @ self.weights + self.bias

        bindings = bindings_for(self.graph, read_npz(path))

        assert np.allclose(Evaluator(self.graph).evaluate(y, bindings), [4.5, 6.5])

    def test_unknown_names_are_skipped(self, caplog):
        arrays = {"bias": np.zeros(2), "conv9/weights": np.zeros(1)}

        with caplog.at_level(logging.WARNING, logger="DTpy"):
            bindings = bindings_for(self.graph, arrays)

        assert list(bindings) == [self.bias]
        assert "conv9/weights" in caplog.text

    def test_strict_mode(self):
        with pytest.raises(UnboundVariable) as exc_info:
            bindings_for(self.graph, {"conv9/weights": np.zeros(1)}, strict=True)

        assert exc_info.value.name == "conv9/weights"

    def test_values_take_variable_dtype(self):
        graph = Graph()
        v = graph.placeholder((2,), "v", dtype="float32")

        bindings = bindings_for(graph, {"v": np.array([1, 2])})

        assert bindings[v].dtype == np.float32
