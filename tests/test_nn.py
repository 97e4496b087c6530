import pytest
import numpy as np

from DTpy.core import DimensionMismatch, Evaluator, Graph, check, gradients
from DTpy.dsl import DT
from DTpy.nn import (
    batch_norm,
    conv_layer,
    conv_transpose_layer,
    dense,
    fill_variable,
    instance_norm,
    moments,
    residual_block,
    weight_variable,
)


def style_transfer_net():
    """Image transformation network checked end to end without weights."""
    images = DT.Dummy([2, 16, 16, 3], "images")
    conv1 = conv_layer(images, 4, 3, 1, name="conv1")
    conv2 = conv_layer(conv1, 8, 3, 2, name="conv2")
    resid = residual_block(conv2, 3, "resid1", channels=8)
    conv_t = conv_transpose_layer(resid, 4, 3, 2, name="conv_t1")
    conv_out = conv_layer(conv_t, 3, 3, 1, is_relu=False, name="conv_out")
    preds = DT.Tanh(conv_out) * 150.0 + 127.5
    return DT.Eval(DT.ClipByValue(preds, 0.0, 255.0))


def resnet_classifier():
    """A residual block with batch normalization and a dense head."""
    x = DT.Dummy([2, 8, 8, 4], "x")
    with DT.WithScope("block1"):
        w1 = weight_variable(x, (3, 3, -1, 4), "conv1")
        h = DT.Relu(batch_norm(DT.Conv2D(x, w1), "bn1"))
        w2 = weight_variable(h, (3, 3, -1, 4), "conv2")
        h = batch_norm(DT.Conv2D(h, w2), "bn2")
        h = DT.Relu(h + x)
    features = DT.Mean(DT.MaxPool(h), axis=(1, 2))
    logits = dense(features, 10, name="fc")
    return DT.Eval(DT.Softmax(logits))


class TestVariables:
    """Tests for layer variable helpers"""

    def setup_method(self):
        self.graph = Graph()

    def test_weight_variable(self):
        x = self.graph.placeholder((2, 3), "x")

        w = weight_variable(x, (3, 5), "w", stddev=0.5)

        assert w.name == "w"
        assert w.trainable
        assert w.static_shape == (3, 5)
        assert w.initializer.tag == "TruncatedNormal"
        assert w.initializer.params["stddev"] == 0.5

    def test_inferred_dimension(self):
        """Test that a -1 entry is sized by the variable's first use"""
        x = self.graph.placeholder((2, 3), "x")
        w = weight_variable(x, (-1, 5), "w")

        assert w.static_shape == (None, 5)

        x @ w

        assert w.static_shape == (3, 5)
        assert w.initializer.static_shape == (3, 5)

    def test_fill_variable(self):
        x = self.graph.placeholder((2,), "x", dtype="float32")

        b = fill_variable(x, (2,), "b", 0.5)

        assert b.dtype == "float32"
        values = Evaluator(self.graph).initialize([b])
        assert np.allclose(values[b], [0.5, 0.5])


class TestDense:
    """Tests for the dense layer"""

    def setup_method(self):
        self.graph = Graph()

    def test_shapes_and_names(self):
        x = self.graph.placeholder((5, 3), "x")

        y = dense(x, 4, name="fc")

        assert y.static_shape == (5, 4)
        assert self.graph.get_variable("fc/weights").static_shape == (3, 4)
        assert self.graph.get_variable("fc/bias").static_shape == (4,)

    def test_default_scope_and_no_bias(self):
        x = self.graph.placeholder((3,), "x")

        y = dense(x, 2, has_bias=False)

        assert y.static_shape == (2,)
        assert self.graph.has_variable("dense/weights")
        assert not self.graph.has_variable("dense/bias")

    def test_forward(self):
        x = self.graph.placeholder((1, 2), "x")
        y = dense(x, 3, name="fc")

        value = Evaluator(self.graph).evaluate(
            y,
            {
                x: [[1.0, 2.0]],
                "fc/weights": [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]],
                "fc/bias": [0.1, 0.2, 0.3],
            },
        )

        assert np.allclose(value, [[9.1, 12.2, 15.3]])

    def test_gradients(self):
        x = self.graph.placeholder((1, 2), "x")
        y = dense(x, 1, name="fc")
        w = self.graph.get_variable("fc/weights")
        b = self.graph.get_variable("fc/bias")

        gw, gb = gradients(y, [w, b])

        values = Evaluator(self.graph).evaluate(
            [gw, gb], {x: [[2.0, 3.0]], w: [[1.0], [2.0]], b: [0.0]}
        )
        assert np.allclose(values[0], [[2.0], [3.0]])
        assert np.allclose(values[1], [1.0])


class TestNormalization:
    """Tests for normalization layers"""

    def setup_method(self):
        self.graph = Graph()
        self.rng = np.random.default_rng(0)

    def test_moments(self):
        data = self.rng.standard_normal((2, 4, 4, 3))
        x = self.graph.constant(data)

        mean, variance = moments(x, axes=[1, 2])
        flat_mean, flat_var = moments(x, axes=(1, 2), keepdims=False)

        assert mean.static_shape == (2, 1, 1, 3)
        assert flat_mean.static_shape == (2, 3)
        values = Evaluator(self.graph).evaluate([mean, variance, flat_var])
        assert np.allclose(values[0], data.mean(axis=(1, 2), keepdims=True))
        assert np.allclose(values[1], data.var(axis=(1, 2), keepdims=True))
        assert np.allclose(values[2], data.var(axis=(1, 2)))

    def test_instance_norm(self):
        data = self.rng.standard_normal((2, 4, 4, 3)) * 5.0 + 2.0
        x = self.graph.constant(data)

        y = instance_norm(x, "conv1")

        assert self.graph.has_variable("conv1/instance_norm/shift")
        assert self.graph.has_variable("conv1/instance_norm/scale")
        value = Evaluator(self.graph).dry_run(y)
        assert value.shape == data.shape
        assert np.allclose(value.mean(axis=(1, 2)), 0.0, atol=1e-6)
        assert np.allclose(value.std(axis=(1, 2)), 1.0, atol=1e-3)

    def test_batch_norm(self):
        data = self.rng.standard_normal((1, 2, 2, 2))
        x = self.graph.constant(data)
        y = batch_norm(x, "bn")

        gamma, beta = np.array([2.0, 0.5]), np.array([1.0, -1.0])
        mean, variance = np.array([0.1, -0.2]), np.array([4.0, 0.25])
        value = Evaluator(self.graph).evaluate(
            y,
            {
                "bn/gamma": gamma,
                "bn/beta": beta,
                "bn/running_mean": mean,
                "bn/running_std": variance,
            },
        )

        expected = gamma * (data - mean) / np.sqrt(variance + 1e-5) + beta
        assert np.allclose(value, expected)
        assert self.graph.get_variable("bn/gamma").static_shape == (2,)

    def test_batch_norm_defaults_are_identity(self):
        data = self.rng.standard_normal((1, 2, 2, 3))
        x = self.graph.constant(data)

        value = Evaluator(self.graph).dry_run(batch_norm(x, "bn"))

        assert np.allclose(value, data / np.sqrt(1.0 + 1e-5))


class TestConvLayers:
    """Tests for convolution layers and whole models"""

    def test_conv_layer_variables(self):
        graph = Graph()
        with graph.as_default():
            images = DT.Dummy([1, 16, 16, 3], "images")
            out = conv_layer(images, 4, 3, 2, name="conv1")

        assert out.static_shape == (1, 8, 8, 4)
        assert graph.get_variable("conv1/weights").static_shape == (3, 3, 3, 4)
        assert graph.get_variable("conv1/instance_norm/scale").static_shape == ()

    def test_conv_transpose_layer(self):
        graph = Graph()
        with graph.as_default():
            x = DT.Dummy([1, 4, 4, 8], "x")
            out = conv_transpose_layer(x, 2, 3, 2, name="up")

        assert out.static_shape == (1, 8, 8, 2)
        assert graph.get_variable("up/weights").static_shape == (3, 3, 2, 8)

    def test_style_transfer_net(self):
        result = check(style_transfer_net)

        assert result.ok, result.error
        assert result.outputs.shape == (2, 16, 16, 3)
        assert result.outputs.min() >= 0.0
        assert result.outputs.max() <= 255.0

    def test_residual_channel_mismatch(self):
        def model():
            x = DT.Dummy([1, 8, 8, 3], "x")
            return residual_block(x, 3, "resid1", channels=8)

        result = check(model)

        assert not result.ok
        assert isinstance(result.error, DimensionMismatch)

    def test_resnet_classifier(self):
        result = check(resnet_classifier)

        assert result.ok, result.error
        assert result.outputs.shape == (2, 10)
        assert np.allclose(result.outputs.sum(axis=1), 1.0)
