import pytest
import numpy as np

from DTpy.core import DuplicateVariableName, UnboundVariable, check, get_default_graph, reset_default_graph
from DTpy.dsl import (
    DT,
    batch,
    curl_divergence,
    diff,
    eval_and_diff,
    grad,
    matrix,
    pixel,
    placeholder,
    shape,
    v,
    variable,
    vec,
)


class TestLiterals:
    """Tests for literal constructors"""

    def setup_method(self):
        self.graph = reset_default_graph()

    def test_literals(self):
        assert v(2).static_shape == ()
        assert v(2).dtype == "float64"
        assert vec([1, 2, 3]).static_shape == (3,)
        assert matrix([[1, 2], [3, 4]]).static_shape == (2, 2)
        assert shape([-1, 3]) == (-1, 3)

    def test_literals_are_memoized(self):
        assert vec([1.0, 2.0]) is vec([1.0, 2.0])
        assert v(1.0) is not v(2.0)

    def test_batch(self):
        images = batch([matrix([[1, 2]]), matrix([[3, 4]])])

        assert images.static_shape == (2, 1, 2)
        assert np.array_equal(DT.Eval(images), [[[1, 2]], [[3, 4]]])

    def test_pixel_broadcasts_over_images(self):
        """Test subtracting a mean pixel from an [H, W, C] image"""
        image = DT.Stack([DT.Stack([vec([10.0, 20.0, 30.0])] * 2)] * 2)
        mean = pixel([1.0, 2.0, 3.0])

        centered = image - mean

        assert centered.static_shape == (2, 2, 3)
        assert np.allclose(DT.Eval(centered)[1, 1], [9.0, 18.0, 27.0])

    def test_eval_list(self):
        a, b = vec([1.0, 2.0]), v(3.0)

        values = DT.Eval([a, a * b])

        assert len(values) == 2
        assert np.allclose(values[1], [3.0, 6.0])

    def test_node_eval(self):
        x = vec([1.0, 2.0])

        assert np.allclose((x * 2.0).eval(), [2.0, 4.0])


class TestVariablesAndScopes:
    """Tests for variables declared through the front end"""

    def setup_method(self):
        self.graph = reset_default_graph()

    def test_with_scope(self):
        with DT.WithScope("encoder"):
            with DT.WithScope("layer1"):
                w = variable(DT.Zeros([2]), "w")
            b = variable(v(0.0), "b")

        assert w.name == "encoder/layer1/w"
        assert b.name == "encoder/b"
        assert str(self.graph.current_scope) == ""

    def test_duplicate_names(self):
        variable(v(1.0), "w")

        with pytest.raises(DuplicateVariableName):
            variable(v(2.0), "w")

    def test_declared_shape(self):
        w = variable(DT.TruncatedNormal([-1, 4]), "w", shape=[3, 4])

        assert w.static_shape == (3, 4)

    def test_placeholder_must_be_bound(self):
        x = placeholder([-1, 2], "x")

        with pytest.raises(UnboundVariable):
            DT.Eval(DT.Sum(x))

        assert float(DT.Eval(DT.Sum(x), {"x": np.ones((4, 2))})) == 8.0

    def test_dummy_names_are_unique(self):
        a = DT.Dummy([1], "image")
        b = DT.Dummy([1], "image")
        c = DT.Dummy([2])

        assert a.name == "image"
        assert b.name == "image_1"
        assert c.name == "dummy"
        assert not a.trainable


class TestDerivatives:
    """Tests for derivative helpers"""

    def setup_method(self):
        self.graph = reset_default_graph()

    def test_diff_of_python_number(self):
        result = DT.Eval(diff(lambda x: x * x * x, 2.0))

        assert float(result) == pytest.approx(12.0)

    def test_grad(self):
        result = DT.Eval(grad(lambda x: DT.Sum(x * x), vec([1.0, -2.0])))

        assert np.allclose(result, [2.0, -4.0])

    def test_eval_and_diff(self):
        value, derivative = eval_and_diff(lambda x: x * x + 4.0 * x, v(3.0))

        values = DT.Eval([value, derivative])

        assert float(values[0]) == pytest.approx(21.0)
        assert float(values[1]) == pytest.approx(10.0)

    def test_curl_divergence(self):
        """Test both operators on the field (x*y, y*z, z*x)"""
        f = lambda p: DT.Stack([p[0] * p[1], p[1] * p[2], p[2] * p[0]])

        c, d = curl_divergence(f, vec([1.0, 2.0, 3.0]))

        # curl = (-y, -z, -x), divergence = y + z + x
        assert np.allclose(DT.Eval(c), [-2.0, -3.0, -1.0])
        assert float(DT.Eval(d)) == pytest.approx(6.0)


class TestOperations:
    """Tests for the DT operation namespace"""

    def setup_method(self):
        self.graph = reset_default_graph()

    def test_moments(self):
        x = matrix([[1.0, 3.0], [5.0, 7.0]])

        mean, variance = DT.Moments(x, [0], keepdims=False)

        assert np.allclose(DT.Eval(mean), [3.0, 5.0])
        assert np.allclose(DT.Eval(variance), [4.0, 4.0])

    def test_shape_helpers(self):
        x = vec([1.0, 2.0, 3.0, 4.0])

        assert DT.Reshape(x, [2, -1]).static_shape == (2, 2)
        assert DT.ExpandDims(x, 1).static_shape == (4, 1)
        assert DT.Pad(x, [[1, 1]]).static_shape == (6,)
        assert DT.Zeros([2, 3]).static_shape == (2, 3)
        assert DT.Cast(x, "float32").dtype == "float32"

    def test_reductions_and_activations(self):
        x = matrix([[1.0, -2.0], [3.0, -4.0]])

        assert np.allclose(DT.Eval(DT.Max(x, axis=1)), [1.0, 3.0])
        assert np.allclose(DT.Eval(DT.Mean(x)), -0.5)
        assert np.allclose(DT.Eval(DT.Relu(x)), [[1.0, 0.0], [3.0, 0.0]])
        assert np.allclose(DT.Eval(DT.Sqrt(DT.Relu(x))), [[1.0, 0.0], [np.sqrt(3.0), 0.0]])
        assert np.allclose(DT.Eval(DT.ClipByValue(x, -1.0, 1.0)), [[1.0, -1.0], [1.0, -1.0]])

    def test_assert_shape_in_a_check(self):
        def model():
            image = DT.Dummy([474, 712, 3], "image")
            return DT.AssertShape(image, [474, 712, 3])

        def wrong():
            image = DT.Dummy([474, 712, 3], "image")
            return DT.AssertShape(image, [475, 712, 3])

        assert check(model).ok
        assert not check(wrong).ok
        assert get_default_graph() is self.graph
