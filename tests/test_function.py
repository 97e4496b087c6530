import pytest
import numpy as np

from DTpy.core import Evaluator, Function, Graph
from DTpy.core.function import FrozenArray, freeze, get_function, registered_functions
from DTpy.ops import Add, Constant, Fill, Multiply, Sum, Take


class Double(Function):
    """Simple test operation: y = 2x"""

    @staticmethod
    def infer_shape(arena, x):
        return x

    @staticmethod
    def forward(ctx, x):
        return x * 2

    @staticmethod
    def backward(ctx, grad_output, grad_dict):
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Multiply.apply(grad_output, 2.0))


class WrongDouble(Double):
    """Same kernel with a wrong gradient rule"""

    @staticmethod
    def backward(ctx, grad_output, grad_dict):
        (x,) = ctx.saved_tensors
        if ctx.needs_input_grad[0]:
            Function.accumulate(grad_dict, x, Multiply.apply(grad_output, 3.0))


class TestFunction:
    """Tests for Function base class and utilities"""

    def setup_method(self):
        self.graph = Graph()

    def test_function_application(self):
        """Test applying a function to inputs"""
        x = self.graph.placeholder((1,), "x")
        result = Double.apply(x)

        assert result.tag == "Double"
        assert result.inputs == (x,)
        assert result.static_shape == (1,)

        value = Evaluator(self.graph).evaluate(result, {x: [1.0]})
        assert np.array_equal(value, [2.0])

    def test_numbers_adopt_the_node_dtype(self):
        """Test that Python numbers become constants of the node's float type"""
        x = self.graph.placeholder((2,), "x", dtype="float32")

        y = x + 1

        assert y.dtype == "float32"
        assert y.inputs[1].tag == "Constant"

    def test_verify_backward(self):
        """Test gradient verification utility"""
        x = np.array([1.0, -2.0])

        assert Double.verify_backward([x])
        assert not WrongDouble.verify_backward([x])

    def test_abstract_methods(self):
        """Test that operations without a shape rule or kernel cannot be instantiated"""

        class IncompleteFunction(Function):
            pass

        with pytest.raises(TypeError):
            IncompleteFunction()

    def test_registry(self):
        assert get_function("Double") is Double
        assert "Add" in registered_functions()

        with pytest.raises(KeyError):
            get_function("NoSuchOperation")

    def test_has_gradient(self):
        assert Add.has_gradient()
        assert Double.has_gradient()
        assert not Constant.has_gradient()

    def test_is_cacheable(self):
        assert Add.is_cacheable()
        assert Fill.is_cacheable(shape=(2, 3))
        assert not Fill.is_cacheable(shape=(-1, 3))

    def test_default_params(self):
        """Test that kernel defaults are available to gradient rules"""
        assert Take.default_params() == {"axis": 0}
        assert Sum.default_params() == {"axis": None, "keepdims": False}
        assert Double.default_params() == {}

    def test_accumulate(self):
        """Test that repeated contributions are summed"""
        x = self.graph.placeholder((2,), "x")
        a = x * 2.0
        b = x * 3.0
        grads = {}

        Function.accumulate(grads, x, a)
        assert grads[x.id] is a

        Function.accumulate(grads, x, b)
        assert grads[x.id].tag == "Add"
        assert grads[x.id].inputs == (a, b)


class TestFreezing:
    """Tests for hashable parameter values"""

    def test_arrays_are_frozen_by_content(self):
        a = freeze(np.array([1.0, 2.0]))
        b = freeze(np.array([1.0, 2.0]))

        assert isinstance(a, FrozenArray)
        assert a == b
        assert hash(a) == hash(b)
        assert a != freeze(np.array([1.0, 3.0]))
        assert not a.array.flags.writeable

    def test_nested_values(self):
        assert freeze([1, (2, 3)]) == (1, (2, 3))
        assert freeze(np.float64(1.5)) == 1.5
        assert freeze(np.dtype("float32")) == "float32"
