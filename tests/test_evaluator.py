import logging
import time

import pytest
import numpy as np

from DTpy.core import (
    BackendExecutionError,
    DimensionMismatch,
    EvaluationTimeout,
    Evaluator,
    Function,
    Graph,
    UnboundVariable,
    check,
    dry_run_mode,
    live_check,
    run_live_checks,
)
from DTpy.core.evaluator import in_dry_run, registered_live_checks
from DTpy.dsl import DT
from DTpy.ops import Fill


class CountingIdentity(Function):
    """Identity that counts how often its kernel runs"""

    calls = 0
    memoize = False

    @staticmethod
    def infer_shape(arena, x):
        return x

    @staticmethod
    def forward(ctx, x):
        CountingIdentity.calls += 1
        return x


class SlowIdentity(Function):
    """Identity that sleeps before returning"""

    memoize = False

    @staticmethod
    def infer_shape(arena, x):
        return x

    @staticmethod
    def forward(ctx, x):
        time.sleep(0.1)
        return x


class FailingKernel(Function):
    """Operation whose kernel always raises"""

    @staticmethod
    def infer_shape(arena, x):
        return x

    @staticmethod
    def forward(ctx, x):
        raise RuntimeError("kernel exploded")


class TestBindings:
    """Tests for resolving variable bindings"""

    def setup_method(self):
        self.graph = Graph()
        self.evaluator = Evaluator(self.graph)
        CountingIdentity.calls = 0

    def test_bind_by_variable_and_name(self):
        with self.graph.scope("inputs"):
            x = self.graph.placeholder((2,), "x")
        y = x * 2.0

        by_var = self.evaluator.evaluate(y, {x: [1.0, 2.0]})
        by_name = self.evaluator.evaluate(y, {"inputs/x": [3.0, 4.0]})

        assert np.allclose(by_var, [2.0, 4.0])
        assert np.allclose(by_name, [6.0, 8.0])

    def test_unknown_name(self):
        x = self.graph.placeholder((2,), "x")

        with pytest.raises(UnboundVariable) as exc_info:
            self.evaluator.evaluate(x, {"nope": [1.0, 2.0]})

        assert exc_info.value.name == "nope"

    def test_missing_binding_runs_no_kernel(self):
        """Test that unbound variables are reported before execution starts"""
        x = self.graph.placeholder((2,), "x")
        w = self.graph.declare_variable(np.ones(2), "w")
        y = CountingIdentity.apply(x) * w

        with pytest.raises(UnboundVariable) as exc_info:
            self.evaluator.evaluate(y, {x: [1.0, 2.0]})

        assert exc_info.value.name == "w"
        assert CountingIdentity.calls == 0

    def test_all_missing_names_are_reported(self):
        a = self.graph.placeholder((1,), "a")
        b = self.graph.placeholder((1,), "b")

        with pytest.raises(UnboundVariable) as exc_info:
            self.evaluator.evaluate(a + b)

        assert "also unbound" in str(exc_info.value)

    def test_binding_shape_conflict(self):
        p = self.graph.placeholder((2, 3), "p")

        with pytest.raises(DimensionMismatch) as exc_info:
            self.evaluator.evaluate(p * 2.0, {p: np.ones((4, 3))})

        assert "binding for 'p'" in str(exc_info.value)

    def test_dynamic_dimension(self):
        """Test that a -1 dimension is sized by each evaluation's binding"""
        p = self.graph.placeholder((-1, 3), "p")
        total = DT.Sum(p, axis=1)

        first = self.evaluator.evaluate(total, {p: np.ones((5, 3))})
        second = self.evaluator.evaluate(total, {p: np.ones((7, 3))})

        assert first.shape == (5,)
        assert second.shape == (7,)
        assert p.static_shape == (None, 3)

    def test_bindings_are_cast_to_variable_dtype(self):
        p = self.graph.placeholder((2,), "p", dtype="float32")

        value = self.evaluator.evaluate(p, {p: [1, 2]})

        assert value.dtype == np.float32

    def test_multiple_outputs(self):
        a = self.graph.constant([1.0, 2.0])
        values = self.evaluator.evaluate([a, a * 3.0, DT.Sum(a)])

        assert isinstance(values, list)
        assert np.allclose(values[1], [3.0, 6.0])
        assert float(values[2]) == pytest.approx(3.0)

    def test_nodes_from_another_graph(self):
        other = Graph()

        with pytest.raises(ValueError):
            self.evaluator.evaluate(other.constant(1.0))


class TestExecution:
    """Tests for failures raised while kernels run"""

    def setup_method(self):
        self.graph = Graph()

    def test_timeout(self):
        x = self.graph.constant([1.0])
        y = SlowIdentity.apply(SlowIdentity.apply(x))

        with pytest.raises(EvaluationTimeout) as exc_info:
            Evaluator(self.graph).evaluate(y, timeout=0.05)

        assert exc_info.value.timeout == 0.05

    def test_backend_error(self):
        x = self.graph.constant([1.0])
        with self.graph.scope("model"):
            y = FailingKernel.apply(x)

        with pytest.raises(BackendExecutionError) as exc_info:
            Evaluator(self.graph).evaluate(y)

        assert exc_info.value.op == "model/FailingKernel"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "kernel exploded" in str(exc_info.value)

    def test_evaluation_leaves_graph_unchanged(self):
        p = self.graph.placeholder((-1,), "p")
        y = p * 2.0
        count = len(self.graph.nodes)

        Evaluator(self.graph).evaluate(y, {p: [1.0, 2.0, 3.0]})

        assert len(self.graph.nodes) == count
        assert y.static_shape == (None,)


class TestDryRun:
    """Tests for dry runs and initialization"""

    def setup_method(self):
        self.graph = Graph()
        self.evaluator = Evaluator(self.graph)

    def test_initializers_stand_in_for_bindings(self):
        w = self.graph.declare_variable(
            self.graph.build(Fill, (), {"shape": (2, 2), "value": 3.0}), "w"
        )
        y = DT.Sum(w)

        with pytest.raises(UnboundVariable):
            self.evaluator.evaluate(y)

        assert float(self.evaluator.dry_run(y)) == pytest.approx(12.0)
        assert float(self.evaluator.dry_run(y, {w: np.ones((2, 2))})) == pytest.approx(4.0)

    def test_nested_initializers(self):
        """Test a variable initialized from another variable"""
        a = self.graph.declare_variable(self.graph.constant([1.0, 2.0]), "a")
        b = self.graph.declare_variable(a * 10.0, "b")

        value = self.evaluator.dry_run(b + 1.0)

        assert np.allclose(value, [11.0, 21.0])

    def test_placeholders_are_fed_zeros(self):
        with self.graph.as_default():
            image = DT.Dummy([2, 3])

        value = self.evaluator.dry_run(image + 1.0)

        assert np.array_equal(value, np.ones((2, 3)))

    def test_dry_run_mode(self):
        w = self.graph.declare_variable(self.graph.constant(2.0), "w")

        assert not in_dry_run()
        with dry_run_mode():
            assert in_dry_run()
            value = self.evaluator.evaluate(w * w)
        assert not in_dry_run()

        assert float(value) == pytest.approx(4.0)

    def test_initialize(self):
        w = self.graph.declare_variable(self.graph.constant([1.0, 2.0]), "w")
        self.graph.placeholder((2,), "x")

        values = self.evaluator.initialize()

        assert list(values) == [w]
        assert np.allclose(values[w], [1.0, 2.0])
        assert float(self.evaluator.evaluate(DT.Sum(w), values)) == pytest.approx(3.0)

    def test_initialize_placeholder(self):
        x = self.graph.placeholder((2,), "x")

        with pytest.raises(UnboundVariable):
            self.evaluator.initialize([x])


class TestLiveChecks:
    """Tests for checking model functions without weights"""

    def test_passing_check(self):
        def model():
            image = DT.Dummy([474, 712, 3], "image")
            return DT.AssertShape(image * 2.0, [474, 712, 3])

        result = check(model)

        assert result.ok
        assert result.error is None
        assert result.outputs.static_shape == (474, 712, 3)

    def test_failing_check(self, caplog):
        def model():
            image = DT.Dummy([474, 712, 3], "image")
            return DT.AssertShape(image, [475, 712, 3])

        with caplog.at_level(logging.ERROR, logger="DTpy"):
            result = check(model)

        assert not result.ok
        assert isinstance(result.error, DimensionMismatch)
        assert "Live check" in caplog.text

    def test_check_uses_a_fresh_graph(self):
        def model():
            return DT.Dummy([1], "x")

        assert check(model).ok
        assert check(model).ok

    def test_check_evaluates_in_dry_run(self):
        def model():
            w = DT.Zeros([3]) + 1.0
            return DT.Eval(DT.Sum(w * DT.Dummy([3])))

        result = check(model)

        assert result.ok
        assert float(result.outputs) == 0.0

    def test_check_reports_warnings(self):
        def model():
            from DTpy.dsl import variable

            variable(DT.Zeros([2]), "unused")
            return DT.Dummy([1])

        result = check(model)

        assert result.ok
        assert any("unused" in w for w in result.warnings)

    def test_non_dt_errors_propagate(self):
        def model():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            check(model)

    def test_run_live_checks(self):
        def good():
            return DT.Dummy([2])

        def bad():
            return DT.AssertShape(DT.Dummy([2]), [3])

        results = run_live_checks(checks=[good, bad])

        assert [r.ok for r in results] == [True, False]
        assert results[0].name.endswith("good")

    def test_live_check_registration(self):
        @live_check
        def registered_model():
            return DT.Dummy([2])

        assert registered_model in registered_live_checks()
        assert check(registered_model).ok
