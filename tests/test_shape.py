import pytest
import numpy as np

from DTpy.core import DimensionMismatch, RankMismatch
from DTpy.core.shape import Dim, Shape, ShapeArena


class TestUnification:
    """Tests for shape unification in the arena"""

    def setup_method(self):
        self.arena = ShapeArena()

    def test_unify_fills_variables_from_both_sides(self):
        """Test that each side supplies the dimensions the other leaves open"""
        a = self.arena.from_spec((2, -1))
        b = self.arena.from_spec((-1, 3))

        result = self.arena.unify(a, b)

        assert self.arena.concrete(result) == (2, 3)
        assert self.arena.concrete(a) == (2, 3)
        assert self.arena.concrete(b) == (2, 3)

    def test_unify_is_commutative(self):
        """Test that argument order does not change the unified shape"""
        results = []
        for swap in (False, True):
            arena = ShapeArena()
            a = arena.from_spec((4, -1, -1))
            b = arena.from_spec((-1, 5, -1))
            out = arena.unify(b, a) if swap else arena.unify(a, b)
            results.append(arena.describe(out))

        assert results[0] == results[1]

    def test_unify_is_idempotent(self):
        """Test that unifying a shape with itself changes nothing"""
        a = self.arena.from_spec((2, -1))
        before = self.arena.describe(a)

        self.arena.unify(a, a)
        self.arena.unify(a, self.arena.unify(a, a))

        assert self.arena.describe(a) == before

    def test_variables_unified_together_share_a_value(self):
        """Test that binding one of two unified variables binds both"""
        d1 = self.arena.fresh_dim()
        d2 = self.arena.fresh_dim()
        self.arena.unify_dim(d1, d2)
        self.arena.unify_dim(d2, Dim.known(7))

        assert self.arena.resolve_dim(d1) == Dim.known(7)

    def test_rank_mismatch(self):
        """Test that shapes of different rank do not unify"""
        with pytest.raises(RankMismatch):
            self.arena.unify(Shape.of(2, 3), Shape.of(2, 3, 4))

    def test_dimension_mismatch(self):
        """Test that different known sizes do not unify"""
        with pytest.raises(DimensionMismatch) as exc_info:
            self.arena.unify(Shape.of(474, 712, 3), Shape.of(475, 712, 3))

        assert "axis 0" in str(exc_info.value)

    def test_unknown_rank_takes_the_other_shape(self):
        """Test unification of an unknown-rank shape"""
        unknown = self.arena.fresh_shape()
        other = self.arena.fresh_shape()
        self.arena.unify(unknown, other)

        self.arena.unify(other, Shape.of(2, 2))

        assert self.arena.concrete(unknown) == (2, 2)

    def test_negative_sizes_are_rejected(self):
        """Test that only -1 may stand for an unknown size"""
        with pytest.raises(ValueError):
            self.arena.from_spec((2, -3))


class TestTransactions:
    """Tests for undoing arena writes"""

    def setup_method(self):
        self.arena = ShapeArena()

    def test_transaction_rolls_back_on_error(self):
        """Test that a failed transaction leaves no partial unification"""
        d = self.arena.fresh_dim()
        count = len(self.arena)

        with pytest.raises(DimensionMismatch):
            with self.arena.transaction():
                self.arena.unify_dim(d, Dim.known(3))
                self.arena.fresh_dim()
                self.arena.unify(Shape.of(1), Shape.of(2))

        assert not self.arena.resolve_dim(d).is_known
        assert len(self.arena) == count

    def test_transaction_keeps_writes_on_success(self):
        """Test that a successful transaction commits"""
        d = self.arena.fresh_dim()

        with self.arena.transaction():
            self.arena.unify_dim(d, Dim.known(3))

        assert self.arena.resolve_dim(d) == Dim.known(3)

    def test_trial_always_rolls_back(self):
        """Test that a trial's writes are visible inside it only"""
        d = self.arena.fresh_dim()

        with self.arena.trial():
            self.arena.unify_dim(d, Dim.known(5))
            assert self.arena.resolve_dim(d) == Dim.known(5)

        assert not self.arena.resolve_dim(d).is_known


class TestBroadcast:
    """Tests for elementwise broadcasting"""

    def setup_method(self):
        self.arena = ShapeArena()

    def test_trailing_alignment(self):
        """Test NumPy-style alignment of trailing dimensions"""
        out = self.arena.broadcast(Shape.of(4, 1, 3), Shape.of(5, 1))
        assert self.arena.concrete(out) == (4, 5, 3)

    def test_variable_is_unified_not_assumed_one(self):
        """Test that a variable dimension takes the other operand's size"""
        channels = self.arena.from_spec((-1,))
        image = Shape.of(2, 8, 8, 3)

        out = self.arena.broadcast(image, channels)

        assert self.arena.concrete(out) == (2, 8, 8, 3)
        assert self.arena.concrete(channels) == (3,)

    def test_incompatible_sizes(self):
        """Test that sizes other than 1 must agree"""
        with pytest.raises(DimensionMismatch):
            self.arena.broadcast(Shape.of(2, 3), Shape.of(4))


class TestQueries:
    """Tests for arena queries"""

    def setup_method(self):
        self.arena = ShapeArena()

    def test_num_elements(self):
        assert self.arena.num_elements(Shape.of(2, 3, 4)) == 24
        assert self.arena.num_elements(Shape.scalar()) == 1
        assert self.arena.num_elements(self.arena.from_spec((2, -1))) is None

    def test_describe(self):
        shape = self.arena.from_spec((474, -1))
        text = self.arena.describe(shape)

        assert text.startswith("[474, ?")
        assert self.arena.describe(self.arena.fresh_shape()) == "[*]"

    def test_dynamic_marking(self):
        """Test that dynamic marks survive unification with another variable"""
        dynamic = self.arena.from_spec((-1,), dynamic=True)
        static = self.arena.from_spec((-1,))
        self.arena.unify(static, dynamic)

        assert self.arena.is_dynamic(static.dims[0])
        assert self.arena.open_dims(static) == self.arena.open_dims(dynamic)

    def test_shape_of(self):
        assert Shape.of((2, 3)) == Shape.of(2, 3)
        assert Shape.of(2, 3).rank == 2
        assert Shape(None).rank is None
        assert np.prod([d.value for d in Shape.of(2, 3).dims]) == 6
