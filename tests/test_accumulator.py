"""
Tests for the per-pixel Welford accumulator.
"""

import numpy as np
import pytest

from precipstats import AccumulatorGrid, AllocationError, DimensionMismatchError


class TestAccumulatorGrid:
    def setup_method(self):
        self.grid = AccumulatorGrid(3, 2)

    def test_initialization(self):
        count, mean, m2 = self.grid.as_arrays()
        assert self.grid.shape == (2, 3)
        assert count.shape == (2, 3)
        assert not count.any()
        assert not mean.any()
        assert not m2.any()
        assert self.grid.backing == "ram"

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            AccumulatorGrid(0, 5)
        with pytest.raises(ValueError):
            AccumulatorGrid(5, 5, dtype="float16")
        with pytest.raises(ValueError):
            AccumulatorGrid(5, 5, backing="gpu")

    def test_single_pixel_recurrence(self):
        self.grid.update(0, 0, 5)
        assert self.grid.cell(0, 0) == (1, 5.0, 0.0)

        self.grid.update(0, 0, 7)
        assert self.grid.cell(0, 0) == (2, 6.0, 2.0)

        # Neighbours untouched
        assert self.grid.cell(1, 0) == (0, 0.0, 0.0)
        assert self.grid.cell(0, 1) == (0, 0.0, 0.0)

    def test_matches_direct_computation(self):
        rng = np.random.default_rng(42)
        values = rng.integers(0, 3000, size=250)
        for v in values:
            self.grid.update(2, 1, int(v))

        count, mean, m2 = self.grid.cell(2, 1)
        assert count == len(values)
        assert mean == pytest.approx(np.mean(values), rel=1e-12)
        assert m2 / (count - 1) == pytest.approx(np.var(values, ddof=1), rel=1e-9)

    def test_order_invariance_within_tolerance(self):
        rng = np.random.default_rng(7)
        values = rng.integers(0, 5000, size=500)
        other = AccumulatorGrid(1, 1)
        for v in values:
            self.grid.update(0, 0, int(v))
        for v in rng.permutation(values):
            other.update(0, 0, int(v))

        n1, mean1, m2_1 = self.grid.cell(0, 0)
        n2, mean2, m2_2 = other.cell(0, 0)
        assert n1 == n2
        assert mean1 == pytest.approx(mean2, rel=1e-12)
        assert m2_1 == pytest.approx(m2_2, rel=1e-9)

    def test_missing_samples_are_ignored(self):
        for v in (-1, -9999, -32768):
            self.grid.update(1, 1, v)
        assert self.grid.cell(1, 1) == (0, 0.0, 0.0)

        self.grid.update(1, 1, 4)
        self.grid.update(1, 1, -1)
        assert self.grid.cell(1, 1) == (1, 4.0, 0.0)

    def test_zero_is_a_valid_observation(self):
        self.grid.update(0, 1, 0)
        self.grid.update(0, 1, 0)
        assert self.grid.cell(0, 1) == (2, 0.0, 0.0)

    def test_bounds_checking(self):
        with pytest.raises(IndexError):
            self.grid.update(3, 0, 1)
        with pytest.raises(IndexError):
            self.grid.update(0, 2, 1)
        with pytest.raises(IndexError):
            self.grid.cell(-1, 0)
        with pytest.raises(IndexError):
            self.grid.finalize_row(2)

    def test_sample_range(self):
        with pytest.raises(ValueError):
            self.grid.update_row(0, np.array([0, 40000, 0], dtype=np.int32))
        with pytest.raises(ValueError):
            self.grid.update_row(0, np.array([0.5, 1.0, 2.0]))

    def test_update_row_matches_scalar_updates(self):
        rows = [
            np.array([5, -1, 10], dtype=np.int16),
            np.array([7, -1, 20], dtype=np.int16),
            np.array([1, 3, 1000], dtype=np.int16),
        ]
        scalar = AccumulatorGrid(3, 2)
        for row in rows:
            applied = self.grid.update_row(0, row)
            assert applied == int((row >= 0).sum())
            for x, v in enumerate(row):
                scalar.update(x, 0, int(v))

        for a, b in zip(self.grid.as_arrays(), scalar.as_arrays()):
            np.testing.assert_array_equal(a, b)

    def test_update_row_accepts_wider_integer_types(self):
        self.grid.update_row(1, [1, 2, -3])
        self.grid.update_row(1, np.array([3, 4, 5], dtype=np.int64))
        count, mean, _ = self.grid.as_arrays()
        np.testing.assert_array_equal(count[1], [2, 2, 1])
        np.testing.assert_array_equal(mean[1], [2.0, 3.0, 5.0])

    def test_update_row_width_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            self.grid.update_row(0, np.array([1, 2], dtype=np.int16))

    def test_finalize_row(self):
        self.grid.update_row(0, np.array([5, -1, 10], dtype=np.int16))
        self.grid.update_row(0, np.array([7, -1, 20], dtype=np.int16))

        mean, cv, count = self.grid.finalize_row(0)

        assert mean.dtype == np.float32
        assert cv.dtype == np.float32
        np.testing.assert_array_equal(mean, [6.0, 0.0, 15.0])
        np.testing.assert_array_equal(count, [2, 0, 2])
        assert cv[0] == pytest.approx(np.sqrt(2.0) / 6.0, rel=1e-6)
        assert np.isnan(cv[1])
        assert cv[2] == pytest.approx(np.sqrt(50.0) / 15.0, rel=1e-6)

    def test_cv_undefined_cases_are_nan(self):
        # single observation
        self.grid.update(0, 1, 12)
        # zero mean with two observations
        self.grid.update(1, 1, 0)
        self.grid.update(1, 1, 0)

        _, cv, count = self.grid.finalize_row(1)
        np.testing.assert_array_equal(count, [1, 2, 0])
        assert np.isnan(cv).all()

    def test_finalize_row_is_read_only(self):
        self.grid.update(0, 0, 3)
        before = [a.copy() for a in self.grid.as_arrays()]
        self.grid.finalize_row(0)
        self.grid.finalize_row(0)
        for a, b in zip(before, self.grid.as_arrays()):
            np.testing.assert_array_equal(a, b)

    def test_as_arrays_views_are_read_only(self):
        count, _, _ = self.grid.as_arrays()
        with pytest.raises(ValueError):
            count[0, 0] = 5

    def test_float32_accumulator(self):
        grid = AccumulatorGrid(2, 1, dtype="float32")
        for v in (5, 7):
            grid.update(0, 0, v)
        count, mean, m2 = grid.cell(0, 0)
        assert (count, mean, m2) == (2, 6.0, 2.0)
        assert grid.as_arrays()[1].dtype == np.float32

    def test_max_count(self):
        assert self.grid.max_count() == 0
        for _ in range(4):
            self.grid.update(2, 1, 1)
        assert self.grid.max_count() == 4


class TestAccumulatorBacking:
    def test_memmap_backing(self, tmp_path):
        grid = AccumulatorGrid(4, 3, backing="memmap", scratch_dir=tmp_path)
        assert grid.backing == "memmap"
        assert len(list(tmp_path.iterdir())) == 3

        grid.update_row(2, np.array([1, 2, 3, -4], dtype=np.int16))
        grid.update_row(2, np.array([3, 2, 1, -4], dtype=np.int16))
        mean, _, count = grid.finalize_row(2)
        np.testing.assert_array_equal(mean, [2.0, 2.0, 2.0, 0.0])
        np.testing.assert_array_equal(count, [2, 2, 2, 0])

        grid.close()
        assert list(tmp_path.iterdir()) == []

    def test_context_manager_cleans_scratch(self, tmp_path):
        with AccumulatorGrid(2, 2, backing="memmap", scratch_dir=tmp_path) as grid:
            grid.update(1, 1, 9)
        assert list(tmp_path.iterdir()) == []

    def test_ram_shortfall_is_fatal(self, monkeypatch):
        monkeypatch.setattr(
            "precipstats.accumulator.get_available_memory_mb", lambda: 0.001
        )
        with pytest.raises(AllocationError) as excinfo:
            AccumulatorGrid(100, 100, backing="ram")
        assert excinfo.value.required_mb > 0

    def test_auto_backing_switches_to_disk(self, monkeypatch, tmp_path):
        monkeypatch.setattr("precipstats.io_utils.get_available_memory_mb", lambda: 0.001)
        with AccumulatorGrid(100, 100, backing="auto", scratch_dir=tmp_path) as grid:
            assert grid.backing == "memmap"

    def test_unusable_scratch_dir(self, tmp_path):
        not_a_dir = tmp_path / "occupied"
        not_a_dir.write_text("x")
        with pytest.raises(AllocationError):
            AccumulatorGrid(4, 4, backing="memmap", scratch_dir=not_a_dir)
