import math
import os

import numpy as np
import pytest

from precipstats import AccumulatorGrid, OutputEncoder, OutputPaths, OutputWriteError
from precipstats.encoder import remove_outputs


def _scenario_grid(scenario_grids):
    grid = AccumulatorGrid(3, 2)
    for samples in scenario_grids:
        for y, row in enumerate(samples):
            grid.update_row(y, row)
    return grid


class TestOutputPaths:
    def test_default_names(self, tmp_path):
        paths = OutputPaths.in_directory(tmp_path)
        assert paths.mean == tmp_path / "Chelsa20Cmean.flt"
        assert paths.cv == tmp_path / "Chelsa20Ccv.flt"
        assert paths.count == tmp_path / "Chelsa20Ccount.bil"
        assert [name for name, _ in paths.items()] == ["mean", "cv", "count"]
        assert not paths.exist()

    def test_prefix(self, tmp_path):
        paths = OutputPaths.in_directory(tmp_path, prefix="test_")
        assert paths.mean.name == "test_mean.flt"


class TestOutputEncoder:
    def setup_method(self):
        self.encoder = OutputEncoder()

    def test_streams(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        paths = self.encoder.write_all(grid, OutputPaths.in_directory(tmp_path))

        mean = np.fromfile(paths.mean, dtype="<f4")
        cv = np.fromfile(paths.cv, dtype="<f4")
        count = np.fromfile(paths.count, dtype="<i4")

        np.testing.assert_array_equal(mean, [6, 0, 15, 0, 0, 0])
        np.testing.assert_array_equal(count, [2, 0, 2, 2, 2, 1])
        assert cv[0] == pytest.approx(math.sqrt(2) / 6, rel=1e-6)
        assert cv[2] == pytest.approx(math.sqrt(50) / 15, rel=1e-6)
        assert np.isnan(cv[[1, 3, 4, 5]]).all()

    def test_stream_sizes(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        paths = OutputEncoder(count_dtype="int16").write_all(
            grid, OutputPaths.in_directory(tmp_path)
        )
        assert paths.mean.stat().st_size == 6 * 4
        assert paths.cv.stat().st_size == 6 * 4
        assert paths.count.stat().st_size == 6 * 2
        np.testing.assert_array_equal(
            np.fromfile(paths.count, dtype="<i2"), [2, 0, 2, 2, 2, 1]
        )

    def test_int16_count_overflow(self, tmp_path):
        grid = AccumulatorGrid(2, 1)
        grid.max_count = lambda: 40000
        with pytest.raises(ValueError, match="does not fit int16"):
            OutputEncoder(count_dtype="int16").write_all(grid, OutputPaths.in_directory(tmp_path))
        assert list(tmp_path.iterdir()) == []

    def test_invalid_count_dtype(self):
        with pytest.raises(ValueError):
            OutputEncoder(count_dtype="uint8")

    def test_headers(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        paths = OutputEncoder(write_headers=True).write_all(
            grid, OutputPaths.in_directory(tmp_path)
        )
        header = paths.count.with_suffix(".hdr").read_text().splitlines()
        assert "NROWS          2" in header
        assert "NCOLS          3" in header
        assert "NBITS          32" in header
        assert "PIXELTYPE      SIGNEDINT" in header
        assert "PIXELTYPE      FLOAT" in paths.mean.with_suffix(".hdr").read_text()

    def test_no_partial_files_left(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        self.encoder.write_all(grid, OutputPaths.in_directory(tmp_path))
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "Chelsa20Ccount.bil",
            "Chelsa20Ccv.flt",
            "Chelsa20Cmean.flt",
        ]

    def test_write_failure_leaves_no_outputs(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        destinations = OutputPaths(
            mean=tmp_path / "mean.flt",
            cv=tmp_path / "cv.flt",
            count=blocker / "count.bil",
        )

        with pytest.raises(OutputWriteError) as excinfo:
            self.encoder.write_all(grid, destinations)

        assert excinfo.value.destination == destinations.count
        assert sorted(p.name for p in tmp_path.iterdir()) == ["blocker"]

    def test_failed_rename_rolls_back_renamed_outputs(self, tmp_path, scenario_grids, monkeypatch):
        grid = _scenario_grid(scenario_grids)
        real_replace = os.replace

        def replace(src, dst):
            if str(src).endswith("cv.flt.part"):
                raise OSError("disk quota exceeded")
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", replace)
        destinations = OutputPaths.in_directory(tmp_path)

        with pytest.raises(OutputWriteError) as excinfo:
            self.encoder.write_all(grid, destinations)

        assert excinfo.value.destination == destinations.cv
        assert list(tmp_path.iterdir()) == []

    def test_failed_header_rename_rolls_back_streams(self, tmp_path, scenario_grids, monkeypatch):
        grid = _scenario_grid(scenario_grids)
        real_replace = os.replace

        def replace(src, dst):
            if str(dst).endswith("count.hdr"):
                raise OSError("read-only file system")
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", replace)

        with pytest.raises(OutputWriteError):
            OutputEncoder(write_headers=True).write_all(grid, OutputPaths.in_directory(tmp_path))
        assert list(tmp_path.iterdir()) == []

    def test_remove_outputs(self, tmp_path, scenario_grids):
        grid = _scenario_grid(scenario_grids)
        paths = OutputEncoder(write_headers=True).write_all(
            grid, OutputPaths.in_directory(tmp_path)
        )
        (tmp_path / "Chelsa20Cmean.flt.part").write_bytes(b"stale")
        (tmp_path / "Chelsa20Ccv.hdr.part").write_text("stale")

        remove_outputs(paths)
        assert list(tmp_path.iterdir()) == []
