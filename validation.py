"""
Validation of the streaming statistics against a two-pass NumPy reference.

Each scenario generates a synthetic monthly series, runs it through the
full pipeline (accumulator -> driver -> encoder) and compares the written
mean / CV / count streams with masked-array statistics over the stacked
series. All results are saved in a unique timestamped folder.
"""

import datetime
import json
import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

from precipstats import OutputPaths, compute_statistics  # noqa: E402

# name -> (width, height, n_steps, nodata fraction, max sample, dtype)
SCENARIOS = {
    "dry": (64, 32, 120, 0.05, 40, "float64"),
    "wet": (64, 32, 120, 0.05, 3000, "float64"),
    "sparse": (48, 24, 240, 0.7, 800, "float64"),
    "long_series": (16, 8, 1392, 0.02, 1500, "float64"),
    "float32": (64, 32, 120, 0.05, 3000, "float32"),
}


def reference_statistics(grids):
    """Two-pass mean, CV and count over the stacked series (negatives masked)."""
    stack = np.ma.masked_less(np.stack(grids).astype(np.float64), 0)
    count = stack.count(axis=0)
    mean = stack.mean(axis=0)
    std = stack.std(axis=0, ddof=1)
    cv = (std / mean).filled(np.nan)
    cv[(count <= 1) | (mean.filled(0) == 0)] = np.nan
    return mean.filled(0).ravel(), cv.ravel(), count.ravel()


def relative_error(ours, reference):
    both = ~np.isnan(reference) & ~np.isnan(ours)
    if not both.any():
        return 0.0
    denom = np.maximum(np.abs(reference[both]), 1e-12)
    return float(np.max(np.abs(ours[both] - reference[both]) / denom))


class StatisticsValidator:
    """Runs the scenarios and collects metrics, plots and a report."""

    def __init__(self, output_base_dir="validation_results", seed=1901):
        self.rng = np.random.default_rng(seed)
        self.results = []

        self.timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H%M%S")
        self.results_dir = Path(output_base_dir) / f"review_{self.timestamp}"
        self.results_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()
        self.logger.info(f"Validator initialized. All results will be saved to: {self.results_dir}")

    def _setup_logging(self):
        logger = logging.getLogger(__name__)
        logger.setLevel(logging.INFO)

        if logger.hasHandlers():
            logger.handlers.clear()

        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

        log_filepath = self.results_dir / f"validation_log_{self.timestamp}.log"
        file_handler = logging.FileHandler(log_filepath, encoding="utf-8")
        file_handler.setFormatter(formatter)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)

        logger.addHandler(file_handler)
        logger.addHandler(stream_handler)

        logger.info("=" * 80)
        logger.info("PRECIPSTATS VALIDATION LOG STARTED")
        logger.info(f"Results Directory: {self.results_dir.resolve()}")
        logger.info("=" * 80)
        return logger

    def generate_series(self, width, height, n_steps, nodata_fraction, max_sample):
        """Gamma-like monthly precipitation with random nodata holes."""
        grids = []
        scale = self.rng.uniform(0.2, 1.0, size=(height, width)) * max_sample / 3
        for _ in range(n_steps):
            values = self.rng.gamma(2.0, scale)
            grid = np.clip(np.rint(values), 0, max_sample).astype(np.int16)
            grid[self.rng.random((height, width)) < nodata_fraction] = -1
            grids.append(grid)
        return grids

    def validate_scenario(self, name, width, height, n_steps, nodata_fraction, max_sample, dtype):
        self.logger.info(f"Scenario '{name}': {width}x{height}, {n_steps} steps, dtype={dtype}")
        grids = self.generate_series(width, height, n_steps, nodata_fraction, max_sample)

        out_dir = self.results_dir / name
        destinations = OutputPaths.in_directory(out_dir)
        result = compute_statistics(grids, destinations, dtype=dtype)

        mean = np.fromfile(destinations.mean, dtype="<f4")
        cv = np.fromfile(destinations.cv, dtype="<f4")
        count = np.fromfile(destinations.count, dtype="<i4")
        ref_mean, ref_cv, ref_count = reference_statistics(grids)

        metrics = {
            "scenario": name,
            "width": width,
            "height": height,
            "n_steps": n_steps,
            "dtype": dtype,
            "count_exact": bool(np.array_equal(count, ref_count)),
            "nan_pattern_match": bool(np.array_equal(np.isnan(cv), np.isnan(ref_cv))),
            "mean_max_rel_error": relative_error(mean.astype(np.float64), ref_mean),
            "cv_max_rel_error": relative_error(cv.astype(np.float64), ref_cv),
            "elapsed_seconds": result.elapsed_seconds,
        }
        metrics["status"] = self._status(metrics)
        self.results.append(metrics)

        self.logger.info(
            f"  count exact: {metrics['count_exact']}, NaN pattern: {metrics['nan_pattern_match']}, "
            f"mean err: {metrics['mean_max_rel_error']:.2e}, cv err: {metrics['cv_max_rel_error']:.2e} "
            f"-> {metrics['status']}"
        )
        self.create_detailed_comparison(
            (height, width), mean, ref_mean, cv, ref_cv, count, metrics
        )
        return metrics

    def _status(self, metrics):
        if not (metrics["count_exact"] and metrics["nan_pattern_match"]):
            return "FAILED"
        worst = max(metrics["mean_max_rel_error"], metrics["cv_max_rel_error"])
        if worst < 1e-6:
            return "EXCELLENT"
        if worst < 1e-4:
            return "GOOD"
        return "NEEDS_ADJUSTMENT"

    def create_detailed_comparison(self, shape, mean, ref_mean, cv, ref_cv, count, metrics):
        """Maps of the outputs and their deviation from the reference."""
        fig, axes = plt.subplots(2, 3, figsize=(18, 10))

        panels = [
            (axes[0, 0], mean.reshape(shape), "Mean (streaming)", "Blues"),
            (axes[0, 1], cv.reshape(shape), "CV (streaming)", "viridis"),
            (axes[0, 2], count.reshape(shape), "Count", "Greys"),
            (axes[1, 0], np.abs(mean - ref_mean).reshape(shape), "|Mean - reference|", "hot"),
            (axes[1, 1], np.abs(cv - ref_cv).reshape(shape), "|CV - reference|", "hot"),
        ]
        for ax, data, title, cmap in panels:
            im = ax.imshow(data, cmap=cmap)
            ax.set_title(title, fontsize=12)
            ax.axis("off")
            fig.colorbar(im, ax=ax, fraction=0.046)

        status_colors = {
            "EXCELLENT": "darkgreen",
            "GOOD": "blue",
            "NEEDS_ADJUSTMENT": "orange",
            "FAILED": "red",
        }
        metrics_text = (
            f"VALIDATION METRICS\n\n"
            f"Count exact: {metrics['count_exact']}\n"
            f"NaN pattern: {metrics['nan_pattern_match']}\n\n"
            f"Mean max rel err: {metrics['mean_max_rel_error']:.2e}\n"
            f"CV max rel err: {metrics['cv_max_rel_error']:.2e}\n\n"
            f"STATUS: {metrics['status']}"
        )
        axes[1, 2].text(
            0.05,
            0.95,
            metrics_text,
            fontsize=12,
            verticalalignment="top",
            color=status_colors.get(metrics["status"], "black"),
            family="monospace",
        )
        axes[1, 2].axis("off")

        plt.suptitle(
            f"Validation Report: {metrics['scenario']} ({metrics['n_steps']} steps)",
            fontsize=16,
            fontweight="bold",
        )
        plt.tight_layout(rect=[0, 0.03, 1, 0.95])

        comparison_filename = self.results_dir / f"comparison_{metrics['scenario']}.png"
        plt.savefig(str(comparison_filename), dpi=120, bbox_inches="tight")
        plt.close(fig)
        self.logger.debug(f"Comparison saved: {comparison_filename}")

    def validate_all(self, scenarios=None):
        for name, params in (scenarios or SCENARIOS).items():
            try:
                self.validate_scenario(name, *params)
            except Exception as e:
                self.logger.error(f"Scenario '{name}' raised: {e}", exc_info=True)
                self.results.append({"scenario": name, "status": "FAILED", "error": str(e)})

        self.export_analysis_logs()
        self.generate_comprehensive_report()

    def export_analysis_logs(self):
        if not self.results:
            self.logger.warning("No results to export.")
            return

        json_filename = self.results_dir / f"validation_report_{self.timestamp}.json"
        with open(json_filename, "w", encoding="utf-8") as f:
            json.dump(self.results, f, indent=4)
        self.logger.info(f"Detailed JSON: {json_filename.name}")

    def generate_comprehensive_report(self):
        if not self.results:
            self.logger.warning("No results available for comprehensive report")
            return
        self.logger.info("=" * 80)
        self.logger.info("COMPREHENSIVE VALIDATION REPORT")
        self.logger.info("=" * 80)
        self.logger.info(f"{'Scenario':<14} {'Steps':<6} {'Mean err':<10} {'CV err':<10} {'Status':<16}")
        self.logger.info("-" * 80)
        for r in self.results:
            if "error" in r:
                self.logger.info(f"{r['scenario']:<14} {'-':<6} {'-':<10} {'-':<10} {r['status']:<16}")
                continue
            self.logger.info(
                f"{r['scenario']:<14} {r['n_steps']:<6} {r['mean_max_rel_error']:<10.2e} "
                f"{r['cv_max_rel_error']:<10.2e} {r['status']:<16}"
            )

        total = len(self.results)
        passed = sum(1 for r in self.results if r["status"] in ("EXCELLENT", "GOOD"))
        self.logger.info("=" * 80)
        self.logger.info(f"  Passed: {passed}/{total}")
        if passed == total:
            self.logger.info("  VALIDATION SUCCESSFUL")
        else:
            self.logger.info("  REQUIRES ADJUSTMENTS")


if __name__ == "__main__":
    validator = StatisticsValidator(output_base_dir="validation_results")
    validator.validate_all()
