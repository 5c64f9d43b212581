"""
Job configuration.

Defaults describe the CHELSAcruts 20th century precipitation job. A job file
is TOML with a single ``[job]`` table whose keys match RunConfig fields:

    [job]
    input_dir = "/tmp"
    output_dir = "results"
    backing = "auto"
"""

import tomllib
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .accumulator import FLOAT_DTYPES
from .encoder import COUNT_DTYPES, OutputPaths
from .io_utils import BACKINGS
from .timesteps import (
    CHELSA_FILENAME_TEMPLATE,
    CHELSA_N_STEPS,
    CHELSA_START_YEAR,
    TimeStep,
    monthly_time_steps,
)

SOURCE_KINDS = ("geotiff", "flat", "remote")


@dataclass
class RunConfig:
    width: int = 43200
    height: int = 20880
    n_steps: int = CHELSA_N_STEPS
    start_year: int = CHELSA_START_YEAR
    first_step: int = 1

    source: str = "geotiff"
    input_dir: str = "/tmp"
    filename_template: str = CHELSA_FILENAME_TEMPLATE
    url_template: str = ""
    converter: list[str] = field(default_factory=list)
    workdir: str = "/tmp/precipstats"

    output_dir: str = "."
    output_prefix: str = "Chelsa20C"
    count_dtype: str = "int32"
    write_headers: bool = False

    dtype: str = "float64"
    backing: str = "ram"
    scratch_dir: str | None = None

    progress_every: int = 40
    progress_offset: int = 20

    def validate(self):
        """Raise ValueError on the first invalid setting."""
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Grid must be at least 1x1, got {self.width}x{self.height}")
        if self.n_steps < 1:
            raise ValueError(f"n_steps must be >= 1, got {self.n_steps}")
        if self.first_step < 1:
            raise ValueError(f"first_step must be >= 1, got {self.first_step}")
        if self.source not in SOURCE_KINDS:
            raise ValueError(f"source must be one of {SOURCE_KINDS}, got '{self.source}'")
        if self.source == "remote" and not self.url_template:
            raise ValueError("url_template is required for the remote source")
        if self.dtype not in FLOAT_DTYPES:
            raise ValueError(f"dtype must be one of {FLOAT_DTYPES}, got '{self.dtype}'")
        if self.backing not in BACKINGS:
            raise ValueError(f"backing must be one of {BACKINGS}, got '{self.backing}'")
        if self.count_dtype not in COUNT_DTYPES:
            raise ValueError(
                f"count_dtype must be one of {COUNT_DTYPES}, got '{self.count_dtype}'"
            )
        if self.count_dtype == "int16" and self.n_steps > 32767:
            raise ValueError(f"{self.n_steps} steps can overflow an int16 count")
        if self.progress_every < 1:
            raise ValueError(f"progress_every must be >= 1, got {self.progress_every}")
        return self

    def time_steps(self) -> list[TimeStep]:
        return monthly_time_steps(self.n_steps, self.start_year, self.first_step)

    def output_paths(self) -> OutputPaths:
        return OutputPaths.in_directory(self.output_dir, self.output_prefix)

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: str | Path) -> RunConfig:
    """Read a TOML job file into a RunConfig (unknown keys are an error)."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    job = data.get("job", {})
    known = {f.name for f in fields(RunConfig)}
    unknown = sorted(set(job) - known)
    if unknown:
        raise ValueError(f"Unknown job settings in {path}: {unknown}")
    return RunConfig(**job)
