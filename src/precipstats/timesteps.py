"""
Monthly time-step bookkeeping.

Step k (1-based) of a monthly series starting in January of ``start_year``
maps to ``month = ((k - 1) % 12) + 1`` and ``year = (k - 1) // 12 + start_year``.
The CHELSAcruts series runs 1392 steps, January 1901 to December 2016.
"""

from dataclasses import dataclass

CHELSA_START_YEAR = 1901
CHELSA_N_STEPS = 1392
CHELSA_FILENAME_TEMPLATE = "CHELSAcruts_prec_{month}_{year}_V.1.0.tif"


@dataclass(frozen=True)
class TimeStep:
    """One raster of the series, identified by its 1-based position."""

    index: int
    month: int
    year: int

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def format(self, template: str) -> str:
        """Fill a filename or URL template with ``month``, ``year`` and ``index``."""
        return template.format(month=self.month, year=self.year, index=self.index)

    def __str__(self):
        return f"{self.index} ({self.label})"


def step_for_index(index: int, start_year: int = CHELSA_START_YEAR) -> TimeStep:
    if index < 1:
        raise ValueError(f"Time step index must be >= 1, got {index}")
    month = (index - 1) % 12 + 1
    year = (index - 1) // 12 + start_year
    return TimeStep(index=index, month=month, year=year)


def monthly_time_steps(
    n_steps: int = CHELSA_N_STEPS,
    start_year: int = CHELSA_START_YEAR,
    first_index: int = 1,
) -> list[TimeStep]:
    """Return ``n_steps`` consecutive monthly steps in processing order."""
    if n_steps < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")
    return [
        step_for_index(k, start_year) for k in range(first_index, first_index + n_steps)
    ]
