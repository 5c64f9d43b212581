"""
Numba-compiled kernels for the per-pixel Welford accumulation.

The kernels are serial and compiled without ``fastmath``: floating point
reassociation would change the update order and break bit-reproducibility
between runs.
"""
import math

import numpy as np
from numba import njit


@njit(cache=True)
def welford_update_row(count, mean, m2, offset, samples):
    """
    Apply one row of samples to the accumulator buffers in place.

    ``count``, ``mean`` and ``m2`` are the flat per-pixel buffers and
    ``offset`` is the flat index of the first pixel of the row. Negative
    samples are nodata and leave the pixel untouched.

    Returns the number of valid samples applied.
    """
    applied = 0
    for i in range(samples.shape[0]):
        value = samples[i]
        if value < 0:
            continue
        j = offset + i
        count[j] += 1
        delta1 = value - mean[j]
        mean[j] += delta1 / count[j]
        # recomputed against the updated mean
        delta2 = value - mean[j]
        m2[j] += delta1 * delta2
        applied += 1
    return applied


@njit(cache=True)
def coefficient_of_variation_row(count, mean, m2, out):
    """
    Fill ``out`` with sqrt(m2 / (count - 1)) / mean for one row.

    Pixels with fewer than two observations or a zero mean get NaN.
    """
    for i in range(count.shape[0]):
        n = count[i]
        mu = mean[i]
        if n > 1 and mu != 0.0:
            out[i] = math.sqrt(m2[i] / (n - 1)) / mu
        else:
            out[i] = np.nan
    return out
