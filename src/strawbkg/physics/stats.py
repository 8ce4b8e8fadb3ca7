from __future__ import annotations
from typing import Sequence

import numpy as np


def weighted_mean(values: Sequence[float] | np.ndarray, weights: Sequence[float] | np.ndarray) -> float:
    """Weighted mean; raises ValueError on an empty or zero-weight set."""
    x = np.asarray(values, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    if x.shape != w.shape:
        raise ValueError(f"values/weights shape mismatch: {x.shape} vs {w.shape}")
    wsum = float(w.sum())
    if x.size == 0 or wsum == 0.0:
        raise ValueError("weighted_mean of an empty or zero-weight set")
    return float((w * x).sum() / wsum)


def weighted_mean_var(values, weights) -> tuple[float, float]:
    """
    Weighted mean and population variance, var = <x^2>_w - <x>_w^2.

    The variance can come out slightly negative from round-off; callers clamp
    before taking a square root (see clamped_std).
    """
    x = np.asarray(values, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    mean = weighted_mean(x, w)
    wsum = float(w.sum())
    var = float((w * x * x).sum() / wsum) - mean * mean
    return mean, var


def mean_var(values) -> tuple[float, float]:
    """Unweighted mean and population variance."""
    x = np.asarray(values, dtype=np.float64)
    return weighted_mean_var(x, np.ones_like(x))


def clamped_std(var: float) -> float:
    return float(np.sqrt(max(var, 0.0)))


def largest_gap(sorted_values) -> float:
    """Largest difference between consecutive entries of an ascending sequence."""
    z = np.asarray(sorted_values, dtype=np.float64)
    if z.size < 2:
        return 0.0
    return float(max(np.max(np.diff(z)), 0.0))
