"""
Two-arm listening-time datasets: simulation, loading and validation.

A dataset is a DataFrame with one row per subject and the columns
``id``, ``group`` (categorical: control / treatment) and ``outcome``
(listening time in minutes).

Simulation model
----------------
- control:   outcome ~ N(baseline_mean, noise_scale^2)
- treatment: outcome ~ N(baseline_mean + true_effect, noise_scale^2)
- Exactly ``n_per_group`` subjects per arm, i.i.d. within arm.
- Draws come from ``numpy.random.default_rng(rng_seed)`` so a seed fully
  determines the dataset.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
import pandas as pd

from listening_time.errors import InvalidParameter


CONTROL = "control"
TREATMENT = "treatment"
GROUP_DTYPE = pd.CategoricalDtype(categories=[CONTROL, TREATMENT], ordered=False)

log = logging.getLogger(__name__)


def validate_probability(value: float, name: str, allow_zero: bool = True, allow_one: bool = True) -> None:
    """Validate a probability-like value in [0,1] with optional strictness."""
    if value is None or not (value == value):  # NaN check
        raise InvalidParameter(f"{name} must be a real number in [0,1]")
    if (not allow_zero and value <= 0.0) or (allow_zero and value < 0.0):
        raise InvalidParameter(f"{name} must be >= 0{'' if allow_zero else ' (strict)'}")
    if (not allow_one and value >= 1.0) or (allow_one and value > 1.0):
        raise InvalidParameter(f"{name} must be <= 1{'' if allow_one else ' (strict)'}")


def validate_positive(value: float, name: str) -> None:
    if value is None or not math.isfinite(value) or value <= 0:
        raise InvalidParameter(f"{name} must be a finite number > 0")


def validate_finite(value: float, name: str) -> None:
    if value is None or not math.isfinite(value):
        raise InvalidParameter(f"{name} must be a finite number")


def simulate(
    n_per_group: int,
    true_effect: float,
    baseline_mean: float = 45.0,
    noise_scale: float = 15.0,
    rng_seed: Optional[int] = 12345,
) -> pd.DataFrame:
    """Simulate a balanced two-arm experiment.

    Returns a DataFrame with ``2 * n_per_group`` rows: the first half
    control, the second half treatment.
    """
    if isinstance(n_per_group, bool) or int(n_per_group) != n_per_group or n_per_group <= 0:
        raise InvalidParameter("n_per_group must be a positive integer")
    validate_positive(noise_scale, "noise_scale")
    validate_finite(true_effect, "true_effect")
    validate_finite(baseline_mean, "baseline_mean")
    n = int(n_per_group)

    rng = np.random.default_rng(rng_seed)
    control = rng.normal(baseline_mean, noise_scale, size=n)
    treatment = rng.normal(baseline_mean + true_effect, noise_scale, size=n)

    df = pd.DataFrame({
        "id": [f"U{uid:06d}" for uid in range(2 * n)],
        "group": [CONTROL] * n + [TREATMENT] * n,
        "outcome": np.concatenate([control, treatment]),
    })
    df["group"] = df["group"].astype(GROUP_DTYPE)
    return df


def validate_dataset(data: pd.DataFrame) -> pd.DataFrame:
    """Check columns, labels and values; return a copy with categorical groups.

    Raises InvalidParameter when a group is empty, a label is unknown or an
    outcome is not finite.
    """
    missing = {"group", "outcome"} - set(data.columns)
    if missing:
        raise InvalidParameter(f"dataset is missing columns: {sorted(missing)}")

    df = data.copy()
    labels = df["group"].astype(str).str.strip().str.lower()
    unknown = sorted(set(labels) - set(GROUP_DTYPE.categories))
    if unknown:
        raise InvalidParameter(f"unknown group labels: {unknown}")
    df["group"] = labels.astype(GROUP_DTYPE)

    try:
        outcome = df["outcome"].to_numpy(dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidParameter(f"outcome must be numeric: {exc}") from exc
    if not np.all(np.isfinite(outcome)):
        raise InvalidParameter("outcome contains NaN or infinite values")
    df["outcome"] = outcome

    counts = df["group"].value_counts()
    for label in GROUP_DTYPE.categories:
        if counts.get(label, 0) == 0:
            raise InvalidParameter(f"group '{label}' has no observations")
    return df


def load_dataset(path: str) -> pd.DataFrame:
    """Read a CSV with ``group`` and ``outcome`` columns."""
    df = pd.read_csv(path)
    df = validate_dataset(df)
    if "id" not in df.columns:
        df.insert(0, "id", [f"U{uid:06d}" for uid in range(len(df))])
    log.info("loaded %d observations from %s", len(df), path)
    return df


def group_outcomes(data: pd.DataFrame) -> tuple[np.ndarray, np.ndarray]:
    """Return (control, treatment) outcome arrays."""
    is_treat = (data["group"] == TREATMENT).to_numpy()
    y = data["outcome"].to_numpy(dtype=float)
    return y[~is_treat], y[is_treat]
