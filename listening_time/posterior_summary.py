"""
Decision statistics for the treatment effect from posterior draws.

Decision rule
-------------
The only gate is the one-sided posterior probability:

    classification = "supported"     if P(effect > threshold) >= confidence_level   (direction="greater")
                                     or P(effect < threshold) >= confidence_level   (direction="less")
                   = "inconclusive"  otherwise

The credible interval is reported next to it for transparency; an interval
that straddles zero does not change the classification.

Floating point
--------------
Sums use ``math.fsum`` (correctly rounded), and quantiles are taken on sorted
draws, so the summary is bit-identical for any ordering of the same draws.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import asdict, dataclass
from typing import Optional, Tuple, Union

import arviz as az
import numpy as np
import pandas as pd
import statsmodels.api as sm

from listening_time.bayes_model import DEFAULT_RHAT_THRESHOLD, PosteriorDraws, check_convergence
from listening_time.data import TREATMENT, validate_dataset, validate_finite, validate_probability
from listening_time.errors import EmptyDrawSet, InvalidLevel, InvalidParameter, SamplerNonConvergence


SUPPORTED = "supported"
INCONCLUSIVE = "inconclusive"
DIRECTIONS = ("greater", "less")
INTERVALS = ("equal_tailed", "hdi")

log = logging.getLogger(__name__)

DrawsLike = Union[PosteriorDraws, np.ndarray, list, tuple]


@dataclass(frozen=True)
class DecisionSummary:
    point_estimate: float
    standard_error: float
    credible_interval: Tuple[float, float]
    credible_level: float
    interval: str
    one_sided_probability: float
    direction: str
    threshold: float
    confidence_level: float
    classification: str
    n_draws: int
    converged: bool = True
    diagnostics: Tuple[str, ...] = ()

    @property
    def trustworthy(self) -> bool:
        """False when the sampler did not converge or the draws were anomalous."""
        return self.converged and not self.diagnostics

    def to_dict(self) -> dict:
        out = asdict(self)
        out["credible_interval"] = list(self.credible_interval)
        out["diagnostics"] = list(self.diagnostics)
        out["trustworthy"] = self.trustworthy
        return out


def validate_level(credible_level: float) -> None:
    if credible_level is None or not (0.0 < credible_level < 1.0):
        raise InvalidLevel(f"credible_level must be in the open interval (0, 1), got {credible_level!r}")


def validate_direction(direction: str) -> None:
    if direction not in DIRECTIONS:
        raise InvalidParameter(f"direction must be one of {DIRECTIONS}, got {direction!r}")


def _effect_array(draws: DrawsLike) -> np.ndarray:
    if isinstance(draws, PosteriorDraws):
        return np.asarray(draws.effect_samples(), dtype=float)
    return np.asarray(draws, dtype=float).reshape(-1)


def _finite(samples: np.ndarray) -> np.ndarray:
    if samples.size == 0:
        raise EmptyDrawSet("no posterior draws to summarize")
    finite = samples[np.isfinite(samples)]
    if finite.size == 0:
        raise EmptyDrawSet(f"all {samples.size} posterior draws are NaN or infinite")
    return finite


def point_estimate(samples: DrawsLike) -> float:
    """Posterior mean of the treatment effect."""
    x = _finite(_effect_array(samples))
    return math.fsum(x) / x.size


def standard_error(samples: DrawsLike) -> float:
    """Sample SD (ddof=1) of the treatment-effect draws; 0.0 for a single draw."""
    x = _finite(_effect_array(samples))
    if x.size < 2:
        return 0.0
    mean = math.fsum(x) / x.size
    return math.sqrt(math.fsum((x - mean) ** 2) / (x.size - 1))


def credible_interval(samples: DrawsLike, level: float = 0.95, interval: str = "equal_tailed") -> Tuple[float, float]:
    """Equal-tailed [(1-level)/2, 1-(1-level)/2] quantile interval, or the HDI."""
    validate_level(level)
    x = np.sort(_finite(_effect_array(samples)))
    if interval == "hdi":
        low, high = az.hdi(x, hdi_prob=level)
        return float(low), float(high)
    if interval != "equal_tailed":
        raise InvalidParameter(f"interval must be one of {INTERVALS}, got {interval!r}")
    tail = (1.0 - level) / 2.0
    low, high = np.quantile(x, [tail, 1.0 - tail])
    return float(low), float(high)


def one_sided_probability(samples: DrawsLike, direction: str = "greater", threshold: float = 0.0) -> float:
    """Fraction of draws strictly beyond ``threshold`` in ``direction``."""
    validate_direction(direction)
    validate_finite(threshold, "threshold")
    x = _finite(_effect_array(samples))
    if direction == "greater":
        hits = int(np.count_nonzero(x > threshold))
    else:
        hits = int(np.count_nonzero(x < threshold))
    return hits / x.size


def classify(probability: float, confidence_level: float) -> str:
    return SUPPORTED if probability >= confidence_level else INCONCLUSIVE


def summarize(
    draws: DrawsLike,
    credible_level: float = 0.95,
    direction: str = "greater",
    threshold: float = 0.0,
    confidence_level: float = 0.95,
    *,
    interval: str = "equal_tailed",
    rhat_threshold: float = DEFAULT_RHAT_THRESHOLD,
) -> DecisionSummary:
    """Summarize treatment-effect draws into a DecisionSummary.

    ``draws`` is a PosteriorDraws or a flat array of treatment-effect draws.
    Convergence problems and anomalous draws are recorded in
    ``diagnostics``; non-convergence also raises a SamplerNonConvergence
    warning, but the summary is still returned.
    """
    validate_level(credible_level)
    validate_direction(direction)
    validate_finite(threshold, "threshold")
    validate_probability(confidence_level, "confidence_level", allow_zero=False, allow_one=True)
    if interval not in INTERVALS:
        raise InvalidParameter(f"interval must be one of {INTERVALS}, got {interval!r}")

    raw = _effect_array(draws)
    x = _finite(raw)

    diagnostics = []
    n_bad = raw.size - x.size
    if n_bad:
        diagnostics.append(f"{n_bad} of {raw.size} treatment_effect draws are NaN or infinite and were excluded")
    if x.size > 1 and np.all(x == x[0]):
        diagnostics.append("treatment_effect draws have zero variance")
    if x.size == 1:
        diagnostics.append("only one usable draw; standard error is undefined and reported as 0")

    converged = True
    if isinstance(draws, PosteriorDraws):
        diagnostics.extend(draws.notes)
        convergence = check_convergence(draws, rhat_threshold)
        if convergence:
            converged = False
            diagnostics.extend(convergence)
            for message in convergence:
                warnings.warn(message, SamplerNonConvergence, stacklevel=2)

    prob = one_sided_probability(x, direction, threshold)
    summary = DecisionSummary(
        point_estimate=point_estimate(x),
        standard_error=standard_error(x),
        credible_interval=credible_interval(x, credible_level, interval),
        credible_level=float(credible_level),
        interval=interval,
        one_sided_probability=prob,
        direction=direction,
        threshold=float(threshold),
        confidence_level=float(confidence_level),
        classification=classify(prob, confidence_level),
        n_draws=int(x.size),
        converged=converged,
        diagnostics=tuple(diagnostics),
    )
    if diagnostics:
        log.warning("posterior summary diagnostics: %s", "; ".join(diagnostics))
    return summary


def ols_reference(data: pd.DataFrame, alpha: float = 0.05) -> dict:
    """Frequentist cross-check: OLS of outcome on the treatment indicator.

    Returns coef, se, pvalue (two-sided) and the (1 - alpha) confidence interval.
    """
    validate_probability(alpha, "alpha", allow_zero=False, allow_one=False)
    df = validate_dataset(data)
    y = df["outcome"].to_numpy(dtype=float)
    X = np.column_stack([
        np.ones(len(df), dtype=float),
        (df["group"] == TREATMENT).to_numpy(dtype=float),
    ])
    fit = sm.OLS(y, X).fit()
    low, high = fit.conf_int(alpha=alpha)[1]
    return {
        "coef": float(fit.params[1]),
        "se": float(fit.bse[1]),
        "pvalue": float(fit.pvalues[1]),
        "ci_low": float(low),
        "ci_high": float(high),
    }


def format_summary(summary: DecisionSummary, reference: Optional[dict] = None) -> str:
    """Plain-text report block in the CLI's style."""
    op = ">" if summary.direction == "greater" else "<"
    lines = [
        "Posterior summary (treatment effect, minutes)",
        f"  Draws used: {summary.n_draws}",
        f"  Point estimate: {summary.point_estimate:.3f}",
        f"  Standard error: {summary.standard_error:.3f}",
        f"  {summary.credible_level:.0%} credible interval ({summary.interval}): "
        f"[{summary.credible_interval[0]:.3f}, {summary.credible_interval[1]:.3f}]",
        f"  P(effect {op} {summary.threshold:g}): {summary.one_sided_probability:.4f}",
        f"  Decision at {summary.confidence_level:.2f}: {summary.classification}",
    ]
    if reference is not None:
        lines.append(
            f"  OLS reference: coef={reference['coef']:.3f} se={reference['se']:.3f} "
            f"p={reference['pvalue']:.4f}"
        )
    if summary.diagnostics:
        lines.append("  Diagnostics:")
        lines.extend(f"    - {d}" for d in summary.diagnostics)
    return "\n".join(lines)
