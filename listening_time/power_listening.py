"""
Bayesian power analysis for a two-arm listening-time experiment.

This script estimates, by simulation, how often a trial with a given number
of subjects per arm would "detect" a treatment effect on listening time
under a Bayesian analysis, and recommends the smallest per-arm sample size
whose detection rate reaches a target.

Approach
--------
- Outcome model: y = baseline_mean + delta * I[treatment] + e, e ~ N(0, noise_scale^2),
  with n_per_group subjects in each arm (see ``listening_time.data.simulate``).
- Each simulated trial is fit with the Bayesian model in
  ``listening_time.bayes_model`` (priors fixed before any data is seen) and
  classified by a detection rule applied to the posterior draws. The default
  rule is P(delta > 0 | data) > 0.95.
- Detection rate for a size n = detections / repetitions. ``repetitions``
  sets the Monte Carlo precision of that rate (Wilson intervals are reported);
  it does not change the size of any simulated dataset.
- Candidate sizes are searched in ascending order and the search stops at
  the first size whose rate reaches the target. With ``evaluate_all=True``
  every candidate is evaluated (concurrently when n_jobs > 1) and the minimum
  qualifying size is returned along with the full rate-vs-size curve.

Reproducibility
---------------
Every trial gets its own seed derived from the base seed and the trial index,
and the same trial seeds are reused for every candidate size. Results are
therefore identical for serial and parallel runs and for any chunk size.

Usage
-----
1) Detection rate at a fixed size:
   python3 -m listening_time.power_listening --mode power --n-per-group 150 \
     --true-effect 5 --noise-scale 15 --repetitions 500

2) Smallest size reaching a target detection rate:
   python3 -m listening_time.power_listening --mode n-for-rate --target-rate 0.8 \
     --candidates 50 100 150 200 300 --true-effect 5 --noise-scale 15 --n-jobs -1

3) Summarize a finished experiment (CSV with group,outcome columns):
   python3 -m listening_time.power_listening --mode analyze --data results.csv \
     --backend pymc --draws-csv draws.csv
"""

from __future__ import annotations

import argparse
import logging
import math
import os
import pickle
import sys
import threading
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scipy.stats as sps

from listening_time.bayes_model import (
    DEFAULT_RHAT_THRESHOLD,
    SAMPLERS,
    ListeningTimeModel,
    PosteriorDraws,
    check_convergence,
    sample_posterior,
)
from listening_time.data import (
    load_dataset,
    simulate,
    validate_finite,
    validate_positive,
    validate_probability,
)
from listening_time.errors import AnalysisCancelled, InvalidParameter
from listening_time.posterior_summary import (
    format_summary,
    ols_reference,
    one_sided_probability,
    point_estimate,
    summarize,
    validate_direction,
)


DEFAULT_CHUNK_SIZE = 16

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbabilityRule:
    """Detection rule: P(effect <direction> threshold | data) > probability."""

    probability: float = 0.95
    threshold: float = 0.0
    direction: str = "greater"

    def validate(self) -> None:
        validate_probability(self.probability, "probability", allow_zero=True, allow_one=False)
        validate_finite(self.threshold, "threshold")
        validate_direction(self.direction)

    def __call__(self, draws: PosteriorDraws) -> bool:
        return one_sided_probability(draws, self.direction, self.threshold) > self.probability


DetectionRule = Callable[[PosteriorDraws], bool]


@dataclass
class ListeningTrialSpec:
    n_per_group: int
    true_effect: float = 5.0      # additional minutes of listening time in treatment vs control
    baseline_mean: float = 45.0   # control mean listening time (minutes)
    noise_scale: float = 15.0     # per-subject SD of listening time
    seed: Optional[int] = 12345
    attrition_rate: float = 0.0   # expected dropout rate (0-1); used for enrollment inflation only

    def validate(self) -> None:
        if isinstance(self.n_per_group, bool) or int(self.n_per_group) != self.n_per_group or self.n_per_group <= 0:
            raise InvalidParameter("n_per_group must be a positive integer")
        validate_finite(self.true_effect, "true_effect")
        validate_finite(self.baseline_mean, "baseline_mean")
        validate_positive(self.noise_scale, "noise_scale")
        validate_probability(self.attrition_rate, "attrition_rate", allow_one=False)


@dataclass(frozen=True)
class SamplerSettings:
    backend: Union[str, Callable[..., PosteriorDraws]] = "grid"
    draws: int = 1000
    chains: int = 2
    tune: int = 1000
    rhat_threshold: float = DEFAULT_RHAT_THRESHOLD

    def validate(self) -> None:
        if not callable(self.backend) and self.backend not in SAMPLERS:
            raise InvalidParameter(f"unknown sampler backend '{self.backend}' (choose from {sorted(SAMPLERS)})")
        if int(self.draws) != self.draws or self.draws <= 0:
            raise InvalidParameter("draws must be a positive integer")
        if int(self.chains) != self.chains or self.chains <= 0:
            raise InvalidParameter("chains must be a positive integer")
        if int(self.tune) != self.tune or self.tune < 0:
            raise InvalidParameter("tune must be a non-negative integer")


@dataclass(frozen=True)
class _TrialWorkerInput:
    n_per_group: int
    start: int
    seeds: Tuple[int, ...]
    spec: ListeningTrialSpec
    model: ListeningTimeModel
    sampler: SamplerSettings
    rule: DetectionRule
    return_details: bool


@dataclass
class _TrialWorkerResult:
    n_per_group: int
    start: int
    count: int
    hits: int
    effect_sum: float
    nonconverged: int
    effects: Optional[np.ndarray]
    detected: Optional[np.ndarray]


@dataclass
class _SizeTally:
    trials: int = 0
    hits: int = 0
    effect_sum: float = 0.0
    nonconverged: int = 0
    effects: Optional[np.ndarray] = None
    detected: Optional[np.ndarray] = None


@dataclass(frozen=True)
class SampleSizeRecommendation:
    """Outcome of a sample-size search.

    ``n_per_group`` is None when no evaluated candidate reached the target
    (a valid result, see ``found``).
    """

    n_per_group: Optional[int]
    target_rate: float
    repetitions: int
    evaluated_all: bool
    curve: pd.DataFrame = field(repr=False, compare=False)

    @property
    def found(self) -> bool:
        return self.n_per_group is not None

    @property
    def detection_rate(self) -> float:
        if self.n_per_group is None:
            return float("nan")
        row = self.curve.loc[self.curve["n_per_group"] == self.n_per_group]
        return float(row["detection_rate"].iloc[0])

    @property
    def total_trials(self) -> int:
        return int(self.curve["trials"].sum())


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into an actual worker count."""
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        # Example: -1 -> cpu, -2 -> cpu-1
        target = cpu + 1 + n_jobs
        return max(1, target)
    return max(1, int(n_jobs))


def _effective_chunk_size(repetitions: int, chunk_size: Optional[int]) -> int:
    if chunk_size is None or chunk_size <= 0:
        return min(DEFAULT_CHUNK_SIZE, max(1, repetitions))
    return min(int(chunk_size), max(1, repetitions))


def _chunk_indices(total: int, chunk_size: int) -> List[Tuple[int, int]]:
    chunks: List[Tuple[int, int]] = []
    start = 0
    while start < total:
        count = min(chunk_size, total - start)
        chunks.append((start, count))
        start += count
    return chunks


def _generate_trial_seeds(base_seed: Optional[int], repetitions: int) -> List[int]:
    rng = np.random.default_rng(base_seed)
    if repetitions <= 0:
        return []
    seeds = rng.integers(0, 2**63 - 1, size=repetitions, dtype=np.int64)
    # Convert to Python ints for pickle friendliness
    return [int(s) for s in seeds]


def _run_trial(
    n_per_group: int,
    seed: int,
    spec: ListeningTrialSpec,
    model: ListeningTimeModel,
    sampler: SamplerSettings,
    rule: DetectionRule,
) -> Tuple[bool, float, bool]:
    """Simulate, fit and classify one trial. Returns (detected, effect_estimate, converged)."""
    rng = np.random.default_rng(seed)
    data_seed, sampler_seed = (int(s) for s in rng.integers(0, 2**31 - 1, size=2))
    data = simulate(
        n_per_group,
        spec.true_effect,
        baseline_mean=spec.baseline_mean,
        noise_scale=spec.noise_scale,
        rng_seed=data_seed,
    )
    draws = sample_posterior(
        data,
        model,
        backend=sampler.backend,
        draws=sampler.draws,
        chains=sampler.chains,
        seed=sampler_seed,
        tune=sampler.tune,
    )
    converged = not check_convergence(draws, sampler.rhat_threshold)
    return bool(rule(draws)), point_estimate(draws), converged


def _run_trial_chunk(payload: _TrialWorkerInput) -> _TrialWorkerResult:
    count = len(payload.seeds)
    hits = 0
    effect_sum = 0.0
    nonconverged = 0
    effects = np.empty(count, dtype=float) if payload.return_details else None
    detected = np.empty(count, dtype=bool) if payload.return_details else None

    for idx, seed in enumerate(payload.seeds):
        hit, effect, converged = _run_trial(
            payload.n_per_group, seed, payload.spec, payload.model, payload.sampler, payload.rule
        )
        hits += int(hit)
        effect_sum += effect
        nonconverged += int(not converged)
        if payload.return_details:
            effects[idx] = effect
            detected[idx] = hit

    return _TrialWorkerResult(
        n_per_group=payload.n_per_group,
        start=payload.start,
        count=count,
        hits=hits,
        effect_sum=effect_sum,
        nonconverged=nonconverged,
        effects=effects,
        detected=detected,
    )


def _collect_chunks(executor, payloads: Sequence[_TrialWorkerInput],
                    cancel_event: Optional[threading.Event]) -> List[_TrialWorkerResult]:
    futures = [executor.submit(_run_trial_chunk, p) for p in payloads]
    results = []
    for fut in futures:
        if cancel_event is not None and cancel_event.is_set():
            for pending in futures:
                pending.cancel()
            raise AnalysisCancelled("power analysis cancelled between trial chunks")
        results.append(fut.result())
    return results


def _picklable(*objs) -> bool:
    try:
        for obj in objs:
            pickle.dumps(obj)
    except (pickle.PicklingError, AttributeError, TypeError):
        return False
    return True


def _reduce_chunks(tallies: Dict[int, _SizeTally], results: Iterable[_TrialWorkerResult],
                   return_details: bool) -> Dict[int, _SizeTally]:
    for result in results:
        tally = tallies[result.n_per_group]
        tally.trials += result.count
        tally.hits += result.hits
        tally.effect_sum += result.effect_sum
        tally.nonconverged += result.nonconverged
        if return_details and result.effects is not None and result.detected is not None:
            end = result.start + result.count
            tally.effects[result.start:end] = result.effects
            tally.detected[result.start:end] = result.detected
    return tallies


def _tally_sizes(
    sizes: Sequence[int],
    spec: ListeningTrialSpec,
    repetitions: int,
    model: ListeningTimeModel,
    sampler: SamplerSettings,
    rule: DetectionRule,
    *,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    return_details: bool = False,
) -> Dict[int, _SizeTally]:
    """Run ``repetitions`` trials at every size in ``sizes`` and reduce per size."""
    seeds = _generate_trial_seeds(spec.seed, repetitions)
    tallies = {int(n): _SizeTally() for n in sizes}
    for tally in tallies.values():
        if return_details:
            tally.effects = np.empty(repetitions, dtype=float)
            tally.detected = np.empty(repetitions, dtype=bool)

    worker_count = _resolve_n_jobs(n_jobs)

    if worker_count <= 1:
        for n in sizes:
            tally = tallies[int(n)]
            for idx, seed in enumerate(seeds):
                if cancel_event is not None and cancel_event.is_set():
                    raise AnalysisCancelled(f"power analysis cancelled at n_per_group={n}, trial {idx}")
                hit, effect, converged = _run_trial(int(n), seed, spec, model, sampler, rule)
                tally.trials += 1
                tally.hits += int(hit)
                tally.effect_sum += effect
                tally.nonconverged += int(not converged)
                if return_details:
                    tally.effects[idx] = effect
                    tally.detected[idx] = hit
        return tallies

    # Parallel path
    eff_chunk = _effective_chunk_size(repetitions, chunk_size)
    payloads = [
        _TrialWorkerInput(
            n_per_group=int(n),
            start=start,
            seeds=tuple(seeds[start:start + count]),
            spec=spec,
            model=model,
            sampler=sampler,
            rule=rule,
            return_details=return_details,
        )
        for n in sizes
        for start, count in _chunk_indices(repetitions, eff_chunk)
    ]
    max_workers = min(worker_count, len(payloads)) or 1

    if not _picklable(rule, sampler):
        # Lambdas and locally defined rules/backends cannot cross a process boundary
        log.info("detection rule or sampler backend is not picklable; running %d threads", max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = _collect_chunks(executor, payloads, cancel_event)
        return _reduce_chunks(tallies, results, return_details)

    try:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            results = _collect_chunks(executor, payloads, cancel_event)
    except (PermissionError, NotImplementedError, OSError):
        # Fallback to thread-based parallelism when processes are not allowed
        log.info("process pool unavailable; falling back to %d threads", max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = _collect_chunks(executor, payloads, cancel_event)

    return _reduce_chunks(tallies, results, return_details)


def _z_two_sided(alpha: float) -> float:
    """Two-sided normal z for given alpha (SciPy)."""
    return float(sps.norm.ppf(1.0 - alpha / 2.0))


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = _z_two_sided(alpha)
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    low = max(0.0, center - half)
    high = min(1.0, center + half)
    return low, high


def inflate_for_attrition(n_completing: int, attrition_rate: float) -> int:
    """Inflate completing N to required enrollment given attrition_rate."""
    validate_probability(attrition_rate, "attrition_rate", allow_one=False)
    return int(math.ceil(n_completing / max(1e-9, (1.0 - attrition_rate))))


def _curve_rows(tallies: Dict[int, _SizeTally], spec: ListeningTrialSpec, alpha_ci: float) -> pd.DataFrame:
    rows = []
    for n in sorted(tallies):
        tally = tallies[n]
        rate = tally.hits / tally.trials if tally.trials else float("nan")
        low, high = binomial_wilson_ci(tally.hits, tally.trials, alpha=alpha_ci)
        rows.append({
            "n_per_group": n,
            "n_total": 2 * n,
            "enrollment_per_group": inflate_for_attrition(n, spec.attrition_rate),
            "trials": tally.trials,
            "detections": tally.hits,
            "detection_rate": rate,
            "ci_low": low,
            "ci_high": high,
            "avg_effect": tally.effect_sum / tally.trials if tally.trials else float("nan"),
            "nonconverged": tally.nonconverged,
        })
    return pd.DataFrame(rows)


def _validate_repetitions(repetitions: int) -> None:
    if isinstance(repetitions, bool) or int(repetitions) != repetitions or repetitions <= 0:
        raise InvalidParameter("repetitions must be a positive integer")


def _validate_candidates(candidate_sizes: Iterable[int]) -> List[int]:
    sizes = list(candidate_sizes)
    if not sizes:
        raise InvalidParameter("candidate_sizes must not be empty")
    for n in sizes:
        if isinstance(n, bool) or int(n) != n or n <= 0:
            raise InvalidParameter(f"candidate size {n!r} is not a positive integer")
    sizes = [int(n) for n in sizes]
    if any(b <= a for a, b in zip(sizes, sizes[1:])):
        raise InvalidParameter("candidate_sizes must be strictly ascending")
    return sizes


def simulate_detection_rate(
    spec: ListeningTrialSpec,
    repetitions: int = 500,
    *,
    detection_rule: Optional[DetectionRule] = None,
    model: Optional[ListeningTimeModel] = None,
    sampler: Optional[SamplerSettings] = None,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> Tuple[float, float]:
    """Monte Carlo detection rate at ``spec.n_per_group``.

    Returns (detection_rate, avg_estimated_effect).
    """
    spec.validate()
    _validate_repetitions(repetitions)
    rule = detection_rule if detection_rule is not None else ProbabilityRule()
    model = model if model is not None else ListeningTimeModel()
    sampler = sampler if sampler is not None else SamplerSettings()
    model.validate()
    sampler.validate()

    tally = _tally_sizes(
        [spec.n_per_group], spec, repetitions, model, sampler, rule,
        n_jobs=n_jobs, chunk_size=chunk_size,
    )[int(spec.n_per_group)]
    return tally.hits / repetitions, tally.effect_sum / repetitions


def simulate_distribution(
    spec: ListeningTrialSpec,
    repetitions: int = 500,
    *,
    detection_rule: Optional[DetectionRule] = None,
    model: Optional[ListeningTimeModel] = None,
    sampler: Optional[SamplerSettings] = None,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
):
    """Run trials and return per-trial arrays for plotting.

    Returns (detection_rate, effects, detected) where effects are posterior
    means and detected the per-trial rule outcomes.
    """
    spec.validate()
    _validate_repetitions(repetitions)
    rule = detection_rule if detection_rule is not None else ProbabilityRule()
    model = model if model is not None else ListeningTimeModel()
    sampler = sampler if sampler is not None else SamplerSettings()
    model.validate()
    sampler.validate()

    tally = _tally_sizes(
        [spec.n_per_group], spec, repetitions, model, sampler, rule,
        n_jobs=n_jobs, chunk_size=chunk_size, return_details=True,
    )[int(spec.n_per_group)]
    return tally.hits / repetitions, tally.effects, tally.detected


def power_curve(
    base_spec: ListeningTrialSpec,
    n_values: Iterable[int],
    repetitions: int = 500,
    alpha_ci: float = 0.05,
    *,
    detection_rule: Optional[DetectionRule] = None,
    model: Optional[ListeningTimeModel] = None,
    sampler: Optional[SamplerSettings] = None,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> pd.DataFrame:
    """Detection rate across a grid of per-group sizes with Wilson intervals.

    Returns a DataFrame with columns n_per_group, detection_rate, ci_low,
    ci_high, avg_effect, nonconverged (and bookkeeping columns).
    """
    sizes = _validate_candidates(n_values)
    recommendation = recommend_sample_size(
        sizes,
        base_spec.true_effect,
        detection_rule,
        target_rate=1.0,
        repetitions=repetitions,
        baseline_mean=base_spec.baseline_mean,
        noise_scale=base_spec.noise_scale,
        seed=base_spec.seed,
        attrition_rate=base_spec.attrition_rate,
        model=model,
        sampler=sampler,
        evaluate_all=True,
        alpha_ci=alpha_ci,
        n_jobs=n_jobs,
        chunk_size=chunk_size,
    )
    return recommendation.curve


def recommend_sample_size(
    candidate_sizes: Iterable[int],
    true_effect: float,
    detection_rule: Optional[DetectionRule] = None,
    target_rate: float = 0.8,
    repetitions: int = 200,
    *,
    baseline_mean: float = 45.0,
    noise_scale: float = 15.0,
    seed: Optional[int] = 12345,
    attrition_rate: float = 0.0,
    model: Optional[ListeningTimeModel] = None,
    sampler: Optional[SamplerSettings] = None,
    evaluate_all: bool = False,
    alpha_ci: float = 0.05,
    n_jobs: Optional[int] = None,
    chunk_size: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    max_trials: Optional[int] = None,
) -> SampleSizeRecommendation:
    """Smallest candidate per-group size whose detection rate reaches ``target_rate``.

    Candidates are evaluated in ascending order and, by default, the search
    stops at the first qualifying size. ``evaluate_all=True`` evaluates every
    candidate (in parallel across candidates when n_jobs > 1) and returns the
    minimum qualifying size plus the complete curve.

    ``repetitions`` is the number of simulated trials per size; it governs
    the stability of the estimated rates, not any dataset size. Total cost is
    at most ``repetitions * len(candidate_sizes)`` sampler calls, which
    ``max_trials`` can cap up front. Setting ``cancel_event`` stops the search
    between trials (between chunks of trials when running in parallel) with
    AnalysisCancelled.

    When no candidate qualifies, ``n_per_group`` is None.
    """
    sizes = _validate_candidates(candidate_sizes)
    validate_probability(target_rate, "target_rate", allow_zero=False, allow_one=True)
    validate_probability(alpha_ci, "alpha_ci", allow_zero=False, allow_one=False)
    _validate_repetitions(repetitions)
    rule = detection_rule if detection_rule is not None else ProbabilityRule()
    if not callable(rule):
        raise InvalidParameter("detection_rule must be callable")
    if isinstance(rule, ProbabilityRule):
        rule.validate()
    model = model if model is not None else ListeningTimeModel()
    sampler = sampler if sampler is not None else SamplerSettings()
    model.validate()
    sampler.validate()
    spec = ListeningTrialSpec(
        n_per_group=sizes[0],
        true_effect=true_effect,
        baseline_mean=baseline_mean,
        noise_scale=noise_scale,
        seed=seed,
        attrition_rate=attrition_rate,
    )
    spec.validate()
    total = repetitions * len(sizes)
    if max_trials is not None and total > max_trials:
        raise InvalidParameter(
            f"repetitions x candidates = {total} trials exceeds max_trials={max_trials}"
        )

    log.info(
        "sample-size search: %d candidates x %d repetitions (evaluate_all=%s, backend=%s)",
        len(sizes), repetitions, evaluate_all, sampler.backend,
    )

    tallies: Dict[int, _SizeTally] = {}
    if evaluate_all:
        tallies = _tally_sizes(
            sizes, spec, repetitions, model, sampler, rule,
            n_jobs=n_jobs, chunk_size=chunk_size, cancel_event=cancel_event,
        )
    else:
        for n in sizes:
            tallies.update(_tally_sizes(
                [n], spec, repetitions, model, sampler, rule,
                n_jobs=n_jobs, chunk_size=chunk_size, cancel_event=cancel_event,
            ))
            rate = tallies[n].hits / repetitions
            log.info("n_per_group=%d detection_rate=%.3f", n, rate)
            if rate >= target_rate:
                break

    curve = _curve_rows(tallies, spec, alpha_ci)
    qualifying = curve.loc[curve["detection_rate"] >= target_rate, "n_per_group"]
    best = int(qualifying.min()) if len(qualifying) else None
    if best is None:
        log.info("no candidate reached detection rate %.3f", target_rate)

    return SampleSizeRecommendation(
        n_per_group=best,
        target_rate=float(target_rate),
        repetitions=int(repetitions),
        evaluated_all=bool(evaluate_all),
        curve=curve,
    )


def analytic_detection_rate(
    n_per_group: int,
    true_effect: float,
    noise_scale: float,
    probability: float = 0.95,
    threshold: float = 0.0,
    direction: str = "greater",
) -> float:
    """Normal approximation of the detection rate under weak priors.

    The posterior of delta is roughly N(delta_hat, se^2) with
    se = noise_scale * sqrt(2 / n), so P(delta > threshold) > probability
    exactly when delta_hat > threshold + z_probability * se. For
    direction="less" the roles of delta and threshold are swapped.
    """
    validate_direction(direction)
    if n_per_group <= 0 or noise_scale <= 0:
        return 0.0
    validate_probability(probability, "probability", allow_zero=False, allow_one=False)
    se = noise_scale * math.sqrt(2.0 / n_per_group)
    margin = true_effect - threshold if direction == "greater" else threshold - true_effect
    return float(sps.norm.cdf(margin / se - sps.norm.ppf(probability)))


def analytic_n_for_rate(
    target_rate: float,
    true_effect: float,
    noise_scale: float,
    probability: float = 0.95,
    threshold: float = 0.0,
    n_lo: int = 2,
    n_hi: int = 1_000_000,
    direction: str = "greater",
) -> Tuple[Optional[int], float]:
    """Find minimum per-group size meeting target rate using the analytic approximation.

    Returns ``(None, rate_at_n_hi)`` when no size up to ``n_hi`` reaches the
    target, e.g. when the effect does not lie beyond the threshold in
    ``direction``.
    """
    validate_probability(target_rate, "target_rate", allow_zero=False, allow_one=False)
    validate_direction(direction)
    margin = true_effect - threshold if direction == "greater" else threshold - true_effect
    if margin <= 0 or noise_scale <= 0:
        return None, 0.0

    low = max(1, n_lo)
    high = max(low, n_hi)
    top_rate = analytic_detection_rate(high, true_effect, noise_scale, probability, threshold, direction)
    if top_rate < target_rate:
        return None, top_rate
    best_n = high
    best_rate = top_rate
    while low <= high:
        mid = (low + high) // 2
        rate = analytic_detection_rate(mid, true_effect, noise_scale, probability, threshold, direction)
        if rate >= target_rate:
            best_n, best_rate = mid, rate
            high = mid - 1
        else:
            low = mid + 1
    return best_n, best_rate


def suggest_candidate_sizes(
    target_rate: float,
    true_effect: float,
    noise_scale: float,
    probability: float = 0.95,
    threshold: float = 0.0,
    direction: str = "greater",
    n_max: int = 100_000,
) -> List[int]:
    """Ascending candidate grid bracketing the analytic estimate.

    Raises InvalidParameter when the approximation finds no size up to
    ``n_max`` that reaches ``target_rate``; pass explicit candidates instead.
    """
    n_star, _ = analytic_n_for_rate(
        target_rate, true_effect, noise_scale, probability, threshold, n_hi=n_max, direction=direction
    )
    if n_star is None:
        raise InvalidParameter(
            f"no per-group size up to {n_max} reaches detection rate {target_rate} for "
            f"true_effect={true_effect} ({direction} than threshold={threshold}); give explicit candidate sizes"
        )
    factors = (0.5, 0.625, 0.75, 0.875, 1.0, 1.25, 1.5, 2.0)
    return sorted({max(2, int(round(n_star * f))) for f in factors})


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging from ``level`` or the LOG_LEVEL env var."""
    log_level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # PyMC's sampler chatter is noise at the CLI level
    logging.getLogger("pymc").setLevel(max(log_level, logging.WARNING))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bayesian power analysis and decision summary for listening-time experiments")
    parser.add_argument("--mode", choices=["power", "n-for-rate", "analyze"], default="power")
    # Simulation
    parser.add_argument("--n-per-group", type=int, default=150, help="Subjects per arm when mode=power or analyze without --data")
    parser.add_argument("--true-effect", type=float, default=5.0, help="True treatment effect in minutes (simulation)")
    parser.add_argument("--baseline-mean", type=float, default=45.0, help="Control mean listening time (simulation)")
    parser.add_argument("--noise-scale", type=float, default=15.0, help="Per-subject SD of listening time (simulation)")
    parser.add_argument("--seed", type=int, default=12345, help="Random seed")
    parser.add_argument("--attrition-rate", type=float, default=0.0, help="Expected dropout rate (0-1). Used to inflate enrollment.")
    # Model priors
    parser.add_argument("--prior-baseline-mu", type=float, default=45.0, help="Prior mean of control listening time")
    parser.add_argument("--prior-baseline-sigma", type=float, default=20.0, help="Prior SD of control listening time")
    parser.add_argument("--prior-effect-sigma", type=float, default=10.0, help="Prior SD of the treatment effect")
    parser.add_argument("--prior-noise-beta", type=float, default=10.0, help="HalfCauchy scale of the noise SD")
    # Sampler
    parser.add_argument("--backend", choices=sorted(SAMPLERS), default="grid", help="Posterior sampler")
    parser.add_argument("--draws", type=int, default=1000, help="Posterior draws per chain")
    parser.add_argument("--chains", type=int, default=2, help="Independent chains")
    parser.add_argument("--tune", type=int, default=1000, help="Tuning steps per chain (pymc only)")
    parser.add_argument("--rhat-threshold", type=float, default=DEFAULT_RHAT_THRESHOLD, help="Max acceptable R-hat")
    # Power analysis
    parser.add_argument("--candidates", type=int, nargs="+", default=None, help="Ascending per-group sizes for mode=n-for-rate (default: analytic grid)")
    parser.add_argument("--target-rate", type=float, default=0.8, help="Target detection rate for mode=n-for-rate")
    parser.add_argument("--repetitions", type=int, default=200, help="Simulated trials per candidate size")
    parser.add_argument("--detect-probability", type=float, default=0.95, help="Detection rule: P(effect beyond threshold) must exceed this")
    parser.add_argument("--evaluate-all", action="store_true", help="Evaluate every candidate instead of stopping at the first qualifying size")
    parser.add_argument("--max-trials", type=int, default=None, help="Refuse searches needing more sampler calls than this")
    parser.add_argument("--n-jobs", type=int, default=1, help="Worker processes (-1 uses all cores)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Trials per task when parallelized")
    # Summary
    parser.add_argument("--data", type=str, default=None, help="CSV with group,outcome columns for mode=analyze")
    parser.add_argument("--credible-level", type=float, default=0.95, help="Credible interval mass")
    parser.add_argument("--interval", choices=["equal_tailed", "hdi"], default="equal_tailed")
    parser.add_argument("--direction", choices=["greater", "less"], default="greater")
    parser.add_argument("--threshold", type=float, default=0.0, help="Effect threshold for the one-sided probability")
    parser.add_argument("--confidence-level", type=float, default=0.95, help="Posterior probability needed for 'supported'")
    # Outputs for downstream plotting
    parser.add_argument("--draws-csv", type=str, default=None, help="Write posterior draws (mode=analyze)")
    parser.add_argument("--curve-csv", type=str, default=None, help="Write the rate-vs-size curve (mode=n-for-rate)")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    model = ListeningTimeModel(
        baseline_mu=args.prior_baseline_mu,
        baseline_sigma=args.prior_baseline_sigma,
        effect_sigma=args.prior_effect_sigma,
        noise_beta=args.prior_noise_beta,
    )
    sampler = SamplerSettings(
        backend=args.backend,
        draws=args.draws,
        chains=args.chains,
        tune=args.tune,
        rhat_threshold=args.rhat_threshold,
    )
    rule = ProbabilityRule(probability=args.detect_probability, threshold=args.threshold, direction=args.direction)
    base_spec = ListeningTrialSpec(
        n_per_group=args.n_per_group,
        true_effect=args.true_effect,
        baseline_mean=args.baseline_mean,
        noise_scale=args.noise_scale,
        seed=args.seed,
        attrition_rate=args.attrition_rate,
    )

    if args.mode == "power":
        rate, avg = simulate_detection_rate(
            base_spec,
            repetitions=args.repetitions,
            detection_rule=rule,
            model=model,
            sampler=sampler,
            n_jobs=args.n_jobs,
            chunk_size=args.chunk_size,
        )
        k = int(round(rate * args.repetitions))
        ci_low, ci_high = binomial_wilson_ci(k, args.repetitions)
        approx = analytic_detection_rate(
            args.n_per_group, args.true_effect, args.noise_scale, args.detect_probability, args.threshold, args.direction
        )
        print("Detection rate (simulation)")
        print(f"  N per group: {args.n_per_group}")
        if args.attrition_rate > 0:
            print(f"  Expected attrition: {args.attrition_rate:.1%}")
            print(f"  Required enrollment per group: {inflate_for_attrition(args.n_per_group, args.attrition_rate)}")
        print(f"  True effect: {args.true_effect} minutes, noise SD: {args.noise_scale}, baseline: {args.baseline_mean}")
        print(f"  Rule: P(effect {'>' if args.direction == 'greater' else '<'} {args.threshold:g}) > {args.detect_probability}")
        print(f"  backend={args.backend}, repetitions={args.repetitions}, n_jobs={args.n_jobs}")
        print(f"  Estimated detection rate: {rate:.3f}")
        print(f"  95% CI: [{ci_low:.3f}, {ci_high:.3f}]")
        print(f"  Analytic approximation: {approx:.3f}")
        print(f"  Avg posterior mean effect: {avg:.2f}")
        return 0

    if args.mode == "n-for-rate":
        candidates = args.candidates
        if candidates is None:
            try:
                candidates = suggest_candidate_sizes(
                    args.target_rate, args.true_effect, args.noise_scale,
                    args.detect_probability, args.threshold, args.direction,
                )
            except InvalidParameter as exc:
                parser.error(f"{exc}; pass --candidates to search explicit sizes")
        recommendation = recommend_sample_size(
            candidates,
            args.true_effect,
            rule,
            target_rate=args.target_rate,
            repetitions=args.repetitions,
            baseline_mean=args.baseline_mean,
            noise_scale=args.noise_scale,
            seed=args.seed,
            attrition_rate=args.attrition_rate,
            model=model,
            sampler=sampler,
            evaluate_all=args.evaluate_all,
            n_jobs=args.n_jobs,
            chunk_size=args.chunk_size,
            max_trials=args.max_trials,
        )
        print("Sample size for target detection rate (simulation)")
        print(f"  Target detection rate: {args.target_rate}")
        if recommendation.found:
            print(f"  Recommended N per group: {recommendation.n_per_group}")
            print(f"  Detection rate at N: {recommendation.detection_rate:.3f}")
            if args.attrition_rate > 0:
                print(f"  With {args.attrition_rate:.1%} attrition, enrollment per group: "
                      f"{inflate_for_attrition(recommendation.n_per_group, args.attrition_rate)}")
        else:
            print(f"  No candidate reached the target (largest tried: {recommendation.curve['n_per_group'].max()})")
        print(recommendation.curve.to_string(index=False))
        if args.curve_csv:
            recommendation.curve.to_csv(args.curve_csv, index=False)
            log.info("wrote curve to %s", args.curve_csv)
        return 0

    if args.data:
        data = load_dataset(args.data)
    else:
        data = simulate(args.n_per_group, args.true_effect, args.baseline_mean, args.noise_scale, rng_seed=args.seed)
    draws = sample_posterior(
        data,
        model,
        backend=args.backend,
        draws=args.draws,
        chains=args.chains,
        seed=args.seed,
        tune=args.tune,
    )
    summary = summarize(
        draws,
        credible_level=args.credible_level,
        direction=args.direction,
        threshold=args.threshold,
        confidence_level=args.confidence_level,
        interval=args.interval,
        rhat_threshold=args.rhat_threshold,
    )
    print(format_summary(summary, ols_reference(data)))
    if args.draws_csv:
        draws.to_frame().to_csv(args.draws_csv, index=False)
        log.info("wrote %d draws to %s", len(draws), args.draws_csv)
    return 0 if summary.trustworthy else 2


if __name__ == "__main__":
    sys.exit(main())
