"""
Bayesian two-group model for listening time and its posterior samplers.

Model
-----
    baseline_mean    ~ Normal(mu0, sigma0)
    treatment_effect ~ Normal(0, tau)
    noise_scale      ~ HalfCauchy(gamma)
    outcome_i        ~ Normal(baseline_mean + treatment_effect * I[treatment_i], noise_scale)

The prior constants (mu0, sigma0, tau, gamma) live on ``ListeningTimeModel``
and are fixed before any data is seen; samplers receive the same object on
every call and never adjust it.

Backends
--------
- ``"pymc"``: NUTS via ``pm.sample`` on the model returned by
  ``build_pymc_model``.
- ``"grid"``: exact-model sampler that integrates out the two regression
  coefficients analytically (they are Gaussian given noise_scale), evaluates
  the marginal posterior of noise_scale on a log-spaced grid, draws
  noise_scale from it and then the coefficients from their conditional
  Gaussian. Draws are independent, which makes it the cheap choice for power
  analysis where thousands of fits are needed.
- Any callable ``fn(data, model, *, draws, chains, seed, tune) -> PosteriorDraws``.

Every backend returns ``PosteriorDraws`` with arrays shaped (chains, draws),
per-parameter R-hat and ESS (ArviZ) and free-form sampler notes.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm

from listening_time.data import TREATMENT, group_outcomes, validate_dataset, validate_finite, validate_positive
from listening_time.errors import InvalidParameter


PARAMETERS = ("baseline_mean", "treatment_effect", "noise_scale")
DEFAULT_RHAT_THRESHOLD = 1.01
GRID_POINTS = 400
# Posterior mass allowed in the two outermost grid cells before a note is raised.
_GRID_EDGE_TOL = 1e-4

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListeningTimeModel:
    baseline_mu: float = 45.0     # mu0: prior mean of control listening time (minutes)
    baseline_sigma: float = 20.0  # sigma0: prior SD of control listening time
    effect_sigma: float = 10.0    # tau: prior SD of the treatment effect
    noise_beta: float = 10.0      # gamma: HalfCauchy scale of the per-subject noise

    def validate(self) -> None:
        validate_finite(self.baseline_mu, "baseline_mu")
        validate_positive(self.baseline_sigma, "baseline_sigma")
        validate_positive(self.effect_sigma, "effect_sigma")
        validate_positive(self.noise_beta, "noise_beta")


@dataclass(frozen=True, eq=False)
class PosteriorDraws:
    """Read-only posterior draws, arrays shaped (chains, draws)."""

    baseline_mean: np.ndarray
    treatment_effect: np.ndarray
    noise_scale: np.ndarray
    backend: str
    rhat: Mapping[str, float] = field(default_factory=dict)
    ess: Mapping[str, float] = field(default_factory=dict)
    notes: Tuple[str, ...] = ()
    idata: Optional[az.InferenceData] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_arrays(
        cls,
        arrays: Mapping[str, np.ndarray],
        backend: str,
        notes: Tuple[str, ...] = (),
        idata: Optional[az.InferenceData] = None,
    ) -> "PosteriorDraws":
        frozen = {}
        for name in PARAMETERS:
            arr = np.array(arrays[name], dtype=float, copy=True)
            if arr.ndim == 1:
                arr = arr[np.newaxis, :]
            arr.setflags(write=False)
            frozen[name] = arr
        rhat, ess = _chain_diagnostics(frozen)
        return cls(
            baseline_mean=frozen["baseline_mean"],
            treatment_effect=frozen["treatment_effect"],
            noise_scale=frozen["noise_scale"],
            backend=backend,
            rhat=rhat,
            ess=ess,
            notes=tuple(notes),
            idata=idata,
        )

    @property
    def chains(self) -> int:
        return int(self.treatment_effect.shape[0])

    @property
    def draws_per_chain(self) -> int:
        return int(self.treatment_effect.shape[1])

    def __len__(self) -> int:
        return int(self.treatment_effect.size)

    def effect_samples(self) -> np.ndarray:
        """Flattened treatment_effect draws (chain-major)."""
        return self.treatment_effect.reshape(-1)

    def to_frame(self) -> pd.DataFrame:
        """Long-format draws for downstream plotting."""
        chain_idx, draw_idx = np.meshgrid(
            np.arange(self.chains), np.arange(self.draws_per_chain), indexing="ij"
        )
        return pd.DataFrame({
            "chain": chain_idx.reshape(-1),
            "draw": draw_idx.reshape(-1),
            **{name: getattr(self, name).reshape(-1) for name in PARAMETERS},
        })

    def to_inference_data(self) -> az.InferenceData:
        if self.idata is not None:
            return self.idata
        return az.from_dict(posterior={name: np.asarray(getattr(self, name)) for name in PARAMETERS})


def _chain_diagnostics(arrays: Mapping[str, np.ndarray]) -> Tuple[Dict[str, float], Dict[str, float]]:
    """R-hat and bulk ESS per parameter; NaN where they cannot be computed."""
    n_draws = arrays["treatment_effect"].shape[1]
    if n_draws < 4:
        nan = {name: float("nan") for name in PARAMETERS}
        return nan, dict(nan)
    idata = az.from_dict(posterior={name: np.asarray(arr) for name, arr in arrays.items()})
    with warnings.catch_warnings(), np.errstate(invalid="ignore", divide="ignore"):
        # Constant chains make ArviZ emit RuntimeWarnings; the NaN is reported instead.
        warnings.simplefilter("ignore", RuntimeWarning)
        rhat_ds = az.rhat(idata)
        ess_ds = az.ess(idata)
    rhat = {name: float(rhat_ds[name]) for name in PARAMETERS}
    ess = {name: float(ess_ds[name]) for name in PARAMETERS}
    return rhat, ess


def check_convergence(draws: PosteriorDraws, rhat_threshold: float = DEFAULT_RHAT_THRESHOLD) -> Tuple[str, ...]:
    """Return one message per parameter whose R-hat exceeds the threshold or is undefined."""
    messages = []
    for name in PARAMETERS:
        value = draws.rhat.get(name, float("nan"))
        if not math.isfinite(value):
            messages.append(f"R-hat for {name} could not be computed")
        elif value > rhat_threshold:
            messages.append(f"R-hat for {name} is {value:.4f} (> {rhat_threshold})")
    return tuple(messages)


def build_pymc_model(data: pd.DataFrame, model: ListeningTimeModel) -> pm.Model:
    """Declare the two-group model for ``data`` without sampling it."""
    df = validate_dataset(data)
    treat = (df["group"] == TREATMENT).to_numpy(dtype=float)
    coords = {"obs": np.arange(len(df))}

    with pm.Model(coords=coords) as pm_model:
        baseline_mean = pm.Normal("baseline_mean", mu=model.baseline_mu, sigma=model.baseline_sigma)
        treatment_effect = pm.Normal("treatment_effect", mu=0.0, sigma=model.effect_sigma)
        noise_scale = pm.HalfCauchy("noise_scale", beta=model.noise_beta)

        pm.Normal(
            "outcome",
            mu=baseline_mean + treatment_effect * treat,
            sigma=noise_scale,
            observed=df["outcome"].to_numpy(dtype=float),
            dims="obs",
        )

    return pm_model


def _sample_pymc(
    data: pd.DataFrame,
    model: ListeningTimeModel,
    *,
    draws: int,
    chains: int,
    seed: Optional[int],
    tune: int,
) -> PosteriorDraws:
    pm_model = build_pymc_model(data, model)
    with pm_model:
        idata = pm.sample(
            draws=draws,
            tune=tune,
            chains=chains,
            cores=1,
            random_seed=seed,
            progressbar=False,
            compute_convergence_checks=False,
        )

    arrays = {name: idata.posterior[name].values for name in PARAMETERS}
    notes = []
    diverging = int(idata.sample_stats["diverging"].sum())
    if diverging:
        notes.append(f"{diverging} divergent transitions")
    return PosteriorDraws.from_arrays(arrays, "pymc", tuple(notes), idata=idata)


def _log_marginal_noise(log_s: np.ndarray, stats: dict, model: ListeningTimeModel) -> np.ndarray:
    """Unnormalised log p(log noise_scale | data) with both coefficients integrated out.

    Uses the group means as sufficient statistics:
        ybar ~ N(A m0, A S0 A' + diag(s^2/n0, s^2/n1)),  A = [[1, 0], [1, 1]]
    times the within-group term s^-(n-2) exp(-SSE / 2 s^2).
    """
    s2 = np.exp(2.0 * log_s)
    n0, n1 = stats["n0"], stats["n1"]
    b2, t2 = model.baseline_sigma ** 2, model.effect_sigma ** 2

    cov = np.empty((len(log_s), 2, 2))
    cov[:, 0, 0] = b2 + s2 / n0
    cov[:, 0, 1] = b2
    cov[:, 1, 0] = b2
    cov[:, 1, 1] = b2 + t2 + s2 / n1
    resid = stats["ybar"] - np.array([model.baseline_mu, model.baseline_mu])

    _, logdet = np.linalg.slogdet(cov)
    quad = np.einsum("i,gi->g", resid, np.linalg.solve(cov, np.broadcast_to(resid, (len(log_s), 2))[..., None])[..., 0])
    n_within = n0 + n1 - 2
    loglik = -n_within * log_s - stats["sse"] / (2.0 * s2) - 0.5 * logdet - 0.5 * quad
    # HalfCauchy density in s plus the log-Jacobian of the log-s grid.
    logprior = -np.log1p(s2 / model.noise_beta ** 2) + log_s
    return loglik + logprior


def _conditional_coefficients(s2: np.ndarray, stats: dict, model: ListeningTimeModel) -> Tuple[np.ndarray, np.ndarray]:
    """Mean (K,2) and covariance (K,2,2) of (baseline_mean, treatment_effect) given noise variances s2."""
    n0, n1 = stats["n0"], stats["n1"]
    prec = np.empty((len(s2), 2, 2))
    prec[:, 0, 0] = 1.0 / model.baseline_sigma ** 2 + (n0 + n1) / s2
    prec[:, 0, 1] = n1 / s2
    prec[:, 1, 0] = n1 / s2
    prec[:, 1, 1] = 1.0 / model.effect_sigma ** 2 + n1 / s2
    rhs = np.empty((len(s2), 2))
    rhs[:, 0] = model.baseline_mu / model.baseline_sigma ** 2 + stats["sum_all"] / s2
    rhs[:, 1] = stats["sum_treat"] / s2
    cov = np.linalg.inv(prec)
    mean = np.einsum("kij,kj->ki", cov, rhs)
    return mean, cov


def _sufficient_stats(data: pd.DataFrame) -> dict:
    control, treatment = group_outcomes(data)
    sse = float(((control - control.mean()) ** 2).sum() + ((treatment - treatment.mean()) ** 2).sum())
    return {
        "n0": len(control),
        "n1": len(treatment),
        "ybar": np.array([control.mean(), treatment.mean()]),
        "sum_all": float(control.sum() + treatment.sum()),
        "sum_treat": float(treatment.sum()),
        "sse": sse,
    }


def _noise_grid(stats: dict, model: ListeningTimeModel) -> np.ndarray:
    """Log-spaced integration grid for noise_scale.

    Centred on the pooled within-group SD with a half-width of several
    asymptotic standard errors of log(s); with a single subject per arm the
    data carry no within-group information and the grid follows the prior scale.
    """
    dof = stats["n0"] + stats["n1"] - 2
    if dof <= 0:
        centre, half_width = math.log(model.noise_beta), 8.0
    else:
        if stats["sse"] <= 0:
            raise InvalidParameter("outcomes have zero within-group variance")
        centre = 0.5 * math.log(stats["sse"] / dof)
        half_width = min(max(8.0 / math.sqrt(2.0 * dof), 0.75), 8.0)
    return np.linspace(centre - half_width, centre + half_width, GRID_POINTS)


def _sample_grid(
    data: pd.DataFrame,
    model: ListeningTimeModel,
    *,
    draws: int,
    chains: int,
    seed: Optional[int],
    tune: int = 0,
) -> PosteriorDraws:
    stats = _sufficient_stats(data)
    grid = _noise_grid(stats, model)
    step = grid[1] - grid[0]

    logpost = _log_marginal_noise(grid, stats, model)
    weights = np.exp(logpost - logpost.max())
    weights /= weights.sum()

    notes = []
    edge_mass = float(weights[0] + weights[-1])
    if edge_mass > _GRID_EDGE_TOL:
        notes.append(f"noise_scale posterior mass {edge_mass:.2e} at integration grid edge")
        log.warning("grid sampler: %s", notes[-1])

    out = {name: np.empty((chains, draws)) for name in PARAMETERS}
    for chain, child in enumerate(np.random.SeedSequence(seed).spawn(chains)):
        rng = np.random.default_rng(child)
        idx = rng.choice(GRID_POINTS, size=draws, p=weights)
        log_s = grid[idx] + rng.uniform(-0.5 * step, 0.5 * step, size=draws)
        s = np.exp(log_s)
        mean, cov = _conditional_coefficients(s * s, stats, model)
        chol = np.linalg.cholesky(cov)
        z = rng.standard_normal((draws, 2))
        coef = mean + np.einsum("kij,kj->ki", chol, z)
        out["baseline_mean"][chain] = coef[:, 0]
        out["treatment_effect"][chain] = coef[:, 1]
        out["noise_scale"][chain] = s

    return PosteriorDraws.from_arrays(out, "grid", tuple(notes))


SamplerFn = Callable[..., PosteriorDraws]

SAMPLERS: Dict[str, SamplerFn] = {
    "grid": _sample_grid,
    "pymc": _sample_pymc,
}


def sample_posterior(
    data: pd.DataFrame,
    model: Optional[ListeningTimeModel] = None,
    *,
    backend: Union[str, SamplerFn] = "grid",
    draws: int = 1000,
    chains: int = 2,
    seed: Optional[int] = None,
    tune: int = 1000,
) -> PosteriorDraws:
    """Fit the two-group model to ``data`` and return posterior draws.

    Identical inputs and seed give identical draws for both built-in
    backends. Convergence is not judged here; see ``check_convergence``.
    """
    model = model if model is not None else ListeningTimeModel()
    model.validate()
    if int(draws) != draws or draws <= 0:
        raise InvalidParameter("draws must be a positive integer")
    if int(chains) != chains or chains <= 0:
        raise InvalidParameter("chains must be a positive integer")
    if int(tune) != tune or tune < 0:
        raise InvalidParameter("tune must be a non-negative integer")

    if callable(backend):
        sampler = backend
    else:
        try:
            sampler = SAMPLERS[backend]
        except KeyError:
            raise InvalidParameter(f"unknown sampler backend '{backend}' (choose from {sorted(SAMPLERS)})") from None

    df = validate_dataset(data)
    log.debug("sampling %d observations with backend=%s draws=%d chains=%d", len(df), backend, draws, chains)
    return sampler(df, model, draws=int(draws), chains=int(chains), seed=seed, tune=int(tune))
