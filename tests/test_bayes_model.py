import math

import numpy as np
import pandas as pd
import pymc as pm
import pytest

import listening_time.bayes_model as lbm
import listening_time.data as ltd
import listening_time.posterior_summary as lps
from listening_time.errors import InvalidParameter


def _dataset(n=150, effect=5.0, seed=123):
    return ltd.simulate(n, effect, baseline_mean=45.0, noise_scale=15.0, rng_seed=seed)


class TestListeningTimeModel:
    def test_defaults_validate(self):
        lbm.ListeningTimeModel().validate()

    @pytest.mark.parametrize("field", ["baseline_sigma", "effect_sigma", "noise_beta"])
    def test_non_positive_scale_rejected(self, field):
        model = lbm.ListeningTimeModel(**{field: 0.0})
        with pytest.raises(InvalidParameter):
            model.validate()

    def test_build_pymc_model_declares_parameters(self):
        pm_model = lbm.build_pymc_model(_dataset(n=10), lbm.ListeningTimeModel())
        names = {rv.name for rv in pm_model.free_RVs}
        assert names == {"baseline_mean", "treatment_effect", "noise_scale"}
        assert [rv.name for rv in pm_model.observed_RVs] == ["outcome"]
        assert isinstance(pm_model, pm.Model)


class TestGridSampler:
    def test_shapes_and_read_only(self):
        draws = lbm.sample_posterior(_dataset(), draws=300, chains=3, seed=1)
        assert draws.backend == "grid"
        assert draws.treatment_effect.shape == (3, 300)
        assert len(draws) == 900
        assert np.all(draws.noise_scale > 0)
        with pytest.raises(ValueError):
            draws.treatment_effect[0, 0] = 1.0

    def test_reproducible_with_seed(self):
        data = _dataset()
        a = lbm.sample_posterior(data, draws=200, seed=9)
        b = lbm.sample_posterior(data, draws=200, seed=9)
        np.testing.assert_array_equal(a.treatment_effect, b.treatment_effect)
        np.testing.assert_array_equal(a.noise_scale, b.noise_scale)

    def test_matches_ols_under_weak_priors(self):
        data = _dataset(n=400, seed=5)
        draws = lbm.sample_posterior(data, draws=4000, chains=2, seed=3)
        ref = lps.ols_reference(data)
        effect = draws.effect_samples()
        # Prior SD 10 vs posterior SD ~1 gives ~1% shrinkage towards zero
        assert abs(effect.mean() - ref["coef"]) < 0.15 + 0.03 * abs(ref["coef"])
        assert effect.std(ddof=1) == pytest.approx(ref["se"], rel=0.1)
        control, treatment = ltd.group_outcomes(data)
        pooled_sd = math.sqrt((control.var(ddof=1) + treatment.var(ddof=1)) / 2.0)
        assert draws.noise_scale.mean() == pytest.approx(pooled_sd, rel=0.05)

    def test_convergence_diagnostics_present(self):
        draws = lbm.sample_posterior(_dataset(), draws=1000, chains=2, seed=11)
        assert set(draws.rhat) == set(lbm.PARAMETERS)
        for name in lbm.PARAMETERS:
            assert draws.rhat[name] < 1.05
            assert draws.ess[name] > 500

    def test_zero_within_group_variance_rejected(self):
        df = pd.DataFrame({
            "group": ["control"] * 3 + ["treatment"] * 3,
            "outcome": [40.0] * 3 + [45.0] * 3,
        })
        with pytest.raises(InvalidParameter):
            lbm.sample_posterior(df, draws=50)

    def test_one_subject_per_arm_still_samples(self):
        df = pd.DataFrame({"group": ["control", "treatment"], "outcome": [40.0, 47.0]})
        draws = lbm.sample_posterior(df, draws=200, seed=2)
        assert np.all(np.isfinite(draws.treatment_effect))

    def test_unknown_backend_rejected(self):
        with pytest.raises(InvalidParameter):
            lbm.sample_posterior(_dataset(n=5), backend="metropolis")

    @pytest.mark.parametrize("kwargs", [{"draws": 0}, {"chains": 0}, {"tune": -1}])
    def test_bad_sampler_settings_rejected(self, kwargs):
        with pytest.raises(InvalidParameter):
            lbm.sample_posterior(_dataset(n=5), **kwargs)

    def test_callable_backend_receives_fixed_model(self):
        seen = []

        def fake_backend(data, model, *, draws, chains, seed, tune):
            seen.append(model)
            arrays = {name: np.ones((chains, draws)) for name in lbm.PARAMETERS}
            return lbm.PosteriorDraws.from_arrays(arrays, "fake")

        model = lbm.ListeningTimeModel(effect_sigma=3.0)
        data = _dataset(n=5)
        lbm.sample_posterior(data, model, backend=fake_backend, draws=10, chains=1)
        lbm.sample_posterior(data, model, backend=fake_backend, draws=10, chains=1)
        assert seen == [model, model]


class TestPosteriorDrawsExport:
    def test_to_frame_long_format(self):
        draws = lbm.sample_posterior(_dataset(n=20), draws=50, chains=2, seed=4)
        frame = draws.to_frame()
        assert len(frame) == 100
        assert list(frame.columns) == ["chain", "draw", "baseline_mean", "treatment_effect", "noise_scale"]
        assert frame["chain"].nunique() == 2

    def test_to_inference_data(self):
        draws = lbm.sample_posterior(_dataset(n=20), draws=50, chains=2, seed=4)
        idata = draws.to_inference_data()
        assert idata.posterior["treatment_effect"].shape == (2, 50)

    def test_check_convergence_flags_disagreeing_chains(self):
        rng = np.random.default_rng(0)
        effect = np.vstack([rng.normal(0.0, 1.0, 500), rng.normal(5.0, 1.0, 500)])
        arrays = {
            "baseline_mean": rng.normal(45.0, 1.0, (2, 500)),
            "treatment_effect": effect,
            "noise_scale": np.abs(rng.normal(15.0, 1.0, (2, 500))),
        }
        draws = lbm.PosteriorDraws.from_arrays(arrays, "synthetic")
        messages = lbm.check_convergence(draws)
        assert any("treatment_effect" in m for m in messages)

    def test_too_few_draws_reports_undefined_rhat(self):
        arrays = {name: np.ones((2, 3)) for name in lbm.PARAMETERS}
        draws = lbm.PosteriorDraws.from_arrays(arrays, "synthetic")
        assert all(math.isnan(v) for v in draws.rhat.values())
        assert len(lbm.check_convergence(draws)) == 3


class TestPymcBackend:
    def test_nuts_agrees_with_grid(self):
        data = _dataset(n=100, seed=21)
        nuts = lbm.sample_posterior(data, backend="pymc", draws=500, tune=500, chains=2, seed=21)
        grid = lbm.sample_posterior(data, backend="grid", draws=2000, chains=2, seed=21)
        assert nuts.backend == "pymc"
        assert nuts.treatment_effect.shape == (2, 500)
        assert nuts.idata is not None
        assert abs(nuts.effect_samples().mean() - grid.effect_samples().mean()) < 0.6
        assert nuts.effect_samples().std() == pytest.approx(grid.effect_samples().std(), rel=0.2)
