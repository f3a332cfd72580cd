import numpy as np
import pandas as pd
import pytest

import listening_time.data as ltd
from listening_time.errors import InvalidParameter


class TestSimulate:
    @pytest.mark.parametrize("n", [1, 7, 150])
    def test_size_and_labels_split_in_half(self, n):
        df = ltd.simulate(n, true_effect=5.0, baseline_mean=45.0, noise_scale=15.0, rng_seed=1)
        assert len(df) == 2 * n
        counts = df["group"].value_counts()
        assert counts["control"] == n
        assert counts["treatment"] == n
        assert isinstance(df["group"].dtype, pd.CategoricalDtype)

    def test_same_seed_same_dataset(self):
        a = ltd.simulate(40, 3.0, 45.0, 15.0, rng_seed=123)
        b = ltd.simulate(40, 3.0, 45.0, 15.0, rng_seed=123)
        pd.testing.assert_frame_equal(a, b)

    def test_different_seed_different_outcomes(self):
        a = ltd.simulate(40, 3.0, 45.0, 15.0, rng_seed=1)
        b = ltd.simulate(40, 3.0, 45.0, 15.0, rng_seed=2)
        assert not np.allclose(a["outcome"], b["outcome"])

    def test_group_means_track_parameters(self):
        df = ltd.simulate(20000, true_effect=5.0, baseline_mean=45.0, noise_scale=15.0, rng_seed=7)
        control, treatment = ltd.group_outcomes(df)
        # SE of each mean is 15 / sqrt(20000) ~ 0.11
        assert abs(control.mean() - 45.0) < 0.5
        assert abs(treatment.mean() - control.mean() - 5.0) < 0.7
        assert abs(control.std(ddof=1) - 15.0) < 0.5

    @pytest.mark.parametrize("n", [0, -3])
    def test_non_positive_size_rejected(self, n):
        with pytest.raises(InvalidParameter):
            ltd.simulate(n, 5.0, 45.0, 15.0, rng_seed=1)

    @pytest.mark.parametrize("scale", [0.0, -1.0, float("nan")])
    def test_non_positive_noise_rejected(self, scale):
        with pytest.raises(InvalidParameter):
            ltd.simulate(10, 5.0, 45.0, scale, rng_seed=1)

    def test_invalid_parameter_is_value_error(self):
        with pytest.raises(ValueError):
            ltd.simulate(0, 5.0)


class TestValidateDataset:
    def test_normalises_labels(self):
        df = pd.DataFrame({"group": ["Control", " treatment", "control"], "outcome": [1.0, 2.0, 3.0]})
        out = ltd.validate_dataset(df)
        assert list(out["group"].astype(str)) == ["control", "treatment", "control"]

    def test_empty_group_rejected(self):
        df = pd.DataFrame({"group": ["control", "control"], "outcome": [1.0, 2.0]})
        with pytest.raises(InvalidParameter, match="treatment"):
            ltd.validate_dataset(df)

    def test_unknown_label_rejected(self):
        df = pd.DataFrame({"group": ["control", "variant_b"], "outcome": [1.0, 2.0]})
        with pytest.raises(InvalidParameter):
            ltd.validate_dataset(df)

    def test_nan_outcome_rejected(self):
        df = pd.DataFrame({"group": ["control", "treatment"], "outcome": [1.0, np.nan]})
        with pytest.raises(InvalidParameter):
            ltd.validate_dataset(df)

    def test_missing_column_rejected(self):
        with pytest.raises(InvalidParameter):
            ltd.validate_dataset(pd.DataFrame({"group": ["control"]}))

    def test_load_dataset_round_trip(self, tmp_path):
        path = tmp_path / "results.csv"
        pd.DataFrame({"group": ["control", "treatment"] * 3, "outcome": [40, 50, 42, 48, 41, 52]}).to_csv(path, index=False)
        df = ltd.load_dataset(str(path))
        assert len(df) == 6
        assert "id" in df.columns
        assert df["outcome"].dtype == float


class TestValidateProbability:
    def test_bounds(self):
        ltd.validate_probability(0.0, "p")
        ltd.validate_probability(1.0, "p")
        with pytest.raises(InvalidParameter):
            ltd.validate_probability(1.0, "p", allow_one=False)
        with pytest.raises(InvalidParameter):
            ltd.validate_probability(0.0, "p", allow_zero=False)
        with pytest.raises(InvalidParameter):
            ltd.validate_probability(float("nan"), "p")
