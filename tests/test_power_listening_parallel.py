import threading
import time

import pandas as pd
import pytest

import listening_time.power_listening as plp
from listening_time.errors import AnalysisCancelled


FAST = plp.SamplerSettings(backend="grid", draws=400, chains=2)


def _default_spec(seed: int = 2024) -> plp.ListeningTrialSpec:
    return plp.ListeningTrialSpec(
        n_per_group=60,
        true_effect=5.0,
        baseline_mean=45.0,
        noise_scale=15.0,
        seed=seed,
    )


def test_simulate_detection_rate_parallel_reproducible():
    spec = _default_spec()
    rate1, avg1 = plp.simulate_detection_rate(spec, repetitions=48, sampler=FAST, n_jobs=3, chunk_size=8)
    rate2, avg2 = plp.simulate_detection_rate(spec, repetitions=48, sampler=FAST, n_jobs=3, chunk_size=8)
    assert rate1 == rate2
    assert avg1 == avg2


def test_parallel_matches_serial_exactly():
    spec = _default_spec()
    serial = plp.simulate_detection_rate(spec, repetitions=40, sampler=FAST, n_jobs=1)
    parallel = plp.simulate_detection_rate(spec, repetitions=40, sampler=FAST, n_jobs=4, chunk_size=6)
    assert serial[0] == parallel[0]
    assert serial[1] == pytest.approx(parallel[1], rel=1e-12)


def test_evaluate_all_parallel_curve_matches_serial():
    kwargs = dict(true_effect=5.0, target_rate=0.7, repetitions=30, sampler=FAST, seed=5, evaluate_all=True)
    serial = plp.recommend_sample_size([20, 60, 120], n_jobs=1, **kwargs)
    parallel = plp.recommend_sample_size([20, 60, 120], n_jobs=3, chunk_size=7, **kwargs)
    assert serial.n_per_group == parallel.n_per_group
    pd.testing.assert_series_equal(serial.curve["detections"], parallel.curve["detections"])


def test_power_curve_columns():
    curve = plp.power_curve(_default_spec(), [20, 60], repetitions=20, sampler=FAST, n_jobs=2, chunk_size=10)
    assert {"n_per_group", "detection_rate", "ci_low", "ci_high", "avg_effect", "nonconverged"} <= set(curve.columns)
    assert list(curve["n_per_group"]) == [20, 60]


def test_parallel_cancellation_before_start():
    event = threading.Event()
    event.set()
    with pytest.raises(AnalysisCancelled):
        plp.recommend_sample_size(
            [20, 60], true_effect=5.0, repetitions=20, sampler=FAST,
            n_jobs=2, chunk_size=5, cancel_event=event,
        )


def test_parallel_accepts_unpicklable_rule():
    rec = plp.recommend_sample_size(
        [10, 20], 5.0, detection_rule=lambda d: True, target_rate=1.0,
        repetitions=4, sampler=FAST, n_jobs=2, chunk_size=2,
    )
    assert rec.n_per_group == 10
    assert rec.detection_rate == 1.0


def test_parallel_cancellation_mid_run():
    event = threading.Event()
    calls = []
    lock = threading.Lock()

    def rule(draws):
        with lock:
            calls.append(1)
        event.set()
        time.sleep(0.02)
        return False

    with pytest.raises(AnalysisCancelled):
        plp.recommend_sample_size(
            [20, 60], true_effect=5.0, detection_rule=rule, repetitions=20,
            sampler=FAST, n_jobs=2, chunk_size=1, cancel_event=event,
        )
    assert 0 < len(calls) < 20
