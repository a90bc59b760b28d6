from __future__ import annotations

import math

from quality.predictor import NetworkSample, QualityAction, QualityPredictor
from quality.profiles import HIGH, MEDIUM, ULTRA_LOW, VERY_HIGH


def _good() -> NetworkSample:
    return NetworkSample(bitrate_kbps=2500, loss_percent=0, rtt_ms=30, jitter_ms=5)


def _bad() -> NetworkSample:
    return NetworkSample(bitrate_kbps=10, loss_percent=50, rtt_ms=2000, jitter_ms=500)


def test_good_network_scores_high_and_eventually_upgrades():
    predictor = QualityPredictor(current_profile=MEDIUM)
    results = [predictor.predict(_good()) for _ in range(7)]

    assert all(result.score > 0.8 for result in results)
    # Stable counter needs five MAINTAIN rounds above the stable threshold first.
    assert all(result.action is QualityAction.MAINTAIN for result in results[:6])
    assert results[6].action is QualityAction.UPGRADE
    assert results[6].suggested_profile == HIGH
    assert results[6].confidence > 0.7


def test_single_bad_sample_does_not_downgrade():
    predictor = QualityPredictor(current_profile=MEDIUM)
    first = predictor.predict(_bad())

    assert first.score < 0.4
    assert first.action is QualityAction.MAINTAIN
    assert first.suggested_profile == MEDIUM


def test_sustained_bad_network_downgrades_after_repeated_samples():
    predictor = QualityPredictor(current_profile=MEDIUM)
    actions = [predictor.predict(_bad()).action for _ in range(4)]

    assert actions[:2] == [QualityAction.MAINTAIN, QualityAction.MAINTAIN]
    assert QualityAction.DOWNGRADE in actions
    downgrade = predictor.evaluate()
    assert downgrade.action is QualityAction.DOWNGRADE
    assert downgrade.suggested_profile.priority == MEDIUM.priority - 1


def test_upgrade_suggestion_clamps_at_top_rung():
    predictor = QualityPredictor(current_profile=VERY_HIGH)
    for _ in range(7):
        result = predictor.predict(_good())

    assert result.action is QualityAction.UPGRADE
    assert result.suggested_profile == VERY_HIGH


def test_evaluate_is_idempotent():
    predictor = QualityPredictor()
    for sample in (_good(), _bad(), _good(), _good()):
        predictor.predict(sample)

    first = predictor.evaluate()
    second = predictor.evaluate()

    assert first == second
    assert predictor.sample_count == 4


def test_non_finite_and_negative_inputs_are_treated_as_zero():
    predictor = QualityPredictor()
    result = predictor.predict(
        NetworkSample(bitrate_kbps=math.nan, loss_percent=math.inf, rtt_ms=-5, jitter_ms=-math.inf)
    )

    assert 0.0 < result.score < 1.0
    assert result.features.avg_bitrate == 0.0
    assert result.features.avg_loss == 0.0
    assert result.features.avg_rtt == 0.0


def test_extreme_inputs_keep_score_inside_unit_interval():
    predictor = QualityPredictor()
    high = predictor.predict(NetworkSample(bitrate_kbps=1e12, loss_percent=0, rtt_ms=0, jitter_ms=0))
    predictor.reset()
    low = predictor.predict(NetworkSample(bitrate_kbps=0, loss_percent=1e12, rtt_ms=0, jitter_ms=0))

    assert 0.0 < high.score < 1.0
    assert 0.0 < low.score < 1.0


def test_confidence_is_neutral_with_few_samples():
    predictor = QualityPredictor()
    assert predictor.predict(_good()).confidence == 0.5
    assert predictor.predict(_good()).confidence == 0.5
    assert predictor.predict(_good()).confidence != 0.5


def test_window_evicts_oldest_samples():
    predictor = QualityPredictor(window_size=10)
    for _ in range(10):
        predictor.predict(_bad())
    for _ in range(10):
        predictor.predict(_good())

    summary = predictor.summary()
    assert summary.sample_count == 10
    assert summary.avg_bitrate == 2500
    assert summary.avg_loss == 0


def test_trend_reflects_improving_bitrate():
    predictor = QualityPredictor()
    for bitrate in (100, 100, 100, 1000, 1000, 1000):
        predictor.predict(NetworkSample(bitrate_kbps=bitrate, loss_percent=0, rtt_ms=50, jitter_ms=5))

    summary = predictor.summary()
    assert 0 < summary.trend <= 1
    assert "Improving connection" in predictor.evaluate().reasoning


def test_set_current_profile_resets_hysteresis():
    predictor = QualityPredictor(current_profile=MEDIUM)
    for _ in range(4):
        predictor.predict(_good())
    assert predictor.stable_count > 0

    predictor.set_current_profile(HIGH)

    assert predictor.stable_count == 0
    assert predictor.degraded_count == 0
    assert predictor.current_profile == HIGH


def test_downgrade_suggestion_clamps_at_bottom_rung():
    predictor = QualityPredictor(current_profile=ULTRA_LOW)
    for _ in range(4):
        result = predictor.predict(_bad())

    assert result.action is QualityAction.DOWNGRADE
    assert result.suggested_profile == ULTRA_LOW
