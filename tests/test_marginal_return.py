"""
Tests for the marginal return estimator.
"""

import logging
from datetime import timedelta

import pytest

from ad_spend_optimizer import OptimizerConfig, PerformanceAggregator, RawPerformanceRecord
from ad_spend_optimizer.marginal_return import MarginalReturnEstimator

from conftest import T0

END = T0 + timedelta(days=7)


def _window(segment_id, daily):
    """daily: list of (clicks, spend, sales) tuples, one per day from T0"""
    records = [
        RawPerformanceRecord(segment_id, T0 + timedelta(days=i), clicks=c, spend=s, sales=v, orders=1)
        for i, (c, s, v) in enumerate(daily)
    ]
    return PerformanceAggregator().aggregate(records, [segment_id], T0, END)[segment_id]


@pytest.fixture
def estimator():
    return MarginalReturnEstimator(OptimizerConfig().to_dict())


def test_curve_slope_from_varying_spend(estimator):
    spend = [10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 70.0]
    window = _window('pl-1', [(10, s, 2 * s + 5) for s in spend])

    estimate = estimator.estimate(window, campaign_average=1.0)
    assert estimate.method == 'curve_slope'
    assert estimate.value == pytest.approx(2.0)
    assert estimate.confidence == pytest.approx(0.8)


def test_flat_spend_falls_back_to_trailing_roas(estimator):
    window = _window('pl-1', [(10, 10.0, 30.0)] * 7)

    estimate = estimator.estimate(window, campaign_average=1.0)
    assert estimate.method == 'trailing_roas'
    assert estimate.value == pytest.approx(3.0)
    # 70 clicks: 0.3 + 70 / 200
    assert estimate.confidence == pytest.approx(0.65)


def test_negative_slope_falls_back_to_trailing_roas(estimator):
    spend = [10.0, 20.0, 30.0, 40.0, 50.0]
    window = _window('pl-1', [(10, s, 200 - 2 * s) for s in spend])

    estimate = estimator.estimate(window, campaign_average=1.0)
    assert estimate.method == 'trailing_roas'
    assert estimate.value == pytest.approx(window.roas)


def test_too_few_points_for_a_curve(estimator):
    window = _window('pl-1', [(15, 10.0, 20.0), (15, 30.0, 60.0)])

    estimate = estimator.estimate(window, campaign_average=1.0)
    assert estimate.method == 'trailing_roas'
    assert estimate.value == pytest.approx(2.0)


def test_thin_data_uses_campaign_average(estimator, caplog):
    window = _window('kw-1', [(2, 5.0, 0.0)] * 3)

    with caplog.at_level(logging.WARNING, logger='ad_spend_optimizer.marginal_return'):
        estimate = estimator.estimate(window, campaign_average=2.5)
    assert 'using campaign average 2.50' in caplog.text
    assert estimate.method == 'campaign_average'
    assert estimate.value == pytest.approx(2.5)
    assert estimate.confidence == pytest.approx(0.3)


def test_every_window_gets_an_estimate(estimator):
    busy = _window('pl-1', [(10, 10.0, 40.0)] * 7)
    idle = _window('pl-2', [])

    estimates = estimator.estimate_all([busy, idle])
    assert set(estimates) == {'pl-1', 'pl-2'}
    assert estimates['pl-2'].method == 'campaign_average'
    # Campaign average is spend-weighted across the scope
    assert estimates['pl-2'].value == pytest.approx(4.0)


def test_campaign_average_with_no_spend_is_zero(estimator):
    assert estimator.campaign_average([_window('kw-1', [])]) == 0.0
