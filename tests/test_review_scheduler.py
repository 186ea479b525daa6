"""
Tests for prediction reviews and automatic rollback during review.
"""

from datetime import timedelta

import pytest

from ad_spend_optimizer import ActionType, ControlChange, ExecutionStatus, ReviewStatus, Suggestion
from ad_spend_optimizer.review_scheduler import prediction_accuracy

from conftest import T0, keyword, placement


def _history(metrics, after_sales):
    metrics.add_daily('pl-1', T0 - timedelta(days=7), 7, clicks=10, spend=10.0, sales=20.0, orders=1)
    metrics.add_daily('pl-1', T0 + timedelta(days=3), 40, clicks=10, spend=10.0, sales=after_sales,
                      orders=1 if after_sales else 0)


def _apply(engine):
    summary = engine.apply_change('cmp-1', placement('pl-1', 50.0),
                                  ControlChange(ActionType.ADJUSTMENT_SET, 80.0), 'raise')
    return summary


def test_one_review_per_horizon(engine, store):
    summary = _apply(engine)

    reviews = [store.get_review(review_id) for review_id in summary.review_ids]
    assert [r.horizon_days for r in reviews] == [7, 14, 30]
    assert all(r.status == ReviewStatus.PENDING for r in reviews)
    prediction = store.get_prediction(reviews[0].prediction_id)
    assert prediction.source_type == 'batch'
    assert prediction.source_id == summary.batch_id


def test_pending_reviews_become_due(engine, clock):
    _apply(engine)

    assert engine.list_pending_reviews() == []
    clock.advance(days=7)
    assert [r.horizon_days for r in engine.list_pending_reviews()] == [7]


def test_review_defers_until_changes_are_evaluable(engine, metrics, clock, store):
    _history(metrics, after_sales=30.0)
    summary = _apply(engine)
    week_review = summary.review_ids[0]

    clock.advance(days=7)
    result = engine.process_review(week_review)

    assert result.deferred
    assert store.get_review(week_review).status == ReviewStatus.PENDING


def test_review_not_due_is_deferred(engine):
    summary = _apply(engine)
    result = engine.process_review(summary.review_ids[-1])
    assert result.deferred


def test_review_completes_with_reports_and_accuracy(engine, metrics, clock, store):
    _history(metrics, after_sales=30.0)
    summary = _apply(engine)

    clock.advance(days=14)
    results = engine.process_due_reviews()

    assert [r.review.horizon_days for r in results] == [7, 14]
    for result in results:
        assert result.review.status == ReviewStatus.COMPLETED
        assert result.review.completed_at == T0 + timedelta(days=14)
        assert [r.segment_id for r in result.reports] == ['pl-1']
        assert 'keep: 1' in result.review.notes
        assert set(result.prediction_accuracy) == {'spend', 'sales', 'overall'}
        assert 0 <= result.prediction_accuracy['overall'] <= 100

    # The 30-day review is still waiting
    pending = store.list_reviews(status=ReviewStatus.PENDING)
    assert [r.review_id for r in pending] == [summary.review_ids[-1]]


def test_completed_review_is_not_processed_again(engine, metrics, clock):
    _history(metrics, after_sales=30.0)
    summary = _apply(engine)
    clock.advance(days=14)

    first = engine.process_review(summary.review_ids[1])
    again = engine.process_review(summary.review_ids[1])

    assert first.review.status == ReviewStatus.COMPLETED
    assert again.review.status == ReviewStatus.COMPLETED
    assert again.reports == ()
    assert not again.deferred


def test_batch_without_applied_changes_is_skipped(engine, client, store, clock):
    client.reject.add('kw-1')
    suggestion = Suggestion('bid_adjustment', keyword('kw-1'), ActionType.BID_SET, 1.0, 1.5,
                            'test', 'high', 'HighAcosRule')
    summary = engine.execute_suggestions('cmp-1', [suggestion])
    assert summary.review_ids == ()

    predictions = engine.predictor.predict(0.0, 0.0, [], 'batch', summary.batch_id, clock())
    [review_id, *_] = engine.reviews.schedule(summary.batch_id, predictions, clock())
    clock.advance(days=7)

    result = engine.process_review(review_id)
    assert result.review.status == ReviewStatus.SKIPPED


def test_review_triggers_auto_rollback(make_engine, metrics, clock, store, client, notifier):
    engine = make_engine(enable_auto_rollback=True)
    _history(metrics, after_sales=5.0)
    summary = _apply(engine)
    original_id = summary.record_ids[0]

    clock.advance(days=14)
    result = engine.process_review(summary.review_ids[1])

    assert result.reports[0].recommendation.value == 'rollback'
    assert len(result.rolled_back) == 1
    assert store.get_execution(original_id).status == ExecutionStatus.ROLLED_BACK
    assert client.values_for('pl-1') == [80.0, 50.0]
    assert 'auto-rolled back 1' in result.review.notes

    # A later review sees the change as rolled back and does not roll back again
    later = engine.process_review(summary.review_ids[0])
    assert later.rolled_back == ()
    assert client.values_for('pl-1') == [80.0, 50.0]


def test_auto_rollback_failure_does_not_fail_the_review(make_engine, metrics, clock, store, client):
    engine = make_engine(enable_auto_rollback=True)
    _history(metrics, after_sales=5.0)
    summary = _apply(engine)
    original_id = summary.record_ids[0]
    client.reject.add('pl-1')

    clock.advance(days=14)
    result = engine.process_review(summary.review_ids[1])

    assert result.review.status == ReviewStatus.COMPLETED
    assert result.rollback_failures == (original_id,)
    assert store.get_execution(original_id).status == ExecutionStatus.APPLIED


def test_auto_rollback_disabled_by_default(engine, metrics, clock, store):
    _history(metrics, after_sales=5.0)
    summary = _apply(engine)

    clock.advance(days=14)
    result = engine.process_review(summary.review_ids[1])

    assert result.rolled_back == ()
    assert store.get_execution(summary.record_ids[0]).status == ExecutionStatus.APPLIED


@pytest.mark.parametrize("predicted, actual, expected", [
    (10.0, 5.0, 50.0),
    (-4.0, -8.0, 50.0),
    (10.0, 10.0, 100.0),
    (0.0, 0.0, 100.0),
    (-10.0, 5.0, 0.0),
    (10.0, 0.0, 0.0),
])
def test_prediction_accuracy(predicted, actual, expected):
    assert prediction_accuracy(predicted, actual) == pytest.approx(expected)
