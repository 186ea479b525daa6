"""
Tests for the advertising API, webhook and PostgreSQL adapters (network and database mocked).
"""

import os
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import psycopg2
import pytest
import requests

from ad_spend_optimizer import ActionType, ControlChange, ExecutionStatus
from ad_spend_optimizer.ads_api import AdsApiClient, AdsApiMutationClient
from ad_spend_optimizer.database import (
    PostgresRepository, report_from_dict, report_to_dict, segment_from_dict, segment_to_dict
)
from ad_spend_optimizer.notifications import LoggingNotifier, WebhookNotifier, notify_safely

from conftest import T0, BrokenNotifier, keyword, placement, search_term

API_ENV = {
    'ADS_API_BASE_URL': 'https://ads.example.test',
    'ADS_API_TOKEN': 'token',
    'ADS_API_CLIENT_ID': 'client',
    'ADS_API_PROFILE_ID': '42',
}


@pytest.fixture
def api():
    with patch.dict(os.environ, API_ENV, clear=False):
        yield AdsApiMutationClient({'mutation_timeout_seconds': 5})


def test_missing_credentials_are_rejected():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError, match="ADS_API_TOKEN"):
            AdsApiClient({})


def test_keyword_bid_request(api):
    method, endpoint, payload = api.build_request(keyword('kw-1'), ControlChange(ActionType.BID_SET, 0.756))
    assert (method, endpoint) == ('PUT', '/v2/sp/keywords')
    assert payload == [{'keywordId': 'kw-1', 'state': 'enabled', 'bid': 0.76}]


def test_pause_sends_state(api):
    _, _, payload = api.build_request(keyword('kw-1'), ControlChange(ActionType.PAUSE, 1.0, 'paused'))
    assert payload[0]['state'] == 'paused'


def test_placement_adjustment_request(api):
    _, endpoint, payload = api.build_request(placement('pl-1'), ControlChange(ActionType.ADJUSTMENT_SET, 120.0))
    assert endpoint == '/v2/sp/campaigns'
    assert payload[0]['bidding']['adjustments'] == [{'predicate': 'placementTop', 'percentage': 120}]


def test_negation_and_its_rollback(api):
    method, endpoint, payload = api.build_request(
        search_term('st-1'), ControlChange(ActionType.NEGATE_EXACT, 0.0, 'negated_exact'))
    assert (method, endpoint) == ('POST', '/v2/sp/negativeKeywords')
    assert payload[0]['matchType'] == 'negativeExact'

    method, _, payload = api.build_request(
        search_term('st-1'), ControlChange(ActionType.ROLLBACK, 0.0, 'enabled'))
    assert method == 'PUT'
    assert payload[0]['state'] == 'archived'


def test_apply_control_value_posts_to_the_api(api):
    response = MagicMock()
    response.json.return_value = [{'code': 'SUCCESS', 'keywordId': 'kw-1'}]
    with patch('ad_spend_optimizer.ads_api.requests.request', return_value=response) as request:
        result = api.apply_control_value(keyword('kw-1'), ControlChange(ActionType.BID_SET, 1.2))

    assert result.success
    args, kwargs = request.call_args
    assert args == ('PUT', 'https://ads.example.test/v2/sp/keywords')
    assert kwargs['headers']['Amazon-Advertising-API-Scope'] == '42'
    assert kwargs['timeout'] == 5


def test_rejected_item_is_a_failed_result():
    result = AdsApiMutationClient.parse_response([{'code': 'INVALID_ARGUMENT', 'details': 'bid too low'}])
    assert not result.success
    assert result.error == 'INVALID_ARGUMENT: bid too low'


def test_http_errors_propagate(api):
    response = MagicMock()
    response.raise_for_status.side_effect = requests.exceptions.HTTPError('500 Server Error')
    with patch('ad_spend_optimizer.ads_api.requests.request', return_value=response):
        with pytest.raises(requests.exceptions.HTTPError):
            api.apply_control_value(keyword('kw-1'), ControlChange(ActionType.BID_SET, 1.2))


def test_api_failure_becomes_a_failed_ledger_record(api, store, metrics, segments, clock):
    from ad_spend_optimizer import OptimizationEngine, OptimizerConfig

    engine = OptimizationEngine(OptimizerConfig(telemetry_exporter='log'), store, metrics, segments, api,
                                clock=clock)
    with patch('ad_spend_optimizer.ads_api.requests.request',
               side_effect=requests.exceptions.ConnectionError('connection refused')):
        summary = engine.apply_change('cmp-1', keyword('kw-1'), ControlChange(ActionType.BID_SET, 1.2), 'test')

    record = store.get_execution(summary.record_ids[0])
    assert record.status == ExecutionStatus.FAILED
    assert 'connection refused' in record.error


def test_webhook_notifier_posts_json():
    with patch.dict(os.environ, {'NOTIFY_WEBHOOK_URL': 'https://hooks.example.test/x'}):
        notifier = WebhookNotifier({})
    with patch('ad_spend_optimizer.notifications.requests.post') as post:
        notifier.notify('Change #1 rolled back', 'pl-1 restored to 50')

    args, kwargs = post.call_args
    assert args == ('https://hooks.example.test/x',)
    assert kwargs['json']['title'] == 'Change #1 rolled back'


def test_webhook_notifier_requires_url():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError, match="NOTIFY_WEBHOOK_URL"):
            WebhookNotifier({})


def test_notify_safely_swallows_delivery_errors(caplog):
    notify_safely(BrokenNotifier(), 'title', 'body')
    notify_safely(None, 'title', 'body')
    notify_safely(LoggingNotifier(), 'title', 'body')
    assert 'webhook unreachable' in caplog.text


def test_repository_requires_password():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError, match="DB_PASSWORD"):
            PostgresRepository()


def test_repository_aggregates_performance_rows():
    connection = MagicMock()
    cursor = connection.__enter__.return_value.cursor.return_value.__enter__.return_value
    cursor.fetchall.return_value = [
        {'segment_id': 'kw-1', 'period': T0, 'impressions': 100, 'clicks': 10,
         'spend': Decimal('12.50'), 'sales': Decimal('50.00'), 'orders': 2},
        {'segment_id': 'kw-1', 'period': T0 + timedelta(days=2), 'impressions': 100, 'clicks': 10,
         'spend': Decimal('7.50'), 'sales': None, 'orders': 0},
    ]

    repository = PostgresRepository('postgresql://test@localhost/test')
    with patch('ad_spend_optimizer.database.psycopg2.connect', return_value=connection):
        [window] = repository.get_performance_windows(['kw-1'], T0, T0 + timedelta(days=3))

    assert window.spend == pytest.approx(20.0)
    assert window.sales == pytest.approx(50.0)
    assert window.roas == pytest.approx(2.5)
    assert len(window.points) == 3
    query, params = cursor.execute.call_args[0]
    assert 'segment_performance' in query
    assert params == (['kw-1'], T0, T0 + timedelta(days=3))
    connection.close.assert_called_once()


def test_repository_closes_the_connection_when_a_write_fails():
    connection = MagicMock()
    cursor = connection.__enter__.return_value.cursor.return_value.__enter__.return_value
    cursor.execute.side_effect = psycopg2.OperationalError('server closed the connection')

    repository = PostgresRepository('postgresql://test@localhost/test')
    with patch('ad_spend_optimizer.database.psycopg2.connect', return_value=connection):
        with pytest.raises(psycopg2.OperationalError):
            repository.create_schema()
    connection.close.assert_called_once()


def test_segment_and_report_serialization(engine, metrics):
    segment = keyword('kw-1', bid=0.85, state='paused')
    assert segment_from_dict(segment_to_dict(segment)) == segment

    metrics.add_daily('pl-1', T0 - timedelta(days=7), 7, clicks=10, spend=10.0, sales=20.0, orders=1)
    baseline, = metrics.get_performance_windows(['pl-1'], T0 - timedelta(days=7), T0)
    report = engine.tracker.build_report(1, 'pl-1', baseline, baseline, T0)

    restored = report_from_dict(report_to_dict(report))
    assert restored.score == report.score
    assert restored.recommendation == report.recommendation
    assert restored.baseline.spend == baseline.spend
    assert restored.generated_at == T0
