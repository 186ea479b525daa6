"""
Tests for the rule-based suggestion generator.
"""

from datetime import timedelta

import pytest

from ad_spend_optimizer import ActionType, OptimizerConfig, PerformanceWindow
from ad_spend_optimizer.suggestions import SuggestionGenerator, effective_acos

from conftest import T0, keyword, search_term


def _window(segment_id, clicks=0, spend=0.0, sales=0.0, orders=0, impressions=1000):
    return PerformanceWindow(segment_id, T0 - timedelta(days=7), T0, impressions=impressions,
                             clicks=clicks, spend=spend, sales=sales, orders=orders)


def _suggest(segment, window, **overrides):
    generator = SuggestionGenerator(OptimizerConfig(**overrides).to_dict())
    return generator.generate([segment], {segment.segment_id: window})


def test_heavy_spend_without_orders_pauses():
    [suggestion] = _suggest(keyword('kw-1'), _window('kw-1', clicks=30, spend=60.0))
    assert suggestion.action == ActionType.PAUSE
    assert suggestion.priority == 'high'
    assert suggestion.to_change().state == 'paused'


def test_moderate_spend_without_orders_cuts_bid():
    [suggestion] = _suggest(keyword('kw-1', bid=1.0), _window('kw-1', clicks=15, spend=20.0))
    assert suggestion.action == ActionType.BID_DECREASE
    assert suggestion.priority == 'medium'
    assert suggestion.suggested_value == pytest.approx(0.7)


def test_high_acos_bids_toward_target():
    window = _window('kw-1', clicks=40, spend=60.0, sales=100.0, orders=3)
    [suggestion] = _suggest(keyword('kw-1', bid=1.0), window)

    # CPC 1.50 scaled by 30 / 60
    assert suggestion.action == ActionType.BID_DECREASE
    assert suggestion.suggested_value == pytest.approx(0.75)
    assert suggestion.priority == 'medium'
    assert suggestion.expected_impact.acos_change == pytest.approx(-15.0)


def test_critical_acos_is_high_priority():
    window = _window('kw-1', clicks=100, spend=90.0, sales=100.0, orders=2)
    [suggestion] = _suggest(keyword('kw-1', bid=1.0), window)
    assert suggestion.priority == 'high'
    assert suggestion.suggested_value == pytest.approx(0.3)


def test_acos_bid_has_a_floor():
    window = _window('kw-1', clicks=1000, spend=99.0, sales=100.0, orders=2)
    [suggestion] = _suggest(keyword('kw-1', bid=0.5), window)
    assert suggestion.suggested_value == pytest.approx(0.10)


def test_acos_bid_above_current_is_a_set():
    window = _window('kw-1', clicks=10, spend=60.0, sales=100.0, orders=3)
    [suggestion] = _suggest(keyword('kw-1', bid=1.0), window)
    # CPC 6.00 scaled by 30 / 60 = 3.00 > current bid
    assert suggestion.action == ActionType.BID_SET
    assert suggestion.suggested_value == pytest.approx(3.0)


def test_strong_converter_raises_bid():
    window = _window('kw-1', clicks=20, spend=10.0, sales=100.0, orders=4)
    [suggestion] = _suggest(keyword('kw-1', bid=1.0), window)
    assert suggestion.action == ActionType.BID_INCREASE
    assert suggestion.priority == 'high'
    assert suggestion.suggested_value == pytest.approx(1.3)


def test_paused_target_with_good_history_is_enabled():
    window = _window('kw-1', clicks=20, spend=16.0, sales=80.0, orders=2)
    [suggestion] = _suggest(keyword('kw-1', state='paused'), window)
    assert suggestion.action == ActionType.ENABLE
    assert suggestion.priority == 'medium'
    assert suggestion.to_change().state == 'enabled'


def test_paused_target_is_not_paused_again():
    window = _window('kw-1', clicks=30, spend=60.0)
    assert _suggest(keyword('kw-1', state='paused'), window) == []


def test_wasted_search_term_phrase_negation():
    [suggestion] = _suggest(search_term('st-1'), _window('st-1', clicks=15, spend=20.0))
    assert suggestion.action == ActionType.NEGATE_PHRASE
    assert suggestion.priority == 'medium'
    assert suggestion.suggestion_type == 'negative_keyword'


def test_wasted_search_term_exact_negation():
    [suggestion] = _suggest(search_term('st-1'), _window('st-1', clicks=35, spend=40.0))
    assert suggestion.action == ActionType.NEGATE_EXACT
    assert suggestion.priority == 'high'
    assert suggestion.to_change().state == 'negated_exact'


def test_unprofitable_search_term():
    window = _window('st-1', clicks=5, spend=15.0, sales=10.0, orders=1)
    [suggestion] = _suggest(search_term('st-1'), window)
    assert suggestion.action == ActionType.NEGATE_PHRASE
    assert suggestion.rule_name == 'UnprofitableSearchTermRule'


def test_search_terms_do_not_get_bid_rules():
    window = _window('st-1', clicks=20, spend=10.0, sales=100.0, orders=4)
    assert _suggest(search_term('st-1'), window) == []


def test_first_matching_rule_wins():
    # No orders means ACoS is unbounded too, but only the no-conversion rule fires
    [suggestion] = _suggest(keyword('kw-1'), _window('kw-1', clicks=30, spend=60.0))
    assert suggestion.rule_name == 'NoConversionRule'


def test_quiet_target_gets_no_suggestion():
    assert _suggest(keyword('kw-1'), _window('kw-1', clicks=3, spend=2.0, sales=10.0, orders=1)) == []


def test_top_n_sorted_by_priority():
    segments = [keyword(f"kw-{i}") for i in range(7)]
    windows = {}
    for i, segment in enumerate(segments):
        if i < 2:
            # medium: bid cut
            windows[segment.segment_id] = _window(segment.segment_id, clicks=15, spend=20.0)
        else:
            # high: pause
            windows[segment.segment_id] = _window(segment.segment_id, clicks=30, spend=60.0)

    generator = SuggestionGenerator(OptimizerConfig(max_suggestions=3).to_dict())
    suggestions = generator.generate(segments, windows)

    assert len(suggestions) == 3
    assert all(s.priority == 'high' for s in suggestions)
    # Stable sort keeps segment order among equal priorities
    assert [s.segment.segment_id for s in suggestions] == ['kw-2', 'kw-3', 'kw-4']


def test_segments_without_a_window_are_skipped():
    generator = SuggestionGenerator(OptimizerConfig().to_dict())
    assert generator.generate([keyword('kw-1')], {}) == []


def test_effective_acos():
    assert effective_acos(_window('kw-1')) == 0.0
    assert effective_acos(_window('kw-1', spend=5.0)) == float('inf')
    assert effective_acos(_window('kw-1', spend=5.0, sales=20.0)) == pytest.approx(25.0)
