"""
Tests for the constrained allocator.
"""

from datetime import timedelta

import pytest

from ad_spend_optimizer import ControlBounds, OptimizerConfig, PerformanceWindow, SegmentKind
from ad_spend_optimizer.allocator import ConstrainedAllocator
from ad_spend_optimizer.models import MarginalReturn

from conftest import T0, keyword, placement, search_term

BOUNDS = ControlBounds(0.0, 900.0)


def _window(segment_id, spend=0.0, sales=0.0, clicks=0):
    return PerformanceWindow(segment_id, T0 - timedelta(days=7), T0, clicks=clicks, spend=spend, sales=sales)


def _allocate(entries, budget, target_roas=3.0, bounds=BOUNDS, **overrides):
    """entries: list of (segment, spend, sales, marginal return)"""
    allocator = ConstrainedAllocator(OptimizerConfig(**overrides).to_dict())
    segments = [segment for segment, _, _, _ in entries]
    windows = {s.segment_id: _window(s.segment_id, spend, sales, 100) for s, spend, sales, _ in entries}
    returns = {s.segment_id: MarginalReturn(s.segment_id, mr, 0.8, 'curve_slope') for s, _, _, mr in entries}
    return allocator.allocate('cmp-1', segments, windows, returns, budget, target_roas, bounds, T0)


def test_strong_return_increases_by_step_and_caps_at_bound():
    plan = _allocate([(placement('pl-1', 890.0), 100.0, 400.0, 4.0)], budget=1000.0)

    allocation = plan.allocations[0]
    assert allocation.suggested_value == 900.0
    assert "increase by 20" in allocation.rationale
    assert "capped at bound 900" in allocation.rationale
    assert not allocation.budget_constrained


def test_spend_and_sales_projection():
    plan = _allocate([(placement('pl-1', 100.0), 100.0, 400.0, 4.0)], budget=1000.0)

    allocation = plan.allocations[0]
    assert allocation.suggested_value == 120.0
    # +20 points at sensitivity 0.3 -> +6% spend, sales follow at the marginal return
    assert allocation.projected_spend == pytest.approx(106.0)
    assert allocation.projected_sales == pytest.approx(424.0)


@pytest.mark.parametrize("marginal, expected", [
    (3.0, 120.0),   # 1.5x target: full step up
    (2.0, 100.0),   # 1.0x target: hold
    (1.2, 90.0),    # 0.6x target: half step down
    (0.5, 80.0),    # 0.25x target: full step down
])
def test_marginal_return_bands(marginal, expected):
    plan = _allocate([(placement('pl-1', 100.0), 50.0, 100.0, marginal)], budget=10000.0, target_roas=2.0)
    assert plan.allocations[0].suggested_value == expected


def test_bounds_step_overrides_configured_step():
    bounds = ControlBounds(0.1, 5.0, step=0.25)
    plan = _allocate([(keyword('kw-1', bid=1.0), 100.0, 400.0, 4.0)], budget=1000.0, bounds=bounds)

    allocation = plan.allocations[0]
    assert allocation.suggested_value == pytest.approx(1.25)
    # Bids move in percent: +25% at sensitivity 0.3
    assert allocation.projected_spend == pytest.approx(107.5)


@pytest.mark.parametrize("budget", [0.0, 10.0, 75.0, 150.0, 250.0, 400.0, 5000.0])
def test_projected_spend_never_exceeds_budget(budget):
    entries = [
        (placement('pl-1', 100.0), 100.0, 400.0, 4.0),
        (placement('pl-2', 100.0), 100.0, 380.0, 3.9),
        (placement('pl-3', 880.0), 100.0, 150.0, 1.0),
        (placement('pl-4', 0.0), 0.0, 0.0, 2.0),
    ]
    plan = _allocate(entries, budget=budget)

    assert plan.projected_spend <= budget + 0.01
    for allocation in plan.allocations:
        assert BOUNDS.contains(allocation.suggested_value)
        assert allocation.projected_spend >= 0


def test_budget_shortfall_marks_allocations_constrained():
    entries = [
        (placement('pl-1', 100.0), 100.0, 400.0, 4.0),
        (placement('pl-2', 100.0), 100.0, 400.0, 3.9),
        (placement('pl-3', 100.0), 100.0, 400.0, 3.8),
    ]
    plan = _allocate(entries, budget=150.0)

    first, second, third = plan.allocations
    assert first.segment_id == 'pl-1'
    assert not first.budget_constrained
    assert second.budget_constrained
    assert "budget-constrained" in second.rationale
    assert second.projected_spend == pytest.approx(44.0)
    assert third.projected_spend == pytest.approx(0.0)
    assert plan.projected_spend == pytest.approx(150.0)


def test_ties_in_marginal_return_go_to_larger_spend():
    entries = [
        (placement('pl-small', 100.0), 50.0, 150.0, 3.0),
        (placement('pl-large', 100.0), 200.0, 600.0, 3.0),
    ]
    plan = _allocate(entries, budget=10000.0)
    assert [a.segment_id for a in plan.allocations] == ['pl-large', 'pl-small']


def test_zero_spend_segment_gets_exploratory_floor():
    plan = _allocate([(placement('pl-new', 0.0), 0.0, 0.0, 2.5)], budget=1000.0)

    allocation = plan.allocations[0]
    assert allocation.suggested_value == 10.0
    assert allocation.projected_spend == pytest.approx(5.0)
    assert allocation.confidence <= 0.2
    assert "exploratory" in allocation.rationale


def test_out_of_bounds_current_value_is_clipped_and_noted():
    plan = _allocate([(placement('pl-1', 950.0), 100.0, 300.0, 3.0)], budget=1000.0)

    allocation = plan.allocations[0]
    assert allocation.suggested_value == 900.0
    assert "clipped" in allocation.rationale


def test_search_terms_are_not_allocated():
    entries = [
        (placement('pl-1', 100.0), 100.0, 400.0, 4.0),
        (search_term('st-1'), 20.0, 0.0, 0.0),
    ]
    plan = _allocate(entries, budget=1000.0)
    assert [a.segment.kind for a in plan.allocations] == [SegmentKind.PLACEMENT]


def test_invalid_inputs_are_rejected():
    with pytest.raises(ValueError, match="Target ROAS"):
        _allocate([(placement('pl-1'), 10.0, 10.0, 1.0)], budget=100.0, target_roas=0)
    with pytest.raises(ValueError, match="budget"):
        _allocate([(placement('pl-1'), 10.0, 10.0, 1.0)], budget=-1.0)


def test_plan_totals():
    entries = [
        (placement('pl-1', 100.0), 100.0, 400.0, 4.0),
        (placement('pl-2', 100.0), 50.0, 100.0, 2.0),
    ]
    plan = _allocate(entries, budget=1000.0, target_roas=2.0)

    assert plan.baseline_spend == pytest.approx(150.0)
    assert plan.baseline_sales == pytest.approx(500.0)
    assert plan.projected_spend == pytest.approx(106.0 + 50.0)
    assert plan.unallocated_budget == pytest.approx(1000.0 - plan.projected_spend)
    assert [a.segment_id for a in plan.changed_allocations()] == ['pl-1']
