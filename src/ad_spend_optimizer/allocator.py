"""
Constrained Allocator

Greedy, priority-ordered redistribution of a fixed budget across segments.
Segments are visited in descending marginal return and each is moved by a
band-dependent step. The running remaining budget makes the final pass
strictly sequential.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Tuple

from .models import (
    Allocation, AllocationPlan, ControlBounds, MarginalReturn, PerformanceWindow,
    Segment, SegmentKind
)
from .utils.ratios import percent_change


class ConstrainedAllocator:
    """Produces budget-bounded allocation plans"""

    def __init__(self, config: Dict):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.step = config.get('allocation_step', 20.0)
        self.half_step_ratio = config.get('allocation_half_step_ratio', 0.5)
        self.increase_ratio = config.get('band_increase_ratio', 1.2)
        self.hold_ratio = config.get('band_hold_ratio', 0.8)
        self.reduce_ratio = config.get('band_reduce_ratio', 0.5)
        self.sensitivity = config.get('spend_sensitivity', 0.3)
        self.exploration_floor = config.get('exploration_floor_value', 10.0)
        self.exploration_spend = config.get('exploration_spend', 5.0)
        self.exploration_confidence = config.get('exploration_confidence', 0.2)

    def allocate(self, scope_id: str, segments: List[Segment],
                 windows: Dict[str, PerformanceWindow],
                 returns: Dict[str, MarginalReturn],
                 total_budget: float, target_roas: float,
                 bounds: ControlBounds, now: datetime) -> AllocationPlan:
        """
        Build an allocation plan for one scope

        Args:
            scope_id: Campaign or account the budget belongs to
            segments: Segments with their current control values
            windows: Trailing performance per segment id
            returns: Marginal return per segment id
            total_budget: Spend ceiling for the whole plan
            target_roas: Target return on ad spend
            bounds: Governing control-value envelope
            now: Plan generation time

        Returns:
            AllocationPlan in status proposed
        """
        if total_budget < 0:
            raise ValueError(f"Total budget must be non-negative, got {total_budget}")
        if target_roas <= 0:
            raise ValueError(f"Target ROAS must be positive, got {target_roas}")

        candidates = [s for s in segments if s.kind != SegmentKind.SEARCH_TERM]
        if len(candidates) != len(segments):
            self.logger.debug(f"Scope {scope_id}: skipping {len(segments) - len(candidates)} search terms")

        def priority(segment: Segment) -> Tuple[float, float]:
            window = windows.get(segment.segment_id)
            spend = window.spend if window else 0.0
            return (-returns[segment.segment_id].value, -abs(spend))

        remaining = float(total_budget)
        allocations = []
        for segment in sorted(candidates, key=priority):
            window = windows.get(segment.segment_id) or PerformanceWindow(
                segment_id=segment.segment_id, start=now, end=now
            )
            allocation = self._allocate_segment(
                segment, window, returns[segment.segment_id], target_roas, bounds, remaining
            )
            remaining -= allocation.projected_spend
            allocations.append(allocation)
            self.logger.debug(
                f"{segment.segment_id}: {allocation.current_value:.2f} -> {allocation.suggested_value:.2f} "
                f"(spend {allocation.projected_spend:.2f}, remaining {remaining:.2f})"
            )

        plan = AllocationPlan(
            scope_id=scope_id,
            total_budget=total_budget,
            target_roas=target_roas,
            bounds=bounds,
            allocations=allocations,
            generated_at=now,
        )
        self.logger.info(
            f"Allocation plan for {scope_id}: {len(plan.changed_allocations())}/{len(allocations)} changes, "
            f"projected spend {plan.projected_spend:.2f} of {total_budget:.2f}, "
            f"projected ROAS {plan.projected_roas:.2f}"
        )
        return plan

    # ------------------------------------------------------------------ #
    # Per-segment decision
    # ------------------------------------------------------------------ #

    def _allocate_segment(self, segment: Segment, window: PerformanceWindow,
                          estimate: MarginalReturn, target_roas: float,
                          bounds: ControlBounds, remaining: float) -> Allocation:
        current = segment.control_value
        notes = []

        if not bounds.contains(current):
            notes.append(f"current value {current:.2f} clipped to [{bounds.min_value:.0f}, {bounds.max_value:.0f}]")

        if window.spend <= 0:
            return self._explore(segment, window, estimate, bounds, remaining, notes)

        move, reason = self._band_move(estimate.value, target_roas, bounds.step or self.step)
        proposed = current + move
        suggested = bounds.clip(proposed)
        if suggested != proposed and bounds.contains(current):
            notes.append(f"capped at bound {suggested:.0f}")

        spend = self.project_spend(segment, window.spend, current, suggested)
        constrained = False
        if spend > remaining:
            constrained = True
            suggested = self._affordable_value(segment, window.spend, current, remaining, bounds)
            spend = self.project_spend(segment, window.spend, current, suggested)
            notes.append("budget-constrained")

        sales = max(0.0, window.sales + (spend - window.spend) * estimate.value)
        if spend > remaining:
            # Even the lower bound overspends; cap spend and scale sales with it
            capped = max(0.0, remaining)
            sales = sales * capped / spend if spend > 0 else 0.0
            spend = capped

        rationale = reason if not notes else f"{reason}; {'; '.join(notes)}"
        return Allocation(
            segment=segment,
            current_value=current,
            suggested_value=suggested,
            current_spend=window.spend,
            current_sales=window.sales,
            projected_spend=spend,
            projected_sales=sales,
            marginal_return=estimate.value,
            confidence=estimate.confidence,
            rationale=rationale,
            budget_constrained=constrained,
        )

    def _band_move(self, marginal: float, target_roas: float, step: float) -> Tuple[float, str]:
        ratio = marginal / target_roas
        if ratio >= self.increase_ratio:
            return step, (f"Marginal return {marginal:.2f} >= {self.increase_ratio}x target ROAS "
                          f"{target_roas:.2f}: increase by {step:g}")
        if ratio >= self.hold_ratio:
            return 0.0, f"Marginal return {marginal:.2f} within target band: hold"
        if ratio >= self.reduce_ratio:
            half = step * self.half_step_ratio
            return -half, (f"Marginal return {marginal:.2f} below {self.hold_ratio}x target ROAS "
                           f"{target_roas:.2f}: decrease by {half:g}")
        return -step, (f"Marginal return {marginal:.2f} below {self.reduce_ratio}x target ROAS "
                       f"{target_roas:.2f}: decrease by {step:g}")

    def _explore(self, segment: Segment, window: PerformanceWindow, estimate: MarginalReturn,
                 bounds: ControlBounds, remaining: float, notes: List[str]) -> Allocation:
        suggested = bounds.clip(max(segment.control_value, self.exploration_floor))
        spend = max(0.0, min(self.exploration_spend, remaining))
        reason = "No historical spend: exploratory floor value, low confidence"
        if spend < self.exploration_spend:
            notes.append("budget-constrained")
        rationale = reason if not notes else f"{reason}; {'; '.join(notes)}"
        return Allocation(
            segment=segment,
            current_value=segment.control_value,
            suggested_value=suggested,
            current_spend=window.spend,
            current_sales=window.sales,
            projected_spend=spend,
            projected_sales=spend * estimate.value,
            marginal_return=estimate.value,
            confidence=min(estimate.confidence, self.exploration_confidence),
            rationale=rationale,
            budget_constrained=spend < self.exploration_spend,
        )

    # ------------------------------------------------------------------ #
    # Linear spend-response model
    # ------------------------------------------------------------------ #

    @staticmethod
    def control_delta(segment: Segment, current: float, new: float) -> float:
        """Change in control units; placements move in percentage points, bids and budgets in percent"""
        if segment.kind == SegmentKind.PLACEMENT:
            return new - current
        return percent_change(new, current)

    def project_spend(self, segment: Segment, spend: float, current: float, new: float) -> float:
        delta = self.control_delta(segment, current, new)
        return max(0.0, spend * (1 + delta / 100.0 * self.sensitivity))

    def _affordable_value(self, segment: Segment, spend: float, current: float,
                          remaining: float, bounds: ControlBounds) -> float:
        """Largest control value whose projected spend fits in the remaining budget"""
        delta = (max(0.0, remaining) / spend - 1) * 100.0 / self.sensitivity
        if segment.kind == SegmentKind.PLACEMENT:
            value = current + delta
        else:
            value = current * (1 + delta / 100.0)
        # Round down so the projection never creeps above what is affordable
        value = math.floor(value * 100) / 100.0
        return bounds.clip(value)

