"""
Outcome Predictor

Projects spend, sales, ACoS and ROAS at several horizons. Expected-impact
deltas are summed and ramped in with a per-horizon multiplier; confidence
grows with the number of contributing items and decays with the same
multiplier.
"""

import logging
from datetime import datetime
from typing import Dict, List

from .models import AllocationPlan, ExpectedImpact, PredictionRecord, Suggestion
from .utils.ratios import safe_divide


def plan_impacts(plan: AllocationPlan) -> List[ExpectedImpact]:
    """Expected impact of every allocation that actually moves"""
    return [
        ExpectedImpact(
            spend_change=a.projected_spend - a.current_spend,
            sales_change=a.projected_sales - a.current_sales,
        )
        for a in plan.allocations
        if a.delta != 0 or a.projected_spend != a.current_spend
    ]


def suggestion_impacts(suggestions: List[Suggestion]) -> List[ExpectedImpact]:
    return [s.expected_impact or ExpectedImpact() for s in suggestions]


class OutcomePredictor:
    """Multi-horizon projections with a confidence score"""

    def __init__(self, config: Dict):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.horizons = dict(config.get('prediction_horizons') or {7: 0.3, 14: 0.6, 30: 1.0})
        self.base_confidence = config.get('prediction_base_confidence', 0.5)
        self.confidence_per_item = config.get('prediction_confidence_per_item', 0.02)
        self.max_confidence = config.get('prediction_max_confidence', 0.85)

    def confidence(self, item_count: int) -> float:
        return min(self.max_confidence, self.base_confidence + item_count * self.confidence_per_item)

    def predict(self, baseline_spend: float, baseline_sales: float,
                impacts: List[ExpectedImpact], source_type: str, source_id: int,
                now: datetime) -> List[PredictionRecord]:
        """
        Project outcomes at each configured horizon

        Args:
            baseline_spend: Spend over the baseline window
            baseline_sales: Sales over the baseline window
            impacts: Expected-impact deltas of the contributing items
            source_type: 'plan' or 'batch'
            source_id: Id of the plan or batch
            now: Prediction time

        Returns:
            One PredictionRecord per horizon, shortest horizon first
        """
        spend_change = sum(i.spend_change for i in impacts)
        sales_change = sum(i.sales_change for i in impacts)
        base_confidence = self.confidence(len(impacts))

        current_acos = safe_divide(baseline_spend, baseline_sales) * 100
        current_roas = safe_divide(baseline_sales, baseline_spend)

        records = []
        for horizon in sorted(self.horizons):
            multiplier = self.horizons[horizon]
            predicted_spend = max(0.0, baseline_spend + spend_change * multiplier)
            predicted_sales = max(0.0, baseline_sales + sales_change * multiplier)
            predicted_acos = predicted_spend / predicted_sales * 100 if predicted_sales > 0 else current_acos
            predicted_roas = predicted_sales / predicted_spend if predicted_spend > 0 else current_roas

            records.append(PredictionRecord(
                source_type=source_type,
                source_id=source_id,
                horizon_days=horizon,
                multiplier=multiplier,
                baseline_spend=baseline_spend,
                baseline_sales=baseline_sales,
                predicted_spend=predicted_spend,
                predicted_sales=predicted_sales,
                predicted_acos=predicted_acos,
                predicted_roas=predicted_roas,
                spend_change_pct=safe_divide(predicted_spend - baseline_spend, baseline_spend) * 100,
                sales_change_pct=safe_divide(predicted_sales - baseline_sales, baseline_sales) * 100,
                acos_change_pct=safe_divide(predicted_acos - current_acos, current_acos) * 100,
                roas_change_pct=safe_divide(predicted_roas - current_roas, current_roas) * 100,
                confidence=round(base_confidence * multiplier, 4),
                rationale=(f"Based on {len(impacts)} changes; effects ramp in to "
                           f"{multiplier:.0%} by {horizon} days"),
                created_at=now,
            ))

        self.logger.debug(
            f"Predicted {len(records)} horizons for {source_type} #{source_id} "
            f"from {len(impacts)} items (confidence {base_confidence:.2f})"
        )
        return records
