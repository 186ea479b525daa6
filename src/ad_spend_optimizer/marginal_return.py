"""
Marginal Return Estimator

Estimates incremental sales per incremental unit of spend for each segment.
Order of preference:
1. Local slope of sales vs. spend across the window's daily points
2. The segment's own trailing ROAS
3. The campaign-level average ROAS (thin data, downgraded confidence)
"""

import logging
from typing import Dict, List

import numpy as np

from .models import MarginalReturn, PerformanceWindow
from .utils.ratios import safe_divide


class MarginalReturnEstimator:
    """Per-segment marginal return with a confidence score"""

    def __init__(self, config: Dict):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.min_clicks = config.get('min_clicks_for_estimate', 20)
        self.min_curve_points = config.get('min_curve_points', 5)
        self.fallback_confidence = config.get('fallback_confidence', 0.3)
        self.curve_confidence = config.get('curve_confidence', 0.8)

    def campaign_average(self, windows: List[PerformanceWindow]) -> float:
        """Spend-weighted ROAS across all windows"""
        return safe_divide(sum(w.sales for w in windows), sum(w.spend for w in windows))

    def estimate_all(self, windows: List[PerformanceWindow]) -> Dict[str, MarginalReturn]:
        """
        Estimate marginal return for every window

        Args:
            windows: One window per segment of the same scope

        Returns:
            Mapping segment_id -> MarginalReturn (never missing a segment)
        """
        average = self.campaign_average(windows)
        estimates = {}
        for window in windows:
            estimates[window.segment_id] = self.estimate(window, average)
        return estimates

    def estimate(self, window: PerformanceWindow, campaign_average: float) -> MarginalReturn:
        if window.clicks < self.min_clicks:
            self.logger.warning(
                f"Segment {window.segment_id}: {window.clicks} clicks < {self.min_clicks}, "
                f"using campaign average {campaign_average:.2f}"
            )
            return MarginalReturn(
                segment_id=window.segment_id,
                value=campaign_average,
                confidence=self.fallback_confidence,
                method='campaign_average'
            )

        slope = self._curve_slope(window)
        if slope is not None:
            return MarginalReturn(
                segment_id=window.segment_id,
                value=slope,
                confidence=self.curve_confidence,
                method='curve_slope'
            )

        # More clicks -> more trust in the trailing ratio
        confidence = min(self.curve_confidence,
                         self.fallback_confidence + window.clicks / (self.min_clicks * 10.0))
        return MarginalReturn(
            segment_id=window.segment_id,
            value=window.roas,
            confidence=round(confidence, 4),
            method='trailing_roas'
        )

    def _curve_slope(self, window: PerformanceWindow):
        """Least-squares slope of daily sales on daily spend, or None if unusable"""
        points = [p for p in window.points if p.spend > 0]
        if len(points) < self.min_curve_points:
            return None

        spend = np.array([p.spend for p in points], dtype=float)
        sales = np.array([p.sales for p in points], dtype=float)
        # No spread in spend means no information about the response
        if np.ptp(spend) <= 1e-9 * max(1.0, float(spend.mean())):
            return None

        slope, _intercept = np.polyfit(spend, sales, 1)
        slope = float(slope)
        if not np.isfinite(slope) or slope < 0:
            return None
        return slope
