"""
Suggestion Generator

Threshold rules over individual keywords, product targets and search terms.
Independent of the allocator: suggestions are not budget-aware. Rules are
evaluated in priority order and the first match wins for each target.
"""

from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, Any, List, Optional, Tuple
import logging

from .models import (
    ActionType, ExpectedImpact, PerformanceWindow, Segment, SegmentKind, Suggestion
)

PRIORITY_ORDER = {'high': 0, 'medium': 1, 'low': 2}

TARGET_KINDS = (SegmentKind.KEYWORD, SegmentKind.PRODUCT_TARGET)


def effective_acos(window: PerformanceWindow) -> float:
    """ACoS where spend without sales counts as unbounded"""
    if window.sales <= 0:
        return float('inf') if window.spend > 0 else 0.0
    return window.acos


class SuggestionRule(ABC):
    """Base class for suggestion rules"""

    kinds: Tuple[SegmentKind, ...] = TARGET_KINDS
    requires_enabled = True

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def applies_to(self, segment: Segment) -> bool:
        if segment.kind not in self.kinds:
            return False
        return segment.state == 'enabled' or not self.requires_enabled

    @abstractmethod
    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        """
        Evaluate rule against a segment's trailing window

        Args:
            segment: Keyword, product target or search term
            window: Aggregated performance for the segment

        Returns:
            Suggestion if the rule fires, None otherwise
        """
        pass


class NoConversionRule(SuggestionRule):
    """Spend without orders: pause when spend is very high, otherwise cut the bid"""

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        high_spend = self.config.get('suggestion_high_spend', 10.0)
        pause_spend = self.config.get('suggestion_pause_spend', 50.0)
        bid_cut = self.config.get('suggestion_no_order_bid_cut', 0.30)

        if not (window.spend > high_spend and window.orders == 0):
            return None

        bid = segment.control_value
        if window.spend > pause_spend:
            return Suggestion(
                suggestion_type='status_change',
                segment=segment,
                action=ActionType.PAUSE,
                current_value=bid,
                suggested_value=bid,
                reason=f"Spent ${window.spend:.2f} with no orders, pause",
                priority='high',
                rule_name=self.name,
                expected_impact=ExpectedImpact(spend_change=-window.spend, acos_change=-5.0),
            )

        return Suggestion(
            suggestion_type='bid_adjustment',
            segment=segment,
            action=ActionType.BID_DECREASE,
            current_value=bid,
            suggested_value=round(bid * (1 - bid_cut), 2),
            reason=f"Spent ${window.spend:.2f} with no orders, lower bid {bid_cut:.0%}",
            priority='medium',
            rule_name=self.name,
            expected_impact=ExpectedImpact(spend_change=-window.spend * bid_cut, acos_change=-2.0),
        )


class HighAcosRule(SuggestionRule):
    """Converting but too expensive: bid toward the target ACoS"""

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        high_acos = self.config.get('suggestion_high_acos', 50.0)
        critical_acos = self.config.get('suggestion_critical_acos', 80.0)
        target_acos = self.config.get('suggestion_target_acos', 30.0)
        min_bid = self.config.get('suggestion_min_bid', 0.10)

        acos = effective_acos(window)
        if not (acos > high_acos and window.orders > 0):
            return None

        # Orders without attributed sales leave ACoS unbounded; bid straight to the floor
        ratio = target_acos / acos if acos != float('inf') else 0.0
        new_bid = max(min_bid, round(window.cpc * ratio, 2))
        bid = segment.control_value
        acos_change = -(acos - target_acos) * 0.5 if acos != float('inf') else -target_acos
        return Suggestion(
            suggestion_type='bid_adjustment',
            segment=segment,
            action=ActionType.BID_DECREASE if new_bid < bid else ActionType.BID_SET,
            current_value=bid,
            suggested_value=new_bid,
            reason=f"ACoS {acos:.1f}% above {high_acos:.0f}%, bid toward {target_acos:.0f}% target",
            priority='high' if acos > critical_acos else 'medium',
            rule_name=self.name,
            expected_impact=ExpectedImpact(acos_change=acos_change),
        )


class StrongConverterRule(SuggestionRule):
    """High conversion at low ACoS: raise the bid"""

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        strong_cvr = self.config.get('suggestion_strong_cvr', 15.0)
        strong_acos = self.config.get('suggestion_strong_acos', 20.0)
        min_clicks = self.config.get('suggestion_strong_min_clicks', 5)
        raise_by = self.config.get('suggestion_bid_raise', 0.30)

        if not (window.cvr > strong_cvr and effective_acos(window) < strong_acos
                and window.clicks > min_clicks):
            return None

        bid = segment.control_value
        return Suggestion(
            suggestion_type='bid_adjustment',
            segment=segment,
            action=ActionType.BID_INCREASE,
            current_value=bid,
            suggested_value=round(bid * (1 + raise_by), 2),
            reason=f"CVR {window.cvr:.1f}% at ACoS {window.acos:.1f}%, raise bid {raise_by:.0%}",
            priority='high',
            rule_name=self.name,
            expected_impact=ExpectedImpact(
                spend_change=window.spend * raise_by,
                sales_change=window.sales * raise_by,
            ),
        )


class ReEnableRule(SuggestionRule):
    """Paused target with a good sales history: enable it again"""

    def applies_to(self, segment: Segment) -> bool:
        return segment.kind in self.kinds and segment.state == 'paused'

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        enable_sales = self.config.get('suggestion_enable_sales', 50.0)
        enable_acos = self.config.get('suggestion_enable_acos', 30.0)

        if not (window.sales > enable_sales and effective_acos(window) < enable_acos):
            return None

        return Suggestion(
            suggestion_type='status_change',
            segment=segment,
            action=ActionType.ENABLE,
            current_value=segment.control_value,
            suggested_value=segment.control_value,
            reason=f"Paused with ${window.sales:.2f} sales at ACoS {window.acos:.1f}%, enable",
            priority='medium',
            rule_name=self.name,
            expected_impact=ExpectedImpact(sales_change=window.sales * 0.5),
        )


class WastedSearchTermRule(SuggestionRule):
    """Search term with clicks and spend but no orders: add as a negative"""

    kinds = (SegmentKind.SEARCH_TERM,)

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        spend_threshold = self.config.get('negation_spend', 15.0)
        min_clicks = self.config.get('negation_min_clicks', 10)
        exact_clicks = self.config.get('negation_exact_clicks', 30)
        high_priority_spend = self.config.get('negation_high_priority_spend', 30.0)

        if not (window.spend > spend_threshold and window.orders == 0 and window.clicks > min_clicks):
            return None

        exact = window.clicks > exact_clicks
        return Suggestion(
            suggestion_type='negative_keyword',
            segment=segment,
            action=ActionType.NEGATE_EXACT if exact else ActionType.NEGATE_PHRASE,
            current_value=segment.control_value,
            suggested_value=segment.control_value,
            reason=(f"Search term '{segment.value}' spent ${window.spend:.2f} over "
                    f"{window.clicks} clicks with no orders, negative {'exact' if exact else 'phrase'}"),
            priority='high' if window.spend > high_priority_spend else 'medium',
            rule_name=self.name,
            expected_impact=ExpectedImpact(spend_change=-window.spend * 0.8),
        )


class UnprofitableSearchTermRule(SuggestionRule):
    """Search term far above break-even ACoS: add as a phrase negative"""

    kinds = (SegmentKind.SEARCH_TERM,)

    def evaluate(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        acos_ceiling = self.config.get('negation_acos', 100.0)
        spend_threshold = self.config.get('negation_acos_spend', 10.0)

        acos = effective_acos(window)
        if not (acos > acos_ceiling and window.spend > spend_threshold):
            return None

        return Suggestion(
            suggestion_type='negative_keyword',
            segment=segment,
            action=ActionType.NEGATE_PHRASE,
            current_value=segment.control_value,
            suggested_value=segment.control_value,
            reason=f"Search term '{segment.value}' ACoS {acos:.1f}% above {acos_ceiling:.0f}%, negative phrase",
            priority='medium',
            rule_name=self.name,
            expected_impact=ExpectedImpact(spend_change=-window.spend * 0.7, acos_change=-2.0),
        )


class SuggestionGenerator:
    """Runs the rules in priority order and keeps the top-N suggestions"""

    def __init__(self, config: Dict[str, Any], telemetry=None):
        self.config = config
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)
        self.max_suggestions = config.get('max_suggestions', 20)
        self.rules: List[SuggestionRule] = [
            NoConversionRule(config),
            HighAcosRule(config),
            StrongConverterRule(config),
            ReEnableRule(config),
            WastedSearchTermRule(config),
            UnprofitableSearchTermRule(config),
        ]

    def generate(self, segments: List[Segment],
                 windows: Dict[str, PerformanceWindow]) -> List[Suggestion]:
        suggestions = []
        for segment in segments:
            window = windows.get(segment.segment_id)
            if window is None:
                continue
            suggestion = self._first_match(segment, window)
            if suggestion is not None:
                suggestions.append(suggestion)

        # sort() is stable, so ties keep segment order
        suggestions.sort(key=lambda s: PRIORITY_ORDER.get(s.priority, len(PRIORITY_ORDER)))
        top = suggestions[:self.max_suggestions]
        if len(suggestions) > len(top):
            self.logger.info(f"Keeping top {len(top)} of {len(suggestions)} suggestions")

        if self.telemetry:
            for rule_name, count in Counter(s.rule_name for s in top).items():
                self.telemetry.increment('optimizer_suggestions_total', count, labels={'rule': rule_name})
        return top

    def _first_match(self, segment: Segment, window: PerformanceWindow) -> Optional[Suggestion]:
        for rule in self.rules:
            if not rule.applies_to(segment):
                continue
            suggestion = rule.evaluate(segment, window)
            if suggestion is not None:
                self.logger.debug(f"{rule.name} fired for {segment.segment_id}: {suggestion.action.value}")
                return suggestion
        return None
