"""
Domain types for the optimization and effect-tracking engine
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple, Union

from .utils.ratios import safe_divide, percent_change, clamp


class SegmentKind(str, Enum):
    PLACEMENT = 'placement'
    KEYWORD = 'keyword'
    PRODUCT_TARGET = 'product_target'
    CAMPAIGN = 'campaign'
    SEARCH_TERM = 'search_term'


@dataclass(frozen=True)
class Segment:
    """A unit of optimization. Identity is immutable, control value moves via with_control()"""
    segment_id: str
    kind: SegmentKind
    campaign_id: str
    value: str  # placement name, keyword text, ASIN expression, search term...
    control_value: float = 0.0  # bid, bid-adjustment % or budget
    state: str = 'enabled'  # enabled | paused | negated_exact | negated_phrase

    def with_control(self, control_value: float, state: Optional[str] = None) -> 'Segment':
        return replace(self, control_value=control_value, state=state or self.state)


@dataclass(frozen=True)
class PerformancePoint:
    """Metrics for one daily or hourly bucket"""
    period: datetime
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0


@dataclass(frozen=True)
class PerformanceWindow:
    """Aggregated metrics for a segment over [start, end). Derived on demand, never stored"""
    segment_id: str
    start: datetime
    end: datetime
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    sales: float = 0.0
    orders: int = 0
    points: Tuple[PerformancePoint, ...] = ()

    @property
    def roas(self) -> float:
        return safe_divide(self.sales, self.spend)

    @property
    def acos(self) -> float:
        return safe_divide(self.spend, self.sales) * 100

    @property
    def ctr(self) -> float:
        return safe_divide(self.clicks, self.impressions) * 100

    @property
    def cvr(self) -> float:
        return safe_divide(self.orders, self.clicks) * 100

    @property
    def cpc(self) -> float:
        return safe_divide(self.spend, self.clicks)

    def metrics(self) -> Dict[str, float]:
        return {
            'impressions': self.impressions,
            'clicks': self.clicks,
            'spend': self.spend,
            'sales': self.sales,
            'orders': self.orders,
            'roas': self.roas,
            'acos': self.acos,
            'ctr': self.ctr,
            'cvr': self.cvr,
            'cpc': self.cpc,
        }

    @classmethod
    def combine(cls, segment_id: str, windows: List['PerformanceWindow'],
                start: datetime, end: datetime) -> 'PerformanceWindow':
        """Sum several windows into one (e.g. a batch baseline over all its segments)"""
        return cls(
            segment_id=segment_id,
            start=start,
            end=end,
            impressions=sum(w.impressions for w in windows),
            clicks=sum(w.clicks for w in windows),
            spend=sum(w.spend for w in windows),
            sales=sum(w.sales for w in windows),
            orders=sum(w.orders for w in windows),
        )


@dataclass(frozen=True)
class ControlBounds:
    """Governing [min, max] envelope for control values, plus the allocator's step"""
    min_value: float
    max_value: float
    step: Optional[float] = None

    def __post_init__(self):
        if self.min_value > self.max_value:
            raise ValueError(f"Invalid bounds: min {self.min_value} > max {self.max_value}")

    def clip(self, value: float) -> float:
        return clamp(value, self.min_value, self.max_value)

    def contains(self, value: float) -> bool:
        return self.min_value <= value <= self.max_value


@dataclass(frozen=True)
class MarginalReturn:
    """Expected incremental sales per incremental unit of spend"""
    segment_id: str
    value: float
    confidence: float
    method: str  # curve_slope | trailing_roas | campaign_average


class PlanStatus(str, Enum):
    PROPOSED = 'proposed'
    APPROVED = 'approved'
    APPLIED = 'applied'
    SUPERSEDED = 'superseded'


@dataclass(frozen=True)
class Allocation:
    """One row of an allocation plan"""
    segment: Segment
    current_value: float
    suggested_value: float
    current_spend: float
    current_sales: float
    projected_spend: float
    projected_sales: float
    marginal_return: float
    confidence: float
    rationale: str
    budget_constrained: bool = False

    @property
    def segment_id(self) -> str:
        return self.segment.segment_id

    @property
    def delta(self) -> float:
        return self.suggested_value - self.current_value

    @property
    def projected_roas(self) -> float:
        return safe_divide(self.projected_sales, self.projected_spend)

    @property
    def expected_spend(self) -> float:
        return self.projected_spend


@dataclass
class AllocationPlan:
    """A proposed or applied set of per-segment targets for one scope"""
    scope_id: str
    total_budget: float
    target_roas: float
    bounds: ControlBounds
    allocations: List[Allocation]
    generated_at: datetime
    status: PlanStatus = PlanStatus.PROPOSED
    plan_id: Optional[int] = None
    applied_at: Optional[datetime] = None

    @property
    def projected_spend(self) -> float:
        return sum(a.projected_spend for a in self.allocations)

    @property
    def projected_sales(self) -> float:
        return sum(a.projected_sales for a in self.allocations)

    @property
    def projected_roas(self) -> float:
        return safe_divide(self.projected_sales, self.projected_spend)

    @property
    def projected_acos(self) -> float:
        return safe_divide(self.projected_spend, self.projected_sales) * 100

    @property
    def baseline_spend(self) -> float:
        return sum(a.current_spend for a in self.allocations)

    @property
    def baseline_sales(self) -> float:
        return sum(a.current_sales for a in self.allocations)

    @property
    def unallocated_budget(self) -> float:
        return self.total_budget - self.projected_spend

    def changed_allocations(self) -> List[Allocation]:
        return [a for a in self.allocations if a.delta != 0]


class ActionType(str, Enum):
    BID_INCREASE = 'bid_increase'
    BID_DECREASE = 'bid_decrease'
    BID_SET = 'bid_set'
    ADJUSTMENT_SET = 'adjustment_set'
    BUDGET_SET = 'budget_set'
    PAUSE = 'pause'
    ENABLE = 'enable'
    NEGATE_EXACT = 'negate_exact'
    NEGATE_PHRASE = 'negate_phrase'
    ROLLBACK = 'rollback'


@dataclass(frozen=True)
class ControlChange:
    """A mutation to send through the mutation interface"""
    action: ActionType
    value: float
    state: Optional[str] = None


@dataclass(frozen=True)
class ExpectedImpact:
    spend_change: float = 0.0
    sales_change: float = 0.0
    acos_change: float = 0.0
    roas_change: float = 0.0


@dataclass(frozen=True)
class Suggestion:
    """A discrete action for one keyword, product target or search term"""
    suggestion_type: str  # bid_adjustment | status_change | negative_keyword
    segment: Segment
    action: ActionType
    current_value: float
    suggested_value: float
    reason: str
    priority: str  # high | medium | low
    rule_name: str
    expected_impact: Optional[ExpectedImpact] = None

    def to_change(self) -> ControlChange:
        if self.action == ActionType.PAUSE:
            return ControlChange(self.action, self.current_value, 'paused')
        if self.action == ActionType.ENABLE:
            return ControlChange(self.action, self.current_value, 'enabled')
        if self.action == ActionType.NEGATE_EXACT:
            return ControlChange(self.action, self.current_value, 'negated_exact')
        if self.action == ActionType.NEGATE_PHRASE:
            return ControlChange(self.action, self.current_value, 'negated_phrase')
        return ControlChange(self.action, self.suggested_value)


class ExecutionStatus(str, Enum):
    PENDING = 'pending'
    APPLIED = 'applied'
    FAILED = 'failed'
    ROLLED_BACK = 'rolled_back'


@dataclass(frozen=True)
class ExecutionRecord:
    """Append-only ledger entry. Only status moves after the row is written"""
    segment: Segment
    action: ActionType
    previous_value: float
    new_value: float
    reason: str
    created_at: datetime
    status: ExecutionStatus = ExecutionStatus.PENDING
    scope_id: str = ''
    batch_id: Optional[int] = None
    previous_state: Optional[str] = None
    new_state: Optional[str] = None
    error: Optional[str] = None
    rollback_of: Optional[int] = None
    reapply_of: Optional[int] = None
    record_id: Optional[int] = None

    @property
    def segment_id(self) -> str:
        return self.segment.segment_id

    @property
    def percent_change(self) -> float:
        return percent_change(self.new_value, self.previous_value)


class BatchStatus(str, Enum):
    PENDING = 'pending'
    EXECUTING = 'executing'
    COMPLETED = 'completed'
    PARTIALLY_COMPLETED = 'partially_completed'
    FAILED = 'failed'


@dataclass
class ExecutionBatch:
    """One execution job for a scope"""
    scope_id: str
    source: str  # plan | suggestions | manual | rollback
    total_items: int
    created_at: datetime
    baseline: Optional[PerformanceWindow] = None
    plan_id: Optional[int] = None
    status: BatchStatus = BatchStatus.PENDING
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    record_ids: List[int] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    batch_id: Optional[int] = None


@dataclass(frozen=True)
class ExecutionSummary:
    batch_id: int
    scope_id: str
    status: BatchStatus
    total: int
    succeeded: int
    failed: int
    skipped: int = 0
    cancelled: bool = False
    record_ids: Tuple[int, ...] = ()
    failures: Tuple[Tuple[str, str], ...] = ()  # (segment_id, error)
    review_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class PredictionRecord:
    """Projected metrics at one horizon"""
    source_type: str  # plan | batch
    source_id: int
    horizon_days: int
    multiplier: float
    baseline_spend: float
    baseline_sales: float
    predicted_spend: float
    predicted_sales: float
    predicted_acos: float
    predicted_roas: float
    spend_change_pct: float
    sales_change_pct: float
    acos_change_pct: float
    roas_change_pct: float
    confidence: float
    rationale: str
    created_at: datetime
    prediction_id: Optional[int] = None

    @property
    def horizon_label(self) -> str:
        return f"{self.horizon_days}_days"


class ReviewStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    SKIPPED = 'skipped'


@dataclass
class ReviewSchedule:
    prediction_id: int
    batch_id: int
    horizon_days: int
    scheduled_at: datetime
    status: ReviewStatus = ReviewStatus.PENDING
    completed_at: Optional[datetime] = None
    notes: str = ''
    review_id: Optional[int] = None


class EffectRating(str, Enum):
    EXCELLENT = 'excellent'
    GOOD = 'good'
    NEUTRAL = 'neutral'
    POOR = 'poor'
    VERY_POOR = 'very_poor'


class Recommendation(str, Enum):
    KEEP = 'keep'
    MONITOR = 'monitor'
    ROLLBACK = 'rollback'


@dataclass(frozen=True)
class TrackingReport:
    execution_id: int
    segment_id: str
    baseline: PerformanceWindow
    current: PerformanceWindow
    deltas: Dict[str, float]
    percent_changes: Dict[str, float]
    score: float
    rating: EffectRating
    recommendation: Recommendation
    summary: str
    generated_at: datetime


@dataclass(frozen=True)
class NotYetEvaluable:
    """Tracking requested before attribution delay + observation window elapsed"""
    execution_id: int
    evaluable_at: datetime
    status: str = 'not_yet_evaluable'


@dataclass(frozen=True)
class Untracked:
    pass


@dataclass(frozen=True)
class Tracked:
    report: TrackingReport


TrackingAnnotation = Union[Untracked, Tracked]
UNTRACKED = Untracked()


@dataclass(frozen=True)
class ReviewResult:
    review: ReviewSchedule
    reports: Tuple[TrackingReport, ...] = ()
    deferred: bool = False
    rolled_back: Tuple[int, ...] = ()
    rollback_failures: Tuple[int, ...] = ()
    prediction_accuracy: Optional[Dict[str, Any]] = None
