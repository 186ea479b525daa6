"""
Ports between the engine and its collaborators

The engine depends only on these interfaces. Concrete adapters live in
database.py (PostgreSQL), ads_api.py (advertising API) and notifications.py.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .models import (
    AllocationPlan, ControlChange, ExecutionBatch, ExecutionRecord, ExecutionStatus,
    PerformanceWindow, PlanStatus, PredictionRecord, ReviewSchedule, ReviewStatus,
    Segment, SegmentKind, TrackingAnnotation, Tracked
)


@dataclass(frozen=True)
class MutationResult:
    success: bool
    error: Optional[str] = None


class MetricsSource(ABC):
    """Read-only access to aggregated performance"""

    @abstractmethod
    def get_performance_windows(self, segment_ids: List[str], start: datetime,
                                end: datetime) -> List[PerformanceWindow]:
        """
        Return one window per requested segment, zero-filled where no rows exist.
        Windows include daily points so slopes can be estimated.
        """


class SegmentSource(ABC):
    """Catalog of segments belonging to a scope (campaign or account)"""

    @abstractmethod
    def get_segments(self, scope_id: str,
                     kinds: Optional[List[SegmentKind]] = None) -> List[Segment]:
        """Return the scope's segments with their current control values"""


class MutationClient(ABC):
    """Applies bids, budgets, status changes and negative-match additions"""

    @abstractmethod
    def apply_control_value(self, segment: Segment, change: ControlChange) -> MutationResult:
        """Apply a change. May also raise; the caller treats any exception as a failure"""


class Notifier(ABC):

    @abstractmethod
    def notify(self, title: str, body: str) -> None:
        """Fire-and-forget notification"""


class OptimizationStore(ABC):
    """Plans, the execution ledger, tracking annotations, predictions and reviews"""

    # Plans
    @abstractmethod
    def save_plan(self, plan: AllocationPlan) -> AllocationPlan: ...

    @abstractmethod
    def get_plan(self, plan_id: int) -> AllocationPlan: ...

    @abstractmethod
    def set_plan_status(self, plan_id: int, status: PlanStatus,
                        applied_at: Optional[datetime] = None) -> AllocationPlan: ...

    @abstractmethod
    def get_applied_plan(self, scope_id: str) -> Optional[AllocationPlan]: ...

    # Execution ledger
    @abstractmethod
    def append_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    @abstractmethod
    def get_execution(self, record_id: int) -> ExecutionRecord: ...

    @abstractmethod
    def transition_execution(self, record_id: int, status: ExecutionStatus) -> ExecutionRecord: ...

    @abstractmethod
    def list_executions(self, segment_id: Optional[str] = None,
                        batch_id: Optional[int] = None,
                        status: Optional[ExecutionStatus] = None,
                        applied_before: Optional[datetime] = None) -> List[ExecutionRecord]:
        """Records in (created_at, record_id) order so history can be replayed"""

    # Tracking annotations
    @abstractmethod
    def get_tracking(self, record_id: int) -> TrackingAnnotation: ...

    @abstractmethod
    def set_tracking(self, record_id: int, annotation: Tracked) -> TrackingAnnotation:
        """Store the annotation unless one exists; return whichever annotation is stored"""

    # Batches
    @abstractmethod
    def save_batch(self, batch: ExecutionBatch) -> ExecutionBatch: ...

    @abstractmethod
    def get_batch(self, batch_id: int) -> ExecutionBatch: ...

    # Predictions and reviews
    @abstractmethod
    def save_prediction(self, prediction: PredictionRecord) -> PredictionRecord: ...

    @abstractmethod
    def get_prediction(self, prediction_id: int) -> PredictionRecord: ...

    @abstractmethod
    def save_review(self, review: ReviewSchedule) -> ReviewSchedule: ...

    @abstractmethod
    def get_review(self, review_id: int) -> ReviewSchedule: ...

    @abstractmethod
    def list_reviews(self, status: Optional[ReviewStatus] = None,
                     due_before: Optional[datetime] = None) -> List[ReviewSchedule]: ...
