"""
Execution Engine

Applies approved plans, suggestion sets and manual changes through the
mutation client and writes one ledger record per change. Items for
different segments run in parallel; items for the same segment run in
order. A failing item never stops the batch.
"""

import logging
import threading
import time
from collections import OrderedDict, defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, List, Optional, Tuple

from .errors import PlanStateError, ScopeConflictError
from .interfaces import MetricsSource, MutationClient, Notifier, OptimizationStore
from .models import (
    ActionType, Allocation, BatchStatus, ControlChange, ExecutionBatch, ExecutionRecord,
    ExecutionStatus, ExecutionSummary, ExpectedImpact, PerformanceWindow, PlanStatus,
    Segment, SegmentKind, Suggestion
)
from .notifications import notify_safely
from .predictor import OutcomePredictor


@dataclass(frozen=True)
class ExecutionItem:
    """One change waiting to be applied"""
    segment: Segment
    change: ControlChange
    reason: str
    impact: ExpectedImpact = field(default_factory=ExpectedImpact)
    rollback_of: Optional[int] = None
    reapply_of: Optional[int] = None

    @property
    def segment_id(self) -> str:
        return self.segment.segment_id


def allocation_item(allocation: Allocation) -> ExecutionItem:
    """Translate a plan row into a control change for its segment kind"""
    segment = allocation.segment
    if segment.kind == SegmentKind.PLACEMENT:
        action = ActionType.ADJUSTMENT_SET
    elif segment.kind == SegmentKind.CAMPAIGN:
        action = ActionType.BUDGET_SET
    elif allocation.delta > 0:
        action = ActionType.BID_INCREASE
    else:
        action = ActionType.BID_DECREASE
    return ExecutionItem(
        segment=segment,
        change=ControlChange(action, allocation.suggested_value),
        reason=allocation.rationale,
        impact=ExpectedImpact(
            spend_change=allocation.projected_spend - allocation.current_spend,
            sales_change=allocation.projected_sales - allocation.current_sales,
        ),
    )


def suggestion_item(suggestion: Suggestion) -> ExecutionItem:
    return ExecutionItem(
        segment=suggestion.segment,
        change=suggestion.to_change(),
        reason=suggestion.reason,
        impact=suggestion.expected_impact or ExpectedImpact(),
    )


def batch_status(total: int, succeeded: int, failed: int) -> BatchStatus:
    if total == 0 or (failed == 0 and succeeded > 0):
        return BatchStatus.COMPLETED
    if succeeded == 0:
        return BatchStatus.FAILED
    return BatchStatus.PARTIALLY_COMPLETED


class ExecutionEngine:
    """Batch execution against the mutation client with an append-only ledger"""

    def __init__(self, config: Dict[str, Any], store: OptimizationStore,
                 client: MutationClient, metrics: MetricsSource,
                 predictor: OutcomePredictor, reviews=None,
                 notifier: Optional[Notifier] = None, telemetry=None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.store = store
        self.client = client
        self.metrics = metrics
        self.predictor = predictor
        self.reviews = reviews
        self.notifier = notifier
        self.telemetry = telemetry
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.timeout = config.get('mutation_timeout_seconds', 30.0)
        self.max_workers = max(1, config.get('execution_max_workers', 4))
        self.baseline_days = config.get('baseline_window_days', 7)

        self._scope_lock = threading.Lock()
        self._in_flight = set()
        self._segment_locks_guard = threading.Lock()
        self._segment_locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        # Timed-out calls still running, by segment; guarded by the segment lock
        self._orphans: Dict[str, Future] = {}

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    def execute_plan(self, plan_id: int,
                     cancel_event: Optional[threading.Event] = None) -> ExecutionSummary:
        """
        Apply an approved plan

        On completed or partially_completed the plan becomes applied and the
        scope's previously applied plan is superseded. A failed batch leaves
        the plan approved so it can be executed again.
        """
        plan = self.store.get_plan(plan_id)
        if plan.status != PlanStatus.APPROVED:
            raise PlanStateError(f"Plan #{plan_id} is {plan.status.value}; only approved plans can be executed")

        items = [allocation_item(a) for a in plan.changed_allocations()]
        summary = self._run(plan.scope_id, 'plan', items, cancel_event, plan_id=plan_id)

        if summary.status in (BatchStatus.COMPLETED, BatchStatus.PARTIALLY_COMPLETED):
            previous = self.store.get_applied_plan(plan.scope_id)
            if previous is not None and previous.plan_id != plan_id:
                self.store.set_plan_status(previous.plan_id, PlanStatus.SUPERSEDED)
                self.logger.info(f"Plan #{previous.plan_id} superseded by plan #{plan_id}")
            self.store.set_plan_status(plan_id, PlanStatus.APPLIED, applied_at=self.clock())
        return summary

    def execute_suggestions(self, scope_id: str, suggestions: List[Suggestion],
                            cancel_event: Optional[threading.Event] = None) -> ExecutionSummary:
        items = [suggestion_item(s) for s in suggestions]
        return self._run(scope_id, 'suggestions', items, cancel_event)

    def apply_change(self, scope_id: str, segment: Segment, change: ControlChange,
                     reason: str) -> ExecutionSummary:
        """Single manual change, recorded and reviewed like any other batch"""
        item = ExecutionItem(segment=segment, change=change, reason=reason)
        return self._run(scope_id, 'manual', [item], None)

    # ------------------------------------------------------------------ #
    # Batch processing
    # ------------------------------------------------------------------ #

    def _run(self, scope_id: str, source: str, items: List[ExecutionItem],
             cancel_event: Optional[threading.Event], plan_id: Optional[int] = None) -> ExecutionSummary:
        with self._scope_lock:
            if scope_id in self._in_flight:
                raise ScopeConflictError(scope_id)
            self._in_flight.add(scope_id)

        try:
            return self._run_batch(scope_id, source, items, cancel_event, plan_id)
        finally:
            with self._scope_lock:
                self._in_flight.discard(scope_id)

    def _run_batch(self, scope_id: str, source: str, items: List[ExecutionItem],
                   cancel_event: Optional[threading.Event], plan_id: Optional[int]) -> ExecutionSummary:
        started = self.clock()
        batch = self.store.save_batch(ExecutionBatch(
            scope_id=scope_id,
            source=source,
            total_items=len(items),
            created_at=started,
            baseline=self.baseline_snapshot(scope_id, items, started),
            plan_id=plan_id,
            status=BatchStatus.EXECUTING,
        ))
        self.logger.info(f"Batch #{batch.batch_id} ({source}) for {scope_id}: {len(items)} items")

        groups: Dict[str, List[ExecutionItem]] = OrderedDict()
        for item in items:
            groups.setdefault(item.segment_id, []).append(item)

        outcomes: List[Tuple[ExecutionItem, Optional[ExecutionRecord]]] = []
        if groups:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups))) as pool:
                futures = [
                    pool.submit(self._run_group, group, scope_id, batch.batch_id, cancel_event)
                    for group in groups.values()
                ]
                for future in futures:
                    outcomes.extend(future.result())

        records = [r for _, r in outcomes if r is not None]
        applied = [(i, r) for i, r in outcomes if r is not None and r.status == ExecutionStatus.APPLIED]
        failures = tuple((r.segment_id, r.error or '') for r in records if r.status == ExecutionStatus.FAILED)
        skipped = len(outcomes) - len(records)

        batch.succeeded = len(applied)
        batch.failed = len(failures)
        batch.skipped = skipped
        batch.cancelled = bool(cancel_event is not None and cancel_event.is_set() and skipped)
        batch.record_ids = [r.record_id for r in sorted(records, key=lambda r: r.record_id)]
        batch.status = batch_status(len(items), batch.succeeded, batch.failed)
        batch.completed_at = self.clock()
        batch = self.store.save_batch(batch)

        review_ids: Tuple[int, ...] = ()
        if applied and self.reviews is not None:
            predictions = self.predictor.predict(
                baseline_spend=batch.baseline.spend if batch.baseline else 0.0,
                baseline_sales=batch.baseline.sales if batch.baseline else 0.0,
                impacts=[i.impact for i, _ in applied],
                source_type='batch',
                source_id=batch.batch_id,
                now=batch.completed_at,
            )
            review_ids = tuple(self.reviews.schedule(batch.batch_id, predictions, batch.completed_at))

        log = self.logger.info if batch.status == BatchStatus.COMPLETED else self.logger.warning
        log(
            f"Batch #{batch.batch_id} {batch.status.value}: {batch.succeeded} applied, "
            f"{batch.failed} failed, {batch.skipped} skipped"
        )
        if self.telemetry:
            self.telemetry.record_batch(source, batch.status.value, batch.succeeded, batch.failed)
        if batch.failed or batch.cancelled:
            notify_safely(
                self.notifier,
                f"Batch #{batch.batch_id} {batch.status.value}",
                f"Scope {scope_id}: {batch.succeeded} applied, {batch.failed} failed, {batch.skipped} skipped",
            )

        return ExecutionSummary(
            batch_id=batch.batch_id,
            scope_id=scope_id,
            status=batch.status,
            total=len(items),
            succeeded=batch.succeeded,
            failed=batch.failed,
            skipped=batch.skipped,
            cancelled=batch.cancelled,
            record_ids=tuple(batch.record_ids),
            failures=failures,
            review_ids=review_ids,
        )

    def _run_group(self, group: List[ExecutionItem], scope_id: str, batch_id: int,
                   cancel_event: Optional[threading.Event]) -> List[Tuple[ExecutionItem, Optional[ExecutionRecord]]]:
        results = []
        for item in group:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.info(f"Batch #{batch_id} cancelled, skipping {item.segment_id}")
                results.append((item, None))
                continue
            results.append((item, self.apply_item(item, scope_id, batch_id)))
        return results

    def baseline_snapshot(self, scope_id: str, items: List[ExecutionItem],
                          now: datetime) -> PerformanceWindow:
        """Combined pre-change metrics of every segment the batch touches"""
        start = now - timedelta(days=self.baseline_days)
        segment_ids = list(OrderedDict.fromkeys(item.segment_id for item in items))
        windows = self.metrics.get_performance_windows(segment_ids, start, now) if segment_ids else []
        return PerformanceWindow.combine(scope_id, windows, start, now)

    # ------------------------------------------------------------------ #
    # Single item
    # ------------------------------------------------------------------ #

    def apply_item(self, item: ExecutionItem, scope_id: str,
                   batch_id: Optional[int] = None) -> ExecutionRecord:
        """
        Apply one change and append its ledger record

        The previous value is read from the segment's latest applied ledger
        record, so replaying the ledger in order reproduces the segment's
        history. The item's own snapshot is used only for a segment the ledger
        has never touched.

        Returns:
            The appended record, status applied or failed
        """
        with self.segment_lock(item.segment_id):
            segment = self.current_segment(item.segment)
            success, error = self._mutate(segment, item.change)
            record = ExecutionRecord(
                segment=segment,
                action=item.change.action,
                previous_value=segment.control_value,
                new_value=item.change.value,
                reason=item.reason,
                created_at=self.clock(),
                status=ExecutionStatus.APPLIED if success else ExecutionStatus.FAILED,
                scope_id=scope_id,
                batch_id=batch_id,
                previous_state=segment.state,
                new_state=item.change.state or segment.state,
                error=error,
                rollback_of=item.rollback_of,
                reapply_of=item.reapply_of,
            )
            record = self.store.append_execution(record)

        if success:
            self.logger.debug(
                f"Applied {item.change.action.value} to {item.segment_id}: "
                f"{record.previous_value:g} -> {record.new_value:g} (#{record.record_id})"
            )
        else:
            self.logger.error(f"Failed {item.change.action.value} on {item.segment_id}: {error}")
        return record

    def segment_lock(self, segment_id: str) -> threading.RLock:
        """Re-entrant lock serializing every write to one segment"""
        with self._segment_locks_guard:
            return self._segment_locks[segment_id]

    def latest_applied(self, segment_id: str) -> Optional[ExecutionRecord]:
        history = self.store.list_executions(segment_id=segment_id, status=ExecutionStatus.APPLIED)
        return history[-1] if history else None

    def current_segment(self, snapshot: Segment) -> Segment:
        """Segment as the ledger last left it, or the snapshot when there is no history"""
        latest = self.latest_applied(snapshot.segment_id)
        if latest is None:
            return snapshot
        current = self.segment_after(latest)
        if current.control_value != snapshot.control_value or current.state != snapshot.state:
            self.logger.debug(
                f"{snapshot.segment_id} moved since it was read: {snapshot.control_value:g} -> "
                f"{current.control_value:g} (#{latest.record_id})"
            )
        return current

    def _mutate(self, segment: Segment, change: ControlChange) -> Tuple[bool, Optional[str]]:
        """Call the mutation client with a bounded wait; any failure becomes an error string"""
        segment_id = segment.segment_id
        orphan = self._orphans.get(segment_id)
        if orphan is not None:
            wait([orphan], timeout=self.timeout)
            if not orphan.done():
                return False, f"Earlier mutation on {segment_id} is still in flight"
            del self._orphans[segment_id]

        started = time.monotonic()
        # A dedicated worker per call so a hung request cannot block later items
        caller = ThreadPoolExecutor(max_workers=1)
        try:
            future = caller.submit(self.client.apply_control_value, segment, change)
            result = future.result(timeout=self.timeout)
        except FutureTimeout:
            # The call keeps running; the segment stays busy until it returns
            self._orphans[segment_id] = future
            future.add_done_callback(lambda f: self._late_result(segment_id, f))
            return False, f"Mutation timed out after {self.timeout:g}s; outcome unknown"
        except Exception as e:
            return False, str(e) or e.__class__.__name__
        finally:
            caller.shutdown(wait=False)
            if self.telemetry:
                self.telemetry.record_mutation_latency(segment.kind.value, time.monotonic() - started)

        if not result.success:
            return False, result.error or 'Mutation rejected'
        return True, None

    def _late_result(self, segment_id: str, future: Future) -> None:
        error = future.exception()
        if error is not None:
            self.logger.warning(f"Timed-out mutation on {segment_id} finished with an error: {error}")
        elif future.result().success:
            self.logger.warning(f"Timed-out mutation on {segment_id} was applied after its ledger record failed")

    def segment_after(self, record: ExecutionRecord) -> Segment:
        """Segment as it stands once the record's change is in effect"""
        return replace(record.segment, control_value=record.new_value,
                       state=record.new_state or record.segment.state)
