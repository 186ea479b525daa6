"""
Rollback Manager

Reverts an applied change by writing a new ledger record with the previous
value, then marks the original rolled_back. History is never edited. A
failed rollback is reported to the caller and never retried here.
"""

import logging
import threading
from typing import Dict, Any, List, Optional

from .errors import MutationError, RollbackError
from .execution import ExecutionEngine, ExecutionItem
from .interfaces import Notifier, OptimizationStore
from .models import (
    ActionType, ControlChange, ExecutionRecord, ExecutionStatus, Recommendation, TrackingReport
)
from .notifications import notify_safely


class RollbackManager:
    """Manual and automatic rollback plus explicit re-apply"""

    def __init__(self, config: Dict[str, Any], store: OptimizationStore,
                 execution: ExecutionEngine, notifier: Optional[Notifier] = None,
                 telemetry=None):
        self.config = config
        self.store = store
        self.execution = execution
        self.notifier = notifier
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def should_auto_rollback(self, report: TrackingReport) -> bool:
        """Rollback recommendation confirmed by the post-change safety rule"""
        if not self.config.get('enable_auto_rollback', False):
            return False
        if report.recommendation != Recommendation.ROLLBACK:
            return False
        max_roas = self.config.get('auto_rollback_max_roas', 2.0)
        min_spend = self.config.get('auto_rollback_min_spend', 10.0)
        return report.current.roas < max_roas and report.current.spend > min_spend

    def rollback(self, execution_id: int, reason: Optional[str] = None,
                 trigger: str = 'manual') -> ExecutionRecord:
        """
        Restore the value an applied change replaced

        Args:
            execution_id: Ledger record to revert
            reason: Optional note appended to the ledger reason
            trigger: 'manual' or 'auto'

        Returns:
            The new rollback record

        Raises:
            RollbackError: the record is not applied, a newer change to the
                segment is still in effect, or the mutation failed
        """
        segment_id = self.store.get_execution(execution_id).segment_id
        with self._lock, self.execution.segment_lock(segment_id):
            original = self.store.get_execution(execution_id)
            if original.status != ExecutionStatus.APPLIED:
                raise RollbackError(
                    f"Execution #{execution_id} is {original.status.value}; only applied changes can be rolled back"
                )
            newer = self.superseding(original)
            if newer:
                raise RollbackError(
                    f"Execution #{execution_id} was superseded by #{newer[-1].record_id} on {original.segment_id}; "
                    f"roll back #{newer[-1].record_id} first"
                )

            text = f"rollback of #{execution_id}"
            item = ExecutionItem(
                segment=self.execution.segment_after(original),
                change=ControlChange(ActionType.ROLLBACK, original.previous_value, original.previous_state),
                reason=f"{text}: {reason}" if reason else text,
                rollback_of=execution_id,
            )
            record = self.execution.apply_item(item, original.scope_id)
            if record.status != ExecutionStatus.APPLIED:
                self.logger.error(f"Rollback of #{execution_id} failed: {record.error}")
                if self.telemetry:
                    self.telemetry.increment('optimizer_rollbacks_total', labels={'trigger': trigger, 'outcome': 'failed'})
                raise RollbackError(f"Rollback of #{execution_id} failed: {record.error}")

            self.store.transition_execution(execution_id, ExecutionStatus.ROLLED_BACK)

        self.logger.info(
            f"Rolled back #{execution_id} on {original.segment_id}: "
            f"{original.new_value:g} -> {original.previous_value:g} (#{record.record_id}, {trigger})"
        )
        if self.telemetry:
            self.telemetry.increment('optimizer_rollbacks_total', labels={'trigger': trigger, 'outcome': 'applied'})
        notify_safely(
            self.notifier,
            f"Change #{execution_id} rolled back",
            f"{original.segment.kind.value} {original.segment_id} restored to {original.previous_value:g} "
            f"({trigger}). {record.reason}",
        )
        return record

    def superseding(self, original: ExecutionRecord) -> List[ExecutionRecord]:
        """Later changes to the segment that are still in effect. Rollback records undo, they do not supersede"""
        key = (original.created_at, original.record_id)
        return [
            r for r in self.store.list_executions(segment_id=original.segment_id, status=ExecutionStatus.APPLIED)
            if r.rollback_of is None and (r.created_at, r.record_id) > key
        ]

    def reapply(self, execution_id: int) -> ExecutionRecord:
        """Apply a rolled-back change again as a new ledger record"""
        with self._lock:
            original = self.store.get_execution(execution_id)
            if original.status != ExecutionStatus.ROLLED_BACK:
                raise RollbackError(
                    f"Execution #{execution_id} is {original.status.value}; only rolled-back changes can be re-applied"
                )
            for record in self.store.list_executions(segment_id=original.segment_id,
                                                     status=ExecutionStatus.APPLIED):
                if record.reapply_of == execution_id:
                    raise RollbackError(f"Execution #{execution_id} already re-applied as #{record.record_id}")

            # The segment currently holds the value the rollback restored
            current = original.segment.with_control(original.previous_value, original.previous_state)
            item = ExecutionItem(
                segment=current,
                change=ControlChange(original.action, original.new_value, original.new_state),
                reason=f"re-apply of #{execution_id}",
                reapply_of=execution_id,
            )
            record = self.execution.apply_item(item, original.scope_id)

        if record.status != ExecutionStatus.APPLIED:
            raise MutationError(f"Re-apply of #{execution_id} failed: {record.error}")
        self.logger.info(f"Re-applied #{execution_id} on {original.segment_id} as #{record.record_id}")
        return record
