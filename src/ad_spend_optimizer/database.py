"""
PostgreSQL repository for the Ad Spend Optimizer

Implements MetricsSource, SegmentSource and OptimizationStore over psycopg2.
Errors are logged and re-raised; ledger writes are never dropped silently.
"""

import os
import logging
from contextlib import closing
from datetime import datetime
from typing import List, Dict, Any, Optional

import psycopg2
import psycopg2.extras

from .aggregator import RawPerformanceRecord, RecordMetricsSource
from .errors import RecordNotFoundError
from .interfaces import MetricsSource, OptimizationStore, SegmentSource
from .models import (
    ActionType, Allocation, AllocationPlan, BatchStatus, ControlBounds, EffectRating,
    ExecutionBatch, ExecutionRecord, ExecutionStatus, PerformanceWindow, PlanStatus,
    PredictionRecord, Recommendation, ReviewSchedule, ReviewStatus, Segment, SegmentKind,
    TrackingAnnotation, TrackingReport, Tracked, UNTRACKED
)
from .store import check_transition

SCHEMA = """
CREATE TABLE IF NOT EXISTS segments (
    segment_id TEXT PRIMARY KEY,
    scope_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    campaign_id TEXT NOT NULL,
    value TEXT NOT NULL,
    control_value NUMERIC(12, 2) NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'enabled'
);

CREATE TABLE IF NOT EXISTS segment_performance (
    segment_id TEXT NOT NULL REFERENCES segments(segment_id),
    period TIMESTAMP NOT NULL,
    impressions INTEGER NOT NULL DEFAULT 0,
    clicks INTEGER NOT NULL DEFAULT 0,
    spend NUMERIC(12, 2) NOT NULL DEFAULT 0,
    sales NUMERIC(12, 2) NOT NULL DEFAULT 0,
    orders INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (segment_id, period)
);

CREATE TABLE IF NOT EXISTS allocation_plans (
    id SERIAL PRIMARY KEY,
    scope_id TEXT NOT NULL,
    total_budget NUMERIC(12, 2) NOT NULL,
    target_roas NUMERIC(8, 4) NOT NULL,
    bounds JSONB NOT NULL,
    allocations JSONB NOT NULL,
    generated_at TIMESTAMP NOT NULL,
    status TEXT NOT NULL,
    applied_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS execution_batches (
    id SERIAL PRIMARY KEY,
    scope_id TEXT NOT NULL,
    source TEXT NOT NULL,
    total_items INTEGER NOT NULL,
    created_at TIMESTAMP NOT NULL,
    baseline JSONB,
    plan_id INTEGER REFERENCES allocation_plans(id),
    status TEXT NOT NULL,
    succeeded INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    cancelled BOOLEAN NOT NULL DEFAULT FALSE,
    record_ids JSONB NOT NULL DEFAULT '[]',
    completed_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS execution_records (
    id SERIAL PRIMARY KEY,
    scope_id TEXT NOT NULL,
    batch_id INTEGER REFERENCES execution_batches(id),
    segment JSONB NOT NULL,
    segment_id TEXT NOT NULL,
    action TEXT NOT NULL,
    previous_value NUMERIC(12, 2) NOT NULL,
    new_value NUMERIC(12, 2) NOT NULL,
    previous_state TEXT,
    new_state TEXT,
    reason TEXT NOT NULL,
    status TEXT NOT NULL,
    error TEXT,
    rollback_of INTEGER REFERENCES execution_records(id),
    reapply_of INTEGER REFERENCES execution_records(id),
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_execution_records_segment ON execution_records(segment_id, created_at);

CREATE TABLE IF NOT EXISTS tracking_annotations (
    record_id INTEGER PRIMARY KEY REFERENCES execution_records(id),
    report JSONB NOT NULL,
    tracked_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS prediction_records (
    id SERIAL PRIMARY KEY,
    source_type TEXT NOT NULL,
    source_id INTEGER NOT NULL,
    horizon_days INTEGER NOT NULL,
    multiplier NUMERIC(6, 4) NOT NULL,
    baseline_spend NUMERIC(12, 2) NOT NULL,
    baseline_sales NUMERIC(12, 2) NOT NULL,
    predicted_spend NUMERIC(12, 2) NOT NULL,
    predicted_sales NUMERIC(12, 2) NOT NULL,
    predicted_acos NUMERIC(10, 4) NOT NULL,
    predicted_roas NUMERIC(10, 4) NOT NULL,
    spend_change_pct NUMERIC(10, 4) NOT NULL,
    sales_change_pct NUMERIC(10, 4) NOT NULL,
    acos_change_pct NUMERIC(10, 4) NOT NULL,
    roas_change_pct NUMERIC(10, 4) NOT NULL,
    confidence NUMERIC(6, 4) NOT NULL,
    rationale TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS review_schedules (
    id SERIAL PRIMARY KEY,
    prediction_id INTEGER NOT NULL REFERENCES prediction_records(id),
    batch_id INTEGER NOT NULL REFERENCES execution_batches(id),
    horizon_days INTEGER NOT NULL,
    scheduled_at TIMESTAMP NOT NULL,
    status TEXT NOT NULL,
    completed_at TIMESTAMP,
    notes TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_review_schedules_due ON review_schedules(status, scheduled_at);
"""


# ---------------------------------------------------------------------- #
# JSON conversion
# ---------------------------------------------------------------------- #

def segment_to_dict(segment: Segment) -> Dict[str, Any]:
    return {
        'segment_id': segment.segment_id,
        'kind': segment.kind.value,
        'campaign_id': segment.campaign_id,
        'value': segment.value,
        'control_value': segment.control_value,
        'state': segment.state,
    }


def segment_from_dict(data: Dict[str, Any]) -> Segment:
    return Segment(
        segment_id=data['segment_id'],
        kind=SegmentKind(data['kind']),
        campaign_id=data['campaign_id'],
        value=data['value'],
        control_value=float(data['control_value']),
        state=data.get('state', 'enabled'),
    )


def window_to_dict(window: PerformanceWindow) -> Dict[str, Any]:
    return {
        'segment_id': window.segment_id,
        'start': window.start.isoformat(),
        'end': window.end.isoformat(),
        'impressions': window.impressions,
        'clicks': window.clicks,
        'spend': window.spend,
        'sales': window.sales,
        'orders': window.orders,
    }


def window_from_dict(data: Dict[str, Any]) -> PerformanceWindow:
    return PerformanceWindow(
        segment_id=data['segment_id'],
        start=datetime.fromisoformat(data['start']),
        end=datetime.fromisoformat(data['end']),
        impressions=data['impressions'],
        clicks=data['clicks'],
        spend=data['spend'],
        sales=data['sales'],
        orders=data['orders'],
    )


def allocation_to_dict(allocation: Allocation) -> Dict[str, Any]:
    return {
        'segment': segment_to_dict(allocation.segment),
        'current_value': allocation.current_value,
        'suggested_value': allocation.suggested_value,
        'current_spend': allocation.current_spend,
        'current_sales': allocation.current_sales,
        'projected_spend': allocation.projected_spend,
        'projected_sales': allocation.projected_sales,
        'marginal_return': allocation.marginal_return,
        'confidence': allocation.confidence,
        'rationale': allocation.rationale,
        'budget_constrained': allocation.budget_constrained,
    }


def allocation_from_dict(data: Dict[str, Any]) -> Allocation:
    values = dict(data)
    values['segment'] = segment_from_dict(data['segment'])
    return Allocation(**values)


def report_to_dict(report: TrackingReport) -> Dict[str, Any]:
    return {
        'execution_id': report.execution_id,
        'segment_id': report.segment_id,
        'baseline': window_to_dict(report.baseline),
        'current': window_to_dict(report.current),
        'deltas': report.deltas,
        'percent_changes': report.percent_changes,
        'score': report.score,
        'rating': report.rating.value,
        'recommendation': report.recommendation.value,
        'summary': report.summary,
        'generated_at': report.generated_at.isoformat(),
    }


def report_from_dict(data: Dict[str, Any]) -> TrackingReport:
    return TrackingReport(
        execution_id=data['execution_id'],
        segment_id=data['segment_id'],
        baseline=window_from_dict(data['baseline']),
        current=window_from_dict(data['current']),
        deltas=data['deltas'],
        percent_changes=data['percent_changes'],
        score=data['score'],
        rating=EffectRating(data['rating']),
        recommendation=Recommendation(data['recommendation']),
        summary=data['summary'],
        generated_at=datetime.fromisoformat(data['generated_at']),
    )


def _float(value) -> float:
    return float(value) if value is not None else 0.0


class PostgresRepository(MetricsSource, SegmentSource, OptimizationStore):
    """PostgreSQL-backed segments, metrics, plans, ledger, predictions and reviews"""

    def __init__(self, connection_string: str = None, granularity: str = 'daily'):
        """
        Initialize repository

        Args:
            connection_string: PostgreSQL connection string (optional, will use env vars if not provided)
            granularity: Bucket size for performance windows ('daily' or 'hourly')
        """
        if connection_string:
            self.connection_string = connection_string
        else:
            db_host = os.getenv('DB_HOST', 'localhost')
            db_port = os.getenv('DB_PORT', '5432')
            db_name = os.getenv('DB_NAME', 'ad_spend')
            db_user = os.getenv('DB_USER', 'postgres')
            db_password = os.getenv('DB_PASSWORD')

            if not db_password:
                raise ValueError("DB_PASSWORD environment variable is required")

            self.connection_string = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"

        self.logger = logging.getLogger(__name__)
        self._metrics = RecordMetricsSource(self.fetch_performance_rows, granularity)

    def get_connection(self):
        """Get database connection; callers close it when done"""
        return psycopg2.connect(self.connection_string)

    def _fetch_all(self, query: str, params=None) -> List[Dict[str, Any]]:
        try:
            with closing(self.get_connection()) as connection, connection as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    return [dict(row) for row in cursor.fetchall()]
        except psycopg2.Error as e:
            self.logger.error(f"Database query failed: {e}")
            raise

    def _fetch_one(self, query: str, params=None) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _write(self, query: str, params=None) -> Optional[Dict[str, Any]]:
        """Execute a write and return the RETURNING row, if any"""
        try:
            with closing(self.get_connection()) as connection, connection as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    row = cursor.fetchone() if cursor.description else None
                    conn.commit()
                    return dict(row) if row else None
        except psycopg2.Error as e:
            self.logger.error(f"Database write failed: {e}")
            raise

    def create_schema(self) -> None:
        """Create all tables if they do not exist"""
        self._write(SCHEMA)
        self.logger.info("Database schema ready")

    # ------------------------------------------------------------------ #
    # MetricsSource / SegmentSource
    # ------------------------------------------------------------------ #

    def fetch_performance_rows(self, segment_ids: List[str], start: datetime,
                               end: datetime) -> List[RawPerformanceRecord]:
        query = """
        SELECT segment_id, period, impressions, clicks, spend, sales, orders
        FROM segment_performance
        WHERE segment_id = ANY(%s)
        AND period >= %s
        AND period < %s
        ORDER BY period
        """
        rows = self._fetch_all(query, (list(segment_ids), start, end))
        return [
            RawPerformanceRecord(
                segment_id=row['segment_id'],
                period=row['period'],
                impressions=row['impressions'] or 0,
                clicks=row['clicks'] or 0,
                spend=_float(row['spend']),
                sales=_float(row['sales']),
                orders=row['orders'] or 0,
            )
            for row in rows
        ]

    def get_performance_windows(self, segment_ids: List[str], start: datetime,
                                end: datetime) -> List[PerformanceWindow]:
        return self._metrics.get_performance_windows(segment_ids, start, end)

    def get_segments(self, scope_id: str,
                     kinds: Optional[List[SegmentKind]] = None) -> List[Segment]:
        query = """
        SELECT segment_id, kind, campaign_id, value, control_value, state
        FROM segments
        WHERE scope_id = %s
        ORDER BY segment_id
        """
        segments = [segment_from_dict(row) for row in self._fetch_all(query, (scope_id,))]
        if kinds:
            segments = [s for s in segments if s.kind in kinds]
        return segments

    # ------------------------------------------------------------------ #
    # Plans
    # ------------------------------------------------------------------ #

    def _plan_from_row(self, row: Dict[str, Any]) -> AllocationPlan:
        bounds = row['bounds']
        return AllocationPlan(
            scope_id=row['scope_id'],
            total_budget=_float(row['total_budget']),
            target_roas=_float(row['target_roas']),
            bounds=ControlBounds(bounds['min_value'], bounds['max_value'], bounds.get('step')),
            allocations=[allocation_from_dict(a) for a in row['allocations']],
            generated_at=row['generated_at'],
            status=PlanStatus(row['status']),
            plan_id=row['id'],
            applied_at=row['applied_at'],
        )

    def save_plan(self, plan: AllocationPlan) -> AllocationPlan:
        params = {
            'id': plan.plan_id,
            'scope_id': plan.scope_id,
            'total_budget': plan.total_budget,
            'target_roas': plan.target_roas,
            'bounds': psycopg2.extras.Json({
                'min_value': plan.bounds.min_value,
                'max_value': plan.bounds.max_value,
                'step': plan.bounds.step,
            }),
            'allocations': psycopg2.extras.Json([allocation_to_dict(a) for a in plan.allocations]),
            'generated_at': plan.generated_at,
            'status': plan.status.value,
            'applied_at': plan.applied_at,
        }
        if plan.plan_id is None:
            query = """
            INSERT INTO allocation_plans (
                scope_id, total_budget, target_roas, bounds, allocations,
                generated_at, status, applied_at
            ) VALUES (
                %(scope_id)s, %(total_budget)s, %(target_roas)s, %(bounds)s, %(allocations)s,
                %(generated_at)s, %(status)s, %(applied_at)s
            )
            RETURNING *
            """
        else:
            query = """
            UPDATE allocation_plans SET
                allocations = %(allocations)s, status = %(status)s, applied_at = %(applied_at)s
            WHERE id = %(id)s
            RETURNING *
            """
        row = self._write(query, params)
        if row is None:
            raise RecordNotFoundError(f"Plan #{plan.plan_id} not found")
        self.logger.info(f"Plan saved: ID {row['id']} ({row['status']})")
        return self._plan_from_row(row)

    def get_plan(self, plan_id: int) -> AllocationPlan:
        row = self._fetch_one("SELECT * FROM allocation_plans WHERE id = %s", (plan_id,))
        if row is None:
            raise RecordNotFoundError(f"Plan #{plan_id} not found")
        return self._plan_from_row(row)

    def set_plan_status(self, plan_id: int, status: PlanStatus,
                        applied_at: Optional[datetime] = None) -> AllocationPlan:
        query = """
        UPDATE allocation_plans
        SET status = %s, applied_at = COALESCE(%s, applied_at)
        WHERE id = %s
        RETURNING *
        """
        row = self._write(query, (status.value, applied_at, plan_id))
        if row is None:
            raise RecordNotFoundError(f"Plan #{plan_id} not found")
        return self._plan_from_row(row)

    def get_applied_plan(self, scope_id: str) -> Optional[AllocationPlan]:
        query = """
        SELECT * FROM allocation_plans
        WHERE scope_id = %s AND status = %s
        ORDER BY applied_at DESC NULLS LAST, id DESC
        LIMIT 1
        """
        row = self._fetch_one(query, (scope_id, PlanStatus.APPLIED.value))
        return self._plan_from_row(row) if row else None

    # ------------------------------------------------------------------ #
    # Execution ledger
    # ------------------------------------------------------------------ #

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> ExecutionRecord:
        return ExecutionRecord(
            segment=segment_from_dict(row['segment']),
            action=ActionType(row['action']),
            previous_value=_float(row['previous_value']),
            new_value=_float(row['new_value']),
            reason=row['reason'],
            created_at=row['created_at'],
            status=ExecutionStatus(row['status']),
            scope_id=row['scope_id'],
            batch_id=row['batch_id'],
            previous_state=row['previous_state'],
            new_state=row['new_state'],
            error=row['error'],
            rollback_of=row['rollback_of'],
            reapply_of=row['reapply_of'],
            record_id=row['id'],
        )

    def append_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.record_id is not None:
            raise ValueError("Execution records are append-only; new rows must not carry an id")
        query = """
        INSERT INTO execution_records (
            scope_id, batch_id, segment, segment_id, action, previous_value, new_value,
            previous_state, new_state, reason, status, error, rollback_of, reapply_of, created_at
        ) VALUES (
            %(scope_id)s, %(batch_id)s, %(segment)s, %(segment_id)s, %(action)s, %(previous_value)s,
            %(new_value)s, %(previous_state)s, %(new_state)s, %(reason)s, %(status)s, %(error)s,
            %(rollback_of)s, %(reapply_of)s, %(created_at)s
        )
        RETURNING *
        """
        row = self._write(query, {
            'scope_id': record.scope_id,
            'batch_id': record.batch_id,
            'segment': psycopg2.extras.Json(segment_to_dict(record.segment)),
            'segment_id': record.segment_id,
            'action': record.action.value,
            'previous_value': record.previous_value,
            'new_value': record.new_value,
            'previous_state': record.previous_state,
            'new_state': record.new_state,
            'reason': record.reason,
            'status': record.status.value,
            'error': record.error,
            'rollback_of': record.rollback_of,
            'reapply_of': record.reapply_of,
            'created_at': record.created_at,
        })
        self.logger.debug(f"Execution record saved: ID {row['id']}")
        return self._record_from_row(row)

    def get_execution(self, record_id: int) -> ExecutionRecord:
        row = self._fetch_one("SELECT * FROM execution_records WHERE id = %s", (record_id,))
        if row is None:
            raise RecordNotFoundError(f"Execution #{record_id} not found")
        return self._record_from_row(row)

    def transition_execution(self, record_id: int, status: ExecutionStatus) -> ExecutionRecord:
        try:
            with closing(self.get_connection()) as connection, connection as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    cursor.execute("SELECT * FROM execution_records WHERE id = %s FOR UPDATE", (record_id,))
                    row = cursor.fetchone()
                    if row is None:
                        raise RecordNotFoundError(f"Execution #{record_id} not found")
                    check_transition(self._record_from_row(dict(row)), status)
                    cursor.execute(
                        "UPDATE execution_records SET status = %s WHERE id = %s RETURNING *",
                        (status.value, record_id)
                    )
                    updated = cursor.fetchone()
                    conn.commit()
                    return self._record_from_row(dict(updated))
        except psycopg2.Error as e:
            self.logger.error(f"Error updating execution #{record_id}: {e}")
            raise

    def list_executions(self, segment_id: Optional[str] = None,
                        batch_id: Optional[int] = None,
                        status: Optional[ExecutionStatus] = None,
                        applied_before: Optional[datetime] = None) -> List[ExecutionRecord]:
        clauses, params = [], []
        if segment_id is not None:
            clauses.append("segment_id = %s")
            params.append(segment_id)
        if batch_id is not None:
            clauses.append("batch_id = %s")
            params.append(batch_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if applied_before is not None:
            clauses.append("created_at <= %s")
            params.append(applied_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM execution_records {where} ORDER BY created_at, id"
        return [self._record_from_row(row) for row in self._fetch_all(query, tuple(params))]

    # ------------------------------------------------------------------ #
    # Tracking annotations
    # ------------------------------------------------------------------ #

    def get_tracking(self, record_id: int) -> TrackingAnnotation:
        self.get_execution(record_id)
        row = self._fetch_one("SELECT report FROM tracking_annotations WHERE record_id = %s", (record_id,))
        return Tracked(report_from_dict(row['report'])) if row else UNTRACKED

    def set_tracking(self, record_id: int, annotation: Tracked) -> TrackingAnnotation:
        query = """
        INSERT INTO tracking_annotations (record_id, report)
        VALUES (%s, %s)
        ON CONFLICT (record_id) DO NOTHING
        RETURNING record_id
        """
        inserted = self._write(query, (record_id, psycopg2.extras.Json(report_to_dict(annotation.report))))
        if inserted:
            return annotation
        self.logger.debug(f"Execution #{record_id} already tracked, keeping existing report")
        return self.get_tracking(record_id)

    # ------------------------------------------------------------------ #
    # Batches
    # ------------------------------------------------------------------ #

    @staticmethod
    def _batch_from_row(row: Dict[str, Any]) -> ExecutionBatch:
        return ExecutionBatch(
            scope_id=row['scope_id'],
            source=row['source'],
            total_items=row['total_items'],
            created_at=row['created_at'],
            baseline=window_from_dict(row['baseline']) if row['baseline'] else None,
            plan_id=row['plan_id'],
            status=BatchStatus(row['status']),
            succeeded=row['succeeded'],
            failed=row['failed'],
            skipped=row['skipped'],
            cancelled=row['cancelled'],
            record_ids=list(row['record_ids'] or []),
            completed_at=row['completed_at'],
            batch_id=row['id'],
        )

    def save_batch(self, batch: ExecutionBatch) -> ExecutionBatch:
        params = {
            'id': batch.batch_id,
            'scope_id': batch.scope_id,
            'source': batch.source,
            'total_items': batch.total_items,
            'created_at': batch.created_at,
            'baseline': psycopg2.extras.Json(window_to_dict(batch.baseline)) if batch.baseline else None,
            'plan_id': batch.plan_id,
            'status': batch.status.value,
            'succeeded': batch.succeeded,
            'failed': batch.failed,
            'skipped': batch.skipped,
            'cancelled': batch.cancelled,
            'record_ids': psycopg2.extras.Json(list(batch.record_ids)),
            'completed_at': batch.completed_at,
        }
        if batch.batch_id is None:
            query = """
            INSERT INTO execution_batches (
                scope_id, source, total_items, created_at, baseline, plan_id, status,
                succeeded, failed, skipped, cancelled, record_ids, completed_at
            ) VALUES (
                %(scope_id)s, %(source)s, %(total_items)s, %(created_at)s, %(baseline)s, %(plan_id)s,
                %(status)s, %(succeeded)s, %(failed)s, %(skipped)s, %(cancelled)s, %(record_ids)s,
                %(completed_at)s
            )
            RETURNING *
            """
        else:
            query = """
            UPDATE execution_batches SET
                status = %(status)s, succeeded = %(succeeded)s, failed = %(failed)s,
                skipped = %(skipped)s, cancelled = %(cancelled)s, record_ids = %(record_ids)s,
                completed_at = %(completed_at)s
            WHERE id = %(id)s
            RETURNING *
            """
        row = self._write(query, params)
        if row is None:
            raise RecordNotFoundError(f"Batch #{batch.batch_id} not found")
        return self._batch_from_row(row)

    def get_batch(self, batch_id: int) -> ExecutionBatch:
        row = self._fetch_one("SELECT * FROM execution_batches WHERE id = %s", (batch_id,))
        if row is None:
            raise RecordNotFoundError(f"Batch #{batch_id} not found")
        return self._batch_from_row(row)

    # ------------------------------------------------------------------ #
    # Predictions and reviews
    # ------------------------------------------------------------------ #

    PREDICTION_FIELDS = (
        'source_type', 'source_id', 'horizon_days', 'multiplier', 'baseline_spend', 'baseline_sales',
        'predicted_spend', 'predicted_sales', 'predicted_acos', 'predicted_roas', 'spend_change_pct',
        'sales_change_pct', 'acos_change_pct', 'roas_change_pct', 'confidence', 'rationale', 'created_at',
    )

    def _prediction_from_row(self, row: Dict[str, Any]) -> PredictionRecord:
        values = {}
        for name in self.PREDICTION_FIELDS:
            value = row[name]
            if name not in ('source_type', 'source_id', 'horizon_days', 'rationale', 'created_at'):
                value = _float(value)
            values[name] = value
        return PredictionRecord(prediction_id=row['id'], **values)

    def save_prediction(self, prediction: PredictionRecord) -> PredictionRecord:
        if prediction.prediction_id is not None:
            return prediction
        columns = ', '.join(self.PREDICTION_FIELDS)
        placeholders = ', '.join(f"%({name})s" for name in self.PREDICTION_FIELDS)
        query = f"INSERT INTO prediction_records ({columns}) VALUES ({placeholders}) RETURNING *"
        row = self._write(query, {name: getattr(prediction, name) for name in self.PREDICTION_FIELDS})
        return self._prediction_from_row(row)

    def get_prediction(self, prediction_id: int) -> PredictionRecord:
        row = self._fetch_one("SELECT * FROM prediction_records WHERE id = %s", (prediction_id,))
        if row is None:
            raise RecordNotFoundError(f"Prediction #{prediction_id} not found")
        return self._prediction_from_row(row)

    @staticmethod
    def _review_from_row(row: Dict[str, Any]) -> ReviewSchedule:
        return ReviewSchedule(
            prediction_id=row['prediction_id'],
            batch_id=row['batch_id'],
            horizon_days=row['horizon_days'],
            scheduled_at=row['scheduled_at'],
            status=ReviewStatus(row['status']),
            completed_at=row['completed_at'],
            notes=row['notes'] or '',
            review_id=row['id'],
        )

    def save_review(self, review: ReviewSchedule) -> ReviewSchedule:
        params = {
            'id': review.review_id,
            'prediction_id': review.prediction_id,
            'batch_id': review.batch_id,
            'horizon_days': review.horizon_days,
            'scheduled_at': review.scheduled_at,
            'status': review.status.value,
            'completed_at': review.completed_at,
            'notes': review.notes,
        }
        if review.review_id is None:
            query = """
            INSERT INTO review_schedules (
                prediction_id, batch_id, horizon_days, scheduled_at, status, completed_at, notes
            ) VALUES (
                %(prediction_id)s, %(batch_id)s, %(horizon_days)s, %(scheduled_at)s, %(status)s,
                %(completed_at)s, %(notes)s
            )
            RETURNING *
            """
        else:
            query = """
            UPDATE review_schedules SET
                status = %(status)s, completed_at = %(completed_at)s, notes = %(notes)s
            WHERE id = %(id)s
            RETURNING *
            """
        row = self._write(query, params)
        if row is None:
            raise RecordNotFoundError(f"Review #{review.review_id} not found")
        return self._review_from_row(row)

    def get_review(self, review_id: int) -> ReviewSchedule:
        row = self._fetch_one("SELECT * FROM review_schedules WHERE id = %s", (review_id,))
        if row is None:
            raise RecordNotFoundError(f"Review #{review_id} not found")
        return self._review_from_row(row)

    def list_reviews(self, status: Optional[ReviewStatus] = None,
                     due_before: Optional[datetime] = None) -> List[ReviewSchedule]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if due_before is not None:
            clauses.append("scheduled_at <= %s")
            params.append(due_before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM review_schedules {where} ORDER BY scheduled_at, id"
        return [self._review_from_row(row) for row in self._fetch_all(query, tuple(params))]
