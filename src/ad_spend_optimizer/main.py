#!/usr/bin/env python3
"""
Command line entry points for the Ad Spend Optimizer
Usage: python -m ad_spend_optimizer.main <command> [options]

Each command is one discrete batch job; an external scheduler decides when
to run them.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

from dotenv import load_dotenv

from .ads_api import AdsApiMutationClient
from .config import OptimizerConfig
from .database import PostgresRepository
from .engine import OptimizationEngine
from .models import ControlBounds, NotYetEvaluable, SegmentKind
from .notifications import LoggingNotifier, WebhookNotifier

# Load environment variables from .env file
load_dotenv()


def setup_logging(level: str = 'INFO') -> None:
    """Setup logging configuration"""
    log_level = getattr(logging, level.upper(), logging.INFO)
    os.makedirs('logs', exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(f'logs/ad_spend_optimizer_{datetime.now().strftime("%Y%m%d")}.log')
        ]
    )


def load_config(config_path: str) -> OptimizerConfig:
    """Load configuration from file or create default"""
    if os.path.exists(config_path):
        return OptimizerConfig.from_file(config_path)
    print(f"Config file {config_path} not found, creating default configuration")
    config = OptimizerConfig()
    os.makedirs(os.path.dirname(config_path) or '.', exist_ok=True)
    config.to_file(config_path)
    return config


def build_engine(config: OptimizerConfig, repository: PostgresRepository) -> OptimizationEngine:
    settings = config.to_dict()
    notifier = WebhookNotifier(settings) if os.getenv('NOTIFY_WEBHOOK_URL') else LoggingNotifier()
    return OptimizationEngine(
        config=config,
        store=repository,
        metrics=repository,
        segments=repository,
        client=AdsApiMutationClient(settings),
        notifier=notifier,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Ad spend optimization and effect tracking')
    parser.add_argument('--config', '-c', default='config/ad_spend_optimizer.json',
                        help='Configuration file path')
    parser.add_argument('--log-level', '-l', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Logging level')
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('init-db', help='Create database tables')

    plan = commands.add_parser('plan', help='Generate an allocation plan')
    plan.add_argument('scope', help='Campaign or account id')
    plan.add_argument('--budget', type=float, required=True, help='Total budget')
    plan.add_argument('--target-roas', type=float, required=True, help='Target ROAS')
    plan.add_argument('--min-value', type=float, help='Lower control-value bound')
    plan.add_argument('--max-value', type=float, help='Upper control-value bound')
    plan.add_argument('--step', type=float, help='Control-value step')
    plan.add_argument('--kind', action='append', choices=[k.value for k in SegmentKind],
                      help='Segment kind to allocate over (repeatable, default: all controllable kinds)')

    approve = commands.add_parser('approve', help='Approve a proposed plan')
    approve.add_argument('plan_id', type=int)

    execute = commands.add_parser('execute', help='Execute an approved plan')
    execute.add_argument('plan_id', type=int)

    suggest = commands.add_parser('suggest', help='Generate rule-based suggestions')
    suggest.add_argument('scope', help='Campaign or account id')
    suggest.add_argument('--execute', action='store_true', help='Apply the suggestions')

    track = commands.add_parser('track', help='Track executed changes')
    track.add_argument('execution_id', type=int, nargs='?',
                       help='Single execution record (default: every matured change)')

    commands.add_parser('reviews', help='Process due reviews')

    rollback = commands.add_parser('rollback', help='Roll back an applied change')
    rollback.add_argument('execution_id', type=int)
    rollback.add_argument('--reason', help='Reason recorded in the ledger')

    reapply = commands.add_parser('reapply', help='Re-apply a rolled-back change')
    reapply.add_argument('execution_id', type=int)
    return parser


def print_summary(summary) -> None:
    print(f"Batch #{summary.batch_id} {summary.status.value}: "
          f"{summary.succeeded} applied, {summary.failed} failed, {summary.skipped} skipped")
    for segment_id, error in summary.failures:
        print(f"  FAILED {segment_id}: {error}")


def run(args, engine: OptimizationEngine) -> None:
    if args.command == 'plan':
        bounds = None
        if args.min_value is not None or args.max_value is not None:
            bounds = ControlBounds(
                args.min_value if args.min_value is not None else engine.config.control_min,
                args.max_value if args.max_value is not None else engine.config.control_max,
                args.step,
            )
        kinds = [SegmentKind(k) for k in args.kind] if args.kind else None
        plan = engine.generate_allocation_plan(args.scope, args.budget, args.target_roas, bounds, kinds=kinds)
        print(f"Plan #{plan.plan_id}: projected spend ${plan.projected_spend:.2f} of ${plan.total_budget:.2f}, "
              f"projected ROAS {plan.projected_roas:.2f}")
        for allocation in plan.allocations:
            print(f"  {allocation.segment_id}: {allocation.current_value:.2f} -> "
                  f"{allocation.suggested_value:.2f} | {allocation.rationale}")
        for prediction in engine.predict_plan(plan.plan_id):
            print(f"  {prediction.horizon_label}: spend ${prediction.predicted_spend:.2f}, "
                  f"sales ${prediction.predicted_sales:.2f}, confidence {prediction.confidence:.0%}")

    elif args.command == 'approve':
        plan = engine.approve_plan(args.plan_id)
        print(f"Plan #{plan.plan_id} {plan.status.value}")

    elif args.command == 'execute':
        print_summary(engine.execute_plan(args.plan_id))

    elif args.command == 'suggest':
        suggestions = engine.generate_suggestions(args.scope)
        for s in suggestions:
            print(f"  [{s.priority.upper()}] {s.segment.segment_id} {s.action.value}: {s.reason}")
        if args.execute and suggestions:
            print_summary(engine.execute_suggestions(args.scope, suggestions))

    elif args.command == 'track':
        if args.execution_id is None:
            reports = engine.track_matured_executions()
        else:
            result = engine.get_tracking_report(args.execution_id)
            if isinstance(result, NotYetEvaluable):
                print(f"Execution #{args.execution_id} not yet evaluable (at {result.evaluable_at.isoformat()})")
                return
            reports = [result]
        for report in reports:
            print(f"  #{report.execution_id} {report.segment_id}: score {report.score:.1f}, "
                  f"{report.rating.value}, {report.recommendation.value} | {report.summary}")

    elif args.command == 'reviews':
        for result in engine.process_due_reviews():
            state = 'deferred' if result.deferred else result.review.status.value
            print(f"  Review #{result.review.review_id} ({result.review.horizon_days} days): {state}")
            if result.prediction_accuracy:
                print(f"    {json.dumps(result.prediction_accuracy, default=str)}")

    elif args.command == 'rollback':
        record = engine.rollback(args.execution_id, reason=args.reason)
        print(f"Rolled back #{args.execution_id} as #{record.record_id}")

    elif args.command == 'reapply':
        record = engine.reapply(args.execution_id)
        print(f"Re-applied #{args.execution_id} as #{record.record_id}")


def main():
    """Main function"""
    args = build_parser().parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config)
        config.validate()
        logger.info("Configuration loaded and validated")

        try:
            repository = PostgresRepository()
        except ValueError as e:
            logger.error(f"Database configuration error: {e}")
            logger.error("Please ensure DB_HOST, DB_PORT, DB_NAME, DB_USER, and DB_PASSWORD are set")
            sys.exit(1)

        if args.command == 'init-db':
            repository.create_schema()
            return

        engine = build_engine(config, repository)
        run(args, engine)
        logger.info(f"Command '{args.command}' completed")

    except Exception as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
