"""
Pipeline Runner

Runs one pass of the session pipeline and exits. Scheduling is left to
an external trigger (cron, a k8s CronJob, ...).

Usage:
    python -m chatflow.services.pipeline_runner --all
    python -m chatflow.services.pipeline_runner --stage AI_ANALYSIS --batch-size 20 --concurrency 3
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from prometheus_client import start_http_server
from sqlalchemy import text

from chatflow.common.config import settings
from chatflow.common.db import get_session, init_engine
from chatflow.common.errors import PipelineError
from chatflow.common.models import ProcessingStage
from chatflow.common.retry import RetryConfig, check_database_health_with_retry
from .batch_orchestrator import BatchOrchestrator, StageRunResult

logger = logging.getLogger("pipeline_runner")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the session processing pipeline once")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--stage", choices=[stage.value for stage in ProcessingStage])
    target.add_argument("--all", action="store_true", help="Run every stage in order")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.pipeline_batch_size,
        help="Items per discovery page (0 = no paging)"
    )
    parser.add_argument("--concurrency", type=int, default=settings.pipeline_concurrency)
    parser.add_argument(
        "--exclusive",
        action="store_true",
        help="Claim each stage row before processing (for concurrent runners)"
    )
    return parser.parse_args(argv)


async def database_ready() -> bool:
    with get_session() as db:
        db.execute(text("SELECT 1"))
    return True


async def run(args: argparse.Namespace) -> List[StageRunResult]:
    init_engine()
    if not await check_database_health_with_retry(database_ready, RetryConfig.from_settings()):
        raise PipelineError("Database is not reachable")

    orchestrator = BatchOrchestrator()
    batch_size = args.batch_size or None

    if args.all:
        return await orchestrator.run_all_stages(batch_size, args.concurrency, args.exclusive)
    stage = ProcessingStage(args.stage)
    return [await orchestrator.run_stage(stage, batch_size, args.concurrency, args.exclusive)]


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics server started on port {settings.metrics_port}")

    runs = asyncio.run(run(args))
    for result in runs:
        logger.info(
            f"{result.stage.value}: processed={result.total_processed} "
            f"failed={result.total_failed} batches={result.batches} "
            f"time={result.total_time:.2f}s"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
