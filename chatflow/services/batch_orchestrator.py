"""
Batch Orchestrator

Drives one pipeline stage to quiescence:

1. Discover a page of eligible work (oldest sessions first)
2. Dispatch it to the stage's processor with bounded concurrency
3. Collect per-session results and log a batch summary
4. Repeat until a short or empty page is seen

Per-session failures are recorded by the processors and never abort a
run. Transient discovery errors (lost database connection, timeouts)
restart the run under the retry policy.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from prometheus_client import Counter, Histogram

from chatflow.common.config import settings
from chatflow.common.db import get_session
from chatflow.common.models import ProcessingStage
from chatflow.common.retry import RetryConfig, with_retry
from .enrichment_processor import EnrichmentProcessor
from .import_processor import ImportProcessor, ProcessingResult, get_unprocessed_imports
from .status_manager import ProcessingStatusManager

logger = logging.getLogger("batch_orchestrator")

SESSIONS_PROCESSED = Counter(
    'pipeline_sessions_processed_total',
    'Sessions processed successfully per stage',
    ['stage']
)
SESSIONS_FAILED = Counter(
    'pipeline_sessions_failed_total',
    'Sessions that failed processing per stage',
    ['stage']
)
BATCH_SECONDS = Histogram(
    'pipeline_batch_seconds',
    'Wall time of one dispatched batch',
    ['stage']
)

IMPORT_STAGES = (
    ProcessingStage.CSV_IMPORT,
    ProcessingStage.TRANSCRIPT_FETCH,
    ProcessingStage.SESSION_CREATION,
)

# CSV_IMPORT creates the sessions, AI_ANALYSIS enriches them; the others
# only hold work re-queued by an operator reset.
RUN_ALL_ORDER = (
    ProcessingStage.CSV_IMPORT,
    ProcessingStage.AI_ANALYSIS,
    ProcessingStage.TRANSCRIPT_FETCH,
    ProcessingStage.SESSION_CREATION,
    ProcessingStage.QUESTION_EXTRACTION,
)


@dataclass
class StageRunResult:
    stage: ProcessingStage
    total_processed: int = 0
    total_failed: int = 0
    batches: int = 0
    total_time: float = 0.0
    results: List[ProcessingResult] = field(default_factory=list)


class BatchOrchestrator:
    """
    Runs stages page by page through the import and enrichment processors.

    Args:
        status_manager: Status tracking API (defaults to one on get_session)
        import_processor: Processor for the first three stages
        enrichment_processor: Processor for AI_ANALYSIS and QUESTION_EXTRACTION
        retry_config: Retry policy applied around a whole stage run
        session_factory: Database session factory
    """

    def __init__(
        self,
        status_manager: Optional[ProcessingStatusManager] = None,
        import_processor: Optional[ImportProcessor] = None,
        enrichment_processor: Optional[EnrichmentProcessor] = None,
        retry_config: Optional[RetryConfig] = None,
        session_factory: Callable = get_session
    ):
        self._session_factory = session_factory
        self.status = status_manager or ProcessingStatusManager(session_factory)
        self.import_processor = import_processor or ImportProcessor(
            status_manager=self.status, session_factory=session_factory
        )
        self.enrichment_processor = enrichment_processor or EnrichmentProcessor(
            status_manager=self.status, session_factory=session_factory
        )
        self.retry_config = retry_config or RetryConfig.from_settings()

    def discover(self, stage: ProcessingStage, limit: Optional[int]) -> list:
        """Eligible work for a stage: import records for CSV_IMPORT, stage rows otherwise."""
        if stage == ProcessingStage.CSV_IMPORT:
            return get_unprocessed_imports(limit, self._session_factory)
        return self.status.get_sessions_needing_processing(stage, limit)

    async def run_stage(
        self,
        stage: ProcessingStage,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        exclusive: bool = False
    ) -> StageRunResult:
        """
        Process every eligible item of a stage.

        Args:
            stage: Stage to run
            batch_size: Page size, or None for a single unlimited page
            concurrency: Maximum items in flight (defaults to settings)
            exclusive: Claim each stage row before dispatch so concurrent
                runners never process the same item

        Returns:
            StageRunResult: Aggregated counts and per-item results
        """
        if concurrency is None:
            concurrency = settings.pipeline_concurrency
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if batch_size is not None and batch_size < 1:
            raise ValueError("batch_size must be at least 1 or None")

        return await with_retry(
            lambda: self._run_stage_once(stage, batch_size, concurrency, exclusive),
            self.retry_config,
            context=f"{stage.value} stage run",
        )

    async def _run_stage_once(
        self,
        stage: ProcessingStage,
        batch_size: Optional[int],
        concurrency: int,
        exclusive: bool
    ) -> StageRunResult:
        run = StageRunResult(stage=stage)
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(concurrency)
        dispatched = set()
        # Items dispatched in this run that are still eligible (e.g. an import
        # with bad dates never gets a session); pages are widened past them
        stuck = set()

        logger.info(f"Starting {stage.value} run batch_size={batch_size} concurrency={concurrency}")

        while True:
            limit = None if batch_size is None else batch_size + len(stuck)
            page = self.discover(stage, limit)
            if not page:
                break

            keys = [self._item_key(item) for item in page]
            newly_stuck = {key for key in keys if key in dispatched} - stuck
            stuck |= newly_stuck
            fresh = [item for item, key in zip(page, keys) if key not in dispatched]

            if not fresh:
                if newly_stuck and limit is not None and len(page) >= limit:
                    continue
                logger.warning(
                    f"{stage.value}: page holds only items already dispatched in this run, stopping"
                )
                break
            dispatched.update(self._item_key(item) for item in fresh)

            run.batches += 1
            batch_started = time.perf_counter()

            results = await asyncio.gather(*(
                self._process_item(semaphore, stage, item, exclusive) for item in fresh
            ))
            results = [r for r in results if r is not None]

            elapsed = time.perf_counter() - batch_started
            BATCH_SECONDS.labels(stage=stage.value).observe(elapsed)

            succeeded = sum(1 for r in results if r.success)
            failed = len(results) - succeeded
            run.total_processed += succeeded
            run.total_failed += failed
            run.results.extend(results)

            logger.info(
                f"{stage.value} batch {run.batches}: {succeeded} succeeded, "
                f"{failed} failed in {elapsed:.2f}s"
            )

            if limit is None or len(page) < limit:
                break

        run.total_time = time.perf_counter() - started
        logger.info(
            f"Finished {stage.value}: {run.total_processed} processed, "
            f"{run.total_failed} failed, {run.batches} batches in {run.total_time:.2f}s"
        )
        return run

    @staticmethod
    def _item_key(item) -> str:
        # Import records have no session yet; stage rows are keyed by session
        return getattr(item, "session_id", None) or item.id

    async def _process_item(
        self,
        semaphore: asyncio.Semaphore,
        stage: ProcessingStage,
        item,
        exclusive: bool
    ) -> Optional[ProcessingResult]:
        """Run one item under the semaphore; returns None when a claim was lost."""
        async with semaphore:
            try:
                if exclusive and stage != ProcessingStage.CSV_IMPORT:
                    if not self.status.claim_stage(item.session_id, stage):
                        logger.info(f"session={item.session_id} {stage.value} claimed elsewhere, skipping")
                        return None
                result = await self._dispatch(stage, item)
            except Exception as ex:
                # Status bookkeeping itself failed; keep the rest of the batch going
                logger.error(f"{stage.value} item {self._item_key(item)} raised: {ex}")
                result = ProcessingResult(getattr(item, "session_id", None), False, str(ex))

        counter = SESSIONS_PROCESSED if result.success else SESSIONS_FAILED
        counter.labels(stage=stage.value).inc()
        return result

    async def _dispatch(self, stage: ProcessingStage, item) -> ProcessingResult:
        if stage == ProcessingStage.CSV_IMPORT:
            return await self.import_processor.process_single_import(item)
        if stage in IMPORT_STAGES:
            return await self.import_processor.process_import_by_id(item.import_id, item.session_id)
        return await self.enrichment_processor.process_session(item.session_id)

    async def run_all_stages(
        self,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        exclusive: bool = False
    ) -> List[StageRunResult]:
        """Run every stage once, import first, then enrichment, then re-queued work."""
        runs = []
        for stage in RUN_ALL_ORDER:
            runs.append(await self.run_stage(stage, batch_size, concurrency, exclusive))
        return runs
