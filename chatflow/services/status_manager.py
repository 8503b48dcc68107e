"""
Processing Status Manager

Durable per-(session, stage) status tracking for the session processing
pipeline. Every stage transition goes through this module: the
transition table below decides which moves are legal, and each call
upserts exactly one SessionProcessingStatus row.

The manager also exposes the read side used by the batch orchestrator
and the status reporter: pending work discovery, the stage x status
overview and the list of failed sessions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from chatflow.common.db import get_session
from chatflow.common.errors import InvalidTransitionError
from chatflow.common.models import (
    STAGE_ORDER, ChatSession, Company, CompanyStatus, ProcessingStage,
    ProcessingStatus, SessionImport, SessionProcessingStatus, utcnow
)

logger = logging.getLogger("status_manager")

ANY_STATE = frozenset([None, *ProcessingStatus])

# Target status -> prior statuses it may be entered from (None = no row yet).
# start may reopen a COMPLETED stage so that sessions can be reprocessed.
# Any existing row may go back to PENDING (operator reset, stale IN_PROGRESS).
ALLOWED_TRANSITIONS: Dict[ProcessingStatus, frozenset] = {
    ProcessingStatus.PENDING: ANY_STATE,
    ProcessingStatus.IN_PROGRESS: ANY_STATE,
    ProcessingStatus.COMPLETED: ANY_STATE,
    ProcessingStatus.FAILED: ANY_STATE,
    ProcessingStatus.SKIPPED: ANY_STATE,
}

MAX_METADATA_KEYS = 32
MAX_METADATA_STRING = 500
FAILED_SESSIONS_LIMIT = 100

Metadata = Dict[str, Any]


def check_transition(
    stage: ProcessingStage,
    current: Optional[ProcessingStatus],
    target: ProcessingStatus
) -> None:
    """Raise InvalidTransitionError unless `current -> target` is allowed."""
    if current not in ALLOWED_TRANSITIONS[target]:
        raise InvalidTransitionError(stage, current, target)


def validate_metadata(metadata: Optional[Metadata]) -> Optional[Metadata]:
    """
    Normalize stage metadata to a small flat map of scalars.

    Args:
        metadata: Diagnostic values for a stage, or None

    Returns:
        A copy with long strings truncated, or None

    Raises:
        ValueError: If the map is too large, a key is not a string, or a
            value is not a scalar
    """
    if metadata is None:
        return None
    if len(metadata) > MAX_METADATA_KEYS:
        raise ValueError(f"Stage metadata has {len(metadata)} keys (max {MAX_METADATA_KEYS})")

    cleaned = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValueError(f"Stage metadata key must be a string: {key!r}")
        if isinstance(value, str):
            value = value[:MAX_METADATA_STRING]
        elif value is not None and not isinstance(value, (bool, int, float)):
            raise ValueError(f"Stage metadata value for '{key}' must be a scalar")
        cleaned[key] = value
    return cleaned


@dataclass
class StageWorkItem:
    """A PENDING stage row plus the session data its processor needs."""
    status_id: str
    session_id: str
    stage: ProcessingStage
    company_id: str
    import_id: Optional[str]
    start_time: datetime
    end_time: datetime
    full_transcript_url: Optional[str]
    csv_username: Optional[str]
    csv_password: Optional[str]
    # Only populated for TRANSCRIPT_FETCH
    import_transcript_url: Optional[str] = None
    external_session_id: Optional[str] = None


@dataclass
class FailedStageRecord:
    """A FAILED stage row with enough identity for a human to investigate."""
    id: str
    session_id: str
    stage: ProcessingStage
    status: ProcessingStatus
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    retry_count: int
    company_id: str
    session_start_time: datetime
    import_id: Optional[str]
    external_session_id: Optional[str]


class ProcessingStatusManager:
    """
    Stage transition API over the SessionProcessingStatus table.

    Each operation opens its own short database session, so calls for
    different sessions never share a transaction.
    """

    def __init__(self, session_factory: Callable = get_session):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initialize_session(self, session_id: str) -> None:
        """Create all five stage rows as PENDING, leaving existing rows untouched."""
        for attempt in range(2):
            with self._session_factory() as db:
                existing = {
                    stage for (stage,) in db.query(SessionProcessingStatus.stage)
                    .filter(SessionProcessingStatus.session_id == session_id)
                }
                for stage in STAGE_ORDER:
                    if stage not in existing:
                        db.add(SessionProcessingStatus(
                            session_id=session_id,
                            stage=stage,
                            status=ProcessingStatus.PENDING,
                            retry_count=0,
                        ))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    # Another worker initialized the same session concurrently
                    db.rollback()
                    if attempt == 1:
                        raise

    def start_stage(
        self,
        session_id: str,
        stage: ProcessingStage,
        metadata: Optional[Metadata] = None
    ) -> None:
        metadata = validate_metadata(metadata)

        def apply(row, created):
            row.started_at = utcnow()
            row.error_message = None
            row.stage_metadata = metadata

        self._transition(session_id, stage, ProcessingStatus.IN_PROGRESS, apply)

    def complete_stage(
        self,
        session_id: str,
        stage: ProcessingStage,
        metadata: Optional[Metadata] = None
    ) -> None:
        metadata = validate_metadata(metadata)

        def apply(row, created):
            now = utcnow()
            if created:
                row.started_at = now
            row.completed_at = now
            row.error_message = None
            row.stage_metadata = metadata

        self._transition(session_id, stage, ProcessingStatus.COMPLETED, apply)

    def fail_stage(
        self,
        session_id: str,
        stage: ProcessingStage,
        error_message: str,
        metadata: Optional[Metadata] = None
    ) -> None:
        metadata = validate_metadata(metadata)

        def apply(row, created):
            now = utcnow()
            if created:
                row.started_at = now
                row.retry_count = 1
            else:
                row.retry_count = SessionProcessingStatus.retry_count + 1
            row.completed_at = now
            row.error_message = error_message
            row.stage_metadata = metadata

        self._transition(session_id, stage, ProcessingStatus.FAILED, apply)

    def skip_stage(self, session_id: str, stage: ProcessingStage, reason: str) -> None:
        """Mark a stage as permanently inapplicable (e.g. no transcript URL)."""
        def apply(row, created):
            now = utcnow()
            if created:
                row.started_at = now
            row.completed_at = now
            row.error_message = reason

        self._transition(session_id, stage, ProcessingStatus.SKIPPED, apply)

    def reset_stage_for_retry(self, session_id: str, stage: ProcessingStage) -> None:
        """
        Return an existing stage row to PENDING, whatever its status.

        Operator tooling; also recovers IN_PROGRESS rows left behind by a
        crashed run. The retry count is kept.
        """
        with self._session_factory() as db:
            row = self._find(db, session_id, stage)
            if row is None:
                raise InvalidTransitionError(stage, None, ProcessingStatus.PENDING)
            current = row.status
            check_transition(stage, current, ProcessingStatus.PENDING)

            row.status = ProcessingStatus.PENDING
            row.started_at = None
            row.completed_at = None
            row.error_message = None
            db.commit()

        logger.info(f"session={session_id} stage={stage.value} reset {current.value} -> PENDING")

    def requeue_stage(self, session_id: str, stage: ProcessingStage) -> bool:
        """
        Put a FAILED or SKIPPED stage back to PENDING after its input changed.

        COMPLETED, PENDING and IN_PROGRESS rows are left alone.

        Returns:
            bool: True if the row was requeued
        """
        with self._session_factory() as db:
            updated = (
                db.query(SessionProcessingStatus)
                .filter(
                    SessionProcessingStatus.session_id == session_id,
                    SessionProcessingStatus.stage == stage,
                    SessionProcessingStatus.status.in_(
                        [ProcessingStatus.FAILED, ProcessingStatus.SKIPPED]
                    ),
                )
                .update(
                    {
                        SessionProcessingStatus.status: ProcessingStatus.PENDING,
                        SessionProcessingStatus.started_at: None,
                        SessionProcessingStatus.completed_at: None,
                        SessionProcessingStatus.error_message: None,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        if updated:
            logger.info(f"session={session_id} stage={stage.value} requeued")
        return updated == 1

    def claim_stage(self, session_id: str, stage: ProcessingStage) -> bool:
        """
        Move a stage from PENDING to IN_PROGRESS only if it is still PENDING.

        Returns:
            bool: True if this caller won the claim
        """
        with self._session_factory() as db:
            updated = (
                db.query(SessionProcessingStatus)
                .filter(
                    SessionProcessingStatus.session_id == session_id,
                    SessionProcessingStatus.stage == stage,
                    SessionProcessingStatus.status == ProcessingStatus.PENDING,
                )
                .update(
                    {
                        SessionProcessingStatus.status: ProcessingStatus.IN_PROGRESS,
                        SessionProcessingStatus.started_at: utcnow(),
                        SessionProcessingStatus.error_message: None,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        return updated == 1

    def _transition(self, session_id, stage, target, apply) -> None:
        """Upsert the (session_id, stage) row into `target` after validating the move."""
        for attempt in range(2):
            with self._session_factory() as db:
                row = self._find(db, session_id, stage)
                created = row is None
                check_transition(stage, None if created else row.status, target)

                if created:
                    row = SessionProcessingStatus(
                        session_id=session_id,
                        stage=stage,
                        retry_count=0,
                    )
                    db.add(row)

                row.status = target
                apply(row, created)

                try:
                    db.commit()
                    return
                except IntegrityError:
                    # Lost a race creating the row; retry as an update
                    db.rollback()
                    if attempt == 1:
                        raise

    @staticmethod
    def _find(db, session_id, stage) -> Optional[SessionProcessingStatus]:
        return (
            db.query(SessionProcessingStatus)
            .filter(
                SessionProcessingStatus.session_id == session_id,
                SessionProcessingStatus.stage == stage,
            )
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session_status(self, session_id: str) -> List[SessionProcessingStatus]:
        """All stage rows of a session, in pipeline order."""
        with self._session_factory() as db:
            rows = (
                db.query(SessionProcessingStatus)
                .filter(SessionProcessingStatus.session_id == session_id)
                .all()
            )
        return sorted(rows, key=lambda row: STAGE_ORDER.index(row.stage))

    def get_sessions_needing_processing(
        self,
        stage: ProcessingStage,
        limit: Optional[int] = 50
    ) -> List[StageWorkItem]:
        """
        PENDING rows for `stage` of sessions owned by ACTIVE companies.

        Oldest sessions come first. TRANSCRIPT_FETCH items also carry the
        import's transcript URL and external session id.

        Args:
            stage: Stage to find work for
            limit: Maximum number of rows, or None for no limit

        Returns:
            List[StageWorkItem]: Work items in processing order
        """
        include_import = stage == ProcessingStage.TRANSCRIPT_FETCH
        columns = [
            SessionProcessingStatus.id,
            SessionProcessingStatus.session_id,
            ChatSession.company_id,
            ChatSession.import_id,
            ChatSession.start_time,
            ChatSession.end_time,
            ChatSession.full_transcript_url,
            Company.csv_username,
            Company.csv_password,
        ]
        if include_import:
            columns += [SessionImport.full_transcript_url, SessionImport.external_session_id]

        with self._session_factory() as db:
            query = (
                db.query(*columns)
                .join(ChatSession, ChatSession.id == SessionProcessingStatus.session_id)
                .join(Company, Company.id == ChatSession.company_id)
            )
            if include_import:
                query = query.outerjoin(SessionImport, SessionImport.id == ChatSession.import_id)

            query = (
                query.filter(
                    SessionProcessingStatus.stage == stage,
                    SessionProcessingStatus.status == ProcessingStatus.PENDING,
                    Company.status == CompanyStatus.ACTIVE,
                )
                .order_by(ChatSession.created_at.asc(), ChatSession.id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = query.all()

        items = []
        for row in rows:
            item = StageWorkItem(
                status_id=row[0],
                session_id=row[1],
                stage=stage,
                company_id=row[2],
                import_id=row[3],
                start_time=row[4],
                end_time=row[5],
                full_transcript_url=row[6],
                csv_username=row[7],
                csv_password=row[8],
            )
            if include_import:
                item.import_transcript_url = row[9]
                item.external_session_id = row[10]
            items.append(item)
        return items

    def get_pipeline_status(self) -> Dict[str, Any]:
        """
        Count stage rows per (stage, status).

        Returns:
            dict: {"total_sessions": int, "pipeline": {stage: {status: count}}}
            where combinations that never occur are absent.
        """
        with self._session_factory() as db:
            counts = (
                db.query(
                    SessionProcessingStatus.stage,
                    SessionProcessingStatus.status,
                    func.count(SessionProcessingStatus.id),
                )
                .group_by(SessionProcessingStatus.stage, SessionProcessingStatus.status)
                .all()
            )
            total_sessions = db.query(func.count(ChatSession.id)).scalar()

        pipeline: Dict[str, Dict[str, int]] = {}
        for stage, status, count in counts:
            pipeline.setdefault(stage.value, {})[status.value] = count

        return {"total_sessions": total_sessions or 0, "pipeline": pipeline}

    def get_failed_sessions(
        self,
        stage: Optional[ProcessingStage] = None
    ) -> List[FailedStageRecord]:
        """Up to 100 FAILED rows, most recently failed first."""
        with self._session_factory() as db:
            query = (
                db.query(SessionProcessingStatus, ChatSession, SessionImport)
                .join(ChatSession, ChatSession.id == SessionProcessingStatus.session_id)
                .outerjoin(SessionImport, SessionImport.id == ChatSession.import_id)
                .filter(SessionProcessingStatus.status == ProcessingStatus.FAILED)
            )
            if stage is not None:
                query = query.filter(SessionProcessingStatus.stage == stage)
            rows = (
                query.order_by(SessionProcessingStatus.completed_at.desc())
                .limit(FAILED_SESSIONS_LIMIT)
                .all()
            )

            return [
                FailedStageRecord(
                    id=status.id,
                    session_id=status.session_id,
                    stage=status.stage,
                    status=status.status,
                    started_at=status.started_at,
                    completed_at=status.completed_at,
                    error_message=status.error_message,
                    retry_count=status.retry_count,
                    company_id=chat_session.company_id,
                    session_start_time=chat_session.start_time,
                    import_id=import_record.id if import_record else None,
                    external_session_id=(
                        import_record.external_session_id if import_record else None
                    ),
                )
                for status, chat_session, import_record in rows
            ]

    def has_completed_stage(self, session_id: str, stage: ProcessingStage) -> bool:
        with self._session_factory() as db:
            row = self._find(db, session_id, stage)
            return row is not None and row.status == ProcessingStatus.COMPLETED

    def is_ready_for_stage(self, session_id: str, stage: ProcessingStage) -> bool:
        """True iff every stage before `stage` is COMPLETED for the session."""
        previous = STAGE_ORDER[:STAGE_ORDER.index(stage)]
        if not previous:
            return True

        with self._session_factory() as db:
            statuses = dict(
                db.query(SessionProcessingStatus.stage, SessionProcessingStatus.status)
                .filter(SessionProcessingStatus.session_id == session_id)
                .all()
            )
        return all(statuses.get(s) == ProcessingStatus.COMPLETED for s in previous)
