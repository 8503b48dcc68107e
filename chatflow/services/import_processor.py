"""
Import To Session Processor

Turns raw SessionImport records into normalized chat sessions. Covers
the first three pipeline stages:

- CSV_IMPORT: parse the raw timestamps and upsert the ChatSession
- TRANSCRIPT_FETCH: download the transcript unless it is already stored
- SESSION_CREATION: parse the transcript into ordered Message rows

Every failure is recorded on a stage status row and returned as an
unsuccessful ProcessingResult; nothing is raised to the caller.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from chatflow.common.db import get_session
from chatflow.common.errors import ImportValidationError, StageError, TranscriptFetchError
from chatflow.common.models import (
    ChatSession, Company, CompanyStatus, Message, ProcessingStage,
    SessionImport
)
from .status_manager import ProcessingStatusManager
from .transcript_fetcher import TranscriptFetcher, is_valid_transcript_url

logger = logging.getLogger("import_processor")

NO_TRANSCRIPT_URL_REASON = "No transcript URL provided"

EUROPEAN_DATE_RE = re.compile(
    r"^(\d{1,2})\.(\d{1,2})\.(\d{4}) (\d{1,2}):(\d{2}):(\d{2})$"
)
TIMESTAMP_PREFIX_RE = re.compile(r"^\[([^\]]+)\]\s*(.+)$")
ROLE_RE = re.compile(r"^(User|Assistant|System):\s*(.*)$", re.IGNORECASE)


@dataclass
class ProcessingResult:
    """Outcome of processing one session (or import) through a processor."""
    session_id: Optional[str]
    success: bool
    error: Optional[str] = None


@dataclass
class ParsedMessage:
    timestamp: Optional[datetime]
    role: str
    content: str
    order: int


def parse_european_date(value: Optional[str]) -> datetime:
    """
    Parse a "DD.MM.YYYY HH:mm:ss" timestamp.

    Raises:
        ImportValidationError: If the value is missing or malformed
    """
    if not value or not isinstance(value, str):
        raise ImportValidationError(f"Invalid date string: {value!r}")

    match = EUROPEAN_DATE_RE.match(value.strip())
    if not match:
        raise ImportValidationError(
            f"Invalid date format: {value!r}. Expected format: DD.MM.YYYY HH:mm:ss"
        )

    day, month, year, hour, minute, second = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError as ex:
        raise ImportValidationError(f"Invalid date value: {value!r} ({ex})") from ex


def parse_transcript_lines(transcript: str) -> List[ParsedMessage]:
    """
    Split transcript text into messages.

    Each line may start with a "[DD.MM.YYYY HH:mm:ss]" timestamp. A
    "User:", "Assistant:" or "System:" prefix sets the role, anything
    else is "unknown". Lines whose content ends up empty are dropped.
    """
    messages: List[ParsedMessage] = []

    for line in transcript.splitlines():
        text = line.strip()
        if not text:
            continue

        timestamp = None
        content = text

        prefixed = TIMESTAMP_PREFIX_RE.match(text)
        if prefixed:
            try:
                timestamp = parse_european_date(prefixed.group(1))
                content = prefixed.group(2)
            except ImportValidationError:
                # Not a timestamp; keep the whole line as content
                content = text

        role = "unknown"
        role_match = ROLE_RE.match(content)
        if role_match:
            role = role_match.group(1).lower()
            content = role_match.group(2).strip()

        if not content:
            continue

        messages.append(ParsedMessage(timestamp, role, content, len(messages)))

    return messages


def classify_error_stage(message: str) -> ProcessingStage:
    """
    Attribute an untyped error to a stage by keywords in its message.

    Only used for exceptions that do not carry a stage of their own.
    """
    if "transcript" in message or "fetch" in message:
        return ProcessingStage.TRANSCRIPT_FETCH
    if "message" in message or "parse" in message:
        return ProcessingStage.SESSION_CREATION
    return ProcessingStage.CSV_IMPORT


def failed_stage_for(error: Exception) -> ProcessingStage:
    if isinstance(error, StageError):
        return error.stage
    return classify_error_stage(str(error))


def get_unprocessed_imports(
    limit: Optional[int] = 50,
    session_factory: Callable = get_session
) -> List[SessionImport]:
    """
    Imports of ACTIVE companies that have no session yet, oldest first.

    Args:
        limit: Maximum number of imports, or None for no limit
    """
    with session_factory() as db:
        query = (
            db.query(SessionImport)
            .join(Company, Company.id == SessionImport.company_id)
            .outerjoin(ChatSession, ChatSession.import_id == SessionImport.id)
            .filter(ChatSession.id.is_(None), Company.status == CompanyStatus.ACTIVE)
            .order_by(SessionImport.created_at.asc(), SessionImport.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()


class ImportProcessor:
    """Processes SessionImport records through CSV_IMPORT, TRANSCRIPT_FETCH and SESSION_CREATION."""

    def __init__(
        self,
        status_manager: Optional[ProcessingStatusManager] = None,
        fetcher: Optional[TranscriptFetcher] = None,
        session_factory: Callable = get_session
    ):
        self._session_factory = session_factory
        self.status = status_manager or ProcessingStatusManager(session_factory)
        self.fetcher = fetcher or TranscriptFetcher()

    def load_import(self, import_id: str) -> Optional[SessionImport]:
        with self._session_factory() as db:
            return db.get(SessionImport, import_id)

    async def process_import_by_id(self, import_id: Optional[str], session_id: Optional[str] = None) -> ProcessingResult:
        """Load an import record and process it; a missing import fails CSV_IMPORT."""
        record = self.load_import(import_id) if import_id else None
        if record is None:
            error = f"Import record not found for session {session_id}"
            if session_id:
                self.status.fail_stage(session_id, ProcessingStage.CSV_IMPORT, error)
            return ProcessingResult(session_id, False, error)
        return await self.process_single_import(record)

    async def process_single_import(self, record: SessionImport) -> ProcessingResult:
        """
        Process one import record into a session with parsed messages.

        Args:
            record: The SessionImport to process

        Returns:
            ProcessingResult: success flag and error text for this record
        """
        session_id = None

        try:
            start_time = parse_european_date(record.start_time_raw)
            end_time = parse_european_date(record.end_time_raw)

            logger.info(
                f"Processing import {record.external_session_id}: "
                f"{start_time.isoformat()} - {end_time.isoformat()}"
            )

            session_id = self._upsert_session(record, start_time, end_time)
            self.status.initialize_session(session_id)
            self.status.complete_stage(session_id, ProcessingStage.CSV_IMPORT)

            transcript = await self._acquire_transcript(session_id, record)
            self._create_messages(session_id, transcript)

            return ProcessingResult(session_id, True)

        except Exception as ex:
            error_message = str(ex)
            if session_id:
                stage = failed_stage_for(ex)
                self.status.fail_stage(session_id, stage, error_message)
            logger.warning(
                f"Failed to process import {record.external_session_id}: {error_message}"
            )
            return ProcessingResult(session_id, False, error_message)

    def _upsert_session(self, record: SessionImport, start_time: datetime, end_time: datetime) -> str:
        """Create or update the session for an import, copying only raw fields."""
        with self._session_factory() as db:
            chat_session = (
                db.query(ChatSession)
                .filter(ChatSession.import_id == record.id)
                .one_or_none()
            )
            if chat_session is None:
                chat_session = ChatSession(company_id=record.company_id, import_id=record.id)
                db.add(chat_session)

            chat_session.start_time = start_time
            chat_session.end_time = end_time
            chat_session.ip_address = record.ip_address
            chat_session.country = record.country_code
            chat_session.full_transcript_url = record.full_transcript_url
            chat_session.avg_response_time = record.avg_response_time_seconds
            chat_session.initial_msg = record.initial_message

            db.commit()
            return chat_session.id

    async def _acquire_transcript(self, session_id: str, record: SessionImport) -> Optional[str]:
        """Run TRANSCRIPT_FETCH and return the transcript text, if any."""
        stage = ProcessingStage.TRANSCRIPT_FETCH
        content = record.raw_transcript_content
        url = record.full_transcript_url

        if content:
            self.status.complete_stage(session_id, stage, {
                "contentLength": len(content),
                "source": "already_fetched",
            })
            return content

        if not url:
            self.status.skip_stage(session_id, stage, NO_TRANSCRIPT_URL_REASON)
            return None

        if not is_valid_transcript_url(url):
            self.status.fail_stage(session_id, stage, "Invalid transcript URL", {"url": url})
            return None

        self.status.start_stage(session_id, stage)
        logger.info(f"Fetching transcript for {record.external_session_id}...")

        with self._session_factory() as db:
            company = db.get(Company, record.company_id)
            username = company.csv_username if company else None
            password = company.csv_password if company else None

        result = await self.fetcher.fetch(url, username, password)

        if not result.success:
            logger.warning(
                f"Failed to fetch transcript for {record.external_session_id}: {result.error}"
            )
            self.status.fail_stage(session_id, stage, result.error or "Unknown error")
            return None

        with self._session_factory() as db:
            stored = db.get(SessionImport, record.id)
            if stored is None:
                raise TranscriptFetchError(f"Import {record.id} disappeared before the transcript was stored")
            stored.raw_transcript_content = result.content
            db.commit()
        record.raw_transcript_content = result.content

        logger.info(
            f"Fetched transcript for {record.external_session_id} ({len(result.content)} chars)"
        )
        self.status.complete_stage(session_id, stage, {
            "contentLength": len(result.content),
            "url": url,
        })
        return result.content

    def _create_messages(self, session_id: str, transcript: Optional[str]) -> None:
        """Run SESSION_CREATION: replace the session's messages with a fresh parse."""
        stage = ProcessingStage.SESSION_CREATION
        self.status.start_stage(session_id, stage)

        message_count = 0
        if transcript:
            parsed = parse_transcript_lines(transcript)
            with self._session_factory() as db:
                db.query(Message).filter(Message.session_id == session_id).delete(
                    synchronize_session=False
                )
                db.add_all([
                    Message(
                        session_id=session_id,
                        timestamp=msg.timestamp,
                        role=msg.role,
                        content=msg.content,
                        order=msg.order,
                    )
                    for msg in parsed
                ])
                db.commit()
            message_count = len(parsed)
            logger.info(f"Parsed {message_count} messages for session {session_id}")

        self.status.complete_stage(session_id, stage, {
            "hasTranscript": bool(transcript),
            "transcriptLength": len(transcript) if transcript else 0,
            "messageCount": message_count,
        })

        if message_count:
            # Enrichment that ran against an empty session gets another turn
            for enrichment_stage in (ProcessingStage.AI_ANALYSIS, ProcessingStage.QUESTION_EXTRACTION):
                self.status.requeue_stage(session_id, enrichment_stage)
