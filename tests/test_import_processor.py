"""Tests for the import to session processor."""

import asyncio
from datetime import datetime

import pytest

from chatflow.common.errors import ImportValidationError, TranscriptParseError
from chatflow.common.models import (
    ChatSession, CompanyStatus, Message, ProcessingStage, ProcessingStatus,
    SessionImport
)
from chatflow.services.import_processor import (
    ImportProcessor, classify_error_stage, failed_stage_for,
    get_unprocessed_imports, parse_european_date, parse_transcript_lines
)
from chatflow.services.enrichment_processor import EnrichmentProcessor
from chatflow.services.transcript_fetcher import TranscriptFetchResult

TRANSCRIPT = """[01.02.2025 10:00:00] User: How many vacation days do I have?
[01.02.2025 10:00:05] Assistant: You have 12 days left.

[01.02.2025 10:00:30] User: Thanks!"""


class StubFetcher:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def fetch(self, url, username=None, password=None):
        self.calls.append((url, username, password))
        return self.result


@pytest.fixture
def make_processor(session_factory, status_manager):
    def _make(result=None):
        fetcher = StubFetcher(result or TranscriptFetchResult(success=True, content=TRANSCRIPT))
        processor = ImportProcessor(status_manager, fetcher, session_factory)
        return processor, fetcher
    return _make


def stage_rows(status_manager, session_id):
    return {row.stage: row for row in status_manager.get_session_status(session_id)}


def messages_of(session_factory, session_id):
    with session_factory() as db:
        return (
            db.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.order)
            .all()
        )


class TestParseEuropeanDate:
    """Tests for DD.MM.YYYY HH:mm:ss parsing."""

    def test_valid(self):
        assert parse_european_date("01.02.2025 10:15:30") == datetime(2025, 2, 1, 10, 15, 30)
        assert parse_european_date("1.2.2025 9:05:00") == datetime(2025, 2, 1, 9, 5, 0)

    @pytest.mark.parametrize("value", [None, "", "2025-02-01 10:15:30", "01.02.2025", "32.01.2025 10:00:00"])
    def test_invalid(self, value):
        with pytest.raises(ImportValidationError):
            parse_european_date(value)


class TestParseTranscriptLines:
    """Tests for splitting transcripts into messages."""

    def test_roles_timestamps_and_order(self):
        messages = parse_transcript_lines(TRANSCRIPT)

        assert [m.role for m in messages] == ["user", "assistant", "user"]
        assert [m.order for m in messages] == [0, 1, 2]
        assert messages[0].timestamp == datetime(2025, 2, 1, 10, 0, 0)
        assert messages[1].content == "You have 12 days left."

    def test_unknown_role_and_bad_bracket(self):
        messages = parse_transcript_lines("[not a date] hello there\nsystem: Session started")

        assert messages[0].role == "unknown"
        assert messages[0].timestamp is None
        assert messages[0].content == "[not a date] hello there"
        assert messages[1].role == "system"

    def test_empty_content_is_dropped(self):
        messages = parse_transcript_lines("User:   \n[01.02.2025 10:00:00] Assistant: ok")
        assert len(messages) == 1
        assert messages[0].order == 0


class TestErrorAttribution:
    """Tests for mapping errors to stages."""

    def test_keyword_sniffing(self):
        assert classify_error_stage("could not fetch file") == ProcessingStage.TRANSCRIPT_FETCH
        assert classify_error_stage("bad transcript encoding") == ProcessingStage.TRANSCRIPT_FETCH
        assert classify_error_stage("duplicate message order") == ProcessingStage.SESSION_CREATION
        assert classify_error_stage("cannot parse line") == ProcessingStage.SESSION_CREATION
        assert classify_error_stage("disk full") == ProcessingStage.CSV_IMPORT

    def test_typed_errors_bypass_sniffing(self):
        # "transcript" would otherwise point at TRANSCRIPT_FETCH
        error = TranscriptParseError("transcript line 3 is malformed")
        assert failed_stage_for(error) == ProcessingStage.SESSION_CREATION
        assert failed_stage_for(RuntimeError("fetch failed")) == ProcessingStage.TRANSCRIPT_FETCH


class TestProcessSingleImport:
    """End-to-end tests for one import record."""

    def test_import_without_transcript_url(
        self, make_processor, make_company, make_import, status_manager, session_factory
    ):
        processor, fetcher = make_processor()
        record = make_import(make_company())

        result = asyncio.run(processor.process_single_import(record))

        assert result.success
        assert fetcher.calls == []
        rows = stage_rows(status_manager, result.session_id)
        assert rows[ProcessingStage.CSV_IMPORT].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].status == ProcessingStatus.SKIPPED
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].error_message == "No transcript URL provided"
        assert rows[ProcessingStage.SESSION_CREATION].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.SESSION_CREATION].stage_metadata["hasTranscript"] is False
        assert rows[ProcessingStage.AI_ANALYSIS].status == ProcessingStatus.PENDING
        assert rows[ProcessingStage.QUESTION_EXTRACTION].status == ProcessingStatus.PENDING

        with session_factory() as db:
            chat_session = db.get(ChatSession, result.session_id)
            assert chat_session.start_time == datetime(2025, 2, 1, 10, 0, 0)
            assert chat_session.end_time == datetime(2025, 2, 1, 10, 15, 0)
            assert chat_session.country == "NL"
            assert chat_session.initial_msg == "Hello"
        assert messages_of(session_factory, result.session_id) == []

    def test_fetches_with_company_credentials(
        self, make_processor, make_company, make_import, status_manager, session_factory
    ):
        processor, fetcher = make_processor()
        company = make_company(username="alice", password="secret")
        record = make_import(company, url="https://chat.example.com/t/1")

        result = asyncio.run(processor.process_single_import(record))

        assert result.success
        assert fetcher.calls == [("https://chat.example.com/t/1", "alice", "secret")]
        rows = stage_rows(status_manager, result.session_id)
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].stage_metadata == {
            "contentLength": len(TRANSCRIPT),
            "url": "https://chat.example.com/t/1",
        }
        assert rows[ProcessingStage.SESSION_CREATION].stage_metadata["messageCount"] == 3

        with session_factory() as db:
            assert db.get(SessionImport, record.id).raw_transcript_content == TRANSCRIPT
        assert [m.role for m in messages_of(session_factory, result.session_id)] == [
            "user", "assistant", "user"
        ]

    def test_reprocessing_does_not_duplicate_messages(
        self, make_processor, make_company, make_import, status_manager, session_factory
    ):
        processor, fetcher = make_processor()
        record = make_import(make_company(), url="https://chat.example.com/t/1", content=TRANSCRIPT)

        first = asyncio.run(processor.process_single_import(record))
        second = asyncio.run(processor.process_import_by_id(record.id, first.session_id))

        assert first.session_id == second.session_id
        assert fetcher.calls == []
        messages = messages_of(session_factory, first.session_id)
        assert [m.order for m in messages] == [0, 1, 2]
        rows = stage_rows(status_manager, first.session_id)
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].stage_metadata["source"] == "already_fetched"
        with session_factory() as db:
            assert db.query(ChatSession).count() == 1

    def test_fetch_failure_fails_stage(
        self, make_processor, make_company, make_import, status_manager
    ):
        processor, _ = make_processor(TranscriptFetchResult(success=False, error="HTTP 404: Not Found"))
        record = make_import(make_company(), url="https://chat.example.com/t/404")

        result = asyncio.run(processor.process_single_import(record))

        rows = stage_rows(status_manager, result.session_id)
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].status == ProcessingStatus.FAILED
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].error_message == "HTTP 404: Not Found"
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].retry_count == 1
        assert rows[ProcessingStage.SESSION_CREATION].stage_metadata["hasTranscript"] is False

    def test_refetch_requeues_enrichment(
        self, make_processor, make_company, make_import, status_manager, session_factory
    ):
        processor, fetcher = make_processor(TranscriptFetchResult(success=False, error="Request timeout"))
        record = make_import(make_company(), url="https://chat.example.com/t/slow")
        enrichment = EnrichmentProcessor(status_manager, object(), session_factory)

        session_id = asyncio.run(processor.process_single_import(record)).session_id
        asyncio.run(enrichment.process_session(session_id))
        assert stage_rows(status_manager, session_id)[ProcessingStage.AI_ANALYSIS].status == ProcessingStatus.FAILED

        status_manager.reset_stage_for_retry(session_id, ProcessingStage.TRANSCRIPT_FETCH)
        fetcher.result = TranscriptFetchResult(success=True, content=TRANSCRIPT)
        result = asyncio.run(processor.process_import_by_id(record.id, session_id))

        assert result.success
        assert len(messages_of(session_factory, session_id)) == 3
        rows = stage_rows(status_manager, session_id)
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.AI_ANALYSIS].status == ProcessingStatus.PENDING
        assert rows[ProcessingStage.AI_ANALYSIS].retry_count == 1
        assert rows[ProcessingStage.QUESTION_EXTRACTION].status == ProcessingStatus.PENDING
        pending = status_manager.get_sessions_needing_processing(ProcessingStage.AI_ANALYSIS)
        assert [item.session_id for item in pending] == [session_id]

    def test_invalid_url_fails_stage(self, make_processor, make_company, make_import, status_manager):
        processor, fetcher = make_processor()
        record = make_import(make_company(), url="ftp://chat.example.com/t/1")

        result = asyncio.run(processor.process_single_import(record))

        assert fetcher.calls == []
        row = stage_rows(status_manager, result.session_id)[ProcessingStage.TRANSCRIPT_FETCH]
        assert row.status == ProcessingStatus.FAILED
        assert row.error_message == "Invalid transcript URL"

    def test_bad_date_creates_no_session(self, make_processor, make_company, make_import, session_factory):
        processor, _ = make_processor()
        record = make_import(make_company(), start="2025-02-01 10:00:00")

        result = asyncio.run(processor.process_single_import(record))

        assert not result.success
        assert result.session_id is None
        assert "Invalid date format" in result.error
        with session_factory() as db:
            assert db.query(ChatSession).count() == 0

    def test_missing_import_fails_csv_stage(self, make_processor, make_company, make_session, status_manager):
        processor, _ = make_processor()
        chat_session = make_session(make_company())

        result = asyncio.run(processor.process_import_by_id(None, chat_session.id))

        assert not result.success
        row = stage_rows(status_manager, chat_session.id)[ProcessingStage.CSV_IMPORT]
        assert row.status == ProcessingStatus.FAILED


class TestGetUnprocessedImports:
    """Tests for CSV_IMPORT discovery."""

    def test_skips_processed_and_inactive(self, make_processor, make_company, make_import, session_factory):
        processor, _ = make_processor()
        active = make_company("Active")
        archived = make_company("Archived", status=CompanyStatus.ARCHIVED)
        done = make_import(active)
        waiting = make_import(active)
        make_import(archived)

        asyncio.run(processor.process_single_import(done))

        pending = get_unprocessed_imports(limit=10, session_factory=session_factory)
        assert [record.id for record in pending] == [waiting.id]
