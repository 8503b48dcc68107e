"""Tests for the processing status manager."""

import pytest

from chatflow.common.errors import InvalidTransitionError
from chatflow.common.models import (
    STAGE_ORDER, CompanyStatus, ProcessingStage, ProcessingStatus
)
from chatflow.services.status_manager import check_transition, validate_metadata


def statuses(status_manager, session_id):
    return {row.stage: row for row in status_manager.get_session_status(session_id)}


class TestInitializeSession:
    """Tests for creating the per-stage rows."""

    def test_creates_all_stages_pending(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)

        rows = status_manager.get_session_status(chat_session.id)
        assert [row.stage for row in rows] == STAGE_ORDER
        assert all(row.status == ProcessingStatus.PENDING for row in rows)
        assert all(row.retry_count == 0 for row in rows)

    def test_is_idempotent_and_keeps_progress(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)
        status_manager.complete_stage(chat_session.id, ProcessingStage.CSV_IMPORT)

        status_manager.initialize_session(chat_session.id)

        rows = statuses(status_manager, chat_session.id)
        assert len(rows) == 5
        assert rows[ProcessingStage.CSV_IMPORT].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.TRANSCRIPT_FETCH].status == ProcessingStatus.PENDING


class TestTransitions:
    """Tests for start/complete/fail/skip."""

    def test_complete_without_row_creates_it(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.complete_stage(chat_session.id, ProcessingStage.CSV_IMPORT, {"rows": 1})

        row = statuses(status_manager, chat_session.id)[ProcessingStage.CSV_IMPORT]
        assert row.status == ProcessingStatus.COMPLETED
        assert row.started_at is not None
        assert row.completed_at is not None
        assert row.stage_metadata == {"rows": 1}

    def test_retry_count_survives_intervening_complete(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)
        stage = ProcessingStage.AI_ANALYSIS

        status_manager.fail_stage(chat_session.id, stage, "boom 1")
        status_manager.fail_stage(chat_session.id, stage, "boom 2")
        status_manager.complete_stage(chat_session.id, stage)
        status_manager.fail_stage(chat_session.id, stage, "boom 3")

        row = statuses(status_manager, chat_session.id)[stage]
        assert row.status == ProcessingStatus.FAILED
        assert row.retry_count == 3
        assert row.error_message == "boom 3"

    def test_fail_without_row_starts_count_at_one(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.fail_stage(chat_session.id, ProcessingStage.CSV_IMPORT, "bad")

        row = statuses(status_manager, chat_session.id)[ProcessingStage.CSV_IMPORT]
        assert row.retry_count == 1

    def test_start_reopens_completed_stage(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        stage = ProcessingStage.SESSION_CREATION
        status_manager.fail_stage(chat_session.id, stage, "bad")
        status_manager.complete_stage(chat_session.id, stage)

        status_manager.start_stage(chat_session.id, stage)

        row = statuses(status_manager, chat_session.id)[stage]
        assert row.status == ProcessingStatus.IN_PROGRESS
        assert row.error_message is None

    def test_skip_records_reason(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.skip_stage(chat_session.id, ProcessingStage.TRANSCRIPT_FETCH, "No transcript URL provided")

        row = statuses(status_manager, chat_session.id)[ProcessingStage.TRANSCRIPT_FETCH]
        assert row.status == ProcessingStatus.SKIPPED
        assert row.error_message == "No transcript URL provided"

    def test_invalid_metadata_rejected(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        with pytest.raises(ValueError):
            status_manager.complete_stage(chat_session.id, ProcessingStage.CSV_IMPORT, {"nested": {"a": 1}})


class TestResetAndClaim:
    """Tests for operator resets and optimistic claims."""

    def test_reset_failed_stage_keeps_retry_count(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        stage = ProcessingStage.TRANSCRIPT_FETCH
        status_manager.initialize_session(chat_session.id)
        status_manager.fail_stage(chat_session.id, stage, "HTTP 500: Internal Server Error")

        status_manager.reset_stage_for_retry(chat_session.id, stage)

        row = statuses(status_manager, chat_session.id)[stage]
        assert row.status == ProcessingStatus.PENDING
        assert row.retry_count == 1
        assert row.error_message is None
        assert row.completed_at is None

    def test_reset_recovers_in_progress_and_skipped(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.start_stage(chat_session.id, ProcessingStage.AI_ANALYSIS)
        status_manager.skip_stage(chat_session.id, ProcessingStage.QUESTION_EXTRACTION, "Not applicable")

        status_manager.reset_stage_for_retry(chat_session.id, ProcessingStage.AI_ANALYSIS)
        status_manager.reset_stage_for_retry(chat_session.id, ProcessingStage.QUESTION_EXTRACTION)

        rows = statuses(status_manager, chat_session.id)
        assert rows[ProcessingStage.AI_ANALYSIS].status == ProcessingStatus.PENDING
        assert rows[ProcessingStage.AI_ANALYSIS].started_at is None
        assert rows[ProcessingStage.QUESTION_EXTRACTION].status == ProcessingStatus.PENDING
        assert rows[ProcessingStage.QUESTION_EXTRACTION].error_message is None
        pending = status_manager.get_sessions_needing_processing(ProcessingStage.AI_ANALYSIS)
        assert [item.session_id for item in pending] == [chat_session.id]

    def test_requeue_only_touches_failed_and_skipped(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)
        status_manager.fail_stage(chat_session.id, ProcessingStage.AI_ANALYSIS, "Session has no messages")
        status_manager.complete_stage(chat_session.id, ProcessingStage.SESSION_CREATION)
        status_manager.start_stage(chat_session.id, ProcessingStage.QUESTION_EXTRACTION)

        assert status_manager.requeue_stage(chat_session.id, ProcessingStage.AI_ANALYSIS) is True
        assert status_manager.requeue_stage(chat_session.id, ProcessingStage.SESSION_CREATION) is False
        assert status_manager.requeue_stage(chat_session.id, ProcessingStage.QUESTION_EXTRACTION) is False

        rows = statuses(status_manager, chat_session.id)
        assert rows[ProcessingStage.AI_ANALYSIS].status == ProcessingStatus.PENDING
        assert rows[ProcessingStage.AI_ANALYSIS].retry_count == 1
        assert rows[ProcessingStage.SESSION_CREATION].status == ProcessingStatus.COMPLETED
        assert rows[ProcessingStage.QUESTION_EXTRACTION].status == ProcessingStatus.IN_PROGRESS

    def test_reset_missing_row_is_rejected(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        with pytest.raises(InvalidTransitionError):
            status_manager.reset_stage_for_retry(chat_session.id, ProcessingStage.AI_ANALYSIS)

    def test_claim_only_succeeds_once(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)

        assert status_manager.claim_stage(chat_session.id, ProcessingStage.CSV_IMPORT) is True
        assert status_manager.claim_stage(chat_session.id, ProcessingStage.CSV_IMPORT) is False

        row = statuses(status_manager, chat_session.id)[ProcessingStage.CSV_IMPORT]
        assert row.status == ProcessingStatus.IN_PROGRESS

    def test_transition_table(self):
        check_transition(ProcessingStage.CSV_IMPORT, ProcessingStatus.FAILED, ProcessingStatus.PENDING)
        check_transition(ProcessingStage.CSV_IMPORT, ProcessingStatus.COMPLETED, ProcessingStatus.IN_PROGRESS)
        for current in ProcessingStatus:
            check_transition(ProcessingStage.AI_ANALYSIS, current, ProcessingStatus.PENDING)


class TestQueries:
    """Tests for the read side."""

    def test_stage_readiness_follows_order(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)

        assert status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.CSV_IMPORT)
        assert not status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.TRANSCRIPT_FETCH)

        status_manager.complete_stage(chat_session.id, ProcessingStage.CSV_IMPORT)
        assert status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.TRANSCRIPT_FETCH)
        assert not status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.AI_ANALYSIS)
        assert status_manager.has_completed_stage(chat_session.id, ProcessingStage.CSV_IMPORT)

    def test_readiness_needs_every_earlier_stage(self, status_manager, make_company, make_session):
        chat_session = make_session(make_company())
        status_manager.initialize_session(chat_session.id)
        status_manager.complete_stage(chat_session.id, ProcessingStage.CSV_IMPORT)
        status_manager.fail_stage(chat_session.id, ProcessingStage.TRANSCRIPT_FETCH, "HTTP 500: Internal Server Error")
        status_manager.complete_stage(chat_session.id, ProcessingStage.SESSION_CREATION)

        assert not status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.AI_ANALYSIS)

        status_manager.complete_stage(chat_session.id, ProcessingStage.TRANSCRIPT_FETCH)
        assert status_manager.is_ready_for_stage(chat_session.id, ProcessingStage.AI_ANALYSIS)

    def test_needing_processing_filters_company_and_status(
        self, status_manager, make_company, make_session
    ):
        active = make_company("Active")
        suspended = make_company("Suspended", status=CompanyStatus.SUSPENDED)
        first = make_session(active)
        second = make_session(active)
        hidden = make_session(suspended)
        for chat_session in (first, second, hidden):
            status_manager.initialize_session(chat_session.id)
        status_manager.complete_stage(second.id, ProcessingStage.AI_ANALYSIS)

        items = status_manager.get_sessions_needing_processing(ProcessingStage.AI_ANALYSIS)

        assert [item.session_id for item in items] == [first.id]
        assert items[0].company_id == active.id

    def test_needing_processing_respects_limit_and_order(self, status_manager, make_company, make_session):
        company = make_company()
        created = [make_session(company) for _ in range(4)]
        for chat_session in created:
            status_manager.initialize_session(chat_session.id)

        items = status_manager.get_sessions_needing_processing(ProcessingStage.CSV_IMPORT, limit=3)
        assert [item.session_id for item in items] == [s.id for s in created[:3]]

        everything = status_manager.get_sessions_needing_processing(ProcessingStage.CSV_IMPORT, limit=None)
        assert len(everything) == 4

    def test_pipeline_status_is_sparse(self, status_manager, make_company, make_session):
        company = make_company()
        first = make_session(company)
        second = make_session(company)
        status_manager.initialize_session(first.id)
        status_manager.initialize_session(second.id)
        status_manager.complete_stage(first.id, ProcessingStage.CSV_IMPORT)

        overview = status_manager.get_pipeline_status()

        assert overview["total_sessions"] == 2
        assert overview["pipeline"]["CSV_IMPORT"] == {"PENDING": 1, "COMPLETED": 1}
        assert overview["pipeline"]["AI_ANALYSIS"] == {"PENDING": 2}
        assert "FAILED" not in overview["pipeline"]["CSV_IMPORT"]

    def test_failed_sessions_filter_by_stage(self, status_manager, make_company, make_session):
        company = make_company()
        first = make_session(company)
        second = make_session(company)
        status_manager.fail_stage(first.id, ProcessingStage.AI_ANALYSIS, "OpenAI API error: 500 - oops")
        status_manager.fail_stage(second.id, ProcessingStage.TRANSCRIPT_FETCH, "Request timeout")

        assert len(status_manager.get_failed_sessions()) == 2

        records = status_manager.get_failed_sessions(ProcessingStage.AI_ANALYSIS)
        assert len(records) == 1
        assert records[0].session_id == first.id
        assert records[0].retry_count == 1
        assert records[0].company_id == company.id


class TestValidateMetadata:
    """Tests for stage metadata normalization."""

    def test_truncates_long_strings(self):
        cleaned = validate_metadata({"url": "x" * 600, "count": 3, "ok": True, "none": None})
        assert len(cleaned["url"]) == 500
        assert cleaned["count"] == 3

    def test_none_passes_through(self):
        assert validate_metadata(None) is None

    def test_too_many_keys(self):
        with pytest.raises(ValueError):
            validate_metadata({f"k{i}": i for i in range(33)})

    def test_non_scalar_value(self):
        with pytest.raises(ValueError):
            validate_metadata({"items": [1, 2]})
