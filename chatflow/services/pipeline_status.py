"""
Pipeline Status Reporter

Read-only overview of where sessions sit in the pipeline, plus the
operator command to put a failed stage back in the queue.

Usage:
    python -m chatflow.services.pipeline_status
    python -m chatflow.services.pipeline_status --failed [--stage AI_ANALYSIS]
    python -m chatflow.services.pipeline_status --reset SESSION_ID STAGE
"""

import argparse
import logging
from typing import Callable, Dict, List, Optional

from chatflow.common.db import get_session
from chatflow.common.errors import InvalidTransitionError
from chatflow.common.models import STAGE_ORDER, ProcessingStage, ProcessingStatus
from .status_manager import FailedStageRecord, ProcessingStatusManager

logger = logging.getLogger("pipeline_status")


class PipelineStatusReporter:
    """Formats the status manager's read side for humans."""

    def __init__(
        self,
        status_manager: Optional[ProcessingStatusManager] = None,
        session_factory: Callable = get_session
    ):
        self.status = status_manager or ProcessingStatusManager(session_factory)

    def summary(self) -> Dict[str, Dict[str, int]]:
        """Stage x status table with zeros filled in for missing combinations."""
        sparse = self.status.get_pipeline_status()["pipeline"]
        return {
            stage.value: {
                status.value: sparse.get(stage.value, {}).get(status.value, 0)
                for status in ProcessingStatus
            }
            for stage in STAGE_ORDER
        }

    def failed(self, stage: Optional[ProcessingStage] = None) -> List[FailedStageRecord]:
        return self.status.get_failed_sessions(stage)

    def format_report(self) -> str:
        overview = self.status.get_pipeline_status()
        table = self.summary()
        statuses = [status.value for status in ProcessingStatus]

        width = max(len(stage.value) for stage in STAGE_ORDER) + 2
        lines = [
            f"Total sessions: {overview['total_sessions']}",
            "",
            "".ljust(width) + "".join(s.rjust(13) for s in statuses),
        ]
        for stage, counts in table.items():
            lines.append(stage.ljust(width) + "".join(str(counts[s]).rjust(13) for s in statuses))
        return "\n".join(lines)

    @staticmethod
    def format_failed(records: List[FailedStageRecord]) -> str:
        if not records:
            return "No failed sessions"
        lines = []
        for record in records:
            failed_at = record.completed_at.isoformat() if record.completed_at else "-"
            lines.append(
                f"{record.session_id} [{record.external_session_id or '-'}] "
                f"{record.stage.value} retries={record.retry_count} at={failed_at}: "
                f"{record.error_message}"
            )
        return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Show session pipeline status")
    parser.add_argument("--failed", action="store_true", help="List failed sessions")
    parser.add_argument(
        "--stage",
        choices=[stage.value for stage in ProcessingStage],
        help="Restrict --failed to one stage"
    )
    parser.add_argument(
        "--reset",
        nargs=2,
        metavar=("SESSION_ID", "STAGE"),
        help="Return a failed or completed stage to PENDING"
    )
    args = parser.parse_args(argv)

    reporter = PipelineStatusReporter()

    if args.reset:
        session_id, stage_name = args.reset
        try:
            stage = ProcessingStage(stage_name)
        except ValueError:
            parser.error(f"Unknown stage: {stage_name}")
        try:
            reporter.status.reset_stage_for_retry(session_id, stage)
        except InvalidTransitionError as ex:
            print(f"Cannot reset: {ex}")
            return 1
        print(f"Reset {stage.value} for session {session_id}")
        return 0

    if args.failed:
        stage = ProcessingStage(args.stage) if args.stage else None
        print(reporter.format_failed(reporter.failed(stage)))
        return 0

    print(reporter.format_report())
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    raise SystemExit(main())
