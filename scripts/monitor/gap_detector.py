"""
Data Gap Detector and Recorder

Finds notes that reached the database without the rows that should come with
them, records every finding in the ``data_gaps`` audit table and in a plain
text gap log, and retries the affected notes on later runs.

Gap checks (trailing window measured back from the newest note):
- notes_without_comments: a note with no row in note_comments
- comments_without_text: an opened/commented event with no row in
  note_comments_text

Gap records are never deleted. ``processed`` flips to true only once a
recovery attempt reports success; a failed recovery leaves the record for
the next run and never interrupts the caller.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pandas as pd

from config.settings import config
from scripts.monitor.gap_schemas import GapRecord, GapType

NOTES_WITHOUT_COMMENTS_SQL = """
WITH recent AS (
    SELECT n.note_id
    FROM notes n
    WHERE n.created_at > (SELECT MAX(created_at) FROM notes)
                         - make_interval(days => :window_days)
)
SELECT
    COUNT(*) FILTER (WHERE c.note_id IS NULL) AS gap_count,
    COUNT(*) AS total_count,
    array_agg(r.note_id ORDER BY r.note_id) FILTER (WHERE c.note_id IS NULL) AS note_ids
FROM recent r
LEFT JOIN (SELECT DISTINCT note_id FROM note_comments) c ON c.note_id = r.note_id
"""

COMMENTS_WITHOUT_TEXT_SQL = """
WITH recent AS (
    SELECT nc.note_id, nc.sequence_action
    FROM note_comments nc
    WHERE nc.event IN ('opened', 'commented')
      AND nc.created_at > (SELECT MAX(created_at) FROM note_comments)
                          - make_interval(days => :window_days)
)
SELECT
    COUNT(*) FILTER (WHERE t.note_id IS NULL) AS gap_count,
    COUNT(*) AS total_count,
    array_agg(DISTINCT r.note_id) FILTER (WHERE t.note_id IS NULL) AS note_ids
FROM recent r
LEFT JOIN note_comments_text t
    ON t.note_id = r.note_id AND t.sequence_action = r.sequence_action
"""

# Per-note re-checks: the listed notes that still have the gap
NOTES_WITHOUT_COMMENTS_REMAINING_SQL = """
SELECT n.note_id
FROM notes n
WHERE n.note_id = ANY(:note_ids)
  AND NOT EXISTS (SELECT 1 FROM note_comments c WHERE c.note_id = n.note_id)
ORDER BY n.note_id
"""

COMMENTS_WITHOUT_TEXT_REMAINING_SQL = """
SELECT DISTINCT nc.note_id
FROM note_comments nc
LEFT JOIN note_comments_text t
    ON t.note_id = nc.note_id AND t.sequence_action = nc.sequence_action
WHERE nc.note_id = ANY(:note_ids)
  AND nc.event IN ('opened', 'commented')
  AND t.note_id IS NULL
ORDER BY nc.note_id
"""


@dataclass(frozen=True)
class GapCheck:
    """
    One gap query: a single row with gap_count, total_count and note_ids.

    ``remaining_sql`` takes a ``note_ids`` array and returns the ``note_id``
    rows that still have the gap.
    """

    gap_type: GapType
    description: str
    sql: str
    remaining_sql: str


DEFAULT_GAP_CHECKS = (
    GapCheck(
        GapType.NOTES_WITHOUT_COMMENTS,
        "notes without comments",
        NOTES_WITHOUT_COMMENTS_SQL,
        NOTES_WITHOUT_COMMENTS_REMAINING_SQL,
    ),
    GapCheck(
        GapType.COMMENTS_WITHOUT_TEXT,
        "comments without text",
        COMMENTS_WITHOUT_TEXT_SQL,
        COMMENTS_WITHOUT_TEXT_REMAINING_SQL,
    ),
)


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass."""

    attempted: int = 0
    recovered: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class GapDetector:
    """Runs gap checks through a DatabaseWriter and recovers recorded gaps."""

    def __init__(
        self,
        writer,
        gap_log_file: Optional[str] = None,
        checks=DEFAULT_GAP_CHECKS,
        logger: Optional[logging.Logger] = None,
    ):
        self.writer = writer
        self.gap_log_file = gap_log_file or config.GAP_LOG_FILE
        self.checks = tuple(checks)
        self.logger = logger or logging.getLogger(__name__)

    def _append_to_log(self, record: GapRecord) -> None:
        directory = os.path.dirname(self.gap_log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.gap_log_file, "a") as handle:
            handle.write(record.to_log_block())

    def remaining_notes(self, record: GapRecord) -> List[int]:
        """
        Re-run the gap's check for the notes it lists.

        Returns:
            List[int]: Note ids of the record that still have the gap
        """
        for check in self.checks:
            if check.gap_type == record.gap_type:
                return self.writer.find_gap_notes(check.remaining_sql, record.note_ids)
        raise ValueError(f"No gap check for {record.gap_type.value}")

    def detect_and_log(self, window_days: Optional[int] = None) -> List[GapRecord]:
        """
        Run every gap check over the trailing ``window_days``.

        Each check that finds a gap produces a GapRecord, stored in data_gaps
        with processed = false and appended to the gap log.

        Args:
            window_days: Size of the window; defaults to GAP_WINDOW_DAYS

        Returns:
            List[GapRecord]: The records written in this pass
        """
        window_days = window_days or config.GAP_WINDOW_DAYS
        records: List[GapRecord] = []

        for check in self.checks:
            counts = self.writer.count_gap(check.sql, window_days)
            if counts["gap_count"] <= 0:
                self.logger.debug(f"No {check.description} in the last {window_days} days")
                continue

            record = GapRecord(
                gap_type=check.gap_type,
                gap_count=counts["gap_count"],
                total_count=counts["total_count"],
                error_details=(
                    f"{counts['gap_count']} {check.description} "
                    f"in the last {window_days} days"
                ),
                note_ids=counts["note_ids"],
            )
            record.id = self.writer.write_data_gap(record)
            self._append_to_log(record)
            self.logger.warning(
                f"Detected {record.gap_count} {check.description} "
                f"({record.gap_percentage}% of {record.total_count})"
            )
            records.append(record)

        return records

    def recover(
        self,
        reprocess_fn: Callable[[GapRecord], bool],
        cutoff_hours: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> RecoveryReport:
        """
        Retry recent unprocessed gaps.

        ``reprocess_fn`` receives each record and returns True once the
        implicated notes are back in place; only then is the record marked
        processed. Nothing raised here escapes: failures are logged as
        warnings and reported.

        Args:
            reprocess_fn: Recovery action for one gap record
            cutoff_hours: Only gaps newer than this; defaults to GAP_RECOVERY_CUTOFF_HOURS
            limit: Maximum number of gaps per pass; defaults to GAP_RECOVERY_LIMIT

        Returns:
            RecoveryReport: Ids of recovered and still-open gaps
        """
        cutoff_hours = cutoff_hours or config.GAP_RECOVERY_CUTOFF_HOURS
        limit = limit or config.GAP_RECOVERY_LIMIT
        report = RecoveryReport()

        try:
            gaps = self.writer.get_unprocessed_gaps(cutoff_hours, limit)
        except Exception as e:
            self.logger.warning(f"Could not load unprocessed gaps, skipping recovery: {e}")
            report.errors.append(str(e))
            return report

        if not gaps:
            self.logger.info("No unprocessed gaps to recover")
            return report

        self.logger.info(f"Recovering {len(gaps)} unprocessed gap(s)")
        for record in gaps:
            report.attempted += 1
            if record.gap_count >= config.GAP_LARGE_THRESHOLD:
                self.logger.warning(
                    f"Large gap {record.id}: {record.gap_count} {record.gap_type.value}"
                )

            try:
                ok = bool(reprocess_fn(record))
                if ok:
                    self.writer.mark_gap_processed(record.id)
            except Exception as e:
                self.logger.warning(f"Recovery of gap {record.id} raised: {e}")
                report.errors.append(f"gap {record.id}: {e}")
                ok = False

            if ok:
                report.recovered.append(record.id)
            else:
                self.logger.warning(f"Gap {record.id} not recovered, will retry next run")
                report.failed.append(record.id)

        return report

    def export_unprocessed(self, path: str, cutoff_hours: Optional[int] = None) -> int:
        """
        Write recent unprocessed gaps to a CSV file.

        Returns:
            int: Number of rows written
        """
        cutoff_hours = cutoff_hours or config.GAP_RECOVERY_CUTOFF_HOURS
        gaps = self.writer.get_unprocessed_gaps(cutoff_hours, config.GAP_RECOVERY_LIMIT)
        df = pd.DataFrame(
            [
                {
                    "id": g.id,
                    "gap_timestamp": g.gap_timestamp,
                    "gap_type": g.gap_type.value,
                    "gap_count": g.gap_count,
                    "total_count": g.total_count,
                    "gap_percentage": g.gap_percentage,
                    "error_details": g.error_details,
                }
                for g in gaps
            ],
            columns=[
                "id",
                "gap_timestamp",
                "gap_type",
                "gap_count",
                "total_count",
                "gap_percentage",
                "error_details",
            ],
        )
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        df.to_csv(path, index=False)
        self.logger.info(f"Exported {len(df)} unprocessed gap(s) to {path}")
        return len(df)
