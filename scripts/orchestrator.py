#!/usr/bin/env python3
"""
OSM Ingestion Orchestrator

This script drives the boundary and note ingestion runs: it downloads country
or maritime boundaries with a pool of worker processes, imports the downloads
into PostGIS one at a time, and runs the data gap checks and their recovery.

Pipeline Steps (boundaries):
1. Pre-flight checks - work directory, log directory, database connectivity
2. ID list - fetch the relation ids from Overpass unless a list is given
3. Download - one worker process per job, admission through the ticket queue
4. Import - sequential import of every downloaded boundary
5. Summary - success/failure lists and a failed boundaries report

Usage:
    # Download and import every country
    python scripts/orchestrator.py boundaries --kind countries

    # Maritime boundaries from an existing id list, 2 workers
    python scripts/orchestrator.py boundaries --kind maritimes --id-list ids.txt --max-workers 2

    # Gap checks
    python scripts/orchestrator.py gaps detect --window-days 7
    python scripts/orchestrator.py gaps recover

    # Queue inspection and operator recovery
    python scripts/orchestrator.py queue status
    python scripts/orchestrator.py queue reset

Features:
- Partial-failure tolerant batches with reviewable success/failure lists
- Gap recovery that never changes the exit status of the run
- Comprehensive logging and progress tracking
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from functools import partial
from typing import List

# Add project root to path for imports
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from config.settings import config
from scripts.collectors.boundary_collector import (
    BOUNDARY_KINDS,
    BoundaryCollector,
    download_boundary_job,
)
from scripts.collectors.operations import retry_osm_api
from scripts.collectors.osm_schemas import OSMNote
from scripts.coordination.semaphore import SlotSemaphore
from scripts.coordination.ticket_queue import QueueState, TicketQueue
from scripts.database.db_writer import DatabaseWriter, get_postgres_engine
from scripts.monitor.gap_detector import GapDetector, RecoveryReport
from scripts.monitor.gap_schemas import GapRecord
from scripts.processors.worker_pool import (
    BatchResult,
    BatchStatus,
    WorkerPool,
    write_failure_summary,
)
from utils.logging import setup_gap_logging, setup_orchestrator_logging

FAILED_SUMMARY_FILE = "failed_boundaries_summary.txt"


def import_boundary(writer: DatabaseWriter, work_dir: str, kind: str, boundary_id: int) -> bool:
    """Import ``{work_dir}/{id}.geojson`` into the table of ``kind``."""
    geojson_path = os.path.join(work_dir, f"{boundary_id}.geojson")
    writer.import_boundary_geojson(geojson_path, boundary_id, kind)
    return True


def combine_status(download: BatchResult, imported: BatchResult) -> BatchStatus:
    """Overall status of a download phase followed by an import phase."""
    if imported.status == BatchStatus.FAILURE:
        return BatchStatus.FAILURE
    if download.failed or imported.failed:
        return BatchStatus.SUCCESS_WITH_FAILURES
    return BatchStatus.SUCCESS


class BoundaryIngestionOrchestrator:
    """Orchestrate boundary batches, gap checks and queue maintenance."""

    def __init__(self, log_level: str | None = None):
        """Initialize the orchestrator with logging and configuration."""
        self.log_level = log_level
        self.logger = setup_orchestrator_logging(log_level)
        self.start_time = time.time()
        self._writer: DatabaseWriter | None = None

    @property
    def writer(self) -> DatabaseWriter:
        if self._writer is None:
            self._writer = DatabaseWriter(get_postgres_engine(), self.logger)
        return self._writer

    def _elapsed(self) -> str:
        elapsed = time.time() - self.start_time
        if elapsed > 60:
            return f"{elapsed / 60:.1f} minutes"
        return f"{elapsed:.1f} seconds"

    def _pre_flight_checks(self, check_db: bool) -> bool:
        """
        Perform pre-flight checks before a boundary run.

        Args:
            check_db: Whether database connectivity must be verified

        Returns:
            bool: True if all checks pass, False otherwise
        """
        self.logger.info("🔍 Performing pre-flight checks...")

        if not os.path.isdir(config.WORK_DIR):
            self.logger.error(f"❌ Work directory does not exist: {config.WORK_DIR}")
            return False

        if check_db:
            try:
                from sqlalchemy import text

                with self.writer.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                self.logger.info("✅ Database connectivity verified")
            except Exception as e:
                self.logger.error(f"❌ Database connectivity check failed: {e!s}")
                self.logger.error("Please verify database configuration and connectivity")
                return False

        log_dir = os.path.dirname(config.ORCHESTRATOR_LOG_FILE)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
            self.logger.info(f"📁 Created log directory: {log_dir}")

        self.logger.info("✅ All pre-flight checks passed")
        return True

    def run_boundaries(
        self,
        kind: str,
        id_list_file: str | None = None,
        max_workers: int | None = None,
        skip_import: bool = False,
    ) -> BatchStatus:
        """
        Download and import every boundary of ``kind``.

        Args:
            kind: countries or maritimes
            id_list_file: Existing id list; fetched from Overpass when None
            max_workers: Worker processes; defaults to MAX_THREADS
            skip_import: Stop after the download phase

        Returns:
            BatchStatus: FAILURE if nothing was downloaded or imported
        """
        self.logger.info(f"🚀 Starting {kind} boundary run")
        if not self._pre_flight_checks(check_db=not skip_import):
            return BatchStatus.FAILURE

        work_dir = os.path.join(config.WORK_DIR, kind)
        os.makedirs(work_dir, exist_ok=True)

        if id_list_file is None:
            id_list_file = os.path.join(work_dir, f"{kind}_ids.txt")
            collector = BoundaryCollector(work_dir, kind=kind, logger=self.logger)
            if collector.fetch_id_list(id_list_file) == 0:
                self.logger.error(f"❌ Could not obtain the {kind} id list")
                return BatchStatus.FAILURE

        pool = WorkerPool(work_dir, max_workers, logger=self.logger)
        self.logger.info(f"📋 Step 1/2: downloading {kind}")
        download = pool.run_batch(
            id_list_file, partial(download_boundary_job, work_dir=work_dir, kind=kind)
        )
        if download.failed:
            summary = write_failure_summary(
                download, os.path.join(work_dir, FAILED_SUMMARY_FILE), f"{kind} download"
            )
            self.logger.warning(f"⚠️  {len(download.failed)} download(s) failed, see {summary}")
        if download.status == BatchStatus.FAILURE:
            self._log_failure_summary(kind, "download")
            return BatchStatus.FAILURE
        if skip_import:
            self._log_success_summary(kind, download)
            return download.status

        self.logger.info(f"📋 Step 2/2: importing {kind}")
        self.writer.ensure_table_exists(kind)
        imported = pool.run_sequential_import(
            download.success_file, partial(import_boundary, self.writer, work_dir, kind)
        )
        if imported.failed:
            write_failure_summary(
                imported, os.path.join(work_dir, f"import_{FAILED_SUMMARY_FILE}"), f"{kind} import"
            )
        status = combine_status(download, imported)
        if status == BatchStatus.FAILURE:
            self._log_failure_summary(kind, "import")
        else:
            self._log_success_summary(kind, imported)
        return status

    def _gap_detector(self) -> GapDetector:
        return GapDetector(self.writer, logger=setup_gap_logging(self.log_level))

    def run_gap_detection(self, window_days: int | None = None) -> List[GapRecord]:
        """Run the gap checks and record what they find."""
        self.logger.info("🔍 Checking for data gaps...")
        detector = self._gap_detector()
        records = detector.detect_and_log(window_days)
        if records:
            for record in records:
                self.logger.warning(
                    f"⚠️  {record.gap_type.value}: {record.gap_count}/{record.total_count} "
                    f"({record.gap_percentage}%)"
                )
        else:
            self.logger.info("✅ No data gaps detected")
        return records

    def reprocess_gap(self, record: GapRecord) -> bool:
        """
        Re-fetch every note of a gap from the OSM API and re-import its comments.

        Returns:
            bool: True only if every implicated note was re-imported and the
                  gap's check no longer finds any of them
        """
        if not record.note_ids:
            self.logger.warning(f"Gap {record.id} lists no notes, cannot reprocess")
            return False

        download_dir = os.path.join(config.WORK_DIR, "gap_recovery")
        os.makedirs(download_dir, exist_ok=True)
        all_ok = True
        for note_id in record.note_ids:
            output_path = os.path.join(download_dir, f"{note_id}.json")
            if not retry_osm_api(f"{config.OSM_API}/notes/{note_id}.json", output_path):
                self.logger.warning(f"Note {note_id} could not be downloaded")
                all_ok = False
                continue
            with open(output_path) as handle:
                note = OSMNote.from_feature(json.load(handle))
            self.writer.insert_note_comments(note)
            os.remove(output_path)
        if not all_ok:
            return False

        remaining = self._gap_detector().remaining_notes(record)
        if remaining:
            self.logger.warning(f"Gap {record.id} still open for notes {remaining}")
            return False
        return True

    def run_gap_recovery(
        self, cutoff_hours: int | None = None, limit: int | None = None
    ) -> RecoveryReport:
        """Recover recent unprocessed gaps; never raises."""
        self.logger.info("🔧 Recovering data gaps...")
        try:
            detector = self._gap_detector()
        except Exception as e:
            self.logger.warning(f"⚠️  Gap recovery skipped: {e!s}")
            return RecoveryReport(errors=[str(e)])

        report = detector.recover(self.reprocess_gap, cutoff_hours, limit)
        self.logger.info(
            f"📊 Gap recovery: {len(report.recovered)} recovered, "
            f"{len(report.failed)} still open"
        )
        return report

    def export_gaps(self, path: str, cutoff_hours: int | None = None) -> int:
        detector = self._gap_detector()
        return detector.export_unprocessed(path, cutoff_hours)

    def queue_status(self) -> QueueState:
        """Log and return the ticket queue counters and slot usage."""
        state = TicketQueue.from_config(logger=self.logger).state()
        slots = SlotSemaphore.from_config(logger=self.logger).active_count()
        self.logger.info(
            f"📊 Queue: ticket_counter={state.ticket_counter}, "
            f"current_serving={state.current_serving}, active={state.active}, "
            f"waiting={state.waiting}, slots in use={slots}/{config.RATE_LIMIT}"
        )
        return state

    def queue_prune(self) -> int:
        """Reclaim tickets and slots held by dead processes."""
        queue = TicketQueue.from_config(logger=self.logger)
        semaphore = SlotSemaphore.from_config(logger=self.logger)
        reclaimed = queue.prune_stale()
        reclaimed += len(semaphore.reaper.prune_stale(semaphore.slots_dir))
        self.logger.info(f"🧹 Reclaimed {reclaimed} stale lock(s)")
        return reclaimed

    def queue_reset(self) -> QueueState:
        """Operator reset of the ticket queue. Workers must be stopped first."""
        state = TicketQueue.from_config(logger=self.logger).reset()
        self.logger.warning(
            f"🔄 Queue reset: ticket_counter={state.ticket_counter}, "
            f"current_serving={state.current_serving}"
        )
        return state

    def _log_success_summary(self, kind: str, result: BatchResult) -> None:
        """Log run success summary."""
        self.logger.info(f"🎉 {kind} run completed ({result.status.value})")
        self.logger.info(
            f"📊 Summary: {len(result.succeeded)}/{result.total} succeeded, "
            f"{len(result.failed)} failed"
        )
        self.logger.info(f"⏱️  Total runtime: {self._elapsed()}")

    def _log_failure_summary(self, kind: str, phase: str) -> None:
        """Log run failure summary."""
        self.logger.error(f"💥 {kind} run failed during {phase}!")
        self.logger.error(f"⏱️  Runtime before failure: {self._elapsed()}")
        self.logger.error("🔧 Check the logs above for detailed error information")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="OSM Notes Ingestion Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s boundaries --kind countries       # Fetch ids, download and import countries
  %(prog)s boundaries --kind maritimes --id-list ids.txt
  %(prog)s gaps detect --window-days 7       # Record notes missing comments
  %(prog)s gaps recover                      # Retry recent unprocessed gaps
  %(prog)s queue status                      # Show queue counters

Notes:
  - A boundary run exits 0 when at least one boundary was imported
  - Gap recovery never changes the exit status
  - Check logs/orchestrator.log for detailed progress
        """,
    )
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Logging level")
    commands = parser.add_subparsers(dest="command", required=True)

    boundaries = commands.add_parser("boundaries", help="Download and import boundaries")
    boundaries.add_argument("--kind", choices=BOUNDARY_KINDS, default="countries")
    boundaries.add_argument("--id-list", help="Existing id list file")
    boundaries.add_argument("--max-workers", type=int, metavar="N", help="Worker processes")
    boundaries.add_argument(
        "--skip-import", action="store_true", help="Stop after downloading"
    )

    gaps = commands.add_parser("gaps", help="Data gap checks")
    gap_commands = gaps.add_subparsers(dest="gap_command", required=True)
    detect = gap_commands.add_parser("detect", help="Detect and record gaps")
    detect.add_argument("--window-days", type=int, default=config.GAP_WINDOW_DAYS)
    recover = gap_commands.add_parser("recover", help="Recover unprocessed gaps")
    recover.add_argument(
        "--cutoff-hours", type=int, default=config.GAP_RECOVERY_CUTOFF_HOURS
    )
    recover.add_argument("--limit", type=int, default=config.GAP_RECOVERY_LIMIT)
    export = gap_commands.add_parser("export", help="Export unprocessed gaps to CSV")
    export.add_argument("--output", required=True, help="CSV file path")
    export.add_argument("--cutoff-hours", type=int, default=config.GAP_RECOVERY_CUTOFF_HOURS)

    queue = commands.add_parser("queue", help="Queue inspection and recovery")
    queue.add_argument("action", choices=("status", "prune", "reset"))

    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Main function for the orchestrator script.

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    args = _build_parser().parse_args(argv)

    try:
        orchestrator = BoundaryIngestionOrchestrator(args.log_level)

        if args.command == "boundaries":
            status = orchestrator.run_boundaries(
                args.kind,
                id_list_file=args.id_list,
                max_workers=args.max_workers,
                skip_import=args.skip_import,
            )
            return 0 if status != BatchStatus.FAILURE else 1

        if args.command == "gaps":
            if args.gap_command == "detect":
                orchestrator.run_gap_detection(args.window_days)
            elif args.gap_command == "recover":
                orchestrator.run_gap_recovery(args.cutoff_hours, args.limit)
            else:
                orchestrator.export_gaps(args.output, args.cutoff_hours)
            return 0

        if args.action == "status":
            orchestrator.queue_status()
        elif args.action == "prune":
            orchestrator.queue_prune()
        else:
            orchestrator.queue_reset()
        return 0

    except KeyboardInterrupt:
        print("\n🛑 Run interrupted by user")
        return 1
    except (ValueError, FileNotFoundError) as e:
        print(f"❌ {e!s}")
        return 1
    except Exception as e:
        print(f"💥 Orchestrator failed with unexpected error: {e!s}")
        return 1


if __name__ == "__main__":
    exit(main())
