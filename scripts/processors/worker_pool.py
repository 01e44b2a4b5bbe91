"""
Worker Pool for Boundary Batches

Runs one job per OSM relation id across a pool of OS processes and classifies
every id as a success or a failure. Each worker writes only to its own spool
files (one per PID and outcome), so no two processes ever append to the same
file; the spools are merged into the batch result files once every worker has
finished.

Batch result files written in the work directory:
- download_success.txt / download_failed.txt by ``run_batch``
- import_success.txt / import_failed.txt by ``run_sequential_import``

A batch is useful even when some ids fail: only a batch where nothing
succeeded (or nothing was there to run) is a failure.
"""

from __future__ import annotations

import logging
import os
import shutil
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from multiprocessing import get_context
from typing import Callable, Dict, List, Optional

import pandas as pd

from config.settings import config
from scripts.collectors.osm_schemas import JobIdListSchema

DOWNLOAD_SUCCESS_FILE = "download_success.txt"
DOWNLOAD_FAILED_FILE = "download_failed.txt"
IMPORT_SUCCESS_FILE = "import_success.txt"
IMPORT_FAILED_FILE = "import_failed.txt"
SPOOL_DIR_NAME = "spool"


class BatchStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_FAILURES = "success_with_failures"
    FAILURE = "failure"


@dataclass
class BatchResult:
    """Outcome of one batch phase."""

    status: BatchStatus
    succeeded: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    success_file: Optional[str] = None
    failed_file: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def classify(succeeded: List[int], failed: List[int]) -> BatchStatus:
    """Overall status of a batch from its per-id outcomes."""
    if not succeeded:
        return BatchStatus.FAILURE
    if failed:
        return BatchStatus.SUCCESS_WITH_FAILURES
    return BatchStatus.SUCCESS


def read_id_list(path: str) -> List[int]:
    """
    Read a job id list: one positive integer per line.

    Blank lines are ignored and duplicates dropped, keeping the first
    occurrence.

    Raises:
        FileNotFoundError: If the list file does not exist
        pandera.errors.SchemaError, pandera.errors.SchemaErrors: If a line is
            not a positive integer (coercion failures raise SchemaErrors)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"ID list not found: {path}")

    try:
        df = pd.read_csv(
            path, header=None, names=["job_id"], dtype=str, skip_blank_lines=True
        )
    except pd.errors.EmptyDataError:
        return []

    df["job_id"] = df["job_id"].str.strip()
    df = df[df["job_id"] != ""].dropna()
    if df.empty:
        return []

    validated = JobIdListSchema.validate(df)
    return [int(v) for v in validated["job_id"].drop_duplicates().tolist()]


def _write_ids(path: str, ids: List[int]) -> None:
    with open(path, "w") as handle:
        for job_id in ids:
            handle.write(f"{job_id}\n")


def _spool_path(spool_dir: str, outcome: str) -> str:
    return os.path.join(spool_dir, f"{outcome}.{os.getpid()}")


def _run_job(per_job_fn: Callable[[int], bool], job_id: int, spool_dir: str) -> bool:
    """Run one job inside a worker process and spool its outcome."""
    try:
        ok = bool(per_job_fn(job_id))
    except Exception as e:
        logging.getLogger(__name__).error(f"Job {job_id} raised: {e}")
        ok = False

    with open(_spool_path(spool_dir, "success" if ok else "failed"), "a") as handle:
        handle.write(f"{job_id}\n")
    return ok


def _read_spools(spool_dir: str) -> Dict[int, bool]:
    outcomes: Dict[int, bool] = {}
    for name in sorted(os.listdir(spool_dir)):
        outcome = name.split(".", 1)[0]
        with open(os.path.join(spool_dir, name)) as handle:
            for line in handle:
                line = line.strip()
                if line:
                    # A failure recorded anywhere wins over a success
                    job_id = int(line)
                    outcomes[job_id] = outcomes.get(job_id, True) and outcome == "success"
    return outcomes


class WorkerPool:
    """Fan jobs out to worker processes and record their outcomes."""

    def __init__(
        self,
        work_dir: Optional[str] = None,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.work_dir = work_dir or config.WORK_DIR
        self.max_workers = max_workers or config.MAX_THREADS
        self.logger = logger or logging.getLogger(__name__)

    def _path(self, name: str) -> str:
        return os.path.join(self.work_dir, name)

    def _check_work_dir(self) -> None:
        if not os.path.isdir(self.work_dir):
            raise FileNotFoundError(f"Work directory does not exist: {self.work_dir}")

    def run_batch(
        self,
        id_list_file: str,
        per_job_fn: Callable[[int], bool],
        max_workers: Optional[int] = None,
    ) -> BatchResult:
        """
        Run ``per_job_fn(id)`` for every id of the list in worker processes.

        ``per_job_fn`` must be picklable: a module-level function or a
        ``functools.partial`` of one. A job that raises counts as failed, and
        so does a job whose worker died before recording an outcome.

        Args:
            id_list_file: File with one job id per line
            per_job_fn: Job function returning True on success
            max_workers: Process count; defaults to the pool's setting

        Returns:
            BatchResult: FAILURE for an empty list or when every job failed

        Raises:
            FileNotFoundError: If the work directory or the id list is missing
        """
        self._check_work_dir()
        ids = read_id_list(id_list_file)
        if not ids:
            self.logger.error(f"ID list {id_list_file} is empty, nothing to process")
            return BatchResult(status=BatchStatus.FAILURE)

        workers = max(1, min(max_workers or self.max_workers, len(ids)))
        spool_dir = self._path(SPOOL_DIR_NAME)
        shutil.rmtree(spool_dir, ignore_errors=True)
        os.makedirs(spool_dir)

        self.logger.info(f"Processing {len(ids)} job(s) with {workers} worker process(es)")
        with ProcessPoolExecutor(
            max_workers=workers, mp_context=get_context("fork")
        ) as executor:
            futures = {
                executor.submit(_run_job, per_job_fn, job_id, spool_dir): job_id
                for job_id in ids
            }
            for future in as_completed(futures):
                job_id = futures[future]
                try:
                    ok = future.result()
                except Exception as e:
                    self.logger.error(f"Worker for job {job_id} died: {e}")
                    continue
                self.logger.debug(f"Job {job_id} {'succeeded' if ok else 'failed'}")

        outcomes = _read_spools(spool_dir)
        shutil.rmtree(spool_dir, ignore_errors=True)

        succeeded = [i for i in ids if outcomes.get(i) is True]
        failed = [i for i in ids if outcomes.get(i) is not True]
        success_file = self._path(DOWNLOAD_SUCCESS_FILE)
        failed_file = self._path(DOWNLOAD_FAILED_FILE)
        _write_ids(success_file, succeeded)
        _write_ids(failed_file, failed)

        result = BatchResult(
            status=classify(succeeded, failed),
            succeeded=succeeded,
            failed=failed,
            success_file=success_file,
            failed_file=failed_file,
        )
        self.logger.info(
            f"Batch finished: {len(succeeded)} succeeded, {len(failed)} failed "
            f"({result.status.value})"
        )
        return result

    def run_sequential_import(
        self, success_file: str, import_fn: Callable[[int], bool]
    ) -> BatchResult:
        """
        Import every downloaded id, one at a time, in list order.

        Returns:
            BatchResult: Classified like ``run_batch``

        Raises:
            FileNotFoundError: If the work directory or success file is missing
        """
        self._check_work_dir()
        ids = read_id_list(success_file)
        if not ids:
            self.logger.error(f"Nothing to import from {success_file}")
            return BatchResult(status=BatchStatus.FAILURE)

        success_path = self._path(IMPORT_SUCCESS_FILE)
        failed_path = self._path(IMPORT_FAILED_FILE)
        succeeded: List[int] = []
        failed: List[int] = []

        with open(success_path, "w") as ok_handle, open(failed_path, "w") as failed_handle:
            for index, job_id in enumerate(ids, start=1):
                try:
                    ok = bool(import_fn(job_id))
                except Exception as e:
                    self.logger.error(f"Import of {job_id} raised: {e}")
                    ok = False

                if ok:
                    succeeded.append(job_id)
                    ok_handle.write(f"{job_id}\n")
                else:
                    failed.append(job_id)
                    failed_handle.write(f"{job_id}\n")
                self.logger.info(f"Imported {index}/{len(ids)}: {job_id} ({'ok' if ok else 'failed'})")

        result = BatchResult(
            status=classify(succeeded, failed),
            succeeded=succeeded,
            failed=failed,
            success_file=success_path,
            failed_file=failed_path,
        )
        self.logger.info(
            f"Import finished: {len(succeeded)} succeeded, {len(failed)} failed "
            f"({result.status.value})"
        )
        return result


def write_failure_summary(result: BatchResult, path: str, title: str = "Batch") -> str:
    """
    Write a human-readable report of the failed ids of a batch.

    Returns:
        str: The report path
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    lines = [
        f"{title} failure summary",
        f"Generated: {datetime.now(timezone.utc).isoformat()}",
        f"Status: {result.status.value}",
        f"Total: {result.total}",
        f"Succeeded: {len(result.succeeded)}",
        f"Failed: {len(result.failed)}",
        "",
    ]
    if result.failed:
        lines.append("Failed ids:")
        lines.extend(f"  - {job_id}" for job_id in result.failed)
    else:
        lines.append("No failures.")

    with open(path, "w") as handle:
        handle.write("\n".join(lines) + "\n")
    return path
