"""
Statement clients for the retry engine.

Two interchangeable clients execute a SQL statement and return a
``DatabaseResult`` with an exit status and the text output:

- ``PsqlClient`` shells out to ``psql``. psql can exit 0 while printing an
  error banner, so its output has to be scanned for error markers.
- ``SqlAlchemyClient`` runs the statement on a SQLAlchemy engine and reports
  failures as structured errors, so no text scanning is needed.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

# Rows come back on stdout, so banners only count at the start of a line
ERROR_MARKER_PATTERN = re.compile(
    r"^(?:ERROR|FATAL|error)\b|(?i:no existe|relation .* does not exist)", re.MULTILINE
)
# stderr carries no data, any mention counts
STDERR_ERROR_PATTERN = re.compile(
    r"error|fatal|no existe|relation .* does not exist", re.IGNORECASE
)


def has_error_marker(output: str) -> bool:
    """True if statement output (stdout) starts a line with a database error banner."""
    return bool(ERROR_MARKER_PATTERN.search(output or ""))


def has_stderr_error(stderr: str) -> bool:
    """True if psql diagnostics mention an error."""
    return bool(STDERR_ERROR_PATTERN.search(stderr or ""))


@dataclass
class DatabaseResult:
    """Outcome of one statement execution."""

    exit_code: int
    output: str = ""
    error: Optional[str] = None
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def reports_error(self) -> bool:
        """True if stdout or stderr carries a database error message."""
        return has_error_marker(self.output) or has_stderr_error(self.stderr)


class PsqlClient:
    """Run statements through the psql command line client."""

    # psql prints errors as text, sometimes with exit status 0
    scans_output_for_errors = True

    def __init__(
        self,
        dbname: str,
        psql_binary: str = "psql",
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.dbname = dbname
        self.psql_binary = psql_binary
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> "PsqlClient":
        from config.settings import config

        return cls(
            dbname=config.DB_NAME,
            psql_binary=config.PSQL_BINARY,
            host=config.DB_HOST,
            port=config.DB_PORT,
            user=config.DB_USER,
            password=config.DB_PASSWORD,
        )

    def build_command(self) -> List[str]:
        command = [self.psql_binary, "-d", self.dbname, "-v", "ON_ERROR_STOP=1", "-Atq"]
        if self.host:
            command += ["-h", self.host]
        if self.port:
            command += ["-p", str(self.port)]
        if self.user:
            command += ["-U", self.user]
        return command

    def execute(self, statement: str) -> DatabaseResult:
        """
        Execute a statement with psql.

        Args:
            statement: SQL text passed on stdin

        Returns:
            DatabaseResult: exit status, stdout as output and stderr kept apart
        """
        env = dict(os.environ)
        if self.password:
            env["PGPASSWORD"] = self.password

        try:
            completed = subprocess.run(
                self.build_command(),
                input=statement,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            return DatabaseResult(exit_code=124, error=f"psql timed out after {self.timeout}s")
        except OSError as e:
            return DatabaseResult(exit_code=127, error=f"Cannot run {self.psql_binary}: {e}")

        return DatabaseResult(
            exit_code=completed.returncode,
            output=completed.stdout or "",
            stderr=completed.stderr or "",
        )


class SqlAlchemyClient:
    """Run statements on a SQLAlchemy engine inside a transaction."""

    scans_output_for_errors = False

    def __init__(self, engine: Engine, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)

    def execute(self, statement: str) -> DatabaseResult:
        """
        Execute a statement and collect any returned rows as text.

        Returns:
            DatabaseResult: exit_code 0 with pipe-separated rows, or 1 with the
                            database error message
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(statement))
                if result.returns_rows:
                    lines = ["|".join("" if v is None else str(v) for v in row) for row in result]
                    return DatabaseResult(exit_code=0, output="\n".join(lines))
                return DatabaseResult(exit_code=0)
        except SQLAlchemyError as e:
            self.logger.debug(f"Statement failed: {e}")
            return DatabaseResult(exit_code=1, error=str(e))
