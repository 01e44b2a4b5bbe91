"""
Retry engine shared by every remote and local operation.

All operation types (file actions, HTTP downloads, Overpass queries, OSM API
calls, GeoServer requests, database statements) go through one retry loop:

1. run the operation's admission hook (slot or ticket), if any
2. run the attempt
3. on failure, run the optional cleanup once, then sleep and try again

The delay between attempts is fixed unless the operation asks for a different
one (Overpass does after a 429). Exceptions raised by an attempt are logged
and counted as a failed attempt; they never escape the loop.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from scripts.coordination.semaphore import SlotSemaphore
from scripts.coordination.ticket_queue import TicketQueue


@dataclass
class RetryContext:
    """Per-call retry state. Never persisted."""

    operation: str
    max_attempts: int
    delay_seconds: float
    cleanup: Optional[Callable[[], Any]] = None
    attempt: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def attempts_left(self) -> int:
        return self.max_attempts - self.attempt


class AdmissionGate:
    """Pre-attempt hook that reserves capacity before a network request."""

    def acquire(self) -> bool:
        return True

    def release(self) -> None:
        pass


class SlotGate(AdmissionGate):
    """Admission through the unordered slot semaphore."""

    def __init__(self, semaphore: SlotSemaphore):
        self.semaphore = semaphore

    def acquire(self) -> bool:
        return self.semaphore.acquire_slot()

    def release(self) -> None:
        self.semaphore.release_slot()


class TicketGate(AdmissionGate):
    """Admission through the FIFO ticket queue, one ticket per attempt."""

    def __init__(self, queue: TicketQueue):
        self.queue = queue
        self.ticket: Optional[int] = None

    def acquire(self) -> bool:
        self.ticket = self.queue.get_ticket()
        if self.queue.wait_for_turn(self.ticket):
            return True
        # Abandoned tickets still count as a release so the window keeps moving
        self.queue.release_ticket(self.ticket)
        self.ticket = None
        return False

    def release(self) -> None:
        if self.ticket is not None:
            self.queue.release_ticket(self.ticket)
            self.ticket = None


class Operation:
    """
    One retryable unit of work.

    Subclasses implement ``attempt()`` and may override the admission hook,
    the output check and the delay policy. All of them report plain
    True/False so callers never need to know which kind ran.
    """

    name = "operation"

    def __init__(self, gate: Optional[AdmissionGate] = None):
        self.gate = gate

    def before_attempt(self) -> bool:
        """Reserve capacity; False counts as a failed attempt."""
        if self.gate is None:
            return True
        return self.gate.acquire()

    def after_attempt(self) -> None:
        """Give back capacity taken by before_attempt()."""
        if self.gate is not None:
            self.gate.release()

    def attempt(self) -> bool:
        raise NotImplementedError

    def next_delay(self, attempt: int, base_delay: float) -> float:
        """Delay before the attempt after ``attempt``; fixed by default."""
        return base_delay

    def describe(self) -> str:
        return self.name


class CallableOperation(Operation):
    """Adapt a plain callable to the Operation interface.

    The callable succeeds when it returns True, None or exit code 0.
    """

    def __init__(self, func: Callable[[], Any], name: Optional[str] = None):
        super().__init__()
        self.func = func
        self.name = name or getattr(func, "__name__", "operation")

    def attempt(self) -> bool:
        return result_is_success(self.func())


def result_is_success(result: Any) -> bool:
    """Interpret an operation result: True, None and 0 are success."""
    if result is None or result is True:
        return True
    if result is False:
        return False
    if isinstance(result, int):
        return result == 0
    return bool(result)


def output_is_valid(output_path: Optional[str]) -> bool:
    """A download succeeded only if it produced a non-empty file."""
    if output_path is None:
        return True
    return os.path.isfile(output_path) and os.path.getsize(output_path) > 0


class RetryEngine:
    """Run operations with a bounded number of attempts."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    def retry(
        self,
        op: Union[Operation, Callable[[], Any]],
        max_attempts: int,
        delay_seconds: float,
        cleanup: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """
        Attempt ``op`` up to ``max_attempts`` times.

        Args:
            op: Operation instance or callable
            max_attempts: Total attempts, at least 1
            delay_seconds: Sleep between attempts
            cleanup: Run once after every failed attempt, never after success

        Returns:
            bool: True as soon as an attempt succeeds, False after all fail

        Raises:
            ValueError: If max_attempts is less than 1
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        operation = op if isinstance(op, Operation) else CallableOperation(op)
        context = RetryContext(
            operation=operation.describe(),
            max_attempts=max_attempts,
            delay_seconds=delay_seconds,
            cleanup=cleanup,
        )

        while context.attempt < context.max_attempts:
            context.attempt += 1

            if self._run_attempt(operation, context):
                if context.attempt > 1:
                    self.logger.info(
                        f"{context.operation} succeeded on attempt "
                        f"{context.attempt}/{context.max_attempts} "
                        f"after {context.elapsed:.1f}s"
                    )
                return True

            self._run_cleanup(context)

            if context.attempts_left > 0:
                delay = operation.next_delay(context.attempt, context.delay_seconds)
                self.logger.warning(
                    f"{context.operation} failed (attempt {context.attempt}/"
                    f"{context.max_attempts}), retrying in {delay}s"
                )
                (self._sleep or time.sleep)(delay)

        self.logger.error(
            f"{context.operation} failed after {context.max_attempts} attempts "
            f"({context.elapsed:.1f}s)"
        )
        return False

    def _run_attempt(self, operation: Operation, context: RetryContext) -> bool:
        try:
            admitted = operation.before_attempt()
        except Exception as e:
            self.logger.warning(f"{context.operation}: admission check raised {e}")
            return False

        if not admitted:
            self.logger.warning(
                f"{context.operation}: no capacity available on attempt {context.attempt}"
            )
            return False

        try:
            return bool(operation.attempt())
        except Exception as e:
            self.logger.warning(
                f"{context.operation}: attempt {context.attempt} raised "
                f"{type(e).__name__}: {e}"
            )
            return False
        finally:
            try:
                operation.after_attempt()
            except Exception as e:
                self.logger.error(f"{context.operation}: releasing capacity failed: {e}")

    def _run_cleanup(self, context: RetryContext) -> None:
        if context.cleanup is None:
            return
        try:
            context.cleanup()
        except Exception as e:
            self.logger.warning(f"{context.operation}: cleanup failed: {e}")


def retry(
    op: Union[Operation, Callable[[], Any]],
    max_attempts: int,
    delay_seconds: float,
    cleanup: Optional[Callable[[], Any]] = None,
) -> bool:
    """Module-level shortcut for ``RetryEngine().retry(...)``."""
    return RetryEngine().retry(op, max_attempts, delay_seconds, cleanup)
