"""
Overpass API status poller.

The Overpass ``/api/status`` endpoint answers in free text, for example::

    Connected as: 1234567890
    Current time: 2024-05-01T10:00:00Z
    Announced endpoint: gall.openstreetmap.de/
    Rate limit: 4
    2 slots available now.
    Currently running queries (pid, space limit, time limit, start time):

or, when the client has used its slots::

    Rate limit: 4
    Slot available after: 2024-05-01T10:00:30Z, in 30 seconds.
    Slot available after: 2024-05-01T10:00:45Z, in 45 seconds.

This module turns that text into a number of seconds to wait before the next
request. The poller fails open: if the status endpoint cannot be reached or
answers with something unrecognizable, the wait is 0 so a poller outage never
blocks downloads.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import requests

SLOTS_AVAILABLE_PATTERN = re.compile(r"(\d+)\s+slots?\s+available\s+now", re.IGNORECASE)
WAIT_SECONDS_PATTERN = re.compile(r"in\s+(\d+)\s+seconds?", re.IGNORECASE)


def parse_status_text(text: str) -> int:
    """
    Translate an Overpass status response into a wait time.

    Args:
        text: Body of the status response

    Returns:
        int: 0 if a slot is free now or the text is unrecognized, otherwise
             the shortest announced wait in seconds
    """
    available = SLOTS_AVAILABLE_PATTERN.search(text or "")
    if available and int(available.group(1)) > 0:
        return 0

    waits = [int(value) for value in WAIT_SECONDS_PATTERN.findall(text or "")]
    if waits:
        return min(waits)

    return 0


def status_url_for(interpreter_url: str) -> str:
    """Derive the status endpoint from an interpreter URL."""
    base = interpreter_url.rstrip("/")
    if base.endswith("/interpreter"):
        return base[: -len("interpreter")] + "status"
    return base + "/status"


class OverpassStatusPoller:
    """Query an Overpass instance for how long to wait before the next request."""

    def __init__(
        self,
        interpreter_url: str,
        session: Optional[requests.Session] = None,
        timeout: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.interpreter_url = interpreter_url
        self.status_url = status_url_for(interpreter_url)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def check_status(self) -> int:
        """
        Ask the status endpoint how long to wait.

        Returns:
            int: Seconds to wait; 0 when a slot is free or on any failure
        """
        try:
            response = self.session.get(self.status_url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self.logger.debug(f"Overpass status check failed, not waiting: {e}")
            return 0

        if response.status_code != 200:
            self.logger.debug(
                f"Overpass status returned HTTP {response.status_code}, not waiting"
            )
            return 0

        wait = parse_status_text(response.text)
        if wait > 0:
            self.logger.debug(f"Overpass status: next slot in {wait}s")
        return wait
