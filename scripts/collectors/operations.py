"""
Retryable operations for each kind of remote or local work.

Every class here plugs into ``RetryEngine.retry`` and reports a plain
success/failure, so the worker pool never needs to know which kind ran:

- FileOperation: any local filesystem action, no admission control
- NetworkOperation: HTTP GET to a file, optionally gated by a slot or ticket
- OverpassOperation: POST an Overpass QL query, always gated; 429 is retryable
- OSMApiOperation: GET against the OSM API with a best-effort HTTP/2 check
- GeoServerOperation: GET/POST/PUT against the GeoServer REST API
- DatabaseOperation: run a statement and check both exit status and output

The ``retry_*`` functions at the bottom fill in the retry policy from
configuration.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, List, Optional, Tuple

import httpx
import requests

from config.settings import config
from scripts.collectors.overpass_status import OverpassStatusPoller
from scripts.collectors.retry import (
    AdmissionGate,
    Operation,
    RetryEngine,
    SlotGate,
    TicketGate,
    output_is_valid,
    result_is_success,
)
from scripts.coordination.semaphore import SlotSemaphore
from scripts.coordination.ticket_queue import TicketQueue
from scripts.database.db_client import DatabaseResult, PsqlClient

logger = logging.getLogger(__name__)


def _default_headers() -> dict:
    return {"User-Agent": config.DOWNLOAD_USER_AGENT}


def _write_bytes(path: str, content: bytes) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(content)


def remove_partial_output(path: Optional[str]) -> Callable[[], None]:
    """Cleanup action that deletes a partially written output file."""

    def cleanup() -> None:
        if path and os.path.exists(path):
            os.remove(path)

    return cleanup


class FileOperation(Operation):
    """Local filesystem action; succeeds on True, None or exit code 0."""

    name = "file operation"

    def __init__(self, action: Callable[[], Any], name: Optional[str] = None):
        super().__init__()
        self.action = action
        if name:
            self.name = name

    def attempt(self) -> bool:
        return result_is_success(self.action())


class NetworkOperation(Operation):
    """Download a URL to a file with a plain HTTP GET."""

    name = "network download"

    def __init__(
        self,
        url: str,
        output_path: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        gate: Optional[AdmissionGate] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(gate)
        self.url = url
        self.output_path = output_path
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = headers or _default_headers()
        self.last_status: Optional[int] = None

    def describe(self) -> str:
        return f"{self.name} {self.url}"

    def attempt(self) -> bool:
        response = self.session.get(self.url, headers=self.headers, timeout=self.timeout)
        self.last_status = response.status_code
        if response.status_code != 200:
            logger.warning(f"GET {self.url} returned HTTP {response.status_code}")
            return False
        _write_bytes(self.output_path, response.content)
        return output_is_valid(self.output_path)


def overpass_runtime_error(body: str) -> Optional[str]:
    """
    Detect an Overpass error reported inside a 200 response.

    Overpass answers timeouts and memory exhaustion with HTTP 200 and a
    ``remark`` such as "runtime error: Query timed out".
    """
    if not body:
        return "empty response"
    try:
        payload = json.loads(body)
    except ValueError:
        if "runtime error" in body or "rate_limited" in body:
            return body.strip().splitlines()[0][:200]
        return None
    remark = payload.get("remark") if isinstance(payload, dict) else None
    if remark and "runtime error" in remark:
        return remark
    return None


class OverpassOperation(Operation):
    """POST an Overpass QL query and save the JSON answer."""

    name = "Overpass query"

    def __init__(
        self,
        query: str,
        output_path: str,
        interpreter_url: str,
        gate: Optional[AdmissionGate],
        session: Optional[requests.Session] = None,
        timeout: int = 300,
        rate_limit_cooldown: float = 30.0,
    ):
        super().__init__(gate)
        self.query = query
        self.output_path = output_path
        self.interpreter_url = interpreter_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.rate_limit_cooldown = rate_limit_cooldown
        self.last_status: Optional[int] = None
        self._rate_limited = False

    def describe(self) -> str:
        return f"{self.name} on {self.interpreter_url}"

    def attempt(self) -> bool:
        response = self.session.post(
            self.interpreter_url,
            data={"data": self.query},
            headers=_default_headers(),
            timeout=self.timeout,
        )
        self.last_status = response.status_code

        if response.status_code == 429:
            self._rate_limited = True
            logger.warning(f"Overpass rate limit hit (HTTP 429) on {self.interpreter_url}")
            return False
        if response.status_code != 200:
            logger.warning(
                f"Overpass returned HTTP {response.status_code} on {self.interpreter_url}"
            )
            return False

        error = overpass_runtime_error(response.text)
        if error:
            logger.warning(f"Overpass reported an error: {error}")
            return False

        _write_bytes(self.output_path, response.content)
        return output_is_valid(self.output_path)

    def next_delay(self, attempt: int, base_delay: float) -> float:
        if self._rate_limited:
            self._rate_limited = False
            return max(base_delay, self.rate_limit_cooldown)
        return base_delay


class OSMApiOperation(Operation):
    """
    GET from the OSM API.

    Before the first request the server is checked for HTTP/2. The check is
    best effort: any failure, or a server that answers over HTTP/1.1, means
    the request goes through ``requests`` instead.
    """

    name = "OSM API request"

    def __init__(
        self,
        url: str,
        output_path: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        check_http2: bool = True,
    ):
        super().__init__()
        self.url = url
        self.output_path = output_path
        self.session = session or requests.Session()
        self.timeout = timeout
        self.check_http2 = check_http2
        self.last_status: Optional[int] = None
        self._http2: Optional[bool] = None

    def describe(self) -> str:
        return f"{self.name} {self.url}"

    def supports_http2(self) -> bool:
        """Check once per operation whether the server speaks HTTP/2."""
        if self._http2 is None:
            self._http2 = False
            if self.check_http2:
                try:
                    with httpx.Client(http2=True, timeout=min(self.timeout, 10)) as client:
                        response = client.head(self.url, headers=_default_headers())
                        self._http2 = response.http_version == "HTTP/2"
                except httpx.HTTPError as e:
                    logger.debug(f"HTTP/2 check failed for {self.url}, using HTTP/1.1: {e}")
        return self._http2

    def _get_http2(self) -> Optional[Tuple[int, bytes]]:
        try:
            with httpx.Client(http2=True, timeout=self.timeout) as client:
                response = client.get(self.url, headers=_default_headers())
                return response.status_code, response.content
        except httpx.HTTPError as e:
            logger.debug(f"HTTP/2 request failed for {self.url}, retrying over HTTP/1.1: {e}")
            self._http2 = False
            return None

    def attempt(self) -> bool:
        result = self._get_http2() if self.supports_http2() else None
        if result is None:
            response = self.session.get(
                self.url, headers=_default_headers(), timeout=self.timeout
            )
            result = (response.status_code, response.content)

        status, content = result
        self.last_status = status
        if status != 200:
            logger.warning(f"OSM API returned HTTP {status} for {self.url}")
            return False
        _write_bytes(self.output_path, content)
        return output_is_valid(self.output_path)


class GeoServerOperation(Operation):
    """Call the GeoServer REST API with basic authentication."""

    name = "GeoServer request"
    METHODS = ("GET", "POST", "PUT", "DELETE")

    def __init__(
        self,
        url: str,
        method: str = "GET",
        data: Optional[Any] = None,
        output_path: Optional[str] = None,
        auth: Optional[Tuple[str, str]] = None,
        content_type: str = "application/json",
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        super().__init__()
        method = method.upper()
        if method not in self.METHODS:
            raise ValueError(f"Unsupported GeoServer method: {method}")
        self.url = url
        self.method = method
        self.data = data
        self.output_path = output_path
        self.auth = auth
        self.content_type = content_type
        self.session = session or requests.Session()
        self.timeout = timeout
        self.last_status: Optional[int] = None

    def describe(self) -> str:
        return f"{self.name} {self.method} {self.url}"

    def attempt(self) -> bool:
        headers = _default_headers()
        if self.data is not None:
            headers["Content-Type"] = self.content_type
        response = self.session.request(
            self.method,
            self.url,
            data=self.data,
            auth=self.auth,
            headers=headers,
            timeout=self.timeout,
        )
        self.last_status = response.status_code
        if not 200 <= response.status_code < 300:
            logger.warning(
                f"GeoServer {self.method} {self.url} returned HTTP {response.status_code}"
            )
            return False
        if self.output_path:
            _write_bytes(self.output_path, response.content)
        return True


class DatabaseOperation(Operation):
    """
    Execute one statement through a database client.

    A non-zero exit status fails the attempt. Clients that only report
    errors as text (psql) also fail the attempt when a line of stdout starts
    with an error banner or stderr mentions an error.
    """

    name = "database statement"

    def __init__(self, statement: str, client, output_path: Optional[str] = None):
        super().__init__()
        self.statement = statement
        self.client = client
        self.output_path = output_path
        self.last_result: Optional[DatabaseResult] = None

    def attempt(self) -> bool:
        result = self.client.execute(self.statement)
        self.last_result = result

        if not result.ok:
            logger.warning(
                f"Statement failed with exit code {result.exit_code}: "
                f"{result.error or (result.stderr or result.output).strip()[:200]}"
            )
            return False
        if getattr(self.client, "scans_output_for_errors", True) and result.reports_error():
            detail = (result.stderr or result.output).strip()[:200]
            logger.warning(f"Statement output reports an error: {detail}")
            return False

        if self.output_path:
            _write_bytes(self.output_path, result.output.encode())
        return True


def overpass_gate(interpreter_url: str) -> AdmissionGate:
    """Ticket queue admission consulting the status of ``interpreter_url``."""
    poller = OverpassStatusPoller(interpreter_url, timeout=config.OVERPASS_STATUS_TIMEOUT)
    return TicketGate(TicketQueue.from_config(rate_poller=poller))


def smart_wait_gate(use_ticket_queue: bool = False) -> AdmissionGate:
    """Admission gate for generic downloads: slot semaphore or ticket queue."""
    if use_ticket_queue:
        return TicketGate(TicketQueue.from_config())
    return SlotGate(SlotSemaphore.from_config())


def retry_file_operation(
    action: Callable[[], Any],
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
    cleanup: Optional[Callable[[], Any]] = None,
) -> bool:
    """Retry a local file action."""
    return RetryEngine().retry(
        FileOperation(action),
        max_attempts or config.FILE_MAX_RETRIES,
        config.FILE_RETRY_DELAY if delay is None else delay,
        cleanup,
    )


def retry_network_operation(
    url: str,
    output_path: str,
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
    timeout: Optional[int] = None,
    smart_wait: bool = False,
    gate: Optional[AdmissionGate] = None,
) -> bool:
    """
    Download ``url`` into ``output_path``.

    Args:
        smart_wait: Take a slot before every attempt
        gate: Explicit admission gate; overrides smart_wait
    """
    if gate is None and smart_wait:
        gate = smart_wait_gate()
    operation = NetworkOperation(
        url, output_path, timeout=timeout or config.NETWORK_TIMEOUT, gate=gate
    )
    return RetryEngine().retry(
        operation,
        max_attempts or config.NETWORK_MAX_RETRIES,
        config.NETWORK_RETRY_DELAY if delay is None else delay,
        remove_partial_output(output_path),
    )


def retry_overpass_api(
    query: str,
    output_path: str,
    interpreter_url: Optional[str] = None,
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
    timeout: Optional[int] = None,
    gate: Optional[AdmissionGate] = None,
) -> bool:
    """Run an Overpass query through the ticket queue and save the result."""
    interpreter_url = interpreter_url or config.OVERPASS_INTERPRETER
    operation = OverpassOperation(
        query,
        output_path,
        interpreter_url,
        gate=gate or overpass_gate(interpreter_url),
        timeout=timeout or config.OVERPASS_TIMEOUT,
        rate_limit_cooldown=config.OVERPASS_429_COOLDOWN,
    )
    return RetryEngine().retry(
        operation,
        max_attempts or config.OVERPASS_MAX_RETRIES,
        config.OVERPASS_RETRY_DELAY if delay is None else delay,
        remove_partial_output(output_path),
    )


def retry_osm_api(
    url: str,
    output_path: str,
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
    timeout: Optional[int] = None,
) -> bool:
    """GET an OSM API URL into ``output_path``."""
    operation = OSMApiOperation(url, output_path, timeout=timeout or config.OSM_API_TIMEOUT)
    return RetryEngine().retry(
        operation,
        max_attempts or config.OSM_API_MAX_RETRIES,
        config.OSM_API_RETRY_DELAY if delay is None else delay,
        remove_partial_output(output_path),
    )


def retry_geoserver_api(
    url: str,
    method: str = "GET",
    data: Optional[Any] = None,
    output_path: Optional[str] = None,
    content_type: str = "application/json",
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
    timeout: Optional[int] = None,
) -> bool:
    """Call the GeoServer REST API with the configured credentials."""
    auth = None
    if config.GEOSERVER_PASSWORD:
        auth = (config.GEOSERVER_USER, config.GEOSERVER_PASSWORD)
    operation = GeoServerOperation(
        url,
        method=method,
        data=data,
        output_path=output_path,
        auth=auth,
        content_type=content_type,
        timeout=timeout or config.GEOSERVER_TIMEOUT,
    )
    return RetryEngine().retry(
        operation,
        max_attempts or config.GEOSERVER_MAX_RETRIES,
        config.GEOSERVER_RETRY_DELAY if delay is None else delay,
        remove_partial_output(output_path),
    )


def retry_database_operation(
    statement: str,
    client=None,
    output_path: Optional[str] = None,
    max_attempts: Optional[int] = None,
    delay: Optional[float] = None,
) -> bool:
    """Execute a statement, by default through psql."""
    operation = DatabaseOperation(
        statement, client or PsqlClient.from_config(), output_path=output_path
    )
    return RetryEngine().retry(
        operation,
        max_attempts or config.DB_MAX_RETRIES,
        config.DB_RETRY_DELAY if delay is None else delay,
        remove_partial_output(output_path),
    )


def has_overpass_elements(path: str) -> bool:
    """True if ``path`` holds Overpass JSON with an ``elements`` key."""
    try:
        with open(path) as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as e:
        logger.warning(f"Invalid Overpass JSON in {path}: {e}")
        return False
    return isinstance(payload, dict) and "elements" in payload


def download_with_overpass_endpoints(
    query: str,
    output_path: str,
    endpoints: Optional[List[str]] = None,
    retries_per_endpoint: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    gate_factory: Callable[[str], AdmissionGate] = overpass_gate,
) -> bool:
    """
    Run a query against each configured Overpass endpoint in turn.

    An endpoint counts as successful only if it returns JSON with an
    ``elements`` key; otherwise the next endpoint is tried.

    Returns:
        bool: True once one endpoint produced valid output
    """
    endpoints = endpoints or config.get_overpass_endpoints()
    retries = retries_per_endpoint or config.OVERPASS_RETRIES_PER_ENDPOINT
    backoff = config.OVERPASS_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    for index, endpoint in enumerate(endpoints, start=1):
        logger.info(f"Overpass endpoint {index}/{len(endpoints)}: {endpoint}")
        if retry_overpass_api(
            query,
            output_path,
            interpreter_url=endpoint,
            max_attempts=retries,
            delay=backoff,
            gate=gate_factory(endpoint),
        ) and has_overpass_elements(output_path):
            return True
        remove_partial_output(output_path)()
        logger.warning(f"Overpass endpoint {endpoint} failed, trying next endpoint")

    logger.error(f"All {len(endpoints)} Overpass endpoints failed")
    return False
