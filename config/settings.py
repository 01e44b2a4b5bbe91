"""
Configuration settings for the OSM Notes Ingestion project.

This module centralizes all configuration values and provides a single source of truth for all
configurable parameters: queue and worker limits, retry policy per operation class, remote
endpoints, database credentials, gap monitoring thresholds and logging.
"""

import os
from typing import Optional

from dotenv import load_dotenv

# Load .env from the project root before reading the environment
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """
    Central configuration class for the OSM Notes Ingestion project.

    Values are class-level defaults that can be overridden from environment
    variables (or a .env file) when the instance is created.
    """

    APP_NAME: str = "OSM-Notes-Ingestion"
    APP_VERSION: str = "1.0"

    # Working directory (queue state, batch files, spool files)
    WORK_DIR: str = "/tmp/osm_notes_ingestion"
    QUEUE_DIR_NAME: str = "download_queue"

    # Admission control
    RATE_LIMIT: int = 8  # 2 Overpass servers x 4 slots each
    MAX_THREADS: int = 4
    SLOT_CHECK_INTERVAL: float = 0.5
    SLOT_MAX_WAIT_ATTEMPTS: int = 10
    TICKET_POLL_INTERVAL: float = 1.0
    TICKET_TIMEOUT: int = 3600
    TICKET_TIMEOUT_CONTINUE_ON_ERROR: int = 600
    LOCK_LEASE_SECONDS: int = 0  # 0 disables lease expiry

    # Retry Configuration
    FILE_MAX_RETRIES: int = 3
    FILE_RETRY_DELAY: float = 1.0
    NETWORK_MAX_RETRIES: int = 5
    NETWORK_RETRY_DELAY: float = 2.0
    NETWORK_TIMEOUT: int = 30
    OVERPASS_MAX_RETRIES: int = 3
    OVERPASS_RETRY_DELAY: float = 5.0
    OVERPASS_TIMEOUT: int = 300
    OSM_API_MAX_RETRIES: int = 5
    OSM_API_RETRY_DELAY: float = 2.0
    OSM_API_TIMEOUT: int = 30
    GEOSERVER_MAX_RETRIES: int = 3
    GEOSERVER_RETRY_DELAY: float = 2.0
    GEOSERVER_TIMEOUT: int = 30
    DB_MAX_RETRIES: int = 3
    DB_RETRY_DELAY: float = 2.0

    # Overpass
    OVERPASS_INTERPRETER: str = "https://overpass-api.de/api/interpreter"
    OVERPASS_ENDPOINTS: list = []
    OVERPASS_RETRIES_PER_ENDPOINT: int = 7
    OVERPASS_BACKOFF_SECONDS: float = 20.0
    OVERPASS_429_COOLDOWN: float = 30.0
    OVERPASS_STATUS_TIMEOUT: int = 10
    CONTINUE_ON_OVERPASS_ERROR: bool = False

    # OSM API
    OSM_API: str = "https://api.openstreetmap.org/api/0.6"
    DOWNLOAD_USER_AGENT: str = "OSM-Notes-Ingestion/1.0"

    # GeoServer
    GEOSERVER_URL: str = "http://localhost:8080/geoserver"
    GEOSERVER_USER: str = "admin"
    GEOSERVER_PASSWORD: Optional[str] = None

    # Database Configuration
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "notes"
    DB_USER: str = "postgres"
    DB_PASSWORD: Optional[str] = None
    PSQL_BINARY: str = "psql"

    # External tools
    OSMTOGEOJSON_BINARY: str = "osmtogeojson"
    CONVERTER_TIMEOUT: int = 600

    # Gap monitoring
    GAP_WINDOW_DAYS: int = 7
    GAP_RECOVERY_CUTOFF_HOURS: int = 24
    GAP_RECOVERY_LIMIT: int = 10
    GAP_LARGE_THRESHOLD: int = 100
    GAP_LOG_FILE: str = "logs/processAPINotes_gaps.log"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024  # 5MB
    LOG_BACKUP_COUNT: int = 3
    QUEUE_LOG_FILE: str = "logs/download_queue.log"
    BOUNDARIES_LOG_FILE: str = "logs/boundaries.log"
    GAP_MONITOR_LOG_FILE: str = "logs/gap_monitor.log"
    ORCHESTRATOR_LOG_FILE: str = "logs/orchestrator.log"

    def __init__(self):
        """Initialize configuration by loading from environment variables."""
        self.OVERPASS_ENDPOINTS = list(self.OVERPASS_ENDPOINTS)
        self._load_from_env()
        self._validate()

    def _load_from_env(self):
        """Load configuration values from environment variables."""
        work_dir = os.getenv("WORK_DIR")
        if work_dir:
            self.WORK_DIR = work_dir

        # Integer settings
        for name in (
            "RATE_LIMIT",
            "MAX_THREADS",
            "SLOT_MAX_WAIT_ATTEMPTS",
            "TICKET_TIMEOUT",
            "LOCK_LEASE_SECONDS",
            "FILE_MAX_RETRIES",
            "NETWORK_MAX_RETRIES",
            "NETWORK_TIMEOUT",
            "OVERPASS_MAX_RETRIES",
            "OVERPASS_TIMEOUT",
            "OVERPASS_RETRIES_PER_ENDPOINT",
            "OSM_API_MAX_RETRIES",
            "OSM_API_TIMEOUT",
            "GEOSERVER_MAX_RETRIES",
            "GEOSERVER_TIMEOUT",
            "DB_MAX_RETRIES",
            "GAP_WINDOW_DAYS",
            "GAP_RECOVERY_CUTOFF_HOURS",
            "GAP_RECOVERY_LIMIT",
            "GAP_LARGE_THRESHOLD",
        ):
            value = os.getenv(name)
            if value:
                setattr(self, name, int(value))

        # Float settings
        for name in (
            "SLOT_CHECK_INTERVAL",
            "TICKET_POLL_INTERVAL",
            "FILE_RETRY_DELAY",
            "NETWORK_RETRY_DELAY",
            "OVERPASS_RETRY_DELAY",
            "OVERPASS_BACKOFF_SECONDS",
            "OVERPASS_429_COOLDOWN",
            "OSM_API_RETRY_DELAY",
            "GEOSERVER_RETRY_DELAY",
            "DB_RETRY_DELAY",
        ):
            value = os.getenv(name)
            if value:
                setattr(self, name, float(value))

        continue_on_error = os.getenv("CONTINUE_ON_OVERPASS_ERROR")
        if continue_on_error:
            self.CONTINUE_ON_OVERPASS_ERROR = _env_bool(continue_on_error)
            if self.CONTINUE_ON_OVERPASS_ERROR and not os.getenv("TICKET_TIMEOUT"):
                self.TICKET_TIMEOUT = self.TICKET_TIMEOUT_CONTINUE_ON_ERROR

        # Remote endpoints
        overpass_interpreter = os.getenv("OVERPASS_INTERPRETER")
        if overpass_interpreter:
            self.OVERPASS_INTERPRETER = overpass_interpreter

        overpass_endpoints = os.getenv("OVERPASS_ENDPOINTS")
        if overpass_endpoints:
            self.OVERPASS_ENDPOINTS = [
                endpoint.strip()
                for endpoint in overpass_endpoints.split(",")
                if endpoint.strip()
            ]

        osm_api = os.getenv("OSM_API")
        if osm_api:
            self.OSM_API = osm_api

        user_agent = os.getenv("DOWNLOAD_USER_AGENT")
        if user_agent:
            self.DOWNLOAD_USER_AGENT = user_agent

        geoserver_url = os.getenv("GEOSERVER_URL")
        if geoserver_url:
            self.GEOSERVER_URL = geoserver_url

        geoserver_user = os.getenv("GEOSERVER_USER")
        if geoserver_user:
            self.GEOSERVER_USER = geoserver_user

        geoserver_password = os.getenv("GEOSERVER_PASSWORD")
        if geoserver_password:
            self.GEOSERVER_PASSWORD = geoserver_password

        # Database settings
        db_host = os.getenv("POSTGRES_HOST")
        if db_host:
            self.DB_HOST = db_host

        db_port = os.getenv("POSTGRES_PORT")
        if db_port:
            self.DB_PORT = int(db_port)

        db_name = os.getenv("POSTGRES_DB") or os.getenv("DBNAME")
        if db_name:
            self.DB_NAME = db_name

        db_user = os.getenv("POSTGRES_USER")
        if db_user:
            self.DB_USER = db_user

        db_password = os.getenv("POSTGRES_PASSWORD")
        if db_password:
            self.DB_PASSWORD = db_password

        psql_binary = os.getenv("PSQL_BINARY")
        if psql_binary:
            self.PSQL_BINARY = psql_binary

        osmtogeojson_binary = os.getenv("OSMTOGEOJSON_BINARY")
        if osmtogeojson_binary:
            self.OSMTOGEOJSON_BINARY = osmtogeojson_binary

        gap_log_file = os.getenv("GAP_LOG_FILE")
        if gap_log_file:
            self.GAP_LOG_FILE = gap_log_file

        log_level = os.getenv("LOG_LEVEL")
        if log_level:
            self.LOG_LEVEL = log_level

    def _validate(self):
        """
        Validate configuration values.

        Raises:
            ValueError: If a limit, retry count or delay is out of range.
        """
        if self.RATE_LIMIT < 1:
            raise ValueError(f"RATE_LIMIT must be at least 1, got {self.RATE_LIMIT}")

        if self.MAX_THREADS < 1:
            raise ValueError(f"MAX_THREADS must be at least 1, got {self.MAX_THREADS}")

        for name in (
            "FILE_MAX_RETRIES",
            "NETWORK_MAX_RETRIES",
            "OVERPASS_MAX_RETRIES",
            "OSM_API_MAX_RETRIES",
            "GEOSERVER_MAX_RETRIES",
            "DB_MAX_RETRIES",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")

        for name in (
            "FILE_RETRY_DELAY",
            "NETWORK_RETRY_DELAY",
            "OVERPASS_RETRY_DELAY",
            "OSM_API_RETRY_DELAY",
            "GEOSERVER_RETRY_DELAY",
            "DB_RETRY_DELAY",
            "SLOT_CHECK_INTERVAL",
            "TICKET_POLL_INTERVAL",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

        if self.LOCK_LEASE_SECONDS < 0:
            raise ValueError("LOCK_LEASE_SECONDS must not be negative")

    def validate_for_database_operations(self) -> None:
        """
        Validate the settings required to open a database connection.

        Raises:
            ValueError: If POSTGRES_PASSWORD is not set.
        """
        if not self.DB_PASSWORD:
            raise ValueError(
                "POSTGRES_PASSWORD environment variable is required. "
                "Please set it in your .env file or environment."
            )

    @property
    def queue_dir(self) -> str:
        """Directory holding the download queue counters and lock namespaces."""
        return os.path.join(self.WORK_DIR, self.QUEUE_DIR_NAME)

    def get_overpass_endpoints(self) -> list:
        """
        Overpass interpreter endpoints in the order they should be tried.

        Returns:
            list: OVERPASS_ENDPOINTS if configured, else [OVERPASS_INTERPRETER]
        """
        return list(self.OVERPASS_ENDPOINTS) or [self.OVERPASS_INTERPRETER]

    def get_database_url(self) -> str:
        """
        Generate database connection URL.

        Returns:
            str: PostgreSQL connection URL
        """
        return f"postgresql+psycopg2://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


# Global configuration instance
config = Config()
