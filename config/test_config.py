#!/usr/bin/env python3
"""
Print the effective configuration, to check a .env file before a run.
"""

import os

from dotenv import load_dotenv

# Explicitly load .env from the project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

from config.settings import config


def test_config():
    """Print every setting that changes how a run behaves."""
    print("=== Configuration Test ===")

    # Queue and workers
    print(f"Work Dir: {config.WORK_DIR}")
    print(f"Queue Dir: {config.queue_dir}")
    print(f"Rate Limit: {config.RATE_LIMIT}")
    print(f"Max Threads: {config.MAX_THREADS}")
    print(f"Ticket Timeout: {config.TICKET_TIMEOUT}")
    print(f"Lock Lease Seconds: {config.LOCK_LEASE_SECONDS or 'disabled'}")

    # Retry policy
    print(f"Overpass Max Retries: {config.OVERPASS_MAX_RETRIES}")
    print(f"Overpass Retry Delay: {config.OVERPASS_RETRY_DELAY}")
    print(f"OSM API Max Retries: {config.OSM_API_MAX_RETRIES}")
    print(f"Network Max Retries: {config.NETWORK_MAX_RETRIES}")
    print(f"DB Max Retries: {config.DB_MAX_RETRIES}")

    # Endpoints
    print(f"Overpass Endpoints: {', '.join(config.get_overpass_endpoints())}")
    print(f"OSM API: {config.OSM_API}")
    print(f"Continue On Overpass Error: {config.CONTINUE_ON_OVERPASS_ERROR}")

    # Database
    print(f"DB Host: {config.DB_HOST}")
    print(f"DB Port: {config.DB_PORT}")
    print(f"DB Name: {config.DB_NAME}")
    print(f"DB User: {config.DB_USER}")
    print(f"DB Password: {'Set' if config.DB_PASSWORD else 'Not set'}")

    # Gap monitoring and logging
    print(f"Gap Window Days: {config.GAP_WINDOW_DAYS}")
    print(f"Gap Log File: {config.GAP_LOG_FILE}")
    print(f"Log Level: {config.LOG_LEVEL}")

    try:
        config.validate_for_database_operations()
        print("Database settings: OK")
    except ValueError as e:
        print(f"Database settings: {e}")

    print("=== Configuration Test Complete ===")


if __name__ == "__main__":
    test_config()
