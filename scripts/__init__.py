"""
OSM Notes Ingestion Scripts Package

This package contains the ingestion pipeline organized into logical subdirectories:

- coordination/: Filesystem locks, slot semaphore, ticket queue and stale-lock reaper
- collectors/: Overpass, OSM API and GeoServer clients, retry engine, boundary downloads
- processors/: Worker pool for batch downloads and sequential imports
- database/: Database writer, statement clients and SQL parameter sanitizing
- monitor/: Data gap detection and recovery
"""
