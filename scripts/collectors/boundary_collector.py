"""
OpenStreetMap Boundary Collector

This module downloads country and maritime boundary relations from the
Overpass API so they can be imported into PostGIS. Every download goes
through the ticket queue, so any number of worker processes share the
Overpass slots without tripping its rate limit.

Key Features:
- ID list discovery with Overpass CSV output (``::id``)
- One Overpass query per relation, tried against every configured endpoint
- Validation of the Overpass JSON (non-empty ``elements``) with pydantic
- Conversion to GeoJSON with the ``osmtogeojson`` command line tool
- Validation of the GeoJSON (non-empty ``features``)
- A module-level job function that the worker pool can pickle

Data Processing Pipeline:
1. Fetch the relation IDs of the requested kind into an ID list file
2. For each ID, download ``{id}.json`` from Overpass
3. Convert it to ``{id}.geojson``
4. The orchestrator imports every converted file sequentially
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
from typing import List, Optional

import pandas as pd
from pydantic import ValidationError

from config.settings import config
from scripts.collectors.operations import (
    download_with_overpass_endpoints,
    retry_file_operation,
    retry_overpass_api,
)
from scripts.collectors.osm_schemas import GeoJsonFeatureCollection, OverpassResponse
from utils.logging import setup_boundaries_logging, setup_queue_logging

COUNTRIES = "countries"
MARITIMES = "maritimes"
BOUNDARY_KINDS = (COUNTRIES, MARITIMES)

# Areas without admin_level=2 that still need a boundary row: disputed
# territories, neutral zones and the Antarctic claims.
EXTRA_COUNTRY_IDS = [
    1703814,  # Gaza Strip
    1803010,  # Judea and Samaria
    12931402,  # Bhutan - China dispute
    192797,  # Ilemi Triangle
    12940096,  # Neutral zone Burkina Faso - Benin
    3335661,  # Bir Tawil
    37848,  # Jungholz, Austria
    3394112,  # British Antarctic
    3394110,  # Argentine Antarctic
    3394115,  # Chilean Antarctic
    3394113,  # Ross dependency
    3394111,  # Australian Antarctic
    3394114,  # Adelia Land
    3245621,  # Queen Maud Land
    2955118,  # Peter I Island
    2186646,  # Antarctica continent
]


def build_boundary_query(boundary_id: int) -> str:
    """Overpass QL returning one relation with all its ways and nodes."""
    return f"[out:json]; rel({int(boundary_id)}); (._;>;); out;"


def build_id_list_query(kind: str) -> str:
    """
    Overpass QL listing the relation ids of a boundary kind as CSV.

    Raises:
        ValueError: If kind is not countries or maritimes
    """
    if kind == COUNTRIES:
        selector = 'relation["type"="boundary"]["boundary"="administrative"]["admin_level"="2"];'
    elif kind == MARITIMES:
        selector = 'relation["type"="boundary"]["boundary"="maritime"];'
    else:
        raise ValueError(f"Unknown boundary kind: {kind}")
    return f"[out:csv(::id)][timeout:{config.OVERPASS_TIMEOUT}];\n({selector});\nout ids;"


class GeoJsonConverter:
    """Wrapper around the ``osmtogeojson`` CLI."""

    def __init__(
        self,
        binary: Optional[str] = None,
        timeout: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.binary = binary or config.OSMTOGEOJSON_BINARY
        self.timeout = timeout or config.CONVERTER_TIMEOUT
        self.logger = logger or logging.getLogger(__name__)

    def convert(self, json_path: str, geojson_path: str) -> bool:
        """
        Convert one Overpass JSON file.

        Returns:
            bool: True if the converter exited with status 0
        """
        try:
            with open(geojson_path, "w") as handle:
                completed = subprocess.run(
                    [self.binary, json_path],
                    stdout=handle,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired:
            self.logger.warning(f"{self.binary} timed out after {self.timeout}s on {json_path}")
            return False
        except OSError as e:
            self.logger.warning(f"Could not run {self.binary}: {e}")
            return False

        if completed.returncode != 0:
            self.logger.warning(
                f"{self.binary} exited with {completed.returncode}: {completed.stderr.strip()[:200]}"
            )
            return False
        return True


def validate_overpass_json(path: str, boundary_id: int) -> bool:
    """True if ``path`` is an Overpass answer that contains the relation."""
    try:
        with open(path) as handle:
            response = OverpassResponse.model_validate(json.load(handle))
    except (OSError, ValueError, ValidationError) as e:
        logging.getLogger(__name__).warning(f"Invalid Overpass JSON for {boundary_id}: {e}")
        return False
    return response.relation(boundary_id) is not None


def validate_geojson(path: str) -> bool:
    """True if ``path`` is a FeatureCollection with at least one feature."""
    try:
        with open(path) as handle:
            GeoJsonFeatureCollection.model_validate(json.load(handle))
    except (OSError, ValueError, ValidationError) as e:
        logging.getLogger(__name__).warning(f"Invalid GeoJSON in {path}: {e}")
        return False
    return True


class BoundaryCollector:
    """
    Downloads boundary relations into a work directory.

    Files are named after the relation id: ``{id}.json`` holds the Overpass
    answer and ``{id}.geojson`` the converted geometry.
    """

    def __init__(
        self,
        work_dir: str,
        kind: str = COUNTRIES,
        converter: Optional[GeoJsonConverter] = None,
        endpoints: Optional[List[str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if kind not in BOUNDARY_KINDS:
            raise ValueError(f"Unknown boundary kind: {kind}")
        self.work_dir = work_dir
        self.kind = kind
        self.logger = logger or logging.getLogger(__name__)
        self.converter = converter or GeoJsonConverter(logger=self.logger)
        self.endpoints = endpoints

    def json_path(self, boundary_id: int) -> str:
        return os.path.join(self.work_dir, f"{boundary_id}.json")

    def geojson_path(self, boundary_id: int) -> str:
        return os.path.join(self.work_dir, f"{boundary_id}.geojson")

    def fetch_id_list(self, output_path: str) -> int:
        """
        Download the relation ids of this collector's kind into ``output_path``.

        The file holds one id per line, without header. For countries the
        extra non admin_level=2 areas are appended.

        Returns:
            int: Number of ids written, 0 if the download failed
        """
        raw_path = f"{output_path}.csv"
        self.logger.info(f"Obtaining the {self.kind} ids")
        if not retry_overpass_api(build_id_list_query(self.kind), raw_path):
            self.logger.error(f"{self.kind} id list could not be downloaded after retries")
            return 0

        try:
            ids = pd.read_csv(raw_path, dtype=str)
        except (OSError, ValueError, pd.errors.EmptyDataError) as e:
            self.logger.error(f"{self.kind} id list is not valid CSV: {e}")
            return 0
        finally:
            if os.path.exists(raw_path):
                os.remove(raw_path)

        id_column = ids.columns[0] if len(ids.columns) else None
        values = (
            pd.to_numeric(ids[id_column], errors="coerce").dropna().astype(int).tolist()
            if id_column
            else []
        )
        if self.kind == COUNTRIES:
            values.extend(i for i in EXTRA_COUNTRY_IDS if i not in values)

        with open(output_path, "w") as handle:
            for value in values:
                handle.write(f"{value}\n")

        self.logger.info(f"Wrote {len(values)} {self.kind} ids to {output_path}")
        return len(values)

    def download_boundary(self, boundary_id: int) -> bool:
        """
        Download and convert one relation.

        Returns:
            bool: True if both ``{id}.json`` and a valid ``{id}.geojson`` exist
        """
        json_path = self.json_path(boundary_id)
        geojson_path = self.geojson_path(boundary_id)
        self.logger.info(f"Downloading boundary {boundary_id}")

        if not download_with_overpass_endpoints(
            build_boundary_query(boundary_id), json_path, endpoints=self.endpoints
        ):
            self.logger.error(f"Download failed for boundary {boundary_id}")
            return False

        if not validate_overpass_json(json_path, boundary_id):
            self.logger.error(f"Boundary {boundary_id} missing from Overpass answer")
            return False

        def _convert() -> bool:
            return self.converter.convert(json_path, geojson_path) and validate_geojson(
                geojson_path
            )

        def _remove_geojson() -> None:
            if os.path.exists(geojson_path):
                os.remove(geojson_path)

        if not retry_file_operation(_convert, max_attempts=2, delay=5, cleanup=_remove_geojson):
            self.logger.error(f"GeoJSON conversion failed for boundary {boundary_id}")
            return False

        self.logger.info(f"Boundary {boundary_id} ready: {geojson_path}")
        return True


def download_boundary_job(boundary_id: int, work_dir: str, kind: str = COUNTRIES) -> bool:
    """Per-job function run in worker processes."""
    setup_queue_logging()
    logger = setup_boundaries_logging()
    collector = BoundaryCollector(work_dir, kind=kind, logger=logger)
    return collector.download_boundary(boundary_id)


# --- CLI ---
def main() -> None:
    """
    Download a single boundary relation, mainly for debugging one id.

    Example Usage:
        python scripts/collectors/boundary_collector.py --id 1703814
        python scripts/collectors/boundary_collector.py --kind maritimes --list ids.txt
    """
    parser = argparse.ArgumentParser(description="OSM boundary collector")
    parser.add_argument("--kind", choices=BOUNDARY_KINDS, default=COUNTRIES)
    parser.add_argument("--work-dir", default=config.WORK_DIR, help="Download directory")
    parser.add_argument("--id", type=int, help="Relation id to download")
    parser.add_argument("--list", help="Write the relation id list to this file")
    parser.add_argument(
        "--log-level", default=config.LOG_LEVEL, help="Logging level (default: INFO)"
    )
    args = parser.parse_args()

    logger = setup_boundaries_logging(args.log_level)
    os.makedirs(args.work_dir, exist_ok=True)
    collector = BoundaryCollector(args.work_dir, kind=args.kind, logger=logger)

    if args.list:
        collector.fetch_id_list(args.list)
    if args.id:
        collector.download_boundary(args.id)


if __name__ == "__main__":
    main()
