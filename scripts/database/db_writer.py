"""
Database Writer for OSM Notes Ingestion

This module provides the database side of the ingestion pipeline: boundary
imports into PostGIS, the data gap audit table, and the note comment inserts
used by gap recovery.

Key Features:
- Table creation from sql/schema/*.sql in dependency order
- Boundary upserts (delete + append) through GeoPandas ``to_postgis``
- Data gap persistence with a processed flag that only moves to true
- Note comment re-imports that skip rows already present
- Connection management and transaction safety

Example Usage:
    # Initialize writer
    engine = get_postgres_engine()
    writer = DatabaseWriter(engine, logger)

    # Import one boundary
    writer.write_boundary(boundary_gdf, "countries")

    # Record a gap and mark it recovered later
    gap_id = writer.write_data_gap(record)
    writer.mark_gap_processed(gap_id)
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

import geopandas as gpd
import pandas as pd
from shapely.geometry import MultiPolygon
from shapely.ops import unary_union
from sqlalchemy import Engine, create_engine, inspect, text

from scripts.collectors.osm_schemas import BoundaryImportSchema, OSMNote
from scripts.database.sql_sanitizer import sanitize_identifier
from scripts.monitor.gap_schemas import GapRecord, GapType

if TYPE_CHECKING:
    from config.settings import Config

# Type annotation allows config to be Config or None
config: Config | None = None
CONFIG_AVAILABLE = False

# Try to import config, but handle gracefully if it fails
try:
    from config.settings import config as imported_config

    config = imported_config
    CONFIG_AVAILABLE = True
except Exception:
    pass  # config remains None

BOUNDARY_TABLES = ("countries", "maritimes")


def get_postgres_engine() -> Engine:
    """
    Create a SQLAlchemy engine for PostgreSQL/PostGIS using configuration.

    Returns:
        Engine: SQLAlchemy engine instance configured for PostgreSQL/PostGIS

    Raises:
        ValueError: If any required configuration is missing
        SQLAlchemyError: If database connection cannot be established
    """
    if not CONFIG_AVAILABLE or config is None:
        raise ValueError("Configuration not available. Cannot create database engine.")

    # Validate database requirements
    config.validate_for_database_operations()

    conn_str = config.get_database_url()
    return create_engine(conn_str)


class DatabaseWriter:
    """
    Database access for boundaries, notes and data gaps.

    Table schemas are loaded from SQL files in the sql/schema/ directory and
    created in dependency order.
    """

    def __init__(self, engine: Engine, logger: Optional[logging.Logger] = None):
        """
        Initialize the database writer.

        Args:
            engine (Engine): SQLAlchemy engine for database connections
            logger (Optional[logging.Logger]): Logger instance for operation tracking.
                                             If None, creates a default logger.
        """
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)

        # Define table dependencies for proper creation order
        self.table_dependencies = {
            "countries": [],
            "maritimes": [],
            "notes": [],
            "note_comments": ["notes"],
            "note_comments_text": ["notes"],
            "data_gaps": [],
        }

    def _load_sql_schema(self, table_name: str) -> str:
        """
        Load SQL schema from file.

        Args:
            table_name (str): Name of the table (without .sql extension)

        Returns:
            str: SQL content from the schema file

        Raises:
            FileNotFoundError: If SQL schema file is missing
            ValueError: If SQL schema file is empty
        """
        # Project root is two levels up from scripts/database/
        project_root = os.path.join(os.path.dirname(__file__), "..", "..")
        sql_path = os.path.join(project_root, "sql", "schema", f"{table_name}.sql")

        if not os.path.exists(sql_path):
            self.logger.error(f"Schema file missing: {sql_path}")
            raise FileNotFoundError(f"SQL schema file not found: {sql_path}")

        with open(sql_path, "r") as f:
            sql_content = f.read().strip()

        if not sql_content:
            self.logger.error(f"Invalid schema file: {sql_path}")
            raise ValueError(f"SQL schema file is empty: {sql_path}")

        return sql_content

    def _create_table_from_sql(self, table_name: str) -> None:
        """
        Create table from SQL schema file.

        Raises:
            Exception: If table creation fails
        """
        try:
            sql_content = self._load_sql_schema(table_name)

            with self.engine.begin() as conn:
                conn.execute(text(sql_content))

            self.logger.info(f"Successfully created table: {table_name}")

        except Exception as e:
            self.logger.error(f"Failed to create table {table_name}: {e}")
            raise

    def _create_all_tables(self) -> None:
        """
        Create all tables in dependency order.

        Raises:
            RuntimeError: If circular dependency is detected
            Exception: If any table creation fails
        """
        created_tables: set[str] = set()

        while len(created_tables) < len(self.table_dependencies):
            progress_made = False

            for table_name, dependencies in self.table_dependencies.items():
                if table_name in created_tables:
                    continue

                if all(dep in created_tables for dep in dependencies):
                    self._create_table_from_sql(table_name)
                    created_tables.add(table_name)
                    progress_made = True

            if not progress_made:
                remaining = set(self.table_dependencies.keys()) - created_tables
                raise RuntimeError(
                    f"Circular dependency detected in table creation. Remaining tables: {remaining}"
                )

    def drop_all_tables(self) -> None:
        """
        Drop every table this writer manages, dependents first.

        Raises:
            Exception: If any error occurs during table dropping
        """
        tables_to_drop = [
            "data_gaps",
            "note_comments_text",
            "note_comments",
            "notes",
            "maritimes",
            "countries",
        ]

        try:
            with self.engine.begin() as conn:
                for table_name in tables_to_drop:
                    conn.execute(text(f"DROP TABLE IF EXISTS {table_name} CASCADE"))
                    self.logger.info(f"Dropped table: {table_name}")

            self.logger.info("Successfully dropped all tables")

        except Exception as e:
            self.logger.error(f"Error dropping tables: {e}")
            raise

    def ensure_table_exists(self, table_name: str) -> None:
        """
        Create ``table_name`` (and the tables it depends on) if missing.

        Raises:
            ValueError: If table_name is not managed by this writer
        """
        if table_name not in self.table_dependencies:
            raise ValueError(f"Unknown table name: {table_name}")
        for dependency in self.table_dependencies[table_name]:
            self.ensure_table_exists(dependency)
        self._create_table_from_sql(table_name)

    def query_dataframe(
        self, sql: str, params: Optional[Dict[str, Any]] = None
    ) -> pd.DataFrame:
        """Run a read-only query and return the rows as a DataFrame."""
        with self.engine.connect() as conn:
            return pd.read_sql(text(sql), conn, params=params or {})

    def get_imported_ids(self, table_name: str) -> Set[int]:
        """
        Get the boundary ids already present in a boundary table.

        Args:
            table_name (str): countries or maritimes

        Returns:
            Set[int]: Imported ids. Empty set if the table doesn't exist or the query fails.
        """
        if table_name not in BOUNDARY_TABLES:
            raise ValueError(f"Not a boundary table: {table_name}")
        try:
            result = self.query_dataframe(
                f"SELECT country_id FROM {sanitize_identifier(table_name)}"
            )
            return set(int(v) for v in result["country_id"].tolist())
        except Exception as e:
            self.logger.warning(f"Could not read imported ids from {table_name}: {e}")
            return set()

    def write_boundary(self, gdf: gpd.GeoDataFrame, table_name: str) -> None:
        """
        Upsert boundary rows: existing ids are deleted and rows re-appended
        in one transaction.

        Args:
            gdf (gpd.GeoDataFrame): Rows with country_id, names and a ``geom`` geometry
            table_name (str): countries or maritimes

        Raises:
            ValueError: If the table is not a boundary table
            pandera.errors.SchemaError: If the rows fail validation
        """
        if table_name not in BOUNDARY_TABLES:
            raise ValueError(f"Not a boundary table: {table_name}")

        BoundaryImportSchema.validate(gdf)
        ids = [int(v) for v in gdf["country_id"].tolist()]

        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"DELETE FROM {sanitize_identifier(table_name)} "
                    "WHERE country_id = ANY(:ids)"
                ),
                {"ids": ids},
            )
            gdf.to_postgis(table_name, conn, if_exists="append", index=False)

        self.logger.info(f"Imported {len(ids)} boundary row(s) into {table_name}: {ids}")

    def import_boundary_geojson(
        self, geojson_path: str, boundary_id: int, table_name: str
    ) -> None:
        """
        Import one converted boundary file into ``table_name``.

        Polygonal features are dissolved into a single geometry; names come
        from the feature carrying the relation tags.

        Args:
            geojson_path (str): osmtogeojson output for the relation
            boundary_id (int): OSM relation id, stored as country_id
            table_name (str): countries or maritimes

        Raises:
            ValueError: If the file has no polygonal geometry
        """
        features = gpd.read_file(geojson_path)
        polygons = features[features.geometry.geom_type.isin(["Polygon", "MultiPolygon"])]
        if polygons.empty:
            raise ValueError(f"Boundary {boundary_id} has no polygonal geometry")

        geometry = polygons.geometry.make_valid().union_all()
        if geometry.geom_type == "Polygon":
            geometry = MultiPolygon([geometry])
        elif geometry.geom_type == "GeometryCollection":
            parts = [g for g in geometry.geoms if g.geom_type in ("Polygon", "MultiPolygon")]
            geometry = unary_union(parts)
            if geometry.geom_type == "Polygon":
                geometry = MultiPolygon([geometry])

        def _first_tag(column: str) -> Optional[str]:
            if column not in polygons.columns:
                return None
            values = polygons[column].dropna()
            return str(values.iloc[0]) if not values.empty else None

        row = gpd.GeoDataFrame(
            {
                "country_id": [int(boundary_id)],
                "country_name": [_first_tag("name")],
                "country_name_es": [_first_tag("name:es")],
                "country_name_en": [_first_tag("name:en")],
            },
            geometry=[geometry],
            crs="EPSG:4326",
        ).rename_geometry("geom")

        self.write_boundary(row, table_name)

    def count_gap(self, sql: str, window_days: int) -> Dict[str, Any]:
        """
        Run a gap check query over the trailing window.

        The query must return one row with gap_count, total_count and note_ids.

        Returns:
            Dict[str, Any]: gap_count, total_count and note_ids (list of ints)
        """
        df = self.query_dataframe(sql, {"window_days": window_days})
        if df.empty:
            return {"gap_count": 0, "total_count": 0, "note_ids": []}

        row = df.iloc[0]
        note_ids = row.get("note_ids")
        if note_ids is None or (isinstance(note_ids, float) and pd.isna(note_ids)):
            note_ids = []
        return {
            "gap_count": int(row["gap_count"] or 0),
            "total_count": int(row["total_count"] or 0),
            "note_ids": [int(v) for v in note_ids],
        }

    def find_gap_notes(self, sql: str, note_ids: List[int]) -> List[int]:
        """Run a per-note gap query and return the note ids it reports."""
        if not note_ids:
            return []
        df = self.query_dataframe(sql, {"note_ids": [int(v) for v in note_ids]})
        if df.empty:
            return []
        return [int(v) for v in df["note_id"].tolist()]

    def write_data_gap(self, record: GapRecord) -> int:
        """
        Insert a gap record.

        Returns:
            int: The new data_gaps id
        """
        with self.engine.begin() as conn:
            gap_id = conn.execute(
                text(
                    """
                    INSERT INTO data_gaps (
                        gap_timestamp, gap_type, gap_count, total_count,
                        gap_percentage, error_details, note_ids, processed
                    ) VALUES (
                        :gap_timestamp, :gap_type, :gap_count, :total_count,
                        :gap_percentage, :error_details, CAST(:note_ids AS JSON), :processed
                    )
                    RETURNING id
                    """
                ),
                {
                    "gap_timestamp": record.gap_timestamp,
                    "gap_type": record.gap_type.value,
                    "gap_count": record.gap_count,
                    "total_count": record.total_count,
                    "gap_percentage": record.gap_percentage,
                    "error_details": record.error_details,
                    "note_ids": json.dumps(record.note_ids),
                    "processed": record.processed,
                },
            ).scalar_one()
        return int(gap_id)

    def get_unprocessed_gaps(self, cutoff_hours: int, limit: int) -> List[GapRecord]:
        """
        Load unprocessed gaps newer than ``cutoff_hours``, oldest first.

        Returns:
            List[GapRecord]: Records with their database ids
        """
        df = self.query_dataframe(
            """
            SELECT id, gap_timestamp, gap_type, gap_count, total_count,
                   error_details, note_ids, processed
            FROM data_gaps
            WHERE NOT processed
              AND gap_timestamp > NOW() - make_interval(hours => :cutoff_hours)
            ORDER BY gap_timestamp
            LIMIT :limit
            """,
            {"cutoff_hours": cutoff_hours, "limit": limit},
        )

        # NULLs arrive as NaN in text and array columns
        df = df.astype(object).where(df.notna(), None)

        records = []
        for row in df.to_dict("records"):
            note_ids = row.get("note_ids") or []
            if isinstance(note_ids, str):
                note_ids = json.loads(note_ids)
            records.append(
                GapRecord(
                    id=int(row["id"]),
                    gap_timestamp=row["gap_timestamp"],
                    gap_type=GapType(row["gap_type"]),
                    gap_count=int(row["gap_count"]),
                    total_count=int(row["total_count"]),
                    error_details=row.get("error_details") or "",
                    note_ids=[int(v) for v in note_ids],
                    processed=bool(row["processed"]),
                )
            )
        return records

    def mark_gap_processed(self, gap_id: int) -> None:
        """Flip a gap record to processed."""
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE data_gaps SET processed = TRUE WHERE id = :id"),
                {"id": gap_id},
            )
        self.logger.info(f"Gap {gap_id} marked as processed")

    def insert_note_comments(self, note: OSMNote) -> int:
        """
        Insert the comments of a note fetched from the OSM API.

        Comments already present (same note and sequence) are left untouched.

        Returns:
            int: Number of comment rows inserted
        """
        inserted = 0
        with self.engine.begin() as conn:
            for sequence, comment in enumerate(note.comments, start=1):
                result = conn.execute(
                    text(
                        """
                        INSERT INTO note_comments
                            (note_id, sequence_action, event, created_at, id_user)
                        VALUES
                            (:note_id, :sequence, :event, CAST(:created_at AS TIMESTAMPTZ), :uid)
                        ON CONFLICT (note_id, sequence_action) DO NOTHING
                        """
                    ),
                    {
                        "note_id": note.note_id,
                        "sequence": sequence,
                        "event": comment.action,
                        "created_at": comment.date,
                        "uid": comment.uid,
                    },
                )
                inserted += result.rowcount
                if comment.text:
                    conn.execute(
                        text(
                            """
                            INSERT INTO note_comments_text (note_id, sequence_action, body)
                            VALUES (:note_id, :sequence, :body)
                            ON CONFLICT (note_id, sequence_action) DO NOTHING
                            """
                        ),
                        {"note_id": note.note_id, "sequence": sequence, "body": comment.text},
                    )
        self.logger.info(f"Note {note.note_id}: inserted {inserted} missing comment(s)")
        return inserted

    def get_table_info(self, table_name: str) -> Dict[str, Any]:
        """
        Get information about a table including row count and columns.

        Returns:
            Dict[str, Any]: exists, row_count and columns
        """
        inspector = inspect(self.engine)

        info: Dict[str, Any] = {
            "exists": table_name in inspector.get_table_names(),
            "row_count": 0,
            "columns": [],
        }

        if info["exists"]:
            with self.engine.connect() as conn:
                result = conn.execute(
                    text(f"SELECT COUNT(*) FROM {sanitize_identifier(table_name)}")
                )
                info["row_count"] = result.scalar()
            info["columns"] = [col["name"] for col in inspector.get_columns(table_name)]

        return info
