"""Schemas for validating OpenStreetMap payloads and batch inputs.

Pydantic models validate JSON documents (Overpass answers, GeoJSON produced
by the converter, OSM API notes). Pandera schemas validate tabular data:
job ID lists read by the worker pool and boundary GeoDataFrames right before
they are written to PostGIS.
"""

from typing import Any, Dict, List, Optional

import pandera.pandas as pa
from pandera.pandas import Check, Column, DataFrameSchema
from pydantic import BaseModel, Field, field_validator
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry


class OverpassElement(BaseModel):
    """One node, way or relation of an Overpass JSON answer."""

    type: str = Field(..., description="node, way or relation")
    id: int = Field(..., gt=0)
    tags: Dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in ("node", "way", "relation", "area"):
            raise ValueError(f"Unknown Overpass element type '{v}'")
        return v


class OverpassResponse(BaseModel):
    """Schema for an Overpass ``[out:json]`` answer.

    A download is only usable when it carries at least one element; an empty
    ``elements`` list means the relation does not exist or the query was cut.
    """

    version: Optional[float] = None
    generator: Optional[str] = None
    remark: Optional[str] = None
    elements: List[OverpassElement] = Field(..., min_length=1)

    def relation(self, relation_id: int) -> Optional[OverpassElement]:
        """Return the relation element with the given id, if present."""
        for element in self.elements:
            if element.type == "relation" and element.id == relation_id:
                return element
        return None


class GeoJsonFeatureCollection(BaseModel):
    """Minimal check of converter output: a FeatureCollection with features."""

    type: str
    features: List[Dict[str, Any]] = Field(..., min_length=1)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v != "FeatureCollection":
            raise ValueError(f"Expected FeatureCollection, got '{v}'")
        return v


class OSMNoteComment(BaseModel):
    """A comment of an OSM note as returned by ``/notes/{id}.json``."""

    date: str
    action: str
    uid: Optional[int] = None
    user: Optional[str] = None
    text: str = ""


class OSMNote(BaseModel):
    """An OSM note feature from the OSM API."""

    note_id: int = Field(..., gt=0)
    status: str
    comments: List[OSMNoteComment] = Field(default_factory=list)

    @classmethod
    def from_feature(cls, feature: Dict[str, Any]) -> "OSMNote":
        properties = feature.get("properties", {})
        return cls(
            note_id=properties.get("id"),
            status=properties.get("status", ""),
            comments=properties.get("comments", []),
        )


def is_polygonal(series) -> bool:
    """Check that every geometry is a valid Polygon or MultiPolygon.

    Args:
        series: GeoPandas series containing geometry objects

    Returns:
        bool: True if all geometries are valid polygons
    """
    return series.apply(
        lambda geom: isinstance(geom, BaseGeometry)
        and isinstance(geom, (Polygon, MultiPolygon))
        and not geom.is_empty
    ).all()


# Job ID list read by the worker pool (one OSM relation id per line)
JobIdListSchema = DataFrameSchema(
    columns={
        "job_id": Column(
            pa.Int64,
            checks=[Check.greater_than(0, error="Job IDs must be positive integers")],
            nullable=False,
            description="OSM relation id of a boundary",
        ),
    },
    strict=True,
    coerce=True,
    description="Schema for batch job ID lists",
)


# Boundary rows right before they are written to countries/maritimes
BoundaryImportSchema = DataFrameSchema(
    columns={
        "country_id": Column(
            pa.Int64,
            checks=[Check.greater_than(0, error="country_id must be positive")],
            nullable=False,
            unique=True,
            coerce=True,
        ),
        "country_name": Column(nullable=True),
        "country_name_es": Column(nullable=True),
        "country_name_en": Column(nullable=True),
        "geom": Column(
            checks=[Check(is_polygonal, error="Boundary geometry must be polygonal")],
            nullable=False,
        ),
    },
    strict=False,
    coerce=False,
    description="Schema for boundary rows before PostGIS import",
)
