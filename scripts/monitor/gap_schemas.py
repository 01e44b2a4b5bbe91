"""Pydantic models for data gap records."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


class GapType(str, Enum):
    """Cause of a detected gap."""

    NOTES_WITHOUT_COMMENTS = "notes_without_comments"
    COMMENTS_WITHOUT_TEXT = "comments_without_text"


class GapRecord(BaseModel):
    """One detected gap, as stored in ``data_gaps`` and the gap log.

    ``gap_percentage`` is derived from the counts and rounded to an integer.
    ``processed`` only ever flips from False to True after a confirmed
    recovery.
    """

    id: Optional[int] = Field(default=None, description="data_gaps primary key once stored")
    gap_timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    gap_type: GapType
    gap_count: int = Field(..., ge=0)
    total_count: int = Field(..., ge=0)
    error_details: str = ""
    note_ids: List[int] = Field(default_factory=list)
    processed: bool = False

    @model_validator(mode="after")
    def validate_counts(self):
        """Reject gaps larger than the population they were measured on.

        Raises:
            ValueError: If gap_count exceeds total_count
        """
        if self.gap_count > self.total_count:
            raise ValueError(
                f"gap_count ({self.gap_count}) cannot exceed total_count ({self.total_count})"
            )
        return self

    @computed_field
    @property
    def gap_percentage(self) -> int:
        if self.total_count == 0:
            return 0
        return round(self.gap_count * 100 / self.total_count)

    def to_log_block(self) -> str:
        """Render the record in the plain-text gap log format."""
        return (
            f"========================================\n"
            f"GAP DETECTED: {self.gap_timestamp:%Y-%m-%d %H:%M:%S}\n"
            f"========================================\n"
            f"Type: {self.gap_type.value}\n"
            f"Count: {self.gap_count}/{self.total_count} ({self.gap_percentage}%)\n"
            f"Details: {self.error_details}\n"
            f"---\n"
        )
