"""Pydantic schemas for calendar contact import."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class AggregatedAttendee(BaseModel):
    """One distinct attendee collapsed across many events."""
    email: str
    display_name: str | None = None
    first_name: str
    last_name: str | None = None
    company: str | None = None
    meeting_count: int = 0
    first_meeting_date: datetime
    last_meeting_date: datetime
    last_past_meeting_date: datetime | None = None


class ExactDuplicate(BaseModel):
    attendee: AggregatedAttendee
    contact_id: UUID


class FuzzyDuplicate(BaseModel):
    attendee: AggregatedAttendee
    contact_id: UUID
    score: float
    match_type: str
    matched_fields: list[str] = Field(default_factory=list)


class ImportPreviewSummary(BaseModel):
    total_events: int
    total_attendees: int
    new_contacts: int
    exact_duplicates: int
    fuzzy_duplicates: int


class ImportPreview(BaseModel):
    summary: ImportPreviewSummary
    new_contacts: list[AggregatedAttendee] = Field(default_factory=list)
    exact_duplicates: list[ExactDuplicate] = Field(default_factory=list)
    fuzzy_duplicates: list[FuzzyDuplicate] = Field(default_factory=list)


class ImportResult(BaseModel):
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
