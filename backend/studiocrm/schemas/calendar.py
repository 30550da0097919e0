from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ImportedSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ical_uid: str | None = Field(default=None, serialization_alias="icalUid")
    start_time: datetime = Field(serialization_alias="startTime")
    end_time: datetime = Field(serialization_alias="endTime")
    title: str
    description: str = ""
    location: str = ""
    client_name_guess: str = Field(serialization_alias="clientNameGuess")


class ImportReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: str = Field(serialization_alias="runId")
    dry_run: bool = Field(serialization_alias="dryRun")
    cutoff: datetime
    upper: datetime | None = None
    parsed: int
    filtered: int
    invalid: int
    duplicates: int
    imported: int
    created: int
    updated: int
    skipped: int
    failed: int
    sessions: list[ImportedSessionRead] = Field(default_factory=list)


class CalendarUrlImport(BaseModel):
    url: str = Field(min_length=1, max_length=2048)


class DuplicateCleanupRead(BaseModel):
    dry_run: bool = Field(serialization_alias="dryRun")
    deleted: list[str] = Field(default_factory=list)
    count: int
