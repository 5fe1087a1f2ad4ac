from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import DispatchKind, JobState


class DispatchCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient: str = Field(min_length=1, max_length=500)
    subject: str = Field(min_length=1, max_length=1_000)
    body: str = Field(default="", max_length=50_000)
    kind: DispatchKind = Field(default=DispatchKind.mission_relay, alias="type")
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @field_validator("recipient", "subject")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class DispatchAccepted(BaseModel):
    id: str
    status: Literal["QUEUED"] = "QUEUED"
    state: str = "WAITING"


class JobOut(BaseModel):
    id: str
    recipient: str
    subject: str
    type: DispatchKind
    state: JobState
    attempt: int
    max_attempts: int
    enqueued_at: datetime
    finished_at: datetime | None = None
    result: dict | None = None
    last_error: str | None = None


class LedgerEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: DispatchKind
    state: JobState
    recipient: str
    subject: str
    attempts: int
    last_error: str | None = None
    enqueued_at: datetime
    finished_at: datetime | None = None
