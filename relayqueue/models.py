import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .db import Base


class JobState(str, enum.Enum):
    waiting = "WAITING"
    active = "ACTIVE"
    completed = "COMPLETED"
    failed = "FAILED"


class DispatchKind(str, enum.Enum):
    job_application = "JOB_APPLICATION"
    b2b_pitch = "B2B_PITCH"
    gig_bid = "GIG_BID"
    col_outreach = "COL_OUTREACH"
    service_offer = "SERVICE_OFFER"
    flash_bid = "FLASH_BID"
    client_pitch = "CLIENT_PITCH"
    mission_relay = "MISSION_RELAY"


def to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass
class DispatchJob:
    """A unit of outreach work as stored in its Redis hash.

    Every hash value is a string; ``to_hash``/``from_hash`` do the conversion.
    Optional fields that are unset are simply absent from the hash.
    """

    id: str
    recipient: str
    subject: str
    body: str
    kind: DispatchKind
    max_attempts: int
    enqueued_at: float
    state: JobState = JobState.waiting
    attempt: int = 0
    result: dict | None = None
    last_error: str | None = None
    worker_id: str | None = None
    lease_token: str | None = None
    lease_expires_at: float | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def to_hash(self) -> dict[str, str]:
        out = {
            "id": self.id,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "kind": self.kind.value,
            "max_attempts": str(self.max_attempts),
            "enqueued_at": repr(self.enqueued_at),
            "state": self.state.value,
            "attempt": str(self.attempt),
        }
        if self.result is not None:
            out["result"] = json.dumps(self.result)
        for name in ("last_error", "worker_id", "lease_token"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        for name in ("lease_expires_at", "started_at", "finished_at"):
            value = getattr(self, name)
            if value is not None:
                out[name] = repr(value)
        return out

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "DispatchJob":
        def _float(name):
            raw = data.get(name)
            return float(raw) if raw is not None else None

        result = data.get("result")
        return cls(
            id=data["id"],
            recipient=data["recipient"],
            subject=data["subject"],
            body=data.get("body", ""),
            kind=DispatchKind(data["kind"]),
            max_attempts=int(data["max_attempts"]),
            enqueued_at=float(data["enqueued_at"]),
            state=JobState(data["state"]),
            attempt=int(data.get("attempt", 0)),
            result=json.loads(result) if result is not None else None,
            last_error=data.get("last_error"),
            worker_id=data.get("worker_id"),
            lease_token=data.get("lease_token"),
            lease_expires_at=_float("lease_expires_at"),
            started_at=_float("started_at"),
            finished_at=_float("finished_at"),
        )


class DispatchRecord(Base):
    __tablename__ = "dispatch_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[DispatchKind] = mapped_column(Enum(DispatchKind), nullable=False)
    state: Mapped[JobState] = mapped_column(Enum(JobState), nullable=False)

    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    result: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
