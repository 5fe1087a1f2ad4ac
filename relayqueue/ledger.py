import json
import logging

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from .models import DispatchJob, DispatchKind, DispatchRecord, to_datetime

log = logging.getLogger("ledger")


class DispatchLedger:
    """Archive of dispatches that reached a terminal state.

    Redis forgets terminal jobs after the retention window; the ledger keeps
    them. Recording is keyed by job id, so a redelivered job overwrites its
    own row instead of adding a second one.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, job: DispatchJob) -> None:
        row = DispatchRecord(
            id=job.id,
            kind=job.kind,
            state=job.state,
            recipient=job.recipient,
            subject=job.subject,
            body=job.body,
            result=json.dumps(job.result) if job.result is not None else None,
            attempts=job.attempt,
            last_error=job.last_error,
            enqueued_at=to_datetime(job.enqueued_at),
            finished_at=to_datetime(job.finished_at),
        )
        with self._session_factory() as db:
            db.merge(row)
            db.commit()
        log.info("dispatch archived", extra={"job_id": job.id, "event": "ledger_recorded"})

    def get(self, job_id: str) -> DispatchRecord | None:
        with self._session_factory() as db:
            return db.get(DispatchRecord, job_id)

    def recent(self, limit: int = 100, kind: DispatchKind | None = None) -> list[DispatchRecord]:
        stmt = select(DispatchRecord).order_by(DispatchRecord.finished_at.desc()).limit(limit)
        if kind is not None:
            stmt = stmt.where(DispatchRecord.kind == kind)
        with self._session_factory() as db:
            return list(db.scalars(stmt))
