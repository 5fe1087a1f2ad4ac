import logging
import uuid

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .db import Base, make_engine, make_session_factory
from .errors import InvalidJob, NotFound, QueueUnavailable
from .executor import BrowserActionExecutor
from .health import HealthReporter
from .ledger import DispatchLedger
from .logging_utils import setup_logging
from .models import DispatchKind, to_datetime
from .queue import QueueService
from .redis_client import get_redis
from .schemas import DispatchAccepted, DispatchCreate, JobOut, LedgerEntry
from .settings import Settings

log = logging.getLogger("api")


def get_queue(request: Request) -> QueueService:
    return request.app.state.queue


def get_reporter(request: Request) -> HealthReporter:
    return request.app.state.reporter


def create_app(
    settings: Settings | None = None,
    queue: QueueService | None = None,
    reporter: HealthReporter | None = None,
) -> FastAPI:
    """Build the dispatch API around one explicitly constructed QueueService."""
    settings = settings or Settings()
    setup_logging(settings.log_level)

    if queue is None:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        queue = QueueService(
            get_redis(settings.redis_url, settings.api_redis_socket_timeout, settings.redis_tls_verify, retries=0),
            settings,
            ledger=DispatchLedger(make_session_factory(engine)),
        )
    if reporter is None:
        reporter = HealthReporter(queue, BrowserActionExecutor(settings).is_ready)

    app = FastAPI(title="RelayQueue API", version=__version__)
    app.state.settings = settings
    app.state.queue = queue
    app.state.reporter = reporter
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(QueueUnavailable)
    async def queue_unavailable_handler(request: Request, exc: QueueUnavailable):
        log.warning(
            f"queue unavailable: {exc}",
            extra={"request_id": getattr(request.state, "request_id", None), "event": "queue_unavailable"},
        )
        return JSONResponse(status_code=503, content={"error": "Automation engine offline. Queue backend unavailable."})

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(InvalidJob)
    async def invalid_job_handler(request: Request, exc: InvalidJob):
        return JSONResponse(status_code=422, content={"error": str(exc)})

    @app.get("/healthz")
    def healthz(request: Request):
        log.info("health ok", extra={"request_id": request.state.request_id, "event": "healthz"})
        return {"ok": True}

    @app.post("/api/dispatch", response_model=DispatchAccepted)
    def create_dispatch(req: DispatchCreate, request: Request, queue: QueueService = Depends(get_queue)):
        job_id = queue.enqueue(
            recipient=req.recipient,
            subject=req.subject,
            body=req.body,
            kind=req.kind,
            max_attempts=req.max_attempts,
        )
        log.info(
            f"dispatch accepted ({req.kind.value})",
            extra={"request_id": request.state.request_id, "job_id": job_id, "event": "dispatch_accepted"},
        )
        return DispatchAccepted(id=job_id)

    @app.get("/api/dispatch/{job_id}", response_model=JobOut)
    def get_dispatch(job_id: str, queue: QueueService = Depends(get_queue)):
        job = queue.get(job_id)
        return JobOut(
            id=job.id,
            recipient=job.recipient,
            subject=job.subject,
            type=job.kind,
            state=job.state,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            enqueued_at=to_datetime(job.enqueued_at),
            finished_at=to_datetime(job.finished_at),
            result=job.result,
            last_error=job.last_error,
        )

    @app.get("/api/health")
    def health(request: Request, reporter: HealthReporter = Depends(get_reporter)):
        snap = reporter.snapshot()
        log.info("health reported", extra={"request_id": request.state.request_id, "event": "health"})
        return snap.to_response(request.app.state.settings.node_name)

    @app.get("/api/ledger", response_model=list[LedgerEntry])
    def ledger(
        limit: int = Query(default=100, ge=1, le=500),
        kind: DispatchKind | None = Query(default=None, alias="type"),
        queue: QueueService = Depends(get_queue),
    ):
        if queue.ledger is None:
            return []
        return queue.ledger.recent(limit=limit, kind=kind)

    return app


def serve():
    settings = Settings()
    uvicorn.run("relayqueue.main:create_app", factory=True, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    serve()
