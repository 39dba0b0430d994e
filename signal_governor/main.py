import secrets
import time
from typing import Dict, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from .adapters import resolve_adapter
from .adapters.base import PlatformAdapter
from .admin_metrics import render_admin_metrics
from .db import create_session_factory
from .errors import ProjectSourceNotFoundError, UnknownSourceError, error_response, http_exception_handler
from .models import SyncQueueItem
from .observability import clear_context, get_logger, set_request_id, set_service, setup_logging
from .schemas import ErrorResponse, HealthResponse, QueueItemResponse, RescoreResponse, TickResponse
from .services.governor import Governor, resolve_policy
from .services.openrouter_scorer import OpenRouterScorer
from .services.queue_store import QueueStore
from .services.score_trigger import ScoreRecomputeTrigger
from .services.scoring import Scorer
from .settings import Settings, get_settings

logger = get_logger(__name__)


async def request_validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response("validation_error", message=str(exc), status_code=422)


def build_scorer(settings: Settings) -> Optional[Scorer]:
    if settings.openrouter_api_key and settings.openrouter_model:
        return OpenRouterScorer(settings)
    return None


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    adapters: Optional[Dict[str, PlatformAdapter]] = None,
    scorer: Optional[Scorer] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(level=settings.log_level)
    session_factory = session_factory or create_session_factory(settings.database_url)
    scorer = scorer if scorer is not None else build_scorer(settings)
    store = QueueStore()

    app = FastAPI(title="Signal Governor")
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        set_service("admin")
        set_request_id(request_id)
        logger.info(
            "http.request",
            extra={
                "event": "http.request",
                "http_method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "client_ip": request.client.host if request.client else None,
            },
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.exception",
                extra={
                    "event": "http.exception",
                    "http_method": request.method,
                    "path": request.url.path,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                },
            )
            clear_context()
            raise

        response.headers["X-Request-Id"] = request_id
        logger.info(
            "http.response",
            extra={
                "event": "http.response",
                "http_method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        clear_context()
        return response

    def get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
        expected = settings.admin_api_key.get_secret_value() if settings.admin_api_key else None
        if not expected:
            raise HTTPException(status_code=404, detail="not_found")
        if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_admin_key")
        return True

    @app.get("/healthz", response_model=HealthResponse)
    def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/admin/metrics", dependencies=[Depends(require_admin)], include_in_schema=False)
    def admin_metrics(db=Depends(get_db)) -> Response:
        body = render_admin_metrics(db)
        return Response(content=body, media_type="text/plain; version=0.0.4; charset=utf-8")

    @app.post(
        "/admin/governor/{source}/tick",
        response_model=TickResponse,
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        dependencies=[Depends(require_admin)],
    )
    async def admin_governor_tick(source: str, project_id: Optional[str] = None) -> TickResponse:
        try:
            adapter = resolve_adapter(source, settings, session_factory, adapters)
        except UnknownSourceError:
            raise HTTPException(status_code=404, detail="unknown_source")
        owned = not (adapters and source in adapters)
        try:
            governor = Governor(session_factory, adapter, resolve_policy(adapter, settings), scorer=scorer)
            stats = await governor.run_tick(project_id=project_id)
        finally:
            if owned:
                await adapter.aclose()
        return TickResponse(**stats.__dict__)

    @app.get(
        "/admin/queue/{item_id}",
        response_model=QueueItemResponse,
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
        dependencies=[Depends(require_admin)],
    )
    def admin_queue_item(item_id: str, db=Depends(get_db)) -> QueueItemResponse:
        item = db.get(SyncQueueItem, item_id)
        if not item:
            raise HTTPException(status_code=404, detail="queue_item_not_found")
        return _queue_item_response(item)

    @app.post(
        "/admin/queue/{item_id}/requeue",
        response_model=QueueItemResponse,
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        dependencies=[Depends(require_admin)],
    )
    def admin_requeue(item_id: str, db=Depends(get_db)) -> QueueItemResponse:
        item = db.get(SyncQueueItem, item_id)
        if not item:
            raise HTTPException(status_code=404, detail="queue_item_not_found")
        if not store.requeue(db, item_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": "requeue_refused", "message": f"item is {item.status}, only error items can be requeued"},
            )
        db.refresh(item)
        return _queue_item_response(item)

    @app.post(
        "/admin/scores/{source}/{project_id}/rescore",
        response_model=RescoreResponse,
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        dependencies=[Depends(require_admin)],
    )
    async def admin_rescore(source: str, project_id: str, user_id: Optional[str] = None) -> RescoreResponse:
        if scorer is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="scoring_not_configured")
        trigger = ScoreRecomputeTrigger(session_factory, scorer)
        try:
            result = await trigger.rescore(source, project_id, user_id=user_id)
        except ProjectSourceNotFoundError:
            raise HTTPException(status_code=404, detail="project_source_not_found")
        return RescoreResponse(**result.__dict__)

    return app


def _queue_item_response(item: SyncQueueItem) -> QueueItemResponse:
    return QueueItemResponse(
        id=item.id,
        source=item.source,
        unit_key=item.unit_key,
        project_id=item.project_id,
        status=item.status,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        started_at=item.started_at,
        finished_at=item.finished_at,
        newest_cursor_at=item.newest_cursor_at,
        newest_cursor_id=item.newest_cursor_id,
        oldest_cursor_at=item.oldest_cursor_at,
        oldest_cursor_id=item.oldest_cursor_id,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )
