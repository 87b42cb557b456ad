"""FastAPI main application for the Student Standing Tracker."""

import asyncio
import json
import logging
import math
import traceback
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketDisconnect

from student_tracker import config
from student_tracker.errors import RateLimited, StudentTrackerError, ValidationFailed
from student_tracker.export import ExportWriter
from student_tracker.models import (
    Actor,
    AnalyticsSummary,
    ChangeEvent,
    ClassificationResponse,
    EventKind,
    ImportSummary,
    InterventionCreate,
    RiskThresholds,
    Role,
    StudentCreate,
    StudentRecord,
    StudentUpdate,
)
from student_tracker.notifier import ChangeNotifier, Subscription, parse_event_kinds
from student_tracker.ratelimit import RateLimiter
from student_tracker.scope import can_view_individual_records
from student_tracker.service import StudentService
from student_tracker.store import RecordStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def actor_from_headers(headers) -> Optional[Actor]:
    """Build the caller from identity headers; None when the role is missing or unknown."""
    role = (headers.get('x-actor-role') or '').strip().upper()
    try:
        role = Role(role)
    except ValueError:
        return None
    return Actor(
        role=role,
        faculty_id=headers.get('x-actor-faculty') or None,
        department_id=headers.get('x-actor-department') or None,
        assigned_students=_split_list(headers.get('x-actor-students')),
        assigned_courses=_split_list(headers.get('x-actor-courses')),
    )


def get_service(request: Request) -> StudentService:
    return request.app.state.service


def get_actor(request: Request) -> Actor:
    """Authenticated caller, rate limited per role and client address."""
    actor = actor_from_headers(request.headers)
    if actor is None:
        raise HTTPException(status_code=401, detail="Not authorized, no valid role")
    client_host = request.client.host if request.client else "unknown"
    request.app.state.rate_limiter.check(f"{actor.role.value}:{client_host}")
    return actor


def get_thresholds(
    critical_gpa: Optional[float] = Query(None),
    warning_attendance: Optional[float] = Query(None),
    financial_limit: Optional[float] = Query(None),
) -> RiskThresholds:
    overrides = {
        'critical_gpa': critical_gpa,
        'warning_attendance': warning_attendance,
        'financial_limit': financial_limit,
    }
    return RiskThresholds(**{k: v for k, v in overrides.items() if v is not None})


def _check_upload_size(content: bytes) -> None:
    if len(content) > config.MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size: {config.MAX_UPLOAD_SIZE_MB}MB"
        )


# Exception handlers

async def student_tracker_error_handler(request: Request, exc: StudentTrackerError):
    """Translate domain errors to JSON with their HTTP status."""
    content = {"detail": exc.message}
    if exc.field:
        content["field"] = exc.field
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(math.ceil(exc.retry_after)))}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def http_exception_handler_json(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions and return JSON."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


async def validation_exception_handler_json(request: Request, exc: RequestValidationError):
    """Handle validation errors and return JSON."""
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": exc.errors(), "body": exc.body})
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions and return JSON."""
    error_detail = str(exc)
    if config.DEBUG:
        error_detail = f"{str(exc)}\n\n{traceback.format_exc()}"
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)

    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {error_detail}",
            "type": type(exc).__name__
        }
    )


# HTTP endpoints

@router.get("/health")
async def health_check():
    """Health check endpoint to test server connectivity."""
    return JSONResponse(content={"status": "ok", "message": "Server is running"})


@router.get("/students")
def list_students(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    """Scoped student list; paginated when page or limit is given."""
    return service.list_students(actor, page=page, limit=limit)


@router.get("/students/classification", response_model=ClassificationResponse)
def classify_students(
    thresholds: RiskThresholds = Depends(get_thresholds),
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.classify(actor, thresholds)


@router.get("/students/export.csv")
def download_csv(
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    """Download the student export as CSV."""
    content = service.export_csv(actor)
    return StreamingResponse(
        iter([content]),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f"attachment; filename=students_{datetime.now().strftime('%Y-%m-%d')}.csv"
        }
    )


@router.post("/students/import", response_model=ImportSummary)
async def import_students(
    request: Request,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    """Import CSV sent as text/plain, or as JSON {"csv": "..."}."""
    body = await request.body()
    _check_upload_size(body)

    content_type = request.headers.get('content-type', '')
    try:
        if 'application/json' in content_type:
            payload = json.loads(body)
            csv_text = payload.get('csv') if isinstance(payload, dict) else None
            if not isinstance(csv_text, str):
                raise ValidationFailed("Request body must contain a 'csv' string", field="csv")
        else:
            csv_text = body.decode('utf-8')
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationFailed(f"Could not read request body: {e}")

    return await run_in_threadpool(service.import_content, actor, csv_text)


@router.post("/students/import/file", response_model=ImportSummary)
async def import_students_file(
    file: UploadFile = File(...),
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    """Import an uploaded CSV or Excel file."""
    file_bytes = await file.read()
    _check_upload_size(file_bytes)

    filename = file.filename or ""
    if not filename.lower().endswith((".csv", ".xlsx")):
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Please upload a CSV or Excel file (.csv or .xlsx)"
        )
    return await run_in_threadpool(service.import_content, actor, file_bytes, filename)


@router.post("/students/import/export-file", response_model=ImportSummary)
def import_export_file(
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    """Re-import the server's own export file."""
    return service.import_export_file(actor)


@router.post("/students", response_model=StudentRecord, status_code=201)
def create_student(
    payload: StudentCreate,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.create_student(actor, payload)


@router.get("/students/{student_number}", response_model=StudentRecord)
def get_student(
    student_number: str,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.get_student(actor, student_number)


@router.put("/students/{student_number}", response_model=StudentRecord)
def update_student(
    student_number: str,
    payload: StudentUpdate,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.update_student(actor, student_number, payload)


@router.delete("/students/{student_number}")
def delete_student(
    student_number: str,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    service.delete_student(actor, student_number)
    return {"message": "Student removed", "student_number": student_number}


@router.post("/students/{student_number}/interventions", response_model=StudentRecord)
def log_intervention(
    student_number: str,
    payload: InterventionCreate,
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.log_intervention(actor, student_number, payload)


@router.get("/analytics/summary", response_model=AnalyticsSummary)
def analytics_summary(
    thresholds: RiskThresholds = Depends(get_thresholds),
    actor: Actor = Depends(get_actor),
    service: StudentService = Depends(get_service),
):
    return service.analytics(actor, thresholds)


# Event channel

def _event_message(event: ChangeEvent) -> dict:
    return {"event": event.kind.value, "data": jsonable_encoder(event)}


def visible_messages(event: ChangeEvent, actor: Actor, service: StudentService) -> List[dict]:
    """
    Restrict an event to what the subscriber may see.

    Records outside the subscriber's scope are dropped. Keys the subscriber
    could see before the change but not after it (deleted, or moved out of
    scope) arrive as a keys-only ``record-deleted`` message. Roles without
    record access only get batch summaries.

    Returns:
        Messages to push, possibly none
    """
    if can_view_individual_records(actor):
        predicate = service.scope_for(actor)
        records = [r for r in event.records if predicate.matches(r)]
        visible = {r.student_number for r in records}
        held = service.scope_before(actor, event.previous)
        removed = [
            r.student_number for r in event.previous
            if held.matches(r) and r.student_number not in visible
        ]
    else:
        records, removed = [], []

    messages = []
    if records or event.kind == EventKind.BATCH_IMPORTED:
        messages.append(_event_message(event.model_copy(update={
            "records": records,
            "student_numbers": [r.student_number for r in records],
        })))
    if removed:
        messages.append(_event_message(event.model_copy(update={
            "kind": EventKind.RECORD_DELETED,
            "records": [],
            "student_numbers": removed,
            "summary": None,
        })))
    return messages


async def _send_events(websocket: WebSocket, subscription: Subscription, actor: Actor, service: StudentService):
    while True:
        event = await subscription.next_event()
        for message in visible_messages(event, actor, service):
            await websocket.send_json(message)


async def _receive_commands(websocket: WebSocket, subscription: Subscription):
    while True:
        message = await websocket.receive_json()
        action = message.get("action") if isinstance(message, dict) else None
        if action not in ("subscribe", "unsubscribe"):
            await websocket.send_json({"type": "error", "detail": f"Unknown action: {action}"})
            continue
        try:
            kinds = parse_event_kinds(message.get("events"))
        except ValidationFailed as e:
            await websocket.send_json({"type": "error", "detail": e.message})
            continue

        if action == "subscribe":
            subscription.add_kinds(kinds)
        else:
            subscription.remove_kinds(kinds)
        await websocket.send_json({
            "type": f"{action}d",
            "events": sorted(kind.value for kind in subscription.kinds),
        })


@router.websocket("/ws/events")
async def events_socket(websocket: WebSocket):
    """
    Push change events to a connected client.

    The client chooses event types with {"action": "subscribe", "events": [...]}
    and receives {"event": kind, "data": ChangeEvent} messages.
    """
    actor = actor_from_headers(websocket.headers)
    if actor is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    service: StudentService = websocket.app.state.service
    notifier: ChangeNotifier = websocket.app.state.notifier
    subscription = notifier.subscribe(set())
    await websocket.send_json({"type": "connected", "subscription_id": subscription.id})

    tasks = [
        asyncio.create_task(_send_events(websocket, subscription, actor, service)),
        asyncio.create_task(_receive_commands(websocket, subscription)),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Event channel for subscriber %s failed: %s", subscription.id, exc)
    finally:
        notifier.unsubscribe(subscription)


def create_app(service: Optional[StudentService] = None, rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    """
    Build the application.

    Args:
        service: Student service; a fresh in-memory one when omitted
        rate_limiter: Per-actor limiter; configured from RATE_LIMIT_PER_MINUTE when omitted

    Returns:
        Configured FastAPI app
    """
    if service is None:
        service = StudentService(RecordStore(), ChangeNotifier(), ExportWriter(config.EXPORT_PATH))

    app = FastAPI(title=config.APP_TITLE, version=config.APP_VERSION)
    app.state.service = service
    app.state.notifier = service.notifier
    app.state.rate_limiter = rate_limiter or RateLimiter(config.RATE_LIMIT_PER_MINUTE)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Specific handlers first; the global one only sees what they don't handle
    app.add_exception_handler(StudentTrackerError, student_tracker_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler_json)
    app.add_exception_handler(RequestValidationError, validation_exception_handler_json)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(router)
    return app


logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
