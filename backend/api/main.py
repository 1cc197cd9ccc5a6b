import uuid
import json
import re
import logging
import secrets
from datetime import datetime, timezone, date, time
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import FastAPI, Depends, HTTPException, status, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text, select, update, delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

import redis.asyncio as redis

from common.config import settings
from common.models import Task, TaskStatus, TaskUpdate, CalendarConfig
from common.tasks import (
    CodeAllocationError, create_task_with_code, ensure_group, find_task_by_key, list_group_tasks,
    parse_due_at, normalize_priority, normalize_tags, apply_progress, next_status_for_progress,
)
from common.calendar_sync import configured_calendars, sync_group_calendars, import_cached_events
from common.gcal import calendar_adapter
from common.adapter import intent_adapter
from common.line import (
    verify_line_signature, parse_events, extract_command, parse_add_args, reply_message,
    format_help, format_task_created, format_task_list, format_progress_update, format_scheduled,
)
from api.schemas import (
    TaskOut, TaskCreate, TaskPatch,
    CalendarSettingsIn, CalendarSettingsOut, CalendarConfigIn, CalendarConfigOut,
    CalendarSyncResponse, CalendarImportResponse, CalendarEventCreate, CalendarEventCreateResponse,
)

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Something went wrong. Please try again, or type help for examples."
ADD_USAGE = "Usage: add <title> | desc=<details> | due=YYYY-MM-DD\nExample: add Prepare slides | desc=for Monday | due=2025-09-01"
PROGRESS_USAGE = "Usage: progress <code> <percent or +n/-n>\nExample: progress 0123 60 or progress 0123 +10"
DONE_USAGE = "Usage: done <code>\nExample: done 0123"
SCHEDULE_NEEDS_TIME = (
    "Please include a time, for example:\n"
    "• ai schedule Review today 15:00\n"
    "• ai schedule Meeting tomorrow 09.30\n"
    "• ai schedule Announcement due=2025-09-30 time=14:00"
)
SCHEDULE_IN_PAST = "That time has already passed. Try a future time such as today 15:00 or tomorrow 09:30."
_PROGRESS_VALUE_RE = re.compile(r"^[+-]?\d{1,3}%?$")

app = FastAPI(title="Group Task Board API")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# DB Setup
engine = create_async_engine(settings.async_database_url, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

# --- Middleware & Error Rendering ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

@app.exception_handler(StarletteHTTPException)
async def plain_http_exception(request: Request, exc: StarletteHTTPException):
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def plain_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return PlainTextResponse("bad request", status_code=status.HTTP_400_BAD_REQUEST)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
    message = first.get("msg", "invalid value")
    return PlainTextResponse(f"{location}: {message}" if location else message, status_code=status.HTTP_400_BAD_REQUEST)

@app.exception_handler(CodeAllocationError)
async def code_allocation_error(request: Request, exc: CodeAllocationError):
    logger.error("Task code allocation failed: %s", exc)
    return PlainTextResponse("cannot allocate code", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

@app.exception_handler(SQLAlchemyError)
async def database_error(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    orig = getattr(exc, "orig", None)
    return PlainTextResponse(str(orig if orig is not None else exc), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

# --- Admin Auth ---

def _client_id(request: Request) -> str:
    if settings.ADMIN_TRUST_FORWARDED_FOR:
        forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return request.client.host if request.client else "unknown"

async def enforce_admin_failure_limit(client_id: str) -> None:
    key = f"admin_auth_failures:{client_id}"
    current = await redis_client.get(key)
    if current is not None and int(current) >= settings.ADMIN_AUTH_MAX_FAILURES:
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = settings.ADMIN_AUTH_WINDOW_SECONDS
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many failed admin attempts. Retry in {ttl}s.",
        )

async def record_admin_failure(client_id: str) -> None:
    key = f"admin_auth_failures:{client_id}"
    current = await redis_client.incr(key)
    if current == 1:
        await redis_client.expire(key, settings.ADMIN_AUTH_WINDOW_SECONDS)

async def require_admin_key(request: Request) -> None:
    provided = request.query_params.get("key") or request.headers.get("x-admin-key")
    if not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    client_id = _client_id(request)
    await enforce_admin_failure_limit(client_id)
    expected = settings.ADMIN_KEY or ""
    if expected and secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return
    logger.warning("Rejected admin key from %s on %s", client_id, request.url.path)
    await record_admin_failure(client_id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

def _require_group_id(group_id: Optional[str]) -> str:
    gid = (group_id or "").strip()
    if not gid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="group_id required")
    return gid

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- Admin Tasks ---

@app.get("/api/admin/tasks", response_model=List[TaskOut], dependencies=[Depends(require_admin_key)])
async def admin_list_tasks(
    group_id: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = settings.TASK_LIST_DEFAULT_LIMIT,
    db: AsyncSession = Depends(get_db),
):
    gid = _require_group_id(group_id)
    tasks = await list_group_tasks(db, gid, q=(q or "").strip() or None, limit=limit)
    return [TaskOut.model_validate(t) for t in tasks]

@app.post("/api/admin/tasks", response_model=TaskOut, dependencies=[Depends(require_admin_key)])
async def admin_create_task(payload: TaskCreate, db: AsyncSession = Depends(get_db)):
    group_id = (payload.group_id or "").strip()
    title = (payload.title or "").strip()
    if not group_id or not title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="group_id and title required")
    try:
        due_at = parse_due_at(payload.due_at)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid due_at")
    task = await create_task_with_code(
        db,
        group_id,
        title,
        description=payload.description,
        due_at=due_at,
        priority=normalize_priority(payload.priority),
        tags=normalize_tags(payload.tags),
    )
    return TaskOut.model_validate(task)

@app.patch("/api/admin/tasks/{task_id}", response_model=TaskOut, dependencies=[Depends(require_admin_key)])
async def admin_update_task(task_id: str, payload: TaskPatch, db: AsyncSession = Depends(get_db)):
    # Absent and null fields keep their stored value.
    values = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "due_at" in values:
        try:
            values["due_at"] = parse_due_at(values["due_at"])
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid due_at")
        if values["due_at"] is None:
            del values["due_at"]
    if "priority" in values:
        values["priority"] = normalize_priority(values["priority"])
    if "tags" in values:
        values["tags"] = normalize_tags(values["tags"])
        if values["tags"] is None:
            del values["tags"]
    values["updated_at"] = utc_now()
    stmt = update(Task).where(Task.id == task_id).values(**values).returning(Task)
    task = (await db.execute(stmt)).scalar_one_or_none()
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    await db.commit()
    return TaskOut.model_validate(task)

@app.delete("/api/admin/tasks/{task_id}", response_class=PlainTextResponse, dependencies=[Depends(require_admin_key)])
async def admin_delete_task(task_id: str, db: AsyncSession = Depends(get_db)):
    await db.execute(delete(Task).where(Task.id == task_id))
    await db.commit()
    return "ok"

# --- Calendar Configuration ---

async def _load_calendar_config(db: AsyncSession, group_id: str) -> Optional[CalendarConfig]:
    stmt = select(CalendarConfig).where(CalendarConfig.group_id == group_id).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none()

def _validate_tz(name: Optional[str]) -> str:
    tz_name = (name or "").strip() or settings.APP_TIMEZONE
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid tz: {tz_name}")
    return tz_name

@app.get("/api/admin/calendar-settings", response_model=Optional[CalendarSettingsOut], dependencies=[Depends(require_admin_key)])
async def get_calendar_settings(group_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    gid = _require_group_id(group_id)
    config = await _load_calendar_config(db, gid)
    return CalendarSettingsOut.model_validate(config) if config else None

@app.put("/api/admin/calendar-settings", response_model=CalendarSettingsOut, dependencies=[Depends(require_admin_key)])
async def put_calendar_settings(payload: CalendarSettingsIn, db: AsyncSession = Depends(get_db)):
    gid = _require_group_id(payload.group_id)
    now = utc_now()
    values = {
        "cal1_id": payload.cal1_id,
        "cal1_tag": payload.cal1_tag or "CAL1",
        "cal1_color": payload.cal1_color,
        "cal2_id": payload.cal2_id,
        "cal2_tag": payload.cal2_tag or "CAL2",
        "cal2_color": payload.cal2_color,
        "since_month": payload.since_month,
        "tz": _validate_tz(payload.tz or "Asia/Bangkok"),
    }
    await ensure_group(db, gid)
    stmt = (
        pg_insert(CalendarConfig)
        .values(group_id=gid, created_at=now, updated_at=now, **values)
        .on_conflict_do_update(index_elements=["group_id"], set_={**values, "updated_at": now})
        .returning(CalendarConfig)
    )
    config = (await db.execute(stmt)).scalar_one()
    await db.commit()
    return CalendarSettingsOut.model_validate(config)

@app.get("/api/admin/calendar-config", response_model=CalendarConfigOut, dependencies=[Depends(require_admin_key)])
async def get_calendar_config(group_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    gid = _require_group_id(group_id)
    config = await _load_calendar_config(db, gid)
    if config is None:
        return CalendarConfigOut(group_id=gid)
    return CalendarConfigOut.model_validate(config)

@app.put("/api/admin/calendar-config", response_model=CalendarConfigOut, dependencies=[Depends(require_admin_key)])
async def put_calendar_config(payload: CalendarConfigIn, group_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    """Compact editor: only calendar ids and tags are written; other columns keep their values."""
    gid = _require_group_id(group_id)
    now = utc_now()
    values = {
        "cal1_id": payload.cal1_id,
        "cal1_tag": payload.cal1_tag or "CAL1",
        "cal2_id": payload.cal2_id,
        "cal2_tag": payload.cal2_tag or "CAL2",
    }
    await ensure_group(db, gid)
    stmt = (
        pg_insert(CalendarConfig)
        .values(group_id=gid, tz=settings.APP_TIMEZONE, created_at=now, updated_at=now, **values)
        .on_conflict_do_update(index_elements=["group_id"], set_={**values, "updated_at": now})
        .returning(CalendarConfig)
    )
    config = (await db.execute(stmt)).scalar_one()
    await db.commit()
    return CalendarConfigOut.model_validate(config)

# --- Calendar Sync / Import ---

@app.post("/api/admin/calendar-sync", response_model=CalendarSyncResponse, dependencies=[Depends(require_admin_key)])
async def calendar_sync(group_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    gid = _require_group_id(group_id)
    config = await _load_calendar_config(db, gid)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="calendar config not found")
    if not configured_calendars(config):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no calendar ids configured")
    try:
        return await sync_group_calendars(db, config, calendar_adapter)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SQLAlchemyError:
        raise
    except Exception as e:
        logger.exception("Calendar sync failed for group %s", gid)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Error: {e}")

@app.post("/api/admin/calendar-import", response_model=CalendarImportResponse, dependencies=[Depends(require_admin_key)])
async def calendar_import(
    group_id: Optional[str] = None,
    color_id: Optional[str] = Query(None, alias="colorId"),
    debug: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    gid = _require_group_id(group_id)
    config = await _load_calendar_config(db, gid)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="calendar config not found")
    debug_mode = (debug or "").strip().lower() in {"1", "true", "yes"}
    return await import_cached_events(
        db,
        config,
        (color_id or "").strip() or settings.GCAL_IMPORT_COLOR_ID,
        debug=debug_mode,
    )

def _local_datetime(day: str, hhmm: str) -> datetime:
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime.combine(date.fromisoformat(day), time(hour, minute), tzinfo=settings.app_tz)

@app.post("/api/calendar/create", response_model=CalendarEventCreateResponse, dependencies=[Depends(require_admin_key)])
async def calendar_create(payload: CalendarEventCreate):
    try:
        start = _local_datetime(payload.date, payload.start)
        end = _local_datetime(payload.date, payload.end)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad request")
    if end <= start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must be after start")
    body = {
        "summary": payload.title,
        "description": payload.description or "",
        "location": payload.location or "",
        "start": {"dateTime": start.isoformat(), "timeZone": settings.APP_TIMEZONE},
        "end": {"dateTime": end.isoformat(), "timeZone": settings.APP_TIMEZONE},
        "attendees": [{"email": payload.attendeeEmail}] if payload.attendeeEmail else [],
    }
    try:
        created = await calendar_adapter.create_event(body, notify=True)
    except Exception as e:
        logger.error(f"Calendar insert failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="calendar insert failed")
    return {"ok": True, "eventId": created.get("id")}

# --- LINE Webhook ---

def _due_for_when(when: Optional[Dict[str, Any]]) -> Optional[datetime]:
    if not when:
        return None
    if when["kind"] == "timed":
        return when["start"]
    return parse_due_at(when["start_date"])

def _calendar_event_body(title: str, when: Dict[str, Any], attendees: List[str], description: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {"summary": title, "description": description}
    if when["kind"] == "timed":
        body["start"] = {"dateTime": when["start"].astimezone(settings.app_tz).isoformat(), "timeZone": settings.APP_TIMEZONE}
        body["end"] = {"dateTime": when["end"].astimezone(settings.app_tz).isoformat(), "timeZone": settings.APP_TIMEZONE}
    else:
        body["start"] = {"date": when["start_date"].isoformat()}
        body["end"] = {"date": when["end_date"].isoformat()}
    if attendees:
        body["attendees"] = [{"email": email} for email in attendees]
    return body

def _is_past(when: Dict[str, Any], now: datetime) -> bool:
    if when["kind"] == "timed":
        return when["start"] <= now
    return when["end_date"] <= now.astimezone(settings.app_tz).date()

async def handle_ai_command(text_value: str, event: Dict[str, Any], db: AsyncSession) -> None:
    group_id = event["group_id"]
    reply_token = event.get("reply_token")
    parsed = await intent_adapter.parse(text_value)
    intent = parsed.get("intent") or "none"
    title = (parsed.get("title") or "").strip() or "New task"
    when = parsed.get("when")
    attendees = parsed.get("attendees") or []

    if intent == "help":
        await reply_message(reply_token, format_help(group_id))
        return

    if intent == "add_task":
        all_day = bool(when) and when["kind"] == "allday"
        task = await create_task_with_code(
            db, group_id, title, description="[ALL_DAY]" if all_day else None, due_at=_due_for_when(when)
        )
        note = "all day" if all_day else None
        await reply_message(reply_token, format_task_created(task, note=note))
        return

    if intent == "schedule":
        if not when:
            await reply_message(reply_token, SCHEDULE_NEEDS_TIME)
            return
        if _is_past(when, utc_now()):
            await reply_message(reply_token, SCHEDULE_IN_PAST)
            return
        description = f"Created from LINE group {group_id}"
        if when["kind"] == "allday":
            description = f"[ALL_DAY] {description}"
        await calendar_adapter.create_event(
            _calendar_event_body(title, when, attendees, description),
            notify=bool(attendees),
        )
        task = await create_task_with_code(db, group_id, title, description=description, due_at=_due_for_when(when))
        await reply_message(reply_token, format_scheduled(task, when, attendees))
        return

    # "none": stay quiet

async def handle_line_command(command: str, args: Optional[str], event: Dict[str, Any], db: AsyncSession):
    group_id = event["group_id"]
    reply_token = event.get("reply_token")

    if command == "help":
        await reply_message(reply_token, format_help(group_id))

    elif command == "add":
        parsed = parse_add_args(args or "")
        if not parsed or not parsed["title"]:
            await reply_message(reply_token, ADD_USAGE)
            return
        try:
            due_at = parse_due_at(parsed["due"])
        except ValueError:
            await reply_message(reply_token, ADD_USAGE)
            return
        task = await create_task_with_code(db, group_id, parsed["title"], description=parsed["description"], due_at=due_at)
        await reply_message(reply_token, format_task_created(task))

    elif command == "list":
        only_today = args == "today"
        tasks = await list_group_tasks(db, group_id, limit=settings.TASK_LIST_CHAT_LIMIT, today_only=only_today)
        await reply_message(reply_token, format_task_list(tasks, only_today))

    elif command == "progress":
        parts = (args or "").split()
        if len(parts) < 2 or not _PROGRESS_VALUE_RE.match(parts[1]):
            await reply_message(reply_token, PROGRESS_USAGE)
            return
        task = await find_task_by_key(db, group_id, parts[0])
        if task is None:
            await reply_message(reply_token, f"Task {parts[0]} not found. Check the code and try again.")
            return
        before = task.progress or 0
        after = apply_progress(before, parts[1])
        new_status = next_status_for_progress(after, task.status)
        await db.execute(
            update(Task).where(Task.id == task.id).values(progress=after, status=new_status, updated_at=utc_now())
        )
        await db.commit()
        try:
            db.add(TaskUpdate(
                id=str(uuid.uuid4()),
                task_id=task.id,
                actor_id=event.get("user_id"),
                note=f"progress {before} -> {after}",
                progress=after,
                new_status=new_status,
            ))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning("Could not record progress update for task %s: %s", task.id, e)
        await reply_message(reply_token, format_progress_update(task.code, before, after))

    elif command == "done":
        key = (args or "").strip()
        if not key:
            await reply_message(reply_token, DONE_USAGE)
            return
        stmt = (
            update(Task)
            .where(Task.group_id == group_id, or_(Task.code == key, Task.id == key))
            .values(status=TaskStatus.done, progress=100, updated_at=utc_now())
            .returning(Task.code, Task.title)
        )
        row = (await db.execute(stmt)).first()
        if row is None:
            await reply_message(reply_token, f"Task {key} not found. Check the code and try again.")
            return
        await db.commit()
        await reply_message(reply_token, f"Closed task [{row.code}] {row.title}")

    elif command == "ai":
        await handle_ai_command(args or "", event, db)

@app.api_route("/api/line/webhook", methods=["GET", "HEAD"], response_class=PlainTextResponse)
async def line_webhook_health():
    return "ok"

@app.post("/api/line/webhook", response_class=PlainTextResponse)
async def line_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    if not verify_line_signature(body, request.headers.get("x-line-signature")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bad signature")
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid json")

    for event in parse_events(payload):
        command, args = extract_command(event["text"])
        if not command:
            continue
        try:
            await handle_line_command(command, args, event, db)
        except Exception:
            logger.exception("LINE %s command failed in group %s", command, event["group_id"])
            await db.rollback()
            await reply_message(event.get("reply_token"), FALLBACK_REPLY)

    return "ok"
