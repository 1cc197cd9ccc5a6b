import logging
import re
import uuid
from datetime import datetime, date, timezone, tzinfo
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import resolve_timezone
from common.models import CalendarConfig, ExternalCalendarEvent, Task, TaskStatus, TaskPriority

logger = logging.getLogger(__name__)

SYNC_LOOKAHEAD_MONTHS = 6
IMPORT_READ_LIMIT = 5000
IMPORT_SAMPLE_SIZE = 3
EXTERNAL_SOURCE = "gcal"
UNTITLED_EVENT = "(untitled event)"

_SINCE_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def configured_calendars(config: CalendarConfig) -> List[Tuple[str, str]]:
    calendars = []
    if (config.cal1_id or "").strip():
        calendars.append((config.cal1_id.strip(), (config.cal1_tag or "CAL1").strip()))
    if (config.cal2_id or "").strip():
        calendars.append((config.cal2_id.strip(), (config.cal2_tag or "CAL2").strip()))
    return calendars


def tag_for_calendar(config: CalendarConfig, calendar_id: str) -> str:
    for cal_id, tag in configured_calendars(config):
        if cal_id == calendar_id:
            return tag
    return "CAL"


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def compute_sync_window(since_month: Optional[str], tz_name: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return ``[since, until)``: first day of ``since_month`` up to the first day six months ahead.

    Without ``since_month`` the window opens at the start of the current month.
    """
    tz = resolve_timezone(tz_name)
    local_now = (now or utc_now()).astimezone(tz)
    if since_month:
        m = _SINCE_MONTH_RE.match(since_month.strip())
        if not m or not 1 <= int(m.group(2)) <= 12:
            raise ValueError(f"Invalid since_month: {since_month!r}")
        since_year, since_mon = int(m.group(1)), int(m.group(2))
    else:
        since_year, since_mon = local_now.year, local_now.month
    until_year, until_mon = _add_months(local_now.year, local_now.month, SYNC_LOOKAHEAD_MONTHS)
    since = datetime(since_year, since_mon, 1, tzinfo=tz)
    until = datetime(until_year, until_mon, 1, tzinfo=tz)
    return since.astimezone(timezone.utc), until.astimezone(timezone.utc)


def _parse_rfc3339(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _date_only(value: str, tz: tzinfo, end: bool = False) -> datetime:
    day = date.fromisoformat(value)
    hour, minute = (23, 59) if end else (0, 0)
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz).astimezone(timezone.utc)


def event_bounds(event: Dict[str, Any], tz: tzinfo) -> Tuple[Optional[datetime], Optional[datetime], bool]:
    start = event.get("start") or {}
    end = event.get("end") or {}
    all_day = "dateTime" not in start and "date" in start
    start_at = None
    if start.get("dateTime"):
        start_at = _parse_rfc3339(start["dateTime"])
    elif start.get("date"):
        start_at = _date_only(start["date"], tz)
    end_at = None
    if end.get("dateTime"):
        end_at = _parse_rfc3339(end["dateTime"])
    elif end.get("date"):
        end_at = _date_only(end["date"], tz, end=True)
    return start_at, end_at, all_day


def build_event_upsert(group_id: str, calendar_id: str, event: Dict[str, Any], tz: tzinfo, now: datetime):
    start_at, end_at, all_day = event_bounds(event, tz)
    stmt = pg_insert(ExternalCalendarEvent).values(
        id=str(uuid.uuid4()),
        group_id=group_id,
        calendar_id=calendar_id,
        google_event_id=event["id"],
        summary=event.get("summary"),
        description=event.get("description"),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        html_link=event.get("htmlLink"),
        color_id=event.get("colorId"),
        status=event.get("status"),
        etag=event.get("etag"),
        raw=event,
        synced_at=now,
    )
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        index_elements=["group_id", "calendar_id", "google_event_id"],
        set_={
            "summary": excluded.summary,
            "description": excluded.description,
            "start_at": excluded.start_at,
            "end_at": excluded.end_at,
            "all_day": excluded.all_day,
            "html_link": excluded.html_link,
            "color_id": excluded.color_id,
            "status": excluded.status,
            "etag": excluded.etag,
            "raw": excluded.raw,
            "synced_at": excluded.synced_at,
        },
    )


async def sync_group_calendars(db: AsyncSession, config: CalendarConfig, adapter, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Pull every event of the configured calendars into the event cache."""
    now = now or utc_now()
    tz = resolve_timezone(config.tz)
    time_min, time_max = compute_sync_window(config.since_month, config.tz, now)

    synced = 0
    skipped = 0
    for calendar_id, _tag in configured_calendars(config):
        events = await adapter.list_events(calendar_id, time_min, time_max)
        for event in events:
            if event.get("status") == "cancelled" or not event.get("id"):
                skipped += 1
                continue
            await db.execute(build_event_upsert(config.group_id, calendar_id, event, tz, now))
            synced += 1

    await db.execute(
        update(CalendarConfig)
        .where(CalendarConfig.group_id == config.group_id)
        .values(last_synced_at=now, updated_at=now)
    )
    await db.commit()
    logger.info("Calendar sync for group %s: %s upserted, %s skipped", config.group_id, synced, skipped)
    return {
        "ok": True,
        "group_id": config.group_id,
        "synced": synced,
        "skipped": skipped,
        "timeMin": time_min.isoformat(),
        "timeMax": time_max.isoformat(),
    }


# --- Import cached events as tasks ---

def code_from_event_id(event_id: str) -> str:
    return "GCAL-" + re.sub(r"[^a-zA-Z0-9]", "", event_id or "")[:16]


def import_description(event: ExternalCalendarEvent) -> Optional[str]:
    if event.html_link:
        return f"{event.html_link}\n\n{event.description or ''}"
    return event.description


def build_task_upsert(group_id: str, event: ExternalCalendarEvent, tag: str, now: datetime):
    stmt = pg_insert(Task).values(
        id=str(uuid.uuid4()),
        group_id=group_id,
        code=code_from_event_id(event.google_event_id),
        title=event.summary or UNTITLED_EVENT,
        description=import_description(event),
        due_at=event.start_at,
        progress=0,
        status=TaskStatus.todo,
        priority=TaskPriority.medium,
        tags=[tag],
        external_source=EXTERNAL_SOURCE,
        external_id=event.google_event_id,
        external_ref=event.calendar_id,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        constraint="tasks_group_code_uq",
        set_={
            "title": excluded.title,
            "description": excluded.description,
            "due_at": excluded.due_at,
            "tags": excluded.tags,
            "updated_at": now,
        },
    )


async def import_cached_events(
    db: AsyncSession,
    config: CalendarConfig,
    color_id: str,
    debug: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Upsert one task per cached event of the given color; ``debug`` only reports."""
    now = now or utc_now()
    stmt = (
        select(ExternalCalendarEvent)
        .where(ExternalCalendarEvent.group_id == config.group_id, ExternalCalendarEvent.color_id == color_id)
        .order_by(func.coalesce(ExternalCalendarEvent.start_at, ExternalCalendarEvent.end_at).asc().nulls_last())
        .limit(IMPORT_READ_LIMIT)
    )
    events = list((await db.execute(stmt)).scalars().all())

    imported = 0
    sample: List[Dict[str, Any]] = []
    for event in events:
        tag = tag_for_calendar(config, event.calendar_id)
        if len(sample) < IMPORT_SAMPLE_SIZE:
            sample.append({
                "code": code_from_event_id(event.google_event_id),
                "title": event.summary or UNTITLED_EVENT,
                "dueAt": event.start_at.isoformat() if event.start_at else None,
                "colorId": event.color_id,
                "calendar_id": event.calendar_id,
                "tag": tag,
            })
        if debug:
            continue
        await db.execute(build_task_upsert(config.group_id, event, tag, now))
        imported += 1

    if not debug:
        await db.commit()
    logger.info("Calendar import for group %s: read %s, imported %s (debug=%s)", config.group_id, len(events), imported, debug)
    return {
        "ok": True,
        "mode": "debug" if debug else "write",
        "group_id": config.group_id,
        "colorId": color_id,
        "total_read": len(events),
        "imported": imported,
        "sample": sample,
    }
