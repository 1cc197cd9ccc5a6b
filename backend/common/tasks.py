import logging
import random
import re
import uuid
from datetime import datetime, date, timedelta, timezone, tzinfo
from typing import Any, List, Optional, Tuple

from sqlalchemy import select, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.config import settings
from common.models import Group, Task, TaskStatus, TaskPriority

logger = logging.getLogger(__name__)

DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
UNIQUE_VIOLATION_SQLSTATE = "23505"


class CodeAllocationError(Exception):
    """No free task code was found within the attempt bound."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_task_code() -> str:
    return f"{random.randrange(10000):04d}"


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        if getattr(orig, attr, None) == UNIQUE_VIOLATION_SQLSTATE:
            return True
    message = str(orig if orig is not None else exc)
    return (
        "duplicate key" in message
        or "tasks_group_code_uq" in message
        or "UNIQUE constraint failed" in message
    )


# --- Normalization ---

def parse_due_at(value: Any, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse a due value into an aware UTC datetime.

    ``YYYY-MM-DD`` is midnight in the app timezone, so the result does not depend
    on the server clock's zone. Naive datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None
    zone = tz or settings.app_tz
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day, tzinfo=zone)
    elif isinstance(value, str):
        raw = value.strip()
        if DATE_ONLY_RE.match(raw):
            day = date.fromisoformat(raw)
            parsed = datetime(day.year, day.month, day.day, tzinfo=zone)
        else:
            if raw.endswith("Z"):
                raw = raw[:-1] + "+00:00"
            parsed = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"Unsupported due value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_priority(value: Any) -> TaskPriority:
    if isinstance(value, TaskPriority):
        return value
    raw = str(value if value is not None else "").strip().lower()
    try:
        return TaskPriority(raw)
    except ValueError:
        return TaskPriority.medium


def normalize_tags(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return None


def apply_progress(current: int, value: str) -> int:
    """Resolve ``50``, ``50%``, ``+10`` or ``-5`` against the current progress."""
    raw = (value or "").strip().rstrip("%")
    try:
        amount = int(raw)
    except ValueError:
        return current
    nxt = current + amount if raw[:1] in ("+", "-") else amount
    return max(0, min(100, nxt))


def next_status_for_progress(progress: int, status: Optional[TaskStatus]) -> TaskStatus:
    if progress >= 100:
        return TaskStatus.done
    if status in (None, TaskStatus.todo) and progress > 0:
        return TaskStatus.in_progress
    return status


def local_day_bounds(now: datetime, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    zone = tz or settings.app_tz
    local = now.astimezone(zone)
    start = datetime(local.year, local.month, local.day, tzinfo=zone)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


# --- Queries ---

async def ensure_group(db: AsyncSession, group_id: str) -> None:
    stmt = pg_insert(Group).values(id=group_id, created_at=utc_now()).on_conflict_do_nothing(index_elements=["id"])
    await db.execute(stmt)


async def create_task_with_code(
    db: AsyncSession,
    group_id: str,
    title: str,
    description: Optional[str] = None,
    due_at: Optional[datetime] = None,
    priority: TaskPriority = TaskPriority.medium,
    tags: Optional[List[str]] = None,
    max_attempts: Optional[int] = None,
) -> Task:
    """Insert a task under a fresh random 4-digit code.

    A collision on ``tasks_group_code_uq`` rolls back and retries with a new code;
    any other database error propagates unchanged.
    """
    attempts = max_attempts if max_attempts is not None else settings.TASK_CODE_MAX_ATTEMPTS
    await ensure_group(db, group_id)
    await db.commit()

    for attempt in range(1, attempts + 1):
        code = generate_task_code()
        now = utc_now()
        stmt = (
            pg_insert(Task)
            .values(
                id=str(uuid.uuid4()),
                group_id=group_id,
                code=code,
                title=title,
                description=description,
                due_at=due_at,
                status=TaskStatus.todo,
                progress=0,
                priority=priority,
                tags=tags,
                created_at=now,
                updated_at=now,
            )
            .returning(Task)
        )
        try:
            task = (await db.execute(stmt)).scalar_one()
            await db.commit()
            return task
        except IntegrityError as e:
            await db.rollback()
            if not is_unique_violation(e):
                raise
            logger.info("Task code %s taken in group %s (attempt %s/%s)", code, group_id, attempt, attempts)

    raise CodeAllocationError(f"No free task code in group {group_id} after {attempts} attempts")


def _due_order():
    return Task.due_at.asc().nulls_last()


async def list_group_tasks(
    db: AsyncSession,
    group_id: str,
    q: Optional[str] = None,
    limit: int = 200,
    today_only: bool = False,
    now: Optional[datetime] = None,
) -> List[Task]:
    query = select(Task).where(Task.group_id == group_id)
    if q:
        pattern = f"%{q}%"
        query = query.where(or_(Task.title.ilike(pattern), Task.code.ilike(pattern)))
    if today_only:
        start, end = local_day_bounds(now or utc_now())
        query = query.where(Task.due_at >= start, Task.due_at < end)
    query = query.order_by(_due_order(), Task.created_at).limit(max(1, min(limit, 1000)))
    return list((await db.execute(query)).scalars().all())


async def find_task_by_key(db: AsyncSession, group_id: str, key: str) -> Optional[Task]:
    stmt = (
        select(Task)
        .where(Task.group_id == group_id, or_(Task.code == key, Task.id == key))
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()

