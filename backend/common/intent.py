"""Rule-based parsing of free-form ``ai ...`` chat messages.

Understands Thai and English date phrases (today/tomorrow, weekday names with an
optional day of month, ``27 15.00``, ``27 all day``, ``due=YYYY-MM-DD time=HH:MM``)
and pulls attendee e-mails out of the text. Used directly when no language model
is configured, and as the fallback when the model call fails.
"""
import re
from datetime import datetime, date, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Tuple

from common.config import settings

INTENTS = ("schedule", "add_task", "help", "none")
DEFAULT_TITLE = "New task"
TIMED_EVENT_MINUTES = 60
EXPLICIT_DAY_SEARCH_MONTHS = 24

WEEKDAYS = {
    "จันทร์": 0, "อังคาร": 1, "พุธ": 2, "พฤหัสบดี": 3, "พฤหัส": 3,
    "ศุกร์": 4, "เสาร์": 5, "อาทิตย์": 6,
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}

_TIME = r"(?:\s*(?:at\s+)?(?P<hh>\d{1,2})(?:[:.](?P<mm>\d{2}))?\s*(?:น\.|โมง)?)"
_WEEKDAY_RE = re.compile(
    r"(?:วัน)?(?:on\s+)?(?P<dow>" + "|".join(sorted(WEEKDAYS, key=len, reverse=True)) + r")"
    r"(?:\s*ที่)?(?:\s+(?:the\s+)?(?P<day>\d{1,2})(?![:.\d]))?"
    r"(?:\s" + _TIME + ")?",
    re.IGNORECASE,
)
_TODAY_RE = re.compile(r"(?:วันนี้|\btoday\b)" + _TIME + "?", re.IGNORECASE)
_TOMORROW_RE = re.compile(r"(?:พรุ่งนี้|\btomorrow\b)" + _TIME + "?", re.IGNORECASE)
_DAY_TIME_RE = re.compile(r"(?:^|(?<=\s))(?P<day>\d{1,2})\s+(?P<hh>\d{1,2})(?:[:.](?P<mm>\d{2}))?(?=\s|$)")
_DAY_ALLDAY_RE = re.compile(r"(?:^|(?<=\s))(?P<day>\d{1,2})\s*(?:ทั้งวัน|all\s*day)(?=\s|$)", re.IGNORECASE)
_DUE_RE = re.compile(r"\bdue=(\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)
_TIME_KV_RE = re.compile(r"\btime=(\d{1,2})(?:[:.](\d{2}))?\b", re.IGNORECASE)
_EMAIL_KV_RE = re.compile(r"email\s*=\s*([^\s|,;]+)", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_SCHEDULE_RE = re.compile(r"(?:^|\s)(?:ลงตาราง(?:\s*เวลา)?|schedule)(?=\s|$)", re.IGNORECASE)
_HELP_RE = re.compile(r"^(help|ช่วยเหลือ)$", re.IGNORECASE)
_AI_PREFIX_RE = re.compile(r"^ai\s*", re.IGNORECASE)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def extract_emails(text: str) -> List[str]:
    picked: List[str] = []
    m = _EMAIL_KV_RE.search(text or "")
    if m:
        picked.append(m.group(1))
    for found in _EMAIL_RE.findall(text or ""):
        if found not in picked:
            picked.append(found)
    return picked


def timed(day: date, hh: int, mm: int, tz: tzinfo) -> Dict[str, Any]:
    start = datetime(day.year, day.month, day.day, _clamp(hh, 0, 23), _clamp(mm, 0, 59), tzinfo=tz)
    start = start.astimezone(timezone.utc)
    return {"kind": "timed", "start": start, "end": start + timedelta(minutes=TIMED_EVENT_MINUTES)}


def all_day(day: date) -> Dict[str, Any]:
    return {"kind": "allday", "start_date": day, "end_date": day + timedelta(days=1)}


def _next_weekday(base: date, target: int) -> date:
    # Same weekday means next week.
    return base + timedelta(days=(target - base.weekday()) % 7 or 7)


def _weekday_with_day(base: date, target: int, day: int) -> Optional[date]:
    year, month = base.year, base.month
    for _ in range(EXPLICIT_DAY_SEARCH_MONTHS):
        try:
            candidate = date(year, month, day)
        except ValueError:
            candidate = None
        if candidate and candidate >= base and candidate.weekday() == target:
            return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return None


def _when_for(day: Optional[date], hh: Optional[str], mm: Optional[str], tz: tzinfo) -> Optional[Dict[str, Any]]:
    if day is None:
        return None
    if hh is not None:
        return timed(day, int(hh), int(mm or 0), tz)
    return all_day(day)


def _this_month(base: date, day: int) -> Optional[date]:
    try:
        return date(base.year, base.month, _clamp(day, 1, 31))
    except ValueError:
        return None


def _resolve_when(text: str, base: date, tz: tzinfo) -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[int, int]]]:
    m = _WEEKDAY_RE.search(text)
    if m:
        target = WEEKDAYS[m.group("dow").lower()]
        if m.group("day"):
            day = _weekday_with_day(base, target, _clamp(int(m.group("day")), 1, 31))
        else:
            day = _next_weekday(base, target)
        return _when_for(day, m.group("hh"), m.group("mm"), tz), m.span()

    m = _TODAY_RE.search(text)
    if m:
        return _when_for(base, m.group("hh"), m.group("mm"), tz), m.span()

    m = _TOMORROW_RE.search(text)
    if m:
        return _when_for(base + timedelta(days=1), m.group("hh"), m.group("mm"), tz), m.span()

    m = _DAY_TIME_RE.search(text)
    if m:
        return _when_for(_this_month(base, int(m.group("day"))), m.group("hh"), m.group("mm"), tz), m.span()

    m = _DAY_ALLDAY_RE.search(text)
    if m:
        return _when_for(_this_month(base, int(m.group("day"))), None, None, tz), m.span()

    due = _DUE_RE.search(text)
    if due:
        try:
            day = date.fromisoformat(due.group(1))
        except ValueError:
            return None, None
        tm = _TIME_KV_RE.search(text)
        if tm:
            return timed(day, int(tm.group(1)), int(tm.group(2) or 0), tz), None
        return all_day(day), None
    return None, None


def _clean_title(text: str, span: Optional[Tuple[int, int]]) -> str:
    if span:
        text = text[:span[0]] + " " + text[span[1]:]
    for pattern in (_SCHEDULE_RE, _DUE_RE, _TIME_KV_RE, _EMAIL_KV_RE, _EMAIL_RE):
        text = pattern.sub(" ", text)
    return re.sub(r"\s{2,}", " ", text).strip(" |")


def parse_intent_locally(text: str, now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> Dict[str, Any]:
    zone = tz or settings.app_tz
    body = _AI_PREFIX_RE.sub("", (text or "").strip(), count=1).strip()
    base = (now or datetime.now(timezone.utc)).astimezone(zone).date()

    if _HELP_RE.match(body):
        return {"intent": "help", "title": "", "when": None, "attendees": [], "notes": "fallback_local"}

    when, span = _resolve_when(body, base, zone)
    return {
        "intent": "schedule" if _SCHEDULE_RE.search(body) else "add_task",
        "title": _clean_title(body, span) or DEFAULT_TITLE,
        "when": when,
        "attendees": extract_emails(body),
        "notes": "fallback_local",
    }
