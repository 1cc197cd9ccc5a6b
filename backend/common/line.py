import base64
import hashlib
import hmac
import logging
import re
from datetime import datetime, date
from typing import Any, Dict, List, Optional, Tuple

import httpx

from common.config import settings

logger = logging.getLogger(__name__)

LINE_TEXT_MAX_LEN = 5000

_HELP_RE = re.compile(r"^(help|ช่วยเหลือ)$", re.IGNORECASE)
_ADD_RE = re.compile(r"^(add|เพิ่ม)\s+", re.IGNORECASE)
_LIST_RE = re.compile(r"^(list(\s+today)?|รายการ.*)$", re.IGNORECASE)
_PROGRESS_RE = re.compile(r"^(progress|update|เปอร์เซ็นต์)\s+", re.IGNORECASE)
_DONE_RE = re.compile(r"^(done|เสร็จ)\s+", re.IGNORECASE)
_AI_RE = re.compile(r"^ai\s+", re.IGNORECASE)
_ADD_BODY_RE = re.compile(r"^(.*?)(?:\s*\|\s*desc=(.*?))?(?:\s*\|\s*due=(\d{4}-\d{2}-\d{2}))?\s*$", re.DOTALL)


def verify_line_signature(body: bytes, signature: Optional[str]) -> bool:
    """Check ``x-line-signature``: base64 HMAC-SHA256 of the raw body."""
    if not settings.LINE_CHANNEL_SECRET or not signature:
        return False
    digest = hmac.new(settings.LINE_CHANNEL_SECRET.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest)
    return hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape"))


def parse_events(payload: Any) -> List[Dict[str, Any]]:
    """
    Extract group text messages from a webhook batch.
    Other event kinds and 1:1 / room sources are dropped.
    """
    if not isinstance(payload, dict):
        return []
    events = payload.get("events")
    if not isinstance(events, list):
        return []
    parsed = []
    for event in events:
        if not isinstance(event, dict) or event.get("type") != "message":
            continue
        message = event.get("message") or {}
        source = event.get("source") or {}
        if message.get("type") != "text" or source.get("type") != "group":
            continue
        group_id = source.get("groupId")
        text = message.get("text")
        if not group_id or not isinstance(text, str):
            continue
        parsed.append({
            "group_id": group_id,
            "user_id": source.get("userId"),
            "reply_token": event.get("replyToken"),
            "text": text.strip(),
        })
    return parsed


def extract_command(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Match a chat message against the known commands.
    Returns (command, args_string); (None, None) for plain chatter.
    """
    normalized = (text or "").strip()
    if _HELP_RE.match(normalized):
        return "help", None
    if _ADD_RE.match(normalized):
        return "add", _ADD_RE.sub("", normalized, count=1).strip()
    if _LIST_RE.match(normalized):
        only_today = re.search(r"today|วันนี้", normalized, re.IGNORECASE)
        return "list", "today" if only_today else None
    if _PROGRESS_RE.match(normalized):
        return "progress", _PROGRESS_RE.sub("", normalized, count=1).strip()
    if _DONE_RE.match(normalized):
        return "done", _DONE_RE.sub("", normalized, count=1).strip()
    if _AI_RE.match(normalized):
        return "ai", normalized
    return None, None


def parse_add_args(args: str) -> Optional[Dict[str, Optional[str]]]:
    """Split ``title | desc=... | due=YYYY-MM-DD``."""
    m = _ADD_BODY_RE.match(args or "")
    if not m:
        return None
    return {
        "title": (m.group(1) or "").strip(),
        "description": (m.group(2) or "").strip() or None,
        "due": (m.group(3) or "").strip() or None,
    }


def fmt_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone(settings.app_tz).strftime("%d/%m/%Y %H:%M")


def fmt_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def format_help(group_id: Optional[str] = None) -> str:
    lines = [
        "Available commands:",
        "• ai schedule <title> today 14:30 | tomorrow 09.00 | friday 15.00 | 27 all day | due=YYYY-MM-DD [time=HH:MM] | email=a@b.com",
        "   - without 'schedule' only a task is created",
        "• add <title> | desc=<details> | due=YYYY-MM-DD",
        "• list — show tasks",
        "• list today — only tasks due today",
        "• progress <code> <percent or +10/-5>",
        "• done <code> — close a task",
        "• help — this message",
    ]
    if group_id:
        lines.extend(["", f"GROUP_ID: {group_id}"])
    return "\n".join(lines)


def format_task_created(task: Any, note: Optional[str] = None) -> str:
    text = f"Task added\n• CODE: {task.code}\n• Title: {task.title}"
    if task.due_at:
        text += f"\n• Due: {fmt_datetime(task.due_at)}"
    if note:
        text += f"\n• Note: {note}"
    return text


def format_task_list(tasks: List[Any], only_today: bool = False) -> str:
    if not tasks:
        return "No tasks due today." if only_today else "This group has no tasks yet."
    lines = []
    for idx, task in enumerate(tasks, start=1):
        line = f"{idx}. [{_enum_value(task.status) or 'todo'}] {task.title}"
        if task.due_at:
            line += f"  (due: {fmt_datetime(task.due_at)})"
        line += f"\n   code={task.code}  progress={task.progress or 0}%"
        lines.append(line)
    header = "Tasks (today)" if only_today else "Tasks"
    return header + "\n" + "\n".join(lines)


def format_when(when: Dict[str, Any]) -> str:
    if when["kind"] == "timed":
        return f"{fmt_datetime(when['start'])} - {fmt_datetime(when['end'])}"
    start_date, end_date = when["start_date"], when["end_date"]
    # end_date is exclusive
    last_day = date.fromordinal(end_date.toordinal() - 1)
    if last_day <= start_date:
        return f"all day {fmt_date(start_date)}"
    return f"all day {fmt_date(start_date)} - {fmt_date(last_day)}"


def format_scheduled(task: Any, when: Dict[str, Any], attendees: List[str]) -> str:
    text = f"Scheduled\n• Title: {task.title}\n• When: {format_when(when)}"
    if attendees:
        text += f"\n• Invited: {', '.join(attendees)}"
    text += f"\n• CODE: {task.code}"
    return text


def format_progress_update(code: str, before: int, after: int) -> str:
    text = f"Progress [{code}] {before}% → {after}%"
    if after == 100:
        text += " (done)"
    return text


async def reply_message(reply_token: Optional[str], text: str) -> Dict[str, Any]:
    """
    Sends a text reply for a webhook event.
    """
    if not reply_token:
        return {"ok": False, "error": "reply_token_missing"}
    if not settings.LINE_CHANNEL_ACCESS_TOKEN:
        logger.error("LINE_CHANNEL_ACCESS_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}

    url = f"{settings.LINE_API_BASE}/v2/bot/message/reply"
    payload = {
        "replyToken": reply_token,
        "messages": [{"type": "text", "text": (text or "")[:LINE_TEXT_MAX_LEN]}],
    }
    headers = {
        "Authorization": f"Bearer {settings.LINE_CHANNEL_ACCESS_TOKEN}",
        "Content-Type": "application/json",
    }
    try:
        async with httpx.AsyncClient(timeout=settings.LINE_REPLY_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, headers=headers, json=payload)
            if resp.status_code < 400:
                return {"ok": True}
            logger.error(
                "Failed to send LINE reply (status=%s, body=%s)",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": f"status_{resp.status_code}"}
    except Exception as e:
        logger.error(f"Failed to send LINE reply: {e}")
        return {"ok": False, "error": str(e)}
