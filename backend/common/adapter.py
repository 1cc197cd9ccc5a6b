import asyncio
import json
import logging
from datetime import datetime, date, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from common.config import settings
from common.intent import (
    DEFAULT_TITLE,
    INTENTS,
    TIMED_EVENT_MINUTES,
    all_day,
    extract_emails,
    parse_intent_locally,
)

logger = logging.getLogger(__name__)


class IntentAdapter:
    @staticmethod
    def _parse_instant(value: Any) -> datetime:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Missing timestamp")
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=settings.app_tz)
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def _normalize_when(candidate: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(candidate, dict):
            return None
        kind = candidate.get("kind")
        if kind == "timed":
            start = IntentAdapter._parse_instant(candidate.get("startISO"))
            end_raw = candidate.get("endISO")
            end = IntentAdapter._parse_instant(end_raw) if end_raw else start + timedelta(minutes=TIMED_EVENT_MINUTES)
            if end <= start:
                end = start + timedelta(minutes=TIMED_EVENT_MINUTES)
            return {"kind": "timed", "start": start, "end": end}
        if kind == "allday":
            start_date = date.fromisoformat(str(candidate.get("startDate"))[:10])
            when = all_day(start_date)
            end_raw = candidate.get("endDate")
            if end_raw:
                end_date = date.fromisoformat(str(end_raw)[:10])
                if end_date > start_date:
                    when["end_date"] = end_date
            return when
        return None

    @staticmethod
    def _normalize_intent_payload(payload: Dict[str, Any], text: str) -> Dict[str, Any]:
        intent = payload.get("intent")
        if intent not in INTENTS:
            raise ValueError("Invalid intent")
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            title = DEFAULT_TITLE
        attendees: List[str] = []
        raw_attendees = payload.get("attendees")
        if isinstance(raw_attendees, list):
            attendees = [a.strip() for a in raw_attendees if isinstance(a, str) and a.strip()]
        for email in extract_emails(text):
            if email not in attendees:
                attendees.append(email)
        notes = payload.get("notes")
        return {
            "intent": intent,
            "title": title.strip(),
            "when": IntentAdapter._normalize_when(payload.get("when")),
            "attendees": attendees,
            "notes": notes if isinstance(notes, str) else "",
        }

    def _base_url(self) -> str:
        base = settings.LLM_API_BASE_URL.strip()
        if not base:
            raise RuntimeError("LLM_API_BASE_URL is not configured")
        return base.rstrip("/")

    async def _post_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        retries = max(0, settings.LLM_MAX_RETRIES)
        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
                    response = await client.post(
                        f"{self._base_url()}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {settings.LLM_API_KEY}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    body = response.json()
                    if not isinstance(body, dict):
                        raise ValueError("Provider response is not a JSON object")
                    return body
            except (httpx.RequestError, httpx.HTTPStatusError, httpx.TimeoutException, ValueError) as exc:
                last_error = exc
                if attempt >= retries:
                    break
                delay = max(0.0, settings.LLM_RETRY_BACKOFF_SECONDS) * (2 ** attempt)
                if delay > 0:
                    await asyncio.sleep(delay)
        assert last_error is not None
        raise last_error

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> Any:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Provider response missing choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise ValueError("Provider choice is invalid")
        message = first.get("message")
        if not isinstance(message, dict):
            raise ValueError("Provider message is invalid")
        content = message.get("content")
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, dict):
                    text_value = part.get("text")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            content = "\n".join(parts).strip()
        return content

    @staticmethod
    def _parse_content_object(content: Any) -> Dict[str, Any]:
        if isinstance(content, dict):
            return content
        if not isinstance(content, str):
            raise ValueError("Provider content is not JSON")
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("Parsed provider content is not an object")
        return parsed

    def _build_payload(self, text: str, now: datetime) -> Dict[str, Any]:
        prompt = (
            "Operation: intent.\n"
            f"Timezone: {settings.APP_TIMEZONE}. Current time: {now.astimezone(settings.app_tz).isoformat()}.\n"
            "Classify a Thai or English chat message for a task/calendar bot.\n"
            "intent is schedule when the text asks to put something on the calendar (ลงตาราง, schedule), "
            "help for usage questions, none when unintelligible, otherwise add_task.\n"
            "Understand today/tomorrow (วันนี้/พรุ่งนี้), weekday names, 'ศุกร์ที่ 26 15.00', "
            "'<day> HH:MM', '<day> all day' (ทั้งวัน) and due=YYYY-MM-DD [time=HH:MM].\n"
            "Return JSON with keys intent, title, when, attendees, notes.\n"
            "when is null, {kind: timed, startISO, endISO} with end = start + 60 minutes, "
            "or {kind: allday, startDate, endDate} with endDate the following day.\n"
            "attendees lists every e-mail address in the text.\n"
            "Return only JSON."
        )
        return {
            "model": settings.LLM_MODEL_INTENT,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": "Return only valid JSON. Do not include markdown fences.",
                },
                {"role": "system", "content": prompt},
                {"role": "user", "content": text},
            ],
        }

    async def parse(self, text: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Turns a free-form message into ``{intent, title, when, attendees, notes}``.
        Falls back to the rule parser when no key is configured or the model call fails.
        """
        now = now or datetime.now(timezone.utc)
        if not settings.LLM_API_KEY:
            out = parse_intent_locally(text, now)
            out["notes"] += " | no_llm_key"
            return out
        try:
            response = await self._post_with_retry(self._build_payload(text, now))
            raw = self._parse_content_object(self._extract_content(response))
            return self._normalize_intent_payload(raw, text)
        except Exception as exc:
            logger.warning("intent parse fallback: %s", type(exc).__name__)
            out = parse_intent_locally(text, now)
            out["notes"] += " | fallback_after_llm_error"
            return out


intent_adapter = IntentAdapter()
