"""LINE webhook tests: signature gate, command routing and per-event isolation."""
import asyncio
import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import SQLAlchemyError

from api.main import (
    FALLBACK_REPLY,
    SCHEDULE_IN_PAST,
    SCHEDULE_NEEDS_TIME,
    calendar_adapter,
    handle_line_command,
)
from common.models import TaskStatus, TaskUpdate

WEBHOOK_URL = "/api/line/webhook"
CHANNEL_SECRET = "test_channel_secret"


class _FakeResult:
    def __init__(self, row=None):
        self._row = row

    def first(self):
        return self._row


def _sign(body: bytes, secret=CHANNEL_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def _text_event(text, group_id="C123", reply_token="r1", source_type="group"):
    source = {"type": source_type, "userId": "U1"}
    if source_type == "group":
        source["groupId"] = group_id
    return {
        "type": "message",
        "replyToken": reply_token,
        "source": source,
        "message": {"type": "text", "id": "m1", "text": text},
    }


def _post_events(asgi_app, events, signature=None):
    body = json.dumps({"destination": "Ubot", "events": events}).encode()
    headers = {"Content-Type": "application/json"}
    headers["x-line-signature"] = signature if signature is not None else _sign(body)

    async def _call():
        transport = ASGITransport(app=asgi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.post(WEBHOOK_URL, content=body, headers=headers)
    return asyncio.run(_call())


def _event(text, group_id="C123"):
    return {"group_id": group_id, "user_id": "U1", "reply_token": "r1", "text": text}


def _created_task(code="0042", title="Prepare slides", due_at=None):
    return SimpleNamespace(id="t1", code=code, title=title, due_at=due_at)


def test_webhook_get_and_head_are_healthchecks(app_no_db):
    async def _call():
        transport = ASGITransport(app=app_no_db)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.get(WEBHOOK_URL), await client.head(WEBHOOK_URL)
    get_resp, head_resp = asyncio.run(_call())
    assert get_resp.status_code == 200
    assert get_resp.text == "ok"
    assert head_resp.status_code == 200


def test_webhook_rejects_bad_signature(app_no_db, mock_reply):
    resp = _post_events(app_no_db, [_text_event("help")], signature="bm9wZQ==")
    assert resp.status_code == 400
    assert resp.text == "bad signature"
    mock_reply.assert_not_awaited()


def test_webhook_rejects_non_ascii_signature(app_no_db, mock_reply):
    body = json.dumps({"events": [_text_event("help")]}).encode()

    async def _call():
        transport = ASGITransport(app=app_no_db)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.post(
                WEBHOOK_URL,
                content=body,
                headers={"x-line-signature": "\u00e9abc".encode("latin-1")},
            )
    resp = asyncio.run(_call())
    assert resp.status_code == 400
    assert resp.text == "bad signature"
    mock_reply.assert_not_awaited()


def test_webhook_rejects_missing_signature(app_no_db):
    async def _call():
        transport = ASGITransport(app=app_no_db)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.post(WEBHOOK_URL, content=b'{"events": []}')
    resp = asyncio.run(_call())
    assert resp.status_code == 400


def test_webhook_help_includes_group_id(app_no_db, mock_reply):
    resp = _post_events(app_no_db, [_text_event("help")])
    assert resp.status_code == 200
    assert resp.text == "ok"
    token, text = mock_reply.call_args[0]
    assert token == "r1"
    assert "GROUP_ID: C123" in text


def test_webhook_ignores_non_group_and_plain_chatter(app_no_db, mock_reply):
    resp = _post_events(
        app_no_db,
        [
            _text_event("help", source_type="user"),
            _text_event("good morning everyone"),
            {"type": "follow", "replyToken": "r9", "source": {"type": "user", "userId": "U1"}},
        ],
    )
    assert resp.status_code == 200
    mock_reply.assert_not_awaited()


def test_webhook_add_due_is_midnight_bangkok(app_no_db, mock_reply, mock_db):
    due = datetime(2025, 8, 31, 17, 0, tzinfo=timezone.utc)
    with patch("api.main.create_task_with_code", new=AsyncMock(return_value=_created_task(due_at=due))) as create:
        resp = _post_events(app_no_db, [_text_event("add Prepare slides | desc=for Monday | due=2025-09-01")])
    assert resp.status_code == 200
    args, kwargs = create.call_args
    assert args[1:] == ("C123", "Prepare slides")
    assert kwargs["description"] == "for Monday"
    assert kwargs["due_at"] == due
    text = mock_reply.call_args[0][1]
    assert "CODE: 0042" in text
    assert "01/09/2025 00:00" in text


def test_webhook_add_without_title_replies_usage(app_no_db, mock_reply):
    with patch("api.main.create_task_with_code", new=AsyncMock()) as create:
        _post_events(app_no_db, [_text_event("add | due=2025-09-01")])
    create.assert_not_awaited()
    assert mock_reply.call_args[0][1].startswith("Usage: add")


def test_webhook_event_failure_does_not_stop_batch(app_no_db, mock_reply, mock_db):
    create = AsyncMock(side_effect=[RuntimeError("db down"), _created_task(code="0007", title="Second")])
    with patch("api.main.create_task_with_code", new=create):
        resp = _post_events(
            app_no_db,
            [
                _text_event("add First", reply_token="r1"),
                _text_event("add Second", reply_token="r2"),
            ],
        )
    assert resp.status_code == 200
    assert resp.text == "ok"
    replies = [c.args for c in mock_reply.call_args_list]
    assert replies[0] == ("r1", FALLBACK_REPLY)
    assert replies[1][0] == "r2"
    assert "CODE: 0007" in replies[1][1]
    mock_db.rollback.assert_awaited_once()


def test_list_today_filters_by_today(mock_reply, mock_db):
    async def _run():
        tasks = [SimpleNamespace(code="0001", title="A", status=TaskStatus.todo, due_at=None, progress=0)]
        with patch("api.main.list_group_tasks", new=AsyncMock(return_value=tasks)) as listing:
            await handle_line_command("list", "today", _event("list today"), mock_db)
        assert listing.call_args.kwargs["today_only"] is True
        assert listing.call_args.kwargs["limit"] == 50
        text = mock_reply.call_args[0][1]
        assert text.startswith("Tasks (today)")
        assert "code=0001" in text

    asyncio.run(_run())


def test_list_empty_group(mock_reply, mock_db):
    async def _run():
        with patch("api.main.list_group_tasks", new=AsyncMock(return_value=[])):
            await handle_line_command("list", None, _event("list"), mock_db)
        assert mock_reply.call_args[0][1] == "This group has no tasks yet."

    asyncio.run(_run())


def test_progress_updates_status_and_logs(mock_reply, mock_db):
    async def _run():
        task = SimpleNamespace(id="t1", code="0123", progress=40, status=TaskStatus.todo)
        with patch("api.main.find_task_by_key", new=AsyncMock(return_value=task)):
            await handle_line_command("progress", "0123 +10", _event("progress 0123 +10"), mock_db)
        assert mock_reply.call_args[0][1] == "Progress [0123] 40% → 50%"
        logged = mock_db.add.call_args[0][0]
        assert isinstance(logged, TaskUpdate)
        assert logged.progress == 50
        assert logged.new_status == TaskStatus.in_progress
        assert logged.actor_id == "U1"

    asyncio.run(_run())


def test_progress_to_100_marks_done(mock_reply, mock_db):
    async def _run():
        task = SimpleNamespace(id="t1", code="0123", progress=80, status=TaskStatus.in_progress)
        with patch("api.main.find_task_by_key", new=AsyncMock(return_value=task)):
            await handle_line_command("progress", "0123 100", _event("progress 0123 100"), mock_db)
        assert mock_reply.call_args[0][1].endswith("(done)")
        assert mock_db.add.call_args[0][0].new_status == TaskStatus.done

    asyncio.run(_run())


def test_progress_log_failure_is_not_fatal(mock_reply, mock_db):
    async def _run():
        task = SimpleNamespace(id="t1", code="0123", progress=0, status=TaskStatus.todo)
        mock_db.commit = AsyncMock(side_effect=[None, SQLAlchemyError("task_updates missing")])
        with patch("api.main.find_task_by_key", new=AsyncMock(return_value=task)):
            await handle_line_command("progress", "0123 30", _event("progress 0123 30"), mock_db)
        mock_db.rollback.assert_awaited_once()
        assert mock_reply.call_args[0][1] == "Progress [0123] 0% → 30%"

    asyncio.run(_run())


def test_progress_usage_and_unknown_code(mock_reply, mock_db):
    async def _run():
        await handle_line_command("progress", "0123 lots", _event("progress 0123 lots"), mock_db)
        assert mock_reply.call_args[0][1].startswith("Usage: progress")
        with patch("api.main.find_task_by_key", new=AsyncMock(return_value=None)):
            await handle_line_command("progress", "9999 10", _event("progress 9999 10"), mock_db)
        assert "9999 not found" in mock_reply.call_args[0][1]

    asyncio.run(_run())


def test_done_closes_task(mock_reply, mock_db):
    async def _run():
        mock_db.execute = AsyncMock(return_value=_FakeResult(row=SimpleNamespace(code="0123", title="Prepare slides")))
        await handle_line_command("done", "0123", _event("done 0123"), mock_db)
        mock_db.commit.assert_awaited_once()
        assert mock_reply.call_args[0][1] == "Closed task [0123] Prepare slides"

    asyncio.run(_run())


def test_done_unknown_code(mock_reply, mock_db):
    async def _run():
        mock_db.execute = AsyncMock(return_value=_FakeResult(row=None))
        await handle_line_command("done", "4040", _event("done 4040"), mock_db)
        mock_db.commit.assert_not_awaited()
        assert "4040 not found" in mock_reply.call_args[0][1]

    asyncio.run(_run())


def test_ai_schedule_creates_event_and_task(mock_reply, mock_db):
    async def _run():
        text = "ai schedule Sprint review tomorrow 10:00 email=alice@example.com"
        create_event = AsyncMock(return_value={"id": "evt1", "htmlLink": "https://calendar/evt1"})
        with patch.object(calendar_adapter, "create_event", new=create_event), \
                patch("api.main.create_task_with_code", new=AsyncMock(return_value=_created_task(title="Sprint review"))) as create:
            await handle_line_command("ai", text, _event(text), mock_db)
        body = create_event.call_args[0][0]
        assert body["summary"] == "Sprint review"
        assert body["attendees"] == [{"email": "alice@example.com"}]
        assert body["start"]["dateTime"].endswith("10:00:00+07:00")
        assert create_event.call_args.kwargs["notify"] is True
        assert create.call_args[0][2] == "Sprint review"
        assert create.call_args.kwargs["due_at"] > datetime.now(timezone.utc)
        reply = mock_reply.call_args[0][1]
        assert reply.startswith("Scheduled")
        assert "alice@example.com" in reply

    asyncio.run(_run())


def test_ai_schedule_all_day_uses_date_fields(mock_reply, mock_db):
    async def _run():
        day = (datetime.now(timezone.utc) + timedelta(days=10)).date()
        text = f"ai schedule Offsite due={day.isoformat()}"
        create_event = AsyncMock(return_value={"id": "evt2"})
        with patch.object(calendar_adapter, "create_event", new=create_event), \
                patch("api.main.create_task_with_code", new=AsyncMock(return_value=_created_task(title="Offsite"))):
            await handle_line_command("ai", text, _event(text), mock_db)
        body = create_event.call_args[0][0]
        assert body["start"] == {"date": day.isoformat()}
        assert body["end"] == {"date": (day + timedelta(days=1)).isoformat()}
        assert create_event.call_args.kwargs["notify"] is False

    asyncio.run(_run())


def test_ai_schedule_refuses_past_time(mock_reply, mock_db):
    async def _run():
        text = "ai schedule Retro due=2020-01-01 time=10:00"
        create_event = AsyncMock()
        with patch.object(calendar_adapter, "create_event", new=create_event):
            await handle_line_command("ai", text, _event(text), mock_db)
        create_event.assert_not_awaited()
        assert mock_reply.call_args[0][1] == SCHEDULE_IN_PAST

    asyncio.run(_run())


def test_ai_schedule_without_time_asks_for_one(mock_reply, mock_db):
    async def _run():
        text = "ai schedule Retro"
        await handle_line_command("ai", text, _event(text), mock_db)
        assert mock_reply.call_args[0][1] == SCHEDULE_NEEDS_TIME

    asyncio.run(_run())


def test_ai_add_task_uses_parsed_due(mock_reply, mock_db):
    async def _run():
        text = "ai Buy paper due=2030-01-02"
        with patch("api.main.create_task_with_code", new=AsyncMock(return_value=_created_task(title="Buy paper"))) as create:
            await handle_line_command("ai", text, _event(text), mock_db)
        assert create.call_args[0][2] == "Buy paper"
        assert create.call_args.kwargs["due_at"] == datetime(2030, 1, 1, 17, 0, tzinfo=timezone.utc)
        assert create.call_args.kwargs["description"] == "[ALL_DAY]"
        assert "Note: all day" in mock_reply.call_args[0][1]

    asyncio.run(_run())


def test_ai_none_intent_stays_quiet(mock_reply, mock_db):
    async def _run():
        parsed = {"intent": "none", "title": "", "when": None, "attendees": [], "notes": ""}
        with patch("api.main.intent_adapter") as adapter:
            adapter.parse = AsyncMock(return_value=parsed)
            await handle_line_command("ai", "ai ???", _event("ai ???"), mock_db)
        mock_reply.assert_not_awaited()

    asyncio.run(_run())
