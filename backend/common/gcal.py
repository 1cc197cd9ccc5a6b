import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build

from common.config import settings

logger = logging.getLogger(__name__)

SCOPE_READONLY = "https://www.googleapis.com/auth/calendar.readonly"
SCOPE_WRITE = "https://www.googleapis.com/auth/calendar"
TOKEN_URI = "https://oauth2.googleapis.com/token"
PAGE_SIZE = 2500


class GoogleCalendarAdapter:
    def __init__(self):
        self._services: Dict[str, Any] = {}

    def _credentials(self, scope: str):
        email = settings.GOOGLE_CLIENT_EMAIL
        key = settings.google_private_key
        if not email or not key:
            raise RuntimeError("Missing GOOGLE_CLIENT_EMAIL/GOOGLE_PRIVATE_KEY")
        info = {
            "type": "service_account",
            "client_email": email,
            "private_key": key,
            "token_uri": TOKEN_URI,
        }
        return service_account.Credentials.from_service_account_info(info, scopes=[scope])

    def _service(self, scope: str):
        service = self._services.get(scope)
        if service is None:
            service = build("calendar", "v3", credentials=self._credentials(scope), cache_discovery=False)
            self._services[scope] = service
        return service

    async def _execute(self, request) -> Dict[str, Any]:
        return await asyncio.wait_for(asyncio.to_thread(request.execute), timeout=settings.GCAL_TIMEOUT_SECONDS)

    async def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> List[Dict[str, Any]]:
        """Lists expanded single events in ``[time_min, time_max)``, following page tokens."""
        events = self._service(SCOPE_READONLY).events()
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            request = events.list(
                calendarId=calendar_id,
                singleEvents=True,
                orderBy="startTime",
                timeMin=time_min.isoformat(),
                timeMax=time_max.isoformat(),
                showDeleted=False,
                maxResults=PAGE_SIZE,
                pageToken=page_token,
            )
            data = await self._execute(request)
            items.extend(data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.info("Fetched %s events from calendar %s", len(items), calendar_id)
        return items

    async def create_event(self, body: Dict[str, Any], calendar_id: Optional[str] = None, notify: bool = False) -> Dict[str, Any]:
        """
        Creates an event; attendees receive invitations when ``notify`` is set.
        """
        request = self._service(SCOPE_WRITE).events().insert(
            calendarId=calendar_id or settings.GCAL_CALENDAR_ID,
            body=body,
            sendUpdates="all" if notify else "none",
        )
        created = await self._execute(request)
        logger.info("Created calendar event %s", created.get("id"))
        return created


calendar_adapter = GoogleCalendarAdapter()
