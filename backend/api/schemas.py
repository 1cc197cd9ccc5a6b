from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any, List
from datetime import datetime
from common.models import TaskStatus, TaskPriority

# --- Tasks ---

class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    group_id: str
    code: str
    title: str
    description: Optional[str] = None
    due_at: Optional[datetime] = None
    status: TaskStatus
    progress: int
    priority: TaskPriority
    tags: Optional[List[str]] = None
    external_source: Optional[str] = None
    external_id: Optional[str] = None
    external_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class TaskCreate(BaseModel):
    # Dashboard forms send loosely typed values; normalized in the handler.
    group_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    due_at: Optional[Any] = None
    priority: Optional[Any] = None
    tags: Optional[Any] = None

class TaskPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_at: Optional[str] = None
    status: Optional[TaskStatus] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    priority: Optional[Any] = None
    tags: Optional[Any] = None

# --- Calendar configuration ---

class CalendarSettingsIn(BaseModel):
    group_id: Optional[str] = None
    cal1_id: Optional[str] = None
    cal1_tag: Optional[str] = None
    cal1_color: Optional[str] = None
    cal2_id: Optional[str] = None
    cal2_tag: Optional[str] = None
    cal2_color: Optional[str] = None
    since_month: Optional[str] = Field(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    tz: Optional[str] = None

class CalendarSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    group_id: str
    cal1_id: Optional[str] = None
    cal1_tag: Optional[str] = None
    cal1_color: Optional[str] = None
    cal2_id: Optional[str] = None
    cal2_tag: Optional[str] = None
    cal2_color: Optional[str] = None
    since_month: Optional[str] = None
    tz: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class CalendarConfigIn(BaseModel):
    cal1_id: Optional[str] = None
    cal1_tag: Optional[str] = None
    cal2_id: Optional[str] = None
    cal2_tag: Optional[str] = None

class CalendarConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    group_id: str
    cal1_id: Optional[str] = None
    cal1_tag: str = "CAL1"
    cal2_id: Optional[str] = None
    cal2_tag: str = "CAL2"
    last_synced_at: Optional[datetime] = None

# --- Calendar sync / import ---

class CalendarSyncResponse(BaseModel):
    ok: bool
    group_id: str
    synced: int
    skipped: int = 0
    timeMin: str
    timeMax: str

class ImportSample(BaseModel):
    code: str
    title: str
    dueAt: Optional[str] = None
    colorId: Optional[str] = None
    calendar_id: str
    tag: str

class CalendarImportResponse(BaseModel):
    ok: bool
    mode: str
    group_id: str
    colorId: str
    total_read: int
    imported: int
    sample: List[ImportSample] = []

class CalendarEventCreate(BaseModel):
    title: str = Field(..., min_length=1)
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    start: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")
    description: Optional[str] = None
    location: Optional[str] = None
    attendeeEmail: Optional[str] = None

class CalendarEventCreateResponse(BaseModel):
    ok: bool = True
    eventId: Optional[str] = None
