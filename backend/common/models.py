from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, ForeignKey,
    Index, UniqueConstraint, CheckConstraint, Enum
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# --- Enums ---

class TaskStatus(PyEnum):
    todo = "todo"
    in_progress = "in_progress"
    blocked = "blocked"
    done = "done"
    cancelled = "cancelled"

class TaskPriority(PyEnum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"

task_status_enum = Enum(TaskStatus, name="task_status")
task_priority_enum = Enum(TaskPriority, name="task_priority")

# --- Models ---

class Group(Base):
    __tablename__ = "groups"

    id = Column(String, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    tasks = relationship("Task", back_populates="group")
    calendar_config = relationship("CalendarConfig", back_populates="group", uselist=False)

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    group_id = Column(String, ForeignKey("groups.id"), nullable=False)
    code = Column(String, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    due_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(task_status_enum, nullable=False, default=TaskStatus.todo)
    progress = Column(Integer, CheckConstraint("progress BETWEEN 0 AND 100"), nullable=False, default=0)
    priority = Column(task_priority_enum, nullable=False, default=TaskPriority.medium)
    tags = Column(ARRAY(Text), nullable=True)
    external_source = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    external_ref = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    group = relationship("Group", back_populates="tasks")

    __table_args__ = (
        UniqueConstraint("group_id", "code", name="tasks_group_code_uq"),
        Index("idx_tasks_group_due", "group_id", "due_at"),
        Index("idx_tasks_group_external", "group_id", "external_source", "external_id"),
    )

class TaskUpdate(Base):
    __tablename__ = "task_updates"

    id = Column(String, primary_key=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    progress = Column(Integer, nullable=True)
    new_status = Column(task_status_enum, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_task_updates_task_created", "task_id", created_at.desc()),
    )

class CalendarConfig(Base):
    __tablename__ = "calendar_configs"

    group_id = Column(String, ForeignKey("groups.id"), primary_key=True)
    cal1_id = Column(Text, nullable=True)
    cal1_tag = Column(Text, nullable=False, default="CAL1")
    cal1_color = Column(Text, nullable=True)
    cal2_id = Column(Text, nullable=True)
    cal2_tag = Column(Text, nullable=False, default="CAL2")
    cal2_color = Column(Text, nullable=True)
    since_month = Column(String(7), nullable=True)  # YYYY-MM
    tz = Column(String, nullable=False, default="Asia/Bangkok")
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    group = relationship("Group", back_populates="calendar_config")

class ExternalCalendarEvent(Base):
    __tablename__ = "external_calendar_events"

    id = Column(String, primary_key=True)
    group_id = Column(String, ForeignKey("groups.id"), nullable=False)
    calendar_id = Column(Text, nullable=False)
    google_event_id = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    all_day = Column(Boolean, nullable=False, default=False)
    html_link = Column(Text, nullable=True)
    color_id = Column(String, nullable=True)
    status = Column(String, nullable=True)
    etag = Column(Text, nullable=True)
    raw = Column(JSONB, nullable=False, server_default="{}")
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "calendar_id", "google_event_id", name="uq_external_event_group_calendar_event"),
        Index("idx_external_events_group_color_start", "group_id", "color_id", "start_at"),
    )
