from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, Date, DateTime, Float, Integer, String, Text
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON
from sqlalchemy.orm import declarative_base

from .clock import as_utc, utcnow

Base = declarative_base()


class ShiftRecord(Base):
    __tablename__ = "shift_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    timezone = Column(String(64), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True, index=True)
    work_minutes = Column(Integer, nullable=False, default=0)
    poa_minutes = Column(Integer, nullable=False, default=0)
    break_minutes = Column(Integer, nullable=False, default=0)
    driving_minutes = Column(Integer, nullable=False, default=0)
    start_lat = Column(Float, nullable=True)
    start_lng = Column(Float, nullable=True)
    end_lat = Column(Float, nullable=True)
    end_lng = Column(Float, nullable=True)
    compliance_score = Column(Integer, nullable=True)
    compliance_violations = Column(SQLiteJSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def mark_ended(
        self,
        now: dt.datetime,
        work_minutes: int,
        poa_minutes: int,
        break_minutes: int,
        driving_minutes: int,
    ) -> None:
        self.end_time = as_utc(now)
        self.work_minutes = max(0, int(work_minutes))
        self.poa_minutes = max(0, int(poa_minutes))
        self.break_minutes = max(0, int(break_minutes))
        self.driving_minutes = max(0, int(driving_minutes))


class PendingAction(Base):
    __tablename__ = "pending_actions"

    id = Column(Integer, primary_key=True)
    action = Column(String(20), nullable=False, default="END_SHIFT")
    session_id = Column(String(100), nullable=False)
    payload = Column(SQLiteJSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    queued_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
