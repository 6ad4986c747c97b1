from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from app.config import DATABASE_URL, SQLITE_TIMEOUT


UNVERIFIED = "UNVERIFIED"
VERIFIED = "VERIFIED"
DATA_STATUSES = (UNVERIFIED, VERIFIED)

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="ADMIN")


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ScoringConfig(Base):
    __tablename__ = "scoring_configs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    version: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    semester_weights_json: Mapped[str] = mapped_column(Text)
    rounding_policy: Mapped[str] = mapped_column(String, default="FLOOR")
    count_unrankable_in_quota: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Major(Base):
    __tablename__ = "majors"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    quota_percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quota_count_override: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    min_average: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quota_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ranked_count: Mapped[int] = mapped_column(Integer, default=0)
    recalc_version: Mapped[int] = mapped_column(Integer, default=0)
    last_recalc_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Student(Base):
    __tablename__ = "students"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    nisn: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, index=True)
    major_id: Mapped[str] = mapped_column(String, ForeignKey("majors.id"), index=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    data_status: Mapped[str] = mapped_column(String, default=UNVERIFIED)
    average_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    score_stale: Mapped[bool] = mapped_column(Boolean, default=True)
    score_config_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    unrankable_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Grade(Base):
    __tablename__ = "grades"
    __table_args__ = (UniqueConstraint("student_id", "semester", "subject", name="uq_grade_student_semester_subject"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    semester: Mapped[int] = mapped_column(Integer)
    subject: Mapped[str] = mapped_column(String)
    value: Mapped[float] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Rebuttal(Base):
    __tablename__ = "rebuttals"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id: Mapped[str] = mapped_column(String, ForeignKey("students.id"), index=True)
    semester: Mapped[int] = mapped_column(Integer)
    subject: Mapped[str] = mapped_column(String)
    claimed_value: Mapped[float] = mapped_column(Float)
    previous_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    evidence_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=PENDING, index=True)
    reviewer_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


def build_engine(url: str = DATABASE_URL):
    if not url.startswith("sqlite"):
        return create_engine(url, future=True)
    engine = create_engine(url, future=True, connect_args={"check_same_thread": False, "timeout": SQLITE_TIMEOUT})

    # pysqlite defers BEGIN until the first write; take the write lock up front so
    # read-then-write transactions from worker threads queue instead of deadlocking.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
