from __future__ import annotations

import csv
import hashlib
import hmac
import io
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import case, func, select
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import Session

from app.audit import DatabaseAuditSink
from app.config import ADMIN_PASSWORD, ADMIN_USERNAME, DEFAULT_SEMESTER_WEIGHTS, LOG_LEVEL, MAX_SEMESTER, SESSION_SECRET
from app.disputes import DisputeResolver, submit_rebuttal
from app.errors import EligibilityError
from app.ingest import import_rows, required_subject, rows_from_csv, upsert_grade
from app.models import (
    DATA_STATUSES,
    PENDING,
    UNVERIFIED,
    VERIFIED,
    AuditLog,
    Base,
    Grade,
    Major,
    Rebuttal,
    ScoringConfig,
    SessionLocal,
    Student,
    User,
    engine,
)
from app.recalc import MajorLockRegistry, RecalcOrchestrator, RecalcScope
from app.scoring import load_engine_config, save_engine_config


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ADMIN = "ADMIN"
STUDENT = "STUDENT"

serializer = URLSafeSerializer(SESSION_SECRET, salt="eligibility")
audit_sink = DatabaseAuditSink(SessionLocal)
locks = MajorLockRegistry()
orchestrator = RecalcOrchestrator(SessionLocal, audit_sink=audit_sink, locks=locks)
resolver = DisputeResolver(SessionLocal, orchestrator, audit_sink=audit_sink, locks=locks)

app = FastAPI(title="Eligibility Ranking & Quota Allocation")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


class LoginIn(BaseModel):
    username: str
    password: str


class StudentLoginIn(BaseModel):
    nisn: str
    birth_date: date


class MajorIn(BaseModel):
    name: str = Field(min_length=1)
    quota_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    quota_count_override: Optional[int] = Field(default=None, ge=0)
    min_average: Optional[float] = Field(default=None, ge=0, le=100)


class QuotaIn(BaseModel):
    quota_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    quota_count_override: Optional[int] = Field(default=None, ge=0)
    min_average: Optional[float] = Field(default=None, ge=0, le=100)


class ScoringConfigIn(BaseModel):
    semester_weights: dict[int, float]
    rounding_policy: str = "FLOOR"
    count_unrankable_in_quota: bool = False


class StudentIn(BaseModel):
    nisn: str = Field(min_length=1)
    name: str = Field(min_length=1)
    major_id: str
    birth_date: Optional[date] = None
    enrolled_at: Optional[datetime] = None
    data_status: str = UNVERIFIED


class GradeIn(BaseModel):
    student_id: str
    semester: int = Field(ge=1, le=MAX_SEMESTER)
    subject: str = Field(min_length=1)
    value: float = Field(ge=0, le=100)

    @field_validator("subject")
    @classmethod
    def _subject(cls, v: str) -> str:
        return required_subject(v)


class RebuttalIn(BaseModel):
    student_id: str
    semester: int = Field(ge=1, le=MAX_SEMESTER)
    subject: str = Field(min_length=1)
    claimed_value: float = Field(ge=0, le=100)
    evidence_ref: Optional[str] = None
    note: Optional[str] = None

    @field_validator("subject")
    @classmethod
    def _subject(cls, v: str) -> str:
        return required_subject(v)


class ReviewIn(BaseModel):
    note: Optional[str] = None


class RecalcIn(BaseModel):
    scope: str = "ALL"
    target_id: Optional[str] = None


class ImportRowsIn(BaseModel):
    rows: list[dict]


@dataclass(frozen=True)
class Actor:
    name: str
    role: str
    student_id: Optional[str] = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def hash_password(password: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), SESSION_SECRET.encode("utf-8"), 100_000).hex()


def current_actor(session_token: str = Query(...), db: Session = Depends(get_db)) -> Actor:
    try:
        payload = serializer.loads(session_token)
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("role") == STUDENT:
        student = db.get(Student, payload.get("student_id"))
        if not student:
            raise HTTPException(status_code=401, detail="Invalid student")
        return Actor(name=f"student:{student.nisn}", role=STUDENT, student_id=student.id)
    user = db.get(User, payload.get("user_id"))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return Actor(name=user.username, role=user.role)


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role != ADMIN:
        raise HTTPException(status_code=403, detail="ADMIN role required")
    return actor


def require_self_or_admin(actor: Actor, student_id: str) -> None:
    if actor.role != ADMIN and actor.student_id != student_id:
        raise HTTPException(status_code=403, detail="Students may only act on their own record")


def write_audit(db: Session, actor: Actor, action: str, entity: str, entity_id: str, payload: Optional[dict] = None) -> None:
    db.add(
        AuditLog(
            actor=actor.name,
            action=action,
            entity_type=entity,
            entity_id=entity_id,
            payload=json.dumps(payload, sort_keys=True, default=str) if payload is not None else None,
        )
    )
    db.commit()


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def get_or_404(db: Session, model, entity_id: str, label: str):
    obj = db.get(model, entity_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


@app.exception_handler(EligibilityError)
def eligibility_error_handler(request: Request, exc: EligibilityError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": type(exc).__name__})


@app.on_event("startup")
def startup():
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        if not db.scalar(select(User).where(User.username == ADMIN_USERNAME)):
            db.add(User(username=ADMIN_USERNAME, password_hash=hash_password(ADMIN_PASSWORD), role=ADMIN))
            db.commit()
            logger.info("Seeded admin user %s", ADMIN_USERNAME)
        if not db.scalar(select(ScoringConfig).limit(1)):
            save_engine_config(db, DEFAULT_SEMESTER_WEIGHTS, "FLOOR", False, actor="system")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if not user or not hmac.compare_digest(user.password_hash, hash_password(payload.password)):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"user_id": user.id, "role": user.role}), "role": user.role}


@app.post("/auth/student-login")
def student_login(payload: StudentLoginIn, db: Session = Depends(get_db)):
    student = db.scalar(select(Student).where(Student.nisn == payload.nisn.strip()))
    if not student or student.birth_date != payload.birth_date:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"student_id": student.id, "role": STUDENT}), "role": STUDENT, "student_id": student.id}


@app.post("/majors")
def create_major(payload: MajorIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    if db.scalar(select(Major).where(Major.name == payload.name.strip())):
        raise HTTPException(status_code=409, detail="Major already exists")
    major = Major(**payload.model_dump())
    major.name = major.name.strip()
    db.add(major)
    db.flush()
    write_audit(db, actor, "CREATE", "Major", major.id, payload.model_dump())
    return serialize(major)


@app.get("/majors")
def list_majors(db: Session = Depends(get_db), _: Actor = Depends(current_actor)):
    return [serialize(m) for m in db.scalars(select(Major).order_by(Major.name.asc())).all()]


@app.put("/majors/{major_id}/quota")
def update_quota(major_id: str, payload: QuotaIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    major = get_or_404(db, Major, major_id, "Major")
    before = {"quota_percentage": major.quota_percentage, "quota_count_override": major.quota_count_override, "min_average": major.min_average}
    major.quota_percentage = payload.quota_percentage
    major.quota_count_override = payload.quota_count_override
    major.min_average = payload.min_average
    write_audit(db, actor, "UPDATE_QUOTA", "Major", major_id, {"before": before, "after": payload.model_dump()})
    report = orchestrator.recalc(RecalcScope.major(major_id), actor=actor.name)
    return {"major": serialize(major), "recalc": report.to_dict()}


@app.get("/config/scoring")
def get_scoring_config(db: Session = Depends(get_db), _: Actor = Depends(require_admin)):
    cfg = load_engine_config(db)
    return {
        "version": cfg.version,
        "semester_weights": cfg.weights_dict(),
        "rounding_policy": cfg.rounding_policy,
        "count_unrankable_in_quota": cfg.count_unrankable_in_quota,
    }


@app.post("/config/scoring")
def create_scoring_config(
    payload: ScoringConfigIn,
    recalc: bool = Query(False),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    record = save_engine_config(db, payload.semester_weights, payload.rounding_policy, payload.count_unrankable_in_quota, actor=actor.name)
    version = record.version
    write_audit(db, actor, "CREATE_SCORING_CONFIG", "ScoringConfig", str(version), payload.model_dump())
    report = orchestrator.recalc(RecalcScope.all(), actor=actor.name) if recalc else None
    return {
        "version": version,
        "recalc_required": not recalc,
        "recalc": report.to_dict() if report else None,
    }


@app.post("/students")
def create_student(payload: StudentIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    if payload.data_status not in DATA_STATUSES:
        raise HTTPException(status_code=400, detail=f"data_status must be one of {', '.join(DATA_STATUSES)}")
    get_or_404(db, Major, payload.major_id, "Major")
    if db.scalar(select(Student).where(Student.nisn == payload.nisn.strip())):
        raise HTTPException(status_code=409, detail="NISN already registered")
    data = payload.model_dump()
    if data["enrolled_at"] is None:
        data.pop("enrolled_at")
    student = Student(**data, score_stale=True)
    student.nisn = student.nisn.strip()
    db.add(student)
    db.flush()
    student_id = student.id
    write_audit(db, actor, "CREATE", "Student", student_id, {"nisn": payload.nisn, "major_id": payload.major_id})
    report = orchestrator.recalc(RecalcScope.major(payload.major_id), actor=actor.name)
    return {"student": serialize(student), "recalc": report.to_dict()}


@app.get("/students")
def list_students(
    major_id: Optional[str] = None,
    eligible_only: bool = False,
    db: Session = Depends(get_db),
    _: Actor = Depends(require_admin),
):
    stmt = select(Student)
    if major_id:
        stmt = stmt.where(Student.major_id == major_id)
    if eligible_only:
        stmt = stmt.where(Student.is_eligible == True)  # noqa: E712
    stmt = stmt.order_by(Student.major_id.asc(), Student.rank.is_(None), Student.rank.asc(), Student.nisn.asc())
    return [serialize(s) for s in db.scalars(stmt).all()]


@app.get("/students/{student_id}")
def get_student(student_id: str, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_self_or_admin(actor, student_id)
    student = get_or_404(db, Student, student_id, "Student")
    grades = db.scalars(select(Grade).where(Grade.student_id == student_id).order_by(Grade.semester.asc(), Grade.subject.asc())).all()
    rebuttals = db.scalars(select(Rebuttal).where(Rebuttal.student_id == student_id).order_by(Rebuttal.created_at.desc())).all()
    return {
        "student": serialize(student),
        "grades": [serialize(g) for g in grades],
        "rebuttals": [serialize(r) for r in rebuttals],
    }


@app.post("/students/{student_id}/verify")
def verify_student(student_id: str, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_self_or_admin(actor, student_id)
    student = get_or_404(db, Student, student_id, "Student")
    major_id = student.major_id
    if student.data_status == VERIFIED:
        db.commit()
        return {"student": serialize(student), "recalc": None}
    student.data_status = VERIFIED
    write_audit(db, actor, "VERIFY_STUDENT", "Student", student_id)
    report = orchestrator.recalc(RecalcScope.major(major_id), actor=actor.name)
    return {"student": serialize(student), "recalc": report.to_dict()}


@app.put("/grades")
def upsert_student_grade(payload: GradeIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    student = get_or_404(db, Student, payload.student_id, "Student")
    major_id = student.major_id
    db.commit()
    with locks.lock_for(major_id):
        student = get_or_404(db, Student, payload.student_id, "Student")
        changed = upsert_grade(db, student, payload.semester, payload.subject, payload.value)
        write_audit(db, actor, "UPSERT_GRADE", "Student", payload.student_id, payload.model_dump())
    report = orchestrator.recalc(RecalcScope.student(payload.student_id), actor=actor.name) if changed else None
    return {"changed": changed, "recalc": report.to_dict() if report else None}


def _recalc_after_import(summary, actor: Actor) -> list[dict]:
    return [orchestrator.recalc(RecalcScope.major(mid), actor=actor.name).to_dict() for mid in sorted(summary.affected_major_ids)]


@app.post("/import/rows")
def import_student_rows(payload: ImportRowsIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    summary = import_rows(db, payload.rows)
    write_audit(db, actor, "IMPORT", "Student", "rows", {k: v for k, v in summary.to_dict().items() if k != "errors"})
    return {**summary.to_dict(), "recalc": _recalc_after_import(summary, actor)}


@app.post("/import/csv")
def import_student_csv(file: UploadFile = File(...), db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    data = file.file.read().decode("utf-8-sig")
    summary = import_rows(db, rows_from_csv(data))
    write_audit(db, actor, "IMPORT", "Student", file.filename or "csv", {k: v for k, v in summary.to_dict().items() if k != "errors"})
    return {**summary.to_dict(), "recalc": _recalc_after_import(summary, actor)}


@app.post("/rebuttals")
def create_rebuttal(payload: RebuttalIn, db: Session = Depends(get_db), actor: Actor = Depends(current_actor)):
    require_self_or_admin(actor, payload.student_id)
    rebuttal = submit_rebuttal(
        db,
        payload.student_id,
        payload.semester,
        payload.subject,
        payload.claimed_value,
        evidence_ref=payload.evidence_ref,
        note=payload.note,
    )
    write_audit(db, actor, "SUBMIT_REBUTTAL", "Rebuttal", rebuttal.id, payload.model_dump())
    return serialize(rebuttal)


@app.get("/rebuttals")
def list_rebuttals(
    status: Optional[str] = None,
    student_id: Optional[str] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    if actor.role != ADMIN:
        student_id = actor.student_id
    stmt = select(Rebuttal)
    if status:
        stmt = stmt.where(Rebuttal.status == status.upper())
    if student_id:
        stmt = stmt.where(Rebuttal.student_id == student_id)
    return [serialize(r) for r in db.scalars(stmt.order_by(Rebuttal.created_at.asc())).all()]


@app.post("/rebuttals/{rebuttal_id}/approve")
def approve_rebuttal(
    rebuttal_id: str,
    payload: Optional[ReviewIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    db.commit()
    return resolver.approve(rebuttal_id, reviewer=actor.name, note=payload.note if payload else None).to_dict()


@app.post("/rebuttals/{rebuttal_id}/reject")
def reject_rebuttal(
    rebuttal_id: str,
    payload: Optional[ReviewIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    db.commit()
    return serialize(resolver.reject(rebuttal_id, reviewer=actor.name, note=payload.note if payload else None))


@app.post("/recalc")
def recalculate(payload: RecalcIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    try:
        scope = RecalcScope(payload.scope.upper(), payload.target_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return orchestrator.recalc(scope, actor=actor.name).to_dict()


@app.get("/majors/{major_id}/ranking")
def major_ranking(major_id: str, db: Session = Depends(get_db), _: Actor = Depends(require_admin)):
    major = get_or_404(db, Major, major_id, "Major")
    students = db.scalars(
        select(Student)
        .where(Student.major_id == major_id)
        .order_by(Student.rank.is_(None), Student.rank.asc(), Student.nisn.asc())
    ).all()
    return {
        "major": serialize(major),
        "students": [
            {
                "id": s.id,
                "nisn": s.nisn,
                "name": s.name,
                "data_status": s.data_status,
                "average_score": s.average_score,
                "score_stale": s.score_stale,
                "rank": s.rank,
                "is_eligible": s.is_eligible,
                "unrankable_reason": s.unrankable_reason,
            }
            for s in students
        ],
    }


@app.get("/export/eligible.csv")
def export_eligible(major_id: Optional[str] = None, db: Session = Depends(get_db), _: Actor = Depends(require_admin)):
    stmt = (
        select(Major.name, Student.rank, Student.nisn, Student.name, Student.average_score)
        .join(Major, Major.id == Student.major_id)
        .where(Student.is_eligible == True)  # noqa: E712
    )
    if major_id:
        stmt = stmt.where(Student.major_id == major_id)
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["major", "rank", "nisn", "name", "average_score"])
    for major_name, rank, nisn, name, avg in db.execute(stmt.order_by(Major.name.asc(), Student.rank.asc())).all():
        writer.writerow([major_name, rank, nisn, name, f"{avg:.2f}" if avg is not None else ""])
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="eligible.csv"'},
    )


@app.get("/stats")
def stats(db: Session = Depends(get_db), _: Actor = Depends(require_admin)):
    rows = db.execute(
        select(
            Major.id,
            Major.name,
            Major.quota_count,
            func.count(Student.id),
            func.sum(case((Student.data_status == VERIFIED, 1), else_=0)),
            func.sum(case((Student.rank.is_not(None), 1), else_=0)),
            func.sum(case((Student.is_eligible == True, 1), else_=0)),  # noqa: E712
            func.sum(case((Student.score_stale == True, 1), else_=0)),  # noqa: E712
        )
        .join(Student, Student.major_id == Major.id, isouter=True)
        .group_by(Major.id, Major.name, Major.quota_count)
        .order_by(Major.name.asc())
    ).all()
    pending = db.scalar(select(func.count(Rebuttal.id)).where(Rebuttal.status == PENDING)) or 0
    return {
        "pending_rebuttals": pending,
        "majors": [
            {
                "major_id": mid,
                "name": name,
                "quota_count": quota_count,
                "students": total or 0,
                "verified": verified or 0,
                "ranked": ranked or 0,
                "eligible": eligible or 0,
                "stale": stale or 0,
            }
            for mid, name, quota_count, total, verified, ranked, eligible, stale in rows
        ],
    }


@app.get("/audit")
def audit_feed(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db), _: Actor = Depends(require_admin)):
    return [serialize(a) for a in db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()]
