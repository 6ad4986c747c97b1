from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import MAX_SEMESTER
from app.errors import IngestionError
from app.models import DATA_STATUSES, UNVERIFIED, Grade, Major, Student
from app.scoring import normalize_subject


logger = logging.getLogger(__name__)

CSV_COLUMNS = ("nisn", "name", "major", "semester", "subject", "value")


def required_subject(raw: str) -> str:
    subject = normalize_subject(raw)
    if not subject:
        raise ValueError("subject must not be blank")
    return subject


class GradeRow(BaseModel):
    semester: int = Field(ge=1, le=MAX_SEMESTER)
    subject: str = Field(min_length=1)
    value: float = Field(ge=0, le=100)

    @field_validator("subject")
    @classmethod
    def _subject(cls, v: str) -> str:
        return required_subject(v)


class StudentRow(BaseModel):
    nisn: str = Field(min_length=1)
    name: str = Field(min_length=1)
    major: str = Field(min_length=1)
    birth_date: Optional[date] = None
    enrolled_at: Optional[datetime] = None
    data_status: Optional[str] = None
    grades: list[GradeRow] = Field(default_factory=list)

    @field_validator("nisn", "name", "major")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("data_status")
    @classmethod
    def _status(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip().upper()
        if v not in DATA_STATUSES:
            raise ValueError(f"data_status must be one of {', '.join(DATA_STATUSES)}")
        return v


@dataclass
class ImportSummary:
    students_created: int = 0
    students_updated: int = 0
    grades_written: int = 0
    majors_created: list[str] = field(default_factory=list)
    affected_major_ids: set[str] = field(default_factory=set)
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "students_created": self.students_created,
            "students_updated": self.students_updated,
            "grades_written": self.grades_written,
            "majors_created": self.majors_created,
            "affected_majors": sorted(self.affected_major_ids),
            "errors": self.errors,
        }


def upsert_grade(db: Session, student: Student, semester: int, subject: str, value: float) -> bool:
    """Write one grade; returns True when the stored value changed."""
    subject = normalize_subject(subject)
    grade = db.scalar(
        select(Grade).where(Grade.student_id == student.id, Grade.semester == semester, Grade.subject == subject)
    )
    if grade and grade.value == value:
        return False
    if grade:
        grade.value = value
        grade.updated_at = datetime.utcnow()
    else:
        db.add(Grade(student_id=student.id, semester=semester, subject=subject, value=value))
        db.flush()
    student.score_stale = True
    return True


def _major_by_name(db: Session, name: str, summary: ImportSummary) -> Major:
    major = db.scalar(select(Major).where(Major.name == name))
    if not major:
        # No quota policy: the major fails closed until an admin sets one.
        major = Major(name=name)
        db.add(major)
        db.flush()
        summary.majors_created.append(name)
    return major


def import_rows(db: Session, rows: list[dict]) -> ImportSummary:
    summary = ImportSummary()
    for i, raw in enumerate(rows, start=1):
        try:
            row = StudentRow(**raw)
        except ValidationError as exc:
            summary.errors.append({"line": raw.get("_line", i), "error": str(exc), "row": {k: v for k, v in raw.items() if k != "_line"}})
            continue
        major = _major_by_name(db, row.major, summary)
        student = db.scalar(select(Student).where(Student.nisn == row.nisn))
        if student:
            if student.major_id != major.id:
                summary.affected_major_ids.add(student.major_id)
                student.major_id = major.id
                student.score_stale = True
            student.name = row.name
            if row.birth_date:
                student.birth_date = row.birth_date
            if row.data_status:
                student.data_status = row.data_status
            summary.students_updated += 1
        else:
            student = Student(
                nisn=row.nisn,
                name=row.name,
                major_id=major.id,
                birth_date=row.birth_date,
                data_status=row.data_status or UNVERIFIED,
                score_stale=True,
            )
            if row.enrolled_at:
                student.enrolled_at = row.enrolled_at
            db.add(student)
            db.flush()
            summary.students_created += 1
        for g in row.grades:
            if upsert_grade(db, student, g.semester, g.subject, g.value):
                summary.grades_written += 1
        db.flush()
        summary.affected_major_ids.add(major.id)
    db.commit()
    logger.info(
        "Imported %s new / %s updated students, %s grades, %s rejected rows",
        summary.students_created,
        summary.students_updated,
        summary.grades_written,
        len(summary.errors),
    )
    return summary


def rows_from_csv(text: str) -> list[dict]:
    """Group one-grade-per-line CSV into student rows.

    Required columns: nisn, name, major, semester, subject, value. Optional:
    birth_date, data_status. The first line seen for a student supplies its
    identity fields.
    """
    reader = csv.DictReader(io.StringIO(text))
    missing = [c for c in CSV_COLUMNS if c not in (reader.fieldnames or [])]
    if missing:
        raise IngestionError(1, f"missing columns: {', '.join(missing)}")
    students: dict[str, dict] = {}
    for line, rec in enumerate(reader, start=2):
        nisn = str(rec.get("nisn") or "").strip()
        if nisn not in students:
            students[nisn] = {
                "_line": line,
                "nisn": nisn,
                "name": rec.get("name") or "",
                "major": rec.get("major") or "",
                "birth_date": (rec.get("birth_date") or "").strip() or None,
                "data_status": rec.get("data_status") or None,
                "grades": [],
            }
        students[nisn]["grades"].append({"semester": rec.get("semester"), "subject": rec.get("subject"), "value": rec.get("value")})
    return list(students.values())
