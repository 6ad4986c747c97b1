from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.errors import NoGradeDataError, RecordNotFoundError
from app.models import Grade, ScoringConfig, Student


def normalize_subject(raw: str) -> str:
    return re.sub(r"\s+", " ", str(raw or "").strip()).upper()


@dataclass(frozen=True)
class GradeValue:
    semester: int
    subject: str
    value: float


def compute_average(grades: Iterable, config: EngineConfig, student_id: Optional[str] = None) -> float:
    """Weighted mean of per-semester subject means.

    Each semester present contributes ``mean(subject values) * weight``; the
    sum is divided by the total weight of the semesters that actually have
    grades, so a missing semester never drags the score towards zero. When the
    same (semester, subject) appears more than once the last occurrence wins.
    """
    latest: dict[tuple[int, str], Decimal] = {}
    for g in grades:
        latest[(int(g.semester), normalize_subject(g.subject))] = Decimal(str(g.value))
    if not latest:
        raise NoGradeDataError(student_id)

    by_semester: dict[int, list[Decimal]] = defaultdict(list)
    for (semester, _subject), value in sorted(latest.items()):
        by_semester[semester].append(value)

    weighted_sum = Decimal(0)
    total_weight = Decimal(0)
    for semester in sorted(by_semester):
        weight = Decimal(str(config.weight_for(semester)))
        if weight <= 0:
            continue
        values = by_semester[semester]
        weighted_sum += sum(values, Decimal(0)) / len(values) * weight
        total_weight += weight

    if total_weight <= 0:
        # Only zero-weighted semesters were graded.
        raise NoGradeDataError(student_id)
    return float(weighted_sum / total_weight)


def load_grades(db: Session, student_id: str) -> list[Grade]:
    stmt = (
        select(Grade)
        .where(Grade.student_id == student_id)
        .order_by(Grade.semester.asc(), Grade.subject.asc(), Grade.updated_at.asc())
    )
    return list(db.scalars(stmt).all())


def compute_student_average(db: Session, student_id: str, config: EngineConfig) -> float:
    if not db.get(Student, student_id):
        raise RecordNotFoundError("Student", student_id)
    return compute_average(load_grades(db, student_id), config, student_id=student_id)


def load_engine_config(db: Session) -> EngineConfig:
    record = db.scalar(select(ScoringConfig).order_by(ScoringConfig.version.desc()).limit(1))
    if not record:
        return EngineConfig()
    return EngineConfig.from_record(record)


def save_engine_config(
    db: Session,
    semester_weights: dict,
    rounding_policy: Optional[str],
    count_unrankable_in_quota: bool,
    actor: Optional[str] = None,
) -> ScoringConfig:
    """Append a new configuration version; earlier versions are kept."""
    current = db.scalar(select(ScoringConfig.version).order_by(ScoringConfig.version.desc()).limit(1)) or 0
    cfg = EngineConfig.from_values(current + 1, semester_weights, rounding_policy, count_unrankable_in_quota)
    record = ScoringConfig(
        version=cfg.version,
        semester_weights_json=json.dumps({str(k): v for k, v in cfg.semester_weights}),
        rounding_policy=cfg.rounding_policy,
        count_unrankable_in_quota=cfg.count_unrankable_in_quota,
        created_by=actor,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record
