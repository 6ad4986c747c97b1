from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import RecordNotFoundError, UnrankableStudentError
from app.models import VERIFIED, Major, Student


@dataclass(frozen=True)
class RankCandidate:
    student_id: str
    nisn: str
    enrolled_at: datetime
    average_score: Optional[float]
    score_stale: bool = False

    @classmethod
    def from_student(cls, student: Student) -> "RankCandidate":
        return cls(
            student_id=student.id,
            nisn=student.nisn,
            enrolled_at=student.enrolled_at,
            average_score=student.average_score,
            score_stale=bool(student.score_stale),
        )


@dataclass(frozen=True)
class RankedStudent:
    student_id: str
    nisn: str
    average_score: float
    rank: int


@dataclass
class RankingResult:
    major_id: Optional[str]
    ranked: list[RankedStudent] = field(default_factory=list)
    unrankable: list[UnrankableStudentError] = field(default_factory=list)

    def order(self) -> list[str]:
        return [r.student_id for r in self.ranked]


def ranking_key(candidate: RankCandidate) -> tuple:
    # Higher score first, then earlier enrollment, then national ID.
    return (-candidate.average_score, candidate.enrolled_at, candidate.nisn)


def rank_candidates(candidates: Iterable[RankCandidate], major_id: Optional[str] = None) -> RankingResult:
    """Strict total order over candidates with a current score.

    Candidates whose score is stale or missing are not dropped: they come back
    in ``unrankable`` so callers can tell "not eligible" apart from "not yet
    computable".
    """
    result = RankingResult(major_id=major_id)
    rankable: list[RankCandidate] = []
    for c in sorted(candidates, key=lambda c: c.nisn):
        if c.score_stale:
            result.unrankable.append(UnrankableStudentError(c.student_id, UnrankableStudentError.STALE_SCORE))
        elif c.average_score is None:
            result.unrankable.append(UnrankableStudentError(c.student_id, UnrankableStudentError.NO_SCORE))
        else:
            rankable.append(c)
    for idx, c in enumerate(sorted(rankable, key=ranking_key), start=1):
        result.ranked.append(RankedStudent(student_id=c.student_id, nisn=c.nisn, average_score=c.average_score, rank=idx))
    return result


def rank_major(db: Session, major_id: str) -> RankingResult:
    if not db.get(Major, major_id):
        raise RecordNotFoundError("Major", major_id)
    students = db.scalars(
        select(Student).where(Student.major_id == major_id, Student.data_status == VERIFIED).order_by(Student.nisn.asc())
    ).all()
    return rank_candidates((RankCandidate.from_student(s) for s in students), major_id=major_id)
