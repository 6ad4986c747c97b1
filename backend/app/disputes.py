from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.audit import AuditEvent, AuditSink
from app.errors import DuplicateRebuttalError, InvalidTransitionError, RecordNotFoundError
from app.models import APPROVED, PENDING, REJECTED, Grade, Rebuttal, Student
from app.recalc import MajorLockRegistry, RecalcOrchestrator, RecalcReport, RecalcScope
from app.scoring import normalize_subject


logger = logging.getLogger(__name__)

APPROVE = "APPROVE"
REJECT = "REJECT"
TRANSITIONS = {
    (PENDING, APPROVE): APPROVED,
    (PENDING, REJECT): REJECTED,
}
DEFAULT_REJECTION_NOTE = "No reason given"


def next_status(rebuttal: Rebuttal, action: str) -> str:
    target = TRANSITIONS.get((rebuttal.status, action))
    if target is None:
        raise InvalidTransitionError(rebuttal.id, rebuttal.status, action)
    return target


def submit_rebuttal(
    db: Session,
    student_id: str,
    semester: int,
    subject: str,
    claimed_value: float,
    evidence_ref: Optional[str] = None,
    note: Optional[str] = None,
) -> Rebuttal:
    if not db.get(Student, student_id):
        raise RecordNotFoundError("Student", student_id)
    subject = normalize_subject(subject)
    grade = db.scalar(
        select(Grade).where(Grade.student_id == student_id, Grade.semester == semester, Grade.subject == subject)
    )
    if not grade:
        raise RecordNotFoundError("Grade", f"{student_id}/{semester}/{subject}")
    open_claim = db.scalar(
        select(Rebuttal).where(
            Rebuttal.student_id == student_id,
            Rebuttal.semester == semester,
            Rebuttal.subject == subject,
            Rebuttal.status == PENDING,
        )
    )
    if open_claim:
        raise DuplicateRebuttalError(f"Rebuttal {open_claim.id} for {subject} semester {semester} is still pending")
    rebuttal = Rebuttal(
        student_id=student_id,
        semester=semester,
        subject=subject,
        claimed_value=claimed_value,
        evidence_ref=evidence_ref,
        note=note,
        status=PENDING,
    )
    db.add(rebuttal)
    db.commit()
    db.refresh(rebuttal)
    return rebuttal


@dataclass
class ApprovalOutcome:
    rebuttal_id: str
    student_id: str
    status: str
    previous_value: Optional[float]
    new_value: float
    recalc_triggered: bool = False
    recalc: Optional[RecalcReport] = None
    recalc_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "rebuttal_id": self.rebuttal_id,
            "student_id": self.student_id,
            "status": self.status,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "recalc_triggered": self.recalc_triggered,
            "recalc": self.recalc.to_dict() if self.recalc else None,
            "recalc_error": self.recalc_error,
        }


class DisputeResolver:
    def __init__(
        self,
        session_factory,
        orchestrator: RecalcOrchestrator,
        audit_sink: Optional[AuditSink] = None,
        locks: Optional[MajorLockRegistry] = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.audit_sink = audit_sink
        self.locks = locks or orchestrator.locks

    def _major_of(self, rebuttal_id: str) -> str:
        with self.session_factory() as db:
            rebuttal = db.get(Rebuttal, rebuttal_id)
            if not rebuttal:
                raise RecordNotFoundError("Rebuttal", rebuttal_id)
            student = db.get(Student, rebuttal.student_id)
            if not student:
                raise RecordNotFoundError("Student", rebuttal.student_id)
            return student.major_id

    def approve(self, rebuttal_id: str, reviewer: str, note: Optional[str] = None) -> ApprovalOutcome:
        """Apply the claimed grade, mark the student stale, then recalculate.

        The grade write, stale flag and status change commit together while the
        major's lock is held. The recalculation runs after that commit; if it
        fails the stale flag stays set and any later run repairs the student.
        """
        major_id = self._major_of(rebuttal_id)
        with self.locks.lock_for(major_id):
            with self.session_factory() as db:
                rebuttal = db.get(Rebuttal, rebuttal_id, with_for_update=True)
                if not rebuttal:
                    raise RecordNotFoundError("Rebuttal", rebuttal_id)
                status = next_status(rebuttal, APPROVE)
                student = db.get(Student, rebuttal.student_id, with_for_update=True)
                grade = db.scalar(
                    select(Grade)
                    .where(
                        Grade.student_id == rebuttal.student_id,
                        Grade.semester == rebuttal.semester,
                        Grade.subject == rebuttal.subject,
                    )
                    .with_for_update()
                )
                previous = grade.value if grade else None
                now = datetime.utcnow()
                if grade:
                    grade.value = rebuttal.claimed_value
                    grade.updated_at = now
                else:
                    db.add(
                        Grade(
                            student_id=rebuttal.student_id,
                            semester=rebuttal.semester,
                            subject=rebuttal.subject,
                            value=rebuttal.claimed_value,
                            updated_at=now,
                        )
                    )
                student.score_stale = True
                rebuttal.status = status
                rebuttal.previous_value = previous
                rebuttal.reviewer_note = note
                rebuttal.reviewed_by = reviewer
                rebuttal.reviewed_at = now
                db.commit()
                outcome = ApprovalOutcome(
                    rebuttal_id=rebuttal.id,
                    student_id=rebuttal.student_id,
                    status=status,
                    previous_value=previous,
                    new_value=rebuttal.claimed_value,
                )
                event = AuditEvent(
                    actor=reviewer,
                    action="APPROVE_REBUTTAL",
                    entity_type="Rebuttal",
                    entity_id=rebuttal.id,
                    payload={
                        "student_id": rebuttal.student_id,
                        "semester": rebuttal.semester,
                        "subject": rebuttal.subject,
                        "old_value": previous,
                        "new_value": rebuttal.claimed_value,
                        "reviewer": reviewer,
                    },
                )
        logger.info("Rebuttal %s approved by %s (%s -> %s)", rebuttal_id, reviewer, previous, outcome.new_value)
        if self.audit_sink is not None:
            self.audit_sink.emit(event)

        outcome.recalc_triggered = True
        try:
            outcome.recalc = self.orchestrator.recalc(RecalcScope.student(outcome.student_id), actor=reviewer)
        except Exception as exc:
            logger.exception("Recalculation after rebuttal %s failed; student %s left stale", rebuttal_id, outcome.student_id)
            outcome.recalc_error = f"{type(exc).__name__}: {exc}"
        return outcome

    def reject(self, rebuttal_id: str, reviewer: str, note: Optional[str] = None) -> Rebuttal:
        with self.session_factory() as db:
            rebuttal = db.get(Rebuttal, rebuttal_id, with_for_update=True)
            if not rebuttal:
                raise RecordNotFoundError("Rebuttal", rebuttal_id)
            rebuttal.status = next_status(rebuttal, REJECT)
            rebuttal.reviewer_note = note or DEFAULT_REJECTION_NOTE
            rebuttal.reviewed_by = reviewer
            rebuttal.reviewed_at = datetime.utcnow()
            db.commit()
            db.refresh(rebuttal)
            db.expunge(rebuttal)
        logger.info("Rebuttal %s rejected by %s", rebuttal_id, reviewer)
        if self.audit_sink is not None:
            self.audit_sink.emit(
                AuditEvent(
                    actor=reviewer,
                    action="REJECT_REBUTTAL",
                    entity_type="Rebuttal",
                    entity_id=rebuttal.id,
                    payload={"student_id": rebuttal.student_id, "subject": rebuttal.subject, "reviewer_note": rebuttal.reviewer_note},
                )
            )
        return rebuttal
