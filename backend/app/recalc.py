from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.audit import AuditEvent, AuditSink
from app.config import RECALC_WORKERS, EngineConfig
from app.errors import NoGradeDataError, QuotaConfigurationError, RecordNotFoundError
from app.models import VERIFIED, Major, Student
from app.quota import QuotaPolicy, allocate, compute_quota_count
from app.ranking import rank_major
from app.scoring import compute_student_average, load_engine_config


logger = logging.getLogger(__name__)

SCOPE_ALL = "ALL"
SCOPE_MAJOR = "MAJOR"
SCOPE_STUDENT = "STUDENT"
SCOPES = (SCOPE_ALL, SCOPE_MAJOR, SCOPE_STUDENT)

COMMITTED = "COMMITTED"
NOOP = "NOOP"
SUPERSEDED = "SUPERSEDED"
FAILED = "FAILED"


@dataclass(frozen=True)
class RecalcScope:
    kind: str
    target_id: Optional[str] = None

    def __post_init__(self):
        if self.kind not in SCOPES:
            raise ValueError(f"scope must be one of {', '.join(SCOPES)}")
        if self.kind != SCOPE_ALL and not self.target_id:
            raise ValueError(f"{self.kind} scope requires a target id")

    @classmethod
    def all(cls) -> "RecalcScope":
        return cls(SCOPE_ALL)

    @classmethod
    def major(cls, major_id: str) -> "RecalcScope":
        return cls(SCOPE_MAJOR, major_id)

    @classmethod
    def student(cls, student_id: str) -> "RecalcScope":
        return cls(SCOPE_STUDENT, student_id)


@dataclass
class MajorRecalcReport:
    major_id: str
    major_name: Optional[str] = None
    status: str = COMMITTED
    config_version: Optional[int] = None
    quota_count: Optional[int] = None
    ranked: int = 0
    eligible: int = 0
    unverified: int = 0
    recomputed: int = 0
    changed: int = 0
    unrankable: list[dict] = field(default_factory=list)
    unchanged: bool = False
    error_class: Optional[str] = None
    error: Optional[str] = None

    def fail(self, exc: BaseException) -> "MajorRecalcReport":
        self.status = FAILED
        self.error_class = type(exc).__name__
        self.error = str(exc)
        return self


@dataclass
class RecalcReport:
    scope: RecalcScope
    majors: list[MajorRecalcReport] = field(default_factory=list)
    student_average: Optional[float] = None

    @property
    def ok(self) -> bool:
        return all(m.status != FAILED for m in self.majors)

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.kind,
            "target_id": self.scope.target_id,
            "ok": self.ok,
            "student_average": self.student_average,
            "majors": [asdict(m) for m in self.majors],
        }


class MajorLockRegistry:
    """One lock per major plus request tickets for supersession.

    Every recalculation request draws a ticket when it is made. A run that
    enters the critical section after a newer ticket has already committed is
    discarded rather than written over the fresher result.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._issued: dict[str, int] = defaultdict(int)
        self._committed: dict[str, int] = defaultdict(int)

    def lock_for(self, major_id: str) -> threading.Lock:
        with self._guard:
            if major_id not in self._locks:
                self._locks[major_id] = threading.Lock()
            return self._locks[major_id]

    def next_ticket(self, major_id: str) -> int:
        with self._guard:
            self._issued[major_id] += 1
            return self._issued[major_id]

    def is_superseded(self, major_id: str, ticket: int) -> bool:
        with self._guard:
            return self._committed[major_id] > ticket

    def mark_committed(self, major_id: str, ticket: int) -> None:
        with self._guard:
            self._committed[major_id] = max(self._committed[major_id], ticket)


def _derived_state(students: Iterable[Student]) -> dict:
    return {
        s.id: (s.average_score, bool(s.score_stale), s.score_config_version, s.rank, bool(s.is_eligible), s.unrankable_reason)
        for s in students
    }


class RecalcOrchestrator:
    def __init__(
        self,
        session_factory,
        audit_sink: Optional[AuditSink] = None,
        locks: Optional[MajorLockRegistry] = None,
        max_workers: int = RECALC_WORKERS,
    ):
        self.session_factory = session_factory
        self.audit_sink = audit_sink
        self.locks = locks or MajorLockRegistry()
        self.max_workers = max(1, max_workers)

    def recalc(self, scope: RecalcScope, actor: str = "system") -> RecalcReport:
        with self.session_factory() as db:
            config = load_engine_config(db)
        logger.info("Recalculation %s %s (config v%s) requested by %s", scope.kind, scope.target_id or "", config.version, actor)
        if scope.kind == SCOPE_STUDENT:
            return self.recalc_student(scope.target_id, actor=actor, config=config)
        if scope.kind == SCOPE_MAJOR:
            report = RecalcReport(scope=scope)
            report.majors.append(self.recalc_major(scope.target_id, actor=actor, config=config))
            return report
        return self.recalc_all(actor=actor, config=config)

    def recalc_student(self, student_id: str, actor: str = "system", config: Optional[EngineConfig] = None) -> RecalcReport:
        with self.session_factory() as db:
            student = db.get(Student, student_id)
            if not student:
                raise RecordNotFoundError("Student", student_id)
            major_id = student.major_id
            if config is None:
                config = load_engine_config(db)
        report = RecalcReport(scope=RecalcScope.student(student_id))
        # Student scope always escalates to the whole major.
        report.majors.append(self.recalc_major(major_id, actor=actor, config=config, recompute_ids={student_id}))
        with self.session_factory() as db:
            student = db.get(Student, student_id)
            report.student_average = student.average_score if student else None
        return report

    def recalc_all(self, actor: str = "system", config: Optional[EngineConfig] = None) -> RecalcReport:
        with self.session_factory() as db:
            majors = db.execute(select(Major.id, Major.name).order_by(Major.name.asc())).all()
            if config is None:
                config = load_engine_config(db)
        report = RecalcReport(scope=RecalcScope.all())
        if not majors:
            return report
        tickets = {m.id: self.locks.next_ticket(m.id) for m in majors}
        workers = min(self.max_workers, len(majors))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self.recalc_major, m.id, actor, config, tickets[m.id])
                for m in majors
            ]
            report.majors = [f.result() for f in futures]
        return report

    def recalc_major(
        self,
        major_id: str,
        actor: str = "system",
        config: Optional[EngineConfig] = None,
        ticket: Optional[int] = None,
        recompute_ids: Iterable[str] = (),
    ) -> MajorRecalcReport:
        if ticket is None:
            ticket = self.locks.next_ticket(major_id)
        report = MajorRecalcReport(major_id=major_id)
        with self.locks.lock_for(major_id):
            if self.locks.is_superseded(major_id, ticket):
                logger.info("Recalculation of major %s (ticket %s) superseded before start", major_id, ticket)
                report.status = SUPERSEDED
                return report
            settled = False
            with self.session_factory() as db:
                if config is None:
                    config = load_engine_config(db)
                report.config_version = config.version
                try:
                    self._recompute(db, major_id, config, set(recompute_ids), report)
                    if report.unchanged:
                        db.rollback()
                        settled = True
                    elif not self._claim_commit(db, major_id):
                        db.rollback()
                        report.status = SUPERSEDED
                        logger.warning("Recalculation of major %s lost its commit to a newer run", major_id)
                    else:
                        db.commit()
                        settled = True
                except RecordNotFoundError:
                    db.rollback()
                    raise
                except Exception as exc:
                    db.rollback()
                    logger.exception("Recalculation of major %s failed; prior derived state kept", major_id)
                    report.fail(exc)
            if settled:
                self.locks.mark_committed(major_id, ticket)
        self._emit(report, actor)
        return report

    def _recompute(self, db: Session, major_id: str, config: EngineConfig, recompute_ids: set[str], report: MajorRecalcReport) -> None:
        major = db.get(Major, major_id, with_for_update=True)
        if not major:
            raise RecordNotFoundError("Major", major_id)
        report.major_name = major.name
        students = db.scalars(
            select(Student).where(Student.major_id == major_id).order_by(Student.nisn.asc()).with_for_update()
        ).all()
        before = _derived_state(students)
        major_before = (major.quota_count, major.ranked_count)

        for s in students:
            if not (s.score_stale or s.id in recompute_ids or s.score_config_version != config.version):
                continue
            try:
                s.average_score = compute_student_average(db, s.id, config)
            except NoGradeDataError:
                s.average_score = None
            s.score_stale = False
            s.score_config_version = config.version
            report.recomputed += 1
        db.flush()

        ranking = rank_major(db, major_id)
        report.ranked = len(ranking.ranked)
        report.unrankable = [u.to_dict() for u in ranking.unrankable]
        report.unverified = sum(1 for s in students if s.data_status != VERIFIED)

        quota_error: Optional[QuotaConfigurationError] = None
        try:
            policy = QuotaPolicy.for_major(major, config)
            quota_count = compute_quota_count(policy, len(ranking.ranked), len(ranking.unrankable))
            eligibility = allocate(ranking.ranked, policy, unrankable_count=len(ranking.unrankable))
        except QuotaConfigurationError as exc:
            # Fail closed: ranks are still published, nobody is eligible.
            quota_error = exc
            quota_count = None
            eligibility = {}

        rank_by_id = {r.student_id: r.rank for r in ranking.ranked}
        reason_by_id = {u.student_id: u.reason for u in ranking.unrankable}
        for s in students:
            s.rank = rank_by_id.get(s.id)
            s.is_eligible = bool(eligibility.get(s.id, False)) and s.data_status == VERIFIED
            s.unrankable_reason = reason_by_id.get(s.id)
        major.quota_count = quota_count
        major.ranked_count = len(ranking.ranked)

        after = _derived_state(students)
        report.quota_count = quota_count
        report.eligible = sum(1 for s in students if s.is_eligible)
        report.changed = sum(1 for sid, state in after.items() if before.get(sid) != state)
        report.unchanged = report.changed == 0 and major_before == (quota_count, major.ranked_count)
        if quota_error is not None:
            report.fail(quota_error)
        elif report.unchanged:
            report.status = NOOP
        else:
            report.status = COMMITTED

    def _claim_commit(self, db: Session, major_id: str) -> bool:
        db.flush()
        seen = db.scalar(select(Major.recalc_version).where(Major.id == major_id))
        result = db.execute(
            update(Major)
            .where(Major.id == major_id, Major.recalc_version == seen)
            .values(recalc_version=seen + 1, last_recalc_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _emit(self, report: MajorRecalcReport, actor: str) -> None:
        if self.audit_sink is None or report.status == SUPERSEDED:
            return
        if report.unchanged:
            action = "RECALC_NOOP"
        else:
            action = {COMMITTED: "RECALC"}.get(report.status, "RECALC_FAILED")
        self.audit_sink.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="Major",
                entity_id=report.major_id,
                payload={
                    "config_version": report.config_version,
                    "quota_count": report.quota_count,
                    "ranked": report.ranked,
                    "eligible": report.eligible,
                    "changed": report.changed,
                    "status": report.status,
                    "unrankable": len(report.unrankable),
                    "error": report.error_class,
                },
            )
        )
        logger.info(
            "Major %s recalculated: %s (ranked=%s eligible=%s quota=%s changed=%s)",
            report.major_name or report.major_id,
            report.status,
            report.ranked,
            report.eligible,
            report.quota_count,
            report.changed,
        )
