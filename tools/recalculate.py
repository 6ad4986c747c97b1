import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from sqlalchemy import or_, select  # noqa: E402

from app.audit import DatabaseAuditSink  # noqa: E402
from app.models import Base, Major, SessionLocal, Student, engine  # noqa: E402
from app.recalc import RecalcOrchestrator, RecalcScope  # noqa: E402


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Recompute averages, ranks and eligibility.")
    target = p.add_mutually_exclusive_group()
    target.add_argument("--major", help="Major id or exact name")
    target.add_argument("--student", help="Student id or NISN")
    p.add_argument("--workers", type=int, default=None, help="Parallel majors for a full run")
    p.add_argument("--actor", default="recalc-cli", help="Name recorded in the audit log")
    return p.parse_args(argv)


def resolve_scope(args) -> RecalcScope:
    if not args.major and not args.student:
        return RecalcScope.all()
    db = SessionLocal()
    try:
        if args.major:
            major_id = db.scalar(select(Major.id).where(or_(Major.id == args.major, Major.name == args.major)))
            if not major_id:
                raise SystemExit(f"Major not found: {args.major}")
            return RecalcScope.major(major_id)
        student_id = db.scalar(select(Student.id).where(or_(Student.id == args.student, Student.nisn == args.student)))
        if not student_id:
            raise SystemExit(f"Student not found: {args.student}")
        return RecalcScope.student(student_id)
    finally:
        db.close()


def main(argv=None) -> int:
    args = parse_args(argv)
    Base.metadata.create_all(engine)
    scope = resolve_scope(args)
    kwargs = {"max_workers": args.workers} if args.workers else {}
    orchestrator = RecalcOrchestrator(SessionLocal, audit_sink=DatabaseAuditSink(SessionLocal), **kwargs)
    report = orchestrator.recalc(scope, actor=args.actor)
    print(json.dumps(report.to_dict(), indent=2, default=str))
    for m in report.majors:
        print(f"{m.major_name or m.major_id}: {m.status} ranked={m.ranked} eligible={m.eligible} quota={m.quota_count}", file=sys.stderr)
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
