import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from pydantic import ValidationError  # noqa: E402

from app.audit import DatabaseAuditSink  # noqa: E402
from app.ingest import StudentRow, import_rows, rows_from_csv  # noqa: E402
from app.models import Base, SessionLocal, engine  # noqa: E402
from app.recalc import RecalcOrchestrator, RecalcScope  # noqa: E402


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Import one-grade-per-line CSV into the eligibility DB and recalculate.")
    p.add_argument("csv_path", help="CSV with columns nisn,name,major,semester,subject,value[,birth_date,data_status]")
    p.add_argument("--dry-run", action="store_true", help="Validate rows only; nothing is written")
    p.add_argument("--no-recalc", action="store_true", help="Skip recalculation of affected majors")
    p.add_argument("--actor", default="import-cli", help="Name recorded in the audit log")
    return p.parse_args(argv)


def validate_only(rows: list[dict]) -> list[dict]:
    errors = []
    for i, raw in enumerate(rows, start=1):
        try:
            StudentRow(**raw)
        except ValidationError as exc:
            errors.append({"line": raw.get("_line", i), "error": str(exc)})
    return errors


def main(argv=None) -> int:
    args = parse_args(argv)
    text = Path(args.csv_path).read_text(encoding="utf-8-sig")
    rows = rows_from_csv(text)

    if args.dry_run:
        errors = validate_only(rows)
        print(json.dumps({"students": len(rows), "errors": errors}, indent=2))
        return 1 if errors else 0

    Base.metadata.create_all(engine)
    db = SessionLocal()
    try:
        summary = import_rows(db, rows)
    finally:
        db.close()
    result = summary.to_dict()

    if not args.no_recalc:
        orchestrator = RecalcOrchestrator(SessionLocal, audit_sink=DatabaseAuditSink(SessionLocal))
        result["recalc"] = [
            orchestrator.recalc(RecalcScope.major(major_id), actor=args.actor).to_dict()
            for major_id in sorted(summary.affected_major_ids)
        ]
    print(json.dumps(result, indent=2, default=str))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())
