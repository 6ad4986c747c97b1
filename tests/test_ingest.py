from datetime import date

import pytest
from sqlalchemy import select

from app.errors import IngestionError
from app.ingest import import_rows, rows_from_csv
from app.models import VERIFIED, Grade, Major, SessionLocal, Student

CSV_TEXT = """nisn,name,major,semester,subject,value,birth_date,data_status
0001,Ani,RPL,1,Matematika,90,2007-05-01,verified
0001,Ani,RPL,2,matematika ,85,2007-05-01,verified
0002,Budi,TKJ,1,Matematika,77,,
"""


def run_import(rows):
    with SessionLocal() as db:
        return import_rows(db, rows)


def row(nisn="0001", major="RPL", grades=None, **extra):
    return {"nisn": nisn, "name": f"Student {nisn}", "major": major, "grades": grades or [], **extra}


class TestRowsFromCsv:
    def test_groups_lines_by_student(self):
        rows = rows_from_csv(CSV_TEXT)
        assert [r["nisn"] for r in rows] == ["0001", "0002"]
        assert rows[0]["_line"] == 2 and rows[1]["_line"] == 4
        assert len(rows[0]["grades"]) == 2
        assert rows[1]["birth_date"] is None

    def test_missing_columns(self):
        with pytest.raises(IngestionError) as exc:
            rows_from_csv("nisn,name,semester\n1,A,1\n")
        assert "major" in str(exc.value)
        assert exc.value.line == 1


class TestImportRows:
    def test_creates_majors_students_and_grades(self):
        summary = run_import(rows_from_csv(CSV_TEXT))
        assert (summary.students_created, summary.grades_written) == (2, 3)
        assert sorted(summary.majors_created) == ["RPL", "TKJ"]
        assert len(summary.affected_major_ids) == 2
        with SessionLocal() as db:
            ani = db.scalar(select(Student).where(Student.nisn == "0001"))
            assert ani.data_status == VERIFIED
            assert ani.birth_date == date(2007, 5, 1)
            assert ani.score_stale is True
            subjects = db.scalars(select(Grade.subject).where(Grade.student_id == ani.id)).all()
            assert set(subjects) == {"MATEMATIKA"}
            rpl = db.scalar(select(Major).where(Major.name == "RPL"))
            assert rpl.quota_percentage is None and rpl.quota_count_override is None

    def test_invalid_rows_are_reported_not_fatal(self):
        summary = run_import(
            [
                row("0001", grades=[{"semester": 1, "subject": "MATH", "value": 90}]),
                {**row("0002", grades=[{"semester": 1, "subject": "MATH", "value": 150}]), "_line": 7},
                row("0003", grades=[{"semester": 13, "subject": "MATH", "value": 80}]),
            ]
        )
        assert summary.students_created == 1
        assert [e["line"] for e in summary.errors] == [7, 3]

    def test_blank_subject_rejected(self):
        summary = run_import([row("0001", grades=[{"semester": 1, "subject": "   ", "value": 80}])])
        assert summary.students_created == 0
        assert [e["line"] for e in summary.errors] == [1]

    def test_reimport_is_idempotent(self):
        rows = [row("0001", grades=[{"semester": 1, "subject": "MATH", "value": 90}])]
        run_import(rows)
        with SessionLocal() as db:
            student = db.scalar(select(Student).where(Student.nisn == "0001"))
            student.score_stale = False
            db.commit()
        summary = run_import(rows)
        assert (summary.students_created, summary.students_updated, summary.grades_written) == (0, 1, 0)
        with SessionLocal() as db:
            assert db.scalar(select(Student.score_stale).where(Student.nisn == "0001")) is False

    def test_changed_grade_marks_student_stale(self):
        run_import([row("0001", grades=[{"semester": 1, "subject": "MATH", "value": 90}])])
        summary = run_import([row("0001", grades=[{"semester": 1, "subject": "MATH", "value": 92}])])
        assert summary.grades_written == 1
        with SessionLocal() as db:
            values = db.scalars(select(Grade.value)).all()
        assert values == [92.0]

    def test_major_change_affects_both_majors(self):
        first = run_import([row("0001", major="RPL")])
        second = run_import([row("0001", major="TKJ")])
        assert first.affected_major_ids < second.affected_major_ids
        assert len(second.affected_major_ids) == 2
