import importlib.util
import json
from pathlib import Path

from sqlalchemy import select

from app.models import Major, SessionLocal

TOOLS = Path(__file__).resolve().parents[1] / "tools"


def load_tool(name):
    spec = importlib.util.spec_from_file_location(name, TOOLS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


CSV_TEXT = "nisn,name,major,semester,subject,value,data_status\n0001,Ani,RPL,1,MTK,90,VERIFIED\n0002,Budi,RPL,1,MTK,70,VERIFIED\n"


class TestImportGradesCsv:
    def test_dry_run_writes_nothing(self, tmp_path, capsys):
        path = tmp_path / "grades.csv"
        path.write_text(CSV_TEXT + "0003,Cici,RPL,1,MTK,101,\n", encoding="utf-8")
        assert load_tool("import_grades_csv").main([str(path), "--dry-run"]) == 1
        out = json.loads(capsys.readouterr().out)
        assert out["students"] == 3 and len(out["errors"]) == 1
        with SessionLocal() as db:
            assert db.scalars(select(Major)).all() == []

    def test_import_then_recalculate(self, tmp_path, capsys):
        path = tmp_path / "grades.csv"
        path.write_text(CSV_TEXT, encoding="utf-8")
        assert load_tool("import_grades_csv").main([str(path)]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["students_created"] == 2
        assert out["recalc"][0]["ok"] is False

        recalculate = load_tool("recalculate")
        assert recalculate.main(["--major", "RPL"]) == 1
        capsys.readouterr()

        with SessionLocal() as db:
            db.scalar(select(Major).where(Major.name == "RPL")).quota_percentage = 50.0
            db.commit()
        assert recalculate.main(["--major", "RPL"]) == 0
        report = json.loads(capsys.readouterr().out)
        assert report["majors"][0]["eligible"] == 1
        assert recalculate.main(["--student", "0002"]) == 0
        assert json.loads(capsys.readouterr().out)["student_average"] == 70.0
