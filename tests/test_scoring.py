import pytest

from app.config import EngineConfig, validate_rounding_policy, validate_semester_weights
from app.errors import ConfigurationError, NoGradeDataError, RecordNotFoundError
from app.models import SessionLocal
from app.scoring import (
    GradeValue,
    compute_average,
    compute_student_average,
    load_engine_config,
    normalize_subject,
    save_engine_config,
)


class TestNormalizeSubject:
    def test_collapses_whitespace_and_case(self):
        assert normalize_subject("  bahasa   indonesia ") == "BAHASA INDONESIA"

    def test_empty(self):
        assert normalize_subject(None) == ""


class TestComputeAverage:
    def test_single_semester_mean(self):
        grades = [GradeValue(1, "MATH", 80), GradeValue(1, "ENGLISH", 90)]
        assert compute_average(grades, EngineConfig()) == pytest.approx(85.0)

    def test_semester_weights_applied(self):
        config = EngineConfig.from_values(1, {1: 1, 2: 3})
        grades = [GradeValue(1, "MATH", 60), GradeValue(2, "MATH", 80)]
        assert compute_average(grades, config) == pytest.approx(75.0)

    def test_missing_semester_not_penalised(self):
        grades = [GradeValue(1, "MATH", 70), GradeValue(2, "MATH", 90)]
        assert compute_average(grades, EngineConfig()) == pytest.approx(80.0)

    def test_unconfigured_semester_uses_default_weight(self):
        config = EngineConfig.from_values(1, {1: 2})
        grades = [GradeValue(1, "MATH", 90), GradeValue(6, "MATH", 60)]
        assert compute_average(grades, config) == pytest.approx(80.0)

    def test_fractional_weights_keep_exact_value(self):
        config = EngineConfig.from_values(1, {1: 0.1, 2: 0.1, 3: 0.1})
        grades = [GradeValue(s, "MATH", 75) for s in (1, 2, 3)]
        assert compute_average(grades, config) == 75.0

    def test_last_occurrence_wins(self):
        grades = [GradeValue(1, "math", 60), GradeValue(1, " Math ", 90)]
        assert compute_average(grades, EngineConfig()) == pytest.approx(90.0)

    def test_no_grades(self):
        with pytest.raises(NoGradeDataError):
            compute_average([], EngineConfig(), student_id="s1")

    def test_only_zero_weight_semesters(self):
        config = EngineConfig.from_values(1, {1: 0, 2: 1})
        with pytest.raises(NoGradeDataError):
            compute_average([GradeValue(1, "MATH", 88)], config)

    def test_order_independent(self):
        grades = [GradeValue(s, subj, v) for s, subj, v in [(1, "A", 71.3), (2, "B", 88.9), (1, "C", 64.1), (3, "A", 90.7)]]
        config = EngineConfig()
        assert compute_average(grades, config) == compute_average(list(reversed(grades)), config)


class TestSemesterWeightValidation:
    def test_sorted_and_coerced(self):
        assert validate_semester_weights({"3": "2", 1: 1}) == {1: 1.0, 3: 2.0}

    @pytest.mark.parametrize(
        "raw",
        [{}, {1: -1}, {0: 1}, {13: 1}, {1: 0, 2: 0}, {"x": 1}],
    )
    def test_rejected(self, raw):
        with pytest.raises(ConfigurationError):
            validate_semester_weights(raw)

    def test_rounding_policy(self):
        assert validate_rounding_policy(" ceil ") == "CEIL"
        assert validate_rounding_policy(None) == "FLOOR"
        with pytest.raises(ConfigurationError):
            validate_rounding_policy("BANKERS")


class TestStoredConfig:
    def test_defaults_without_record(self):
        with SessionLocal() as db:
            config = load_engine_config(db)
        assert config.version == 0
        assert config.rounding_policy == "FLOOR"

    def test_versions_append(self):
        with SessionLocal() as db:
            first = save_engine_config(db, {1: 1, 2: 1}, "FLOOR", False, actor="admin")
            second = save_engine_config(db, {1: 1, 2: 2}, "ROUND", True, actor="admin")
            assert (first.version, second.version) == (1, 2)
            config = load_engine_config(db)
        assert config.version == 2
        assert config.weights_dict() == {1: 1.0, 2: 2.0}
        assert config.rounding_policy == "ROUND"
        assert config.count_unrankable_in_quota is True


class TestStudentAverage:
    def test_from_database(self, factory):
        major_id = factory.major()
        sid = factory.student(major_id, "0100", {(1, "MATH"): 80.0, (1, "PHYSICS"): 70.0, (2, "MATH"): 90.0})
        with SessionLocal() as db:
            assert compute_student_average(db, sid, EngineConfig()) == pytest.approx(82.5)

    def test_unknown_student(self):
        with SessionLocal() as db:
            with pytest.raises(RecordNotFoundError):
                compute_student_average(db, "missing", EngineConfig())
