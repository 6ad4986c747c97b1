from __future__ import annotations

from typing import Optional


class EligibilityError(Exception):
    status_code = 422


class ConfigurationError(EligibilityError):
    pass


class RecordNotFoundError(EligibilityError, LookupError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class NoGradeDataError(EligibilityError):
    """Raised when a student has no usable grades, so no average can exist."""

    def __init__(self, student_id: Optional[str]):
        super().__init__(f"Student {student_id} has no grade data")
        self.student_id = student_id


class InvalidTransitionError(EligibilityError):
    status_code = 409

    def __init__(self, rebuttal_id: str, current: str, action: str):
        super().__init__(f"Rebuttal {rebuttal_id} is {current}; cannot {action.lower()}")
        self.rebuttal_id = rebuttal_id
        self.current = current
        self.action = action


class DuplicateRebuttalError(EligibilityError):
    status_code = 409


class UnrankableStudentError(EligibilityError):
    """Informational: the student was left out of a ranking run.

    Collected into recalculation reports, never raised out of one.
    """

    STALE_SCORE = "STALE_SCORE"
    NO_SCORE = "NO_SCORE"

    def __init__(self, student_id: str, reason: str):
        super().__init__(f"Student {student_id} is unrankable ({reason})")
        self.student_id = student_id
        self.reason = reason

    def to_dict(self) -> dict:
        return {"student_id": self.student_id, "reason": self.reason}


class QuotaConfigurationError(EligibilityError):
    def __init__(self, major_id: str, reason: str = "no quota policy configured"):
        super().__init__(f"Major {major_id}: {reason}")
        self.major_id = major_id


class IngestionError(EligibilityError):
    def __init__(self, line: int, message: str):
        super().__init__(f"line {line}: {message}")
        self.line = line
