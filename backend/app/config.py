from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from app.errors import ConfigurationError


DATABASE_URL = os.getenv("ELIGIBILITY_DATABASE_URL", "sqlite:///./eligibility.db")
SESSION_SECRET = os.getenv("ELIGIBILITY_SESSION_SECRET", "change-me")
ADMIN_USERNAME = os.getenv("ELIGIBILITY_ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ELIGIBILITY_ADMIN_PASSWORD", "admin")
RECALC_WORKERS = int(os.getenv("ELIGIBILITY_RECALC_WORKERS", "4"))
SQLITE_TIMEOUT = float(os.getenv("ELIGIBILITY_SQLITE_TIMEOUT", "30"))
LOG_LEVEL = os.getenv("ELIGIBILITY_LOG_LEVEL", "INFO").upper()

MAX_SEMESTER = 12
DEFAULT_SEMESTER_WEIGHTS = {1: 1.0, 2: 1.0, 3: 1.0, 4: 1.0, 5: 1.0}
ROUNDING_POLICIES = ("FLOOR", "ROUND", "CEIL")
DEFAULT_ROUNDING_POLICY = "FLOOR"


def validate_semester_weights(raw: Mapping) -> dict[int, float]:
    weights: dict[int, float] = {}
    for key, value in raw.items():
        try:
            semester = int(key)
            weight = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid semester weight {key!r}={value!r}") from exc
        if semester < 1 or semester > MAX_SEMESTER:
            raise ConfigurationError(f"semester must be between 1 and {MAX_SEMESTER}, got {semester}")
        if weight < 0:
            raise ConfigurationError(f"weight for semester {semester} must be >= 0")
        weights[semester] = weight
    if not weights:
        raise ConfigurationError("at least one semester weight is required")
    if not any(w > 0 for w in weights.values()):
        raise ConfigurationError("at least one semester weight must be positive")
    return dict(sorted(weights.items()))


def validate_rounding_policy(raw: Optional[str]) -> str:
    policy = (raw or DEFAULT_ROUNDING_POLICY).strip().upper()
    if policy not in ROUNDING_POLICIES:
        raise ConfigurationError(f"rounding_policy must be one of {', '.join(ROUNDING_POLICIES)}")
    return policy


@dataclass(frozen=True)
class EngineConfig:
    """Scoring and quota settings, loaded once per recalculation invocation.

    Semesters missing from ``semester_weights`` fall back to ``default_weight``.
    """

    version: int = 0
    semester_weights: tuple[tuple[int, float], ...] = field(
        default_factory=lambda: tuple(sorted(DEFAULT_SEMESTER_WEIGHTS.items()))
    )
    rounding_policy: str = DEFAULT_ROUNDING_POLICY
    count_unrankable_in_quota: bool = False
    default_weight: float = 1.0

    def weight_for(self, semester: int) -> float:
        for sem, weight in self.semester_weights:
            if sem == semester:
                return weight
        return self.default_weight

    def weights_dict(self) -> dict[int, float]:
        return dict(self.semester_weights)

    @classmethod
    def from_values(
        cls,
        version: int,
        semester_weights: Mapping,
        rounding_policy: Optional[str] = None,
        count_unrankable_in_quota: bool = False,
    ) -> "EngineConfig":
        weights = validate_semester_weights(semester_weights)
        return cls(
            version=version,
            semester_weights=tuple(weights.items()),
            rounding_policy=validate_rounding_policy(rounding_policy),
            count_unrankable_in_quota=bool(count_unrankable_in_quota),
        )

    @classmethod
    def from_record(cls, record) -> "EngineConfig":
        return cls.from_values(
            record.version,
            json.loads(record.semester_weights_json or "{}"),
            record.rounding_policy,
            record.count_unrankable_in_quota,
        )
