from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from app.config import DEFAULT_ROUNDING_POLICY, EngineConfig
from app.errors import QuotaConfigurationError
from app.ranking import RankedStudent


ROUNDING_MODES = {
    "FLOOR": ROUND_FLOOR,
    "ROUND": ROUND_HALF_UP,
    "CEIL": ROUND_CEILING,
}


@dataclass(frozen=True)
class QuotaPolicy:
    major_id: str
    quota_percentage: Optional[float] = None
    quota_count_override: Optional[int] = None
    min_average: Optional[float] = None
    rounding_policy: str = DEFAULT_ROUNDING_POLICY
    count_unrankable: bool = False

    @classmethod
    def for_major(cls, major, config: EngineConfig) -> "QuotaPolicy":
        return cls(
            major_id=major.id,
            quota_percentage=major.quota_percentage,
            quota_count_override=major.quota_count_override,
            min_average=major.min_average,
            rounding_policy=config.rounding_policy,
            count_unrankable=config.count_unrankable_in_quota,
        )

    def ensure_configured(self) -> None:
        if self.quota_percentage is None and self.quota_count_override is None:
            raise QuotaConfigurationError(self.major_id)
        if self.quota_percentage is not None and not 0 <= self.quota_percentage <= 100:
            raise QuotaConfigurationError(self.major_id, f"quota percentage {self.quota_percentage} outside 0-100")
        if self.quota_count_override is not None and self.quota_count_override < 0:
            raise QuotaConfigurationError(self.major_id, "quota count cannot be negative")
        if self.rounding_policy not in ROUNDING_MODES:
            raise QuotaConfigurationError(self.major_id, f"unknown rounding policy {self.rounding_policy}")


def compute_quota_count(policy: QuotaPolicy, ranked_count: int, unrankable_count: int = 0) -> int:
    """Number of eligible slots for a major, never more than the ranked pool."""
    policy.ensure_configured()
    if policy.quota_count_override is not None:
        count = policy.quota_count_override
    else:
        denominator = ranked_count + (unrankable_count if policy.count_unrankable else 0)
        raw = Decimal(str(policy.quota_percentage)) * denominator / Decimal(100)
        count = int(raw.to_integral_value(rounding=ROUNDING_MODES[policy.rounding_policy]))
    return max(0, min(count, ranked_count))


def allocate(ranked: Iterable[RankedStudent], policy: QuotaPolicy, unrankable_count: int = 0) -> dict[str, bool]:
    """Eligibility for every ranked student, recomputed from scratch.

    A student is eligible iff its rank is within the quota and its score meets
    the threshold. Slots freed by the threshold are left empty; lower-ranked
    students are never pulled up to fill them.
    """
    ranked = list(ranked)
    quota_count = compute_quota_count(policy, len(ranked), unrankable_count)
    decisions: dict[str, bool] = {}
    for r in ranked:
        within_quota = r.rank <= quota_count
        meets_floor = policy.min_average is None or r.average_score >= policy.min_average
        decisions[r.student_id] = within_quota and meets_floor
    return decisions
