import pytest

from app.errors import QuotaConfigurationError
from app.quota import QuotaPolicy, allocate, compute_quota_count
from app.ranking import RankedStudent


def ranked(*scores):
    return [RankedStudent(student_id=f"s{i}", nisn=f"{i:04d}", average_score=s, rank=i) for i, s in enumerate(scores, start=1)]


class TestQuotaCount:
    @pytest.mark.parametrize(
        "policy,expected",
        [("FLOOR", 2), ("ROUND", 3), ("CEIL", 3)],
    )
    def test_rounding_policies_half(self, policy, expected):
        p = QuotaPolicy("m", quota_percentage=50, rounding_policy=policy)
        assert compute_quota_count(p, 5) == expected

    @pytest.mark.parametrize(
        "policy,expected",
        [("FLOOR", 0), ("ROUND", 1), ("CEIL", 1)],
    )
    def test_rounding_policies_fraction(self, policy, expected):
        p = QuotaPolicy("m", quota_percentage=33.3, rounding_policy=policy)
        assert compute_quota_count(p, 3) == expected

    def test_decimal_arithmetic(self):
        # 7 / 100 * 100 is 7.000000000000001 in binary floats.
        p = QuotaPolicy("m", quota_percentage=7, rounding_policy="CEIL")
        assert compute_quota_count(p, 100) == 7

    def test_override_wins_and_is_clamped(self):
        p = QuotaPolicy("m", quota_percentage=10, quota_count_override=10)
        assert compute_quota_count(p, 4) == 4
        assert compute_quota_count(QuotaPolicy("m", quota_count_override=1), 4) == 1

    def test_unrankable_excluded_from_denominator_by_default(self):
        p = QuotaPolicy("m", quota_percentage=50)
        assert compute_quota_count(p, 3, unrankable_count=3) == 1

    def test_unrankable_counted_when_enabled(self):
        p = QuotaPolicy("m", quota_percentage=50, count_unrankable=True)
        assert compute_quota_count(p, 3, unrankable_count=3) == 3
        assert compute_quota_count(p, 2, unrankable_count=6) == 2

    def test_empty_pool(self):
        assert compute_quota_count(QuotaPolicy("m", quota_percentage=100), 0) == 0

    @pytest.mark.parametrize(
        "kwargs",
        [{}, {"quota_percentage": 120}, {"quota_percentage": -1}, {"quota_count_override": -2}, {"quota_percentage": 50, "rounding_policy": "NEAREST"}],
    )
    def test_misconfigured(self, kwargs):
        with pytest.raises(QuotaConfigurationError):
            compute_quota_count(QuotaPolicy("m", **kwargs), 4)


class TestAllocate:
    def test_quota_and_threshold(self):
        decisions = allocate(ranked(90, 80, 70, 60), QuotaPolicy("m", quota_percentage=50, min_average=75))
        assert decisions == {"s1": True, "s2": True, "s3": False, "s4": False}

    def test_threshold_slots_are_not_backfilled(self):
        decisions = allocate(ranked(90, 80, 70, 60), QuotaPolicy("m", quota_percentage=75, min_average=85))
        assert decisions == {"s1": True, "s2": False, "s3": False, "s4": False}

    def test_no_threshold(self):
        decisions = allocate(ranked(50, 40), QuotaPolicy("m", quota_percentage=100))
        assert all(decisions.values())

    def test_score_equal_to_threshold_qualifies(self):
        decisions = allocate(ranked(75, 74.99), QuotaPolicy("m", quota_percentage=100, min_average=75))
        assert decisions == {"s1": True, "s2": False}

    def test_eligible_count_never_exceeds_quota(self):
        policy = QuotaPolicy("m", quota_percentage=40, rounding_policy="CEIL")
        decisions = allocate(ranked(*range(100, 80, -1)), policy)
        assert sum(decisions.values()) == compute_quota_count(policy, 20)

    def test_unconfigured_major_raises(self):
        with pytest.raises(QuotaConfigurationError):
            allocate(ranked(90), QuotaPolicy("m"))
