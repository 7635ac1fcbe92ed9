import pytest

from approval_core.engine.policy import SECURITY_FACTOR, TrustPolicy
from approval_core.engine.types import ApprovalCategory, RiskFactor, RiskLevel, TrustRank, compare_ranks


@pytest.fixture
def policy():
    return TrustPolicy()


def _security(level):
    return RiskFactor(SECURITY_FACTOR, 0.0, level, 0.3, "")


def _other(level):
    return RiskFactor("File Impact", 0.0, level, 0.35, "")


@pytest.mark.parametrize("rank,needs", [
    (TrustRank.NOVICE, [True, True, True, True]),
    (TrustRank.LEARNING, [False, True, True, True]),
    (TrustRank.COLLABORATIVE, [False, False, True, True]),
    (TrustRank.TRUSTED, [False, False, False, True]),
    (TrustRank.AUTONOMOUS, [False, False, False, False]),
])
def test_rank_ladder(policy, rank, needs):
    levels = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]
    assert [policy.requires_approval(level, rank) for level in levels] == needs


def test_security_category_overrides_rank(policy):
    assert policy.requires_approval(RiskLevel.MEDIUM, TrustRank.AUTONOMOUS, ApprovalCategory.SECURITY)
    assert policy.requires_approval(RiskLevel.HIGH, TrustRank.TRUSTED, "security")
    assert not policy.requires_approval(RiskLevel.LOW, TrustRank.AUTONOMOUS, "security")


def test_architecture_category_overrides_rank(policy):
    assert policy.requires_approval(RiskLevel.HIGH, TrustRank.AUTONOMOUS, "architecture")
    assert policy.requires_approval(RiskLevel.CRITICAL, TrustRank.AUTONOMOUS, "architecture")
    assert not policy.requires_approval(RiskLevel.MEDIUM, TrustRank.AUTONOMOUS, "architecture")


def test_unknown_category_and_rank(policy):
    assert not policy.requires_approval(RiskLevel.LOW, TrustRank.LEARNING, "unheard-of")
    assert policy.requires_approval(RiskLevel.LOW, "bogus")
    assert not policy.can_auto_approve(RiskLevel.LOW, "bogus")


def test_never_eligible_at_critical_or_with_security_factor(policy):
    for rank in TrustRank:
        for level in RiskLevel:
            for sec_level in RiskLevel:
                factors = [_other(RiskLevel.LOW), _security(sec_level)]
                eligible = policy.auto_approval_eligible(level, factors, rank)
                if level == RiskLevel.CRITICAL or sec_level != RiskLevel.LOW:
                    assert eligible is False


@pytest.mark.parametrize("rank,low,medium,high", [
    (TrustRank.NOVICE, False, False, False),
    (TrustRank.LEARNING, True, False, False),
    (TrustRank.COLLABORATIVE, True, True, False),
    (TrustRank.TRUSTED, True, True, False),
    (TrustRank.AUTONOMOUS, True, True, False),
])
def test_eligibility_ladder(policy, rank, low, medium, high):
    factors = [_other(RiskLevel.HIGH), _security(RiskLevel.LOW)]
    assert policy.auto_approval_eligible(RiskLevel.LOW, factors, rank) is low
    assert policy.auto_approval_eligible(RiskLevel.MEDIUM, factors, rank) is medium
    assert policy.auto_approval_eligible(RiskLevel.HIGH, factors, rank) is high


def test_category_lists_partition_all_categories():
    for rank in TrustRank:
        auto = TrustPolicy.auto_approval_categories(rank)
        required = TrustPolicy.categories_requiring_approval(rank)
        assert set(auto) | set(required) == set(ApprovalCategory)
        assert not set(auto) & set(required)
    assert TrustPolicy.auto_approval_categories(TrustRank.NOVICE) == []


def test_rank_comparison():
    assert compare_ranks(TrustRank.NOVICE, TrustRank.LEARNING) == -1
    assert compare_ranks(TrustRank.TRUSTED, TrustRank.TRUSTED) == 0
    assert compare_ranks("autonomous", "collaborative") == 1
    assert TrustRank.TRUSTED.at_least(TrustRank.LEARNING)
    assert not TrustRank.NOVICE.at_least(TrustRank.LEARNING)
