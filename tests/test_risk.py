import pytest

from approval_core.engine.policy import SECURITY_FACTOR
from approval_core.engine.risk import (
    API_FACTOR,
    DATABASE_FACTOR,
    DEPENDENCY_FACTOR,
    FILE_FACTOR,
    REVERSIBILITY_FACTOR,
    RiskAssessor,
    explain_risk_level,
    score_to_level,
)
from approval_core.engine.types import (
    ApprovalCategory,
    ProposedAction,
    RiskFactor,
    RiskLevel,
    TaskContext,
    TrustRank,
)


@pytest.fixture
def assessor():
    return RiskAssessor()


def _ctx(rank=TrustRank.NOVICE, intent="update project settings"):
    return TaskContext(intent=intent, trust_rank=rank)


def test_zero_actions_scores_zero(assessor):
    result = assessor.assess(_ctx(intent="rotate the auth token"), [])
    assert result.score == 0
    assert result.overall_risk == RiskLevel.LOW
    assert all(f.score == 0 for f in result.factors)


def test_factor_order_is_fixed(assessor):
    result = assessor.assess(_ctx(), [ProposedAction("edit", files=("a.txt",))])
    assert [f.category for f in result.factors] == [
        FILE_FACTOR, SECURITY_FACTOR, REVERSIBILITY_FACTOR,
        DEPENDENCY_FACTOR, DATABASE_FACTOR, API_FACTOR,
    ]


@pytest.mark.parametrize("score,level", [
    (0.0, RiskLevel.LOW),
    (1.99, RiskLevel.LOW),
    (2.0, RiskLevel.MEDIUM),
    (3.99, RiskLevel.MEDIUM),
    (4.0, RiskLevel.HIGH),
    (5.99, RiskLevel.HIGH),
    (6.0, RiskLevel.CRITICAL),
    (42.0, RiskLevel.CRITICAL),
])
def test_thresholds(score, level):
    assert score_to_level(score) == level


def test_manifest_and_auth_config_is_high_risk_for_novice(assessor):
    actions = [
        ProposedAction("edit", files=("package.json",)),
        ProposedAction("edit", files=("auth/config.ts",)),
    ]
    for category in (None, "refactoring", "security", "architecture", "nonsense"):
        result = assessor.assess(_ctx(), actions, category)

        assert result.factor(FILE_FACTOR).risk.at_least(RiskLevel.HIGH)
        assert result.factor(SECURITY_FACTOR).risk != RiskLevel.LOW
        assert result.overall_risk.at_least(RiskLevel.HIGH)
        assert result.requires_approval
        assert not result.auto_approval_eligible


def test_documentation_change_for_learning_rank(assessor):
    actions = [ProposedAction("edit", description="Fix typo in README", files=("docs/README.md",))]
    result = assessor.assess(_ctx(TrustRank.LEARNING, "Fix typo in documentation"), actions)

    assert result.overall_risk == RiskLevel.LOW
    assert not result.requires_approval
    assert result.auto_approval_eligible


def test_missing_rank_is_treated_as_novice(assessor):
    actions = [ProposedAction("edit", files=("docs/guide.md",))]
    result = assessor.assess(TaskContext(intent="docs"), actions)
    assert result.requires_approval


def test_database_and_api_dimensions(assessor):
    actions = [
        ProposedAction("create", description="Add database migration", files=("db/migrations/001.sql",)),
        ProposedAction("create", description="Add users endpoint", files=("src/routes/users.ts",)),
    ]
    result = assessor.assess(_ctx(), actions)
    assert result.factor(DATABASE_FACTOR).score == 3.0
    assert result.factor(API_FACTOR).score == 2.0


def test_irreversible_actions_raise_reversibility(assessor):
    actions = [ProposedAction("delete", files=("tmp/a",), reversible=False) for _ in range(3)]
    result = assessor.assess(_ctx(), actions)
    factor = result.factor(REVERSIBILITY_FACTOR)
    assert factor.score == 6.0
    assert factor.risk == RiskLevel.CRITICAL
    assert result.overall_risk == RiskLevel.CRITICAL


def test_security_intent_counts_only_with_actions(assessor):
    actions = [ProposedAction("edit", files=("README.md",))]
    plain = assessor.assess(_ctx(intent="tidy readme"), actions)
    secure = assessor.assess(_ctx(intent="update password hashing"), actions)
    assert plain.factor(SECURITY_FACTOR).score == 0
    assert secure.factor(SECURITY_FACTOR).score == 2


def test_weighted_score_is_monotonic():
    base = [
        RiskFactor("a", 1.0, RiskLevel.LOW, 0.35, ""),
        RiskFactor("b", 2.0, RiskLevel.MEDIUM, 0.30, ""),
        RiskFactor("c", 0.5, RiskLevel.LOW, 0.10, ""),
    ]
    previous = RiskAssessor.weighted_score(base)
    for index in range(len(base)):
        for bump in (0.1, 1.0, 5.0):
            factors = list(base)
            f = factors[index]
            factors[index] = RiskFactor(f.category, f.score + bump, f.risk, f.weight, "")
            assert RiskAssessor.weighted_score(factors) >= previous


def test_high_factor_raises_overall_level():
    factors = [RiskFactor("x", 4.5, RiskLevel.HIGH, 0.1, "")]
    assert RiskAssessor.weighted_score(factors) < 2.0
    assert RiskAssessor.overall_level(0.45, factors) == RiskLevel.HIGH


@pytest.mark.parametrize("sub_score, level", [
    (3.99, RiskLevel.LOW),
    (4.0, RiskLevel.HIGH),
    (6.0, RiskLevel.CRITICAL),
])
def test_single_factor_floor_starts_at_high(sub_score, level):
    factors = [RiskFactor("x", sub_score, score_to_level(sub_score), 0.1, "")]
    score = RiskAssessor.weighted_score(factors)
    assert score_to_level(score) == RiskLevel.LOW
    assert RiskAssessor.overall_level(score, factors) == level


def test_recommendations_are_unique(assessor):
    actions = [ProposedAction("edit", files=("package.json", "auth/config.ts", "security/keys.py"))]
    result = assessor.assess(_ctx(), actions, ApprovalCategory.SECURITY)
    assert result.recommendations
    assert len(result.recommendations) == len(set(result.recommendations))


def test_custom_weights_override_defaults():
    assessor = RiskAssessor(weights={"api": 1.0})
    actions = [ProposedAction("edit", description="Change api route")]
    result = assessor.assess(_ctx(), actions)
    assert result.factor(API_FACTOR).weight == 1.0


def test_explanations():
    assert explain_risk_level(RiskLevel.LOW).startswith("Low risk")
    assert explain_risk_level("critical").startswith("Critical risk")
