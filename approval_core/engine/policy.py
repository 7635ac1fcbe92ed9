import logging
from typing import Dict, Iterable, List, Optional

from .types import ApprovalCategory, RiskFactor, RiskLevel, TrustRank

logger = logging.getLogger(__name__)

SECURITY_FACTOR = "Security Impact"

# Lowest risk level that requires sign-off at each rank. None means never.
APPROVAL_FLOOR: Dict[TrustRank, Optional[RiskLevel]] = {
    TrustRank.NOVICE: RiskLevel.LOW,
    TrustRank.LEARNING: RiskLevel.MEDIUM,
    TrustRank.COLLABORATIVE: RiskLevel.HIGH,
    TrustRank.TRUSTED: RiskLevel.CRITICAL,
    TrustRank.AUTONOMOUS: None,
}

# Highest risk level each rank may auto-approve. None means nothing.
AUTO_APPROVAL_CEILING: Dict[TrustRank, Optional[RiskLevel]] = {
    TrustRank.NOVICE: None,
    TrustRank.LEARNING: RiskLevel.LOW,
    TrustRank.COLLABORATIVE: RiskLevel.MEDIUM,
    TrustRank.TRUSTED: RiskLevel.MEDIUM,
    TrustRank.AUTONOMOUS: RiskLevel.MEDIUM,
}

_ALL_CATEGORIES = [
    ApprovalCategory.ARCHITECTURE,
    ApprovalCategory.IMPLEMENTATION,
    ApprovalCategory.REFACTORING,
    ApprovalCategory.SECURITY,
    ApprovalCategory.PERFORMANCE,
]

AUTO_APPROVAL_CATEGORIES: Dict[TrustRank, List[ApprovalCategory]] = {
    TrustRank.NOVICE: [],
    TrustRank.LEARNING: [ApprovalCategory.REFACTORING],
    TrustRank.COLLABORATIVE: [ApprovalCategory.REFACTORING, ApprovalCategory.IMPLEMENTATION],
    TrustRank.TRUSTED: [
        ApprovalCategory.REFACTORING,
        ApprovalCategory.IMPLEMENTATION,
        ApprovalCategory.PERFORMANCE,
    ],
    TrustRank.AUTONOMOUS: [
        ApprovalCategory.REFACTORING,
        ApprovalCategory.IMPLEMENTATION,
        ApprovalCategory.PERFORMANCE,
        ApprovalCategory.ARCHITECTURE,
    ],
}


class TrustPolicy:
    """Decides whether a risk level needs human sign-off for a given trust rank.

    Both checks are total: every combination of inputs yields a bool and nothing
    raises. Category overrides are evaluated before the rank ladder.
    """

    def requires_approval(self,
                          risk_level: RiskLevel,
                          trust_rank: TrustRank,
                          category=None) -> bool:
        risk_level = RiskLevel(risk_level)
        category = ApprovalCategory.parse(category)

        # 1. Category overrides
        if category == ApprovalCategory.SECURITY and risk_level != RiskLevel.LOW:
            return True
        if category == ApprovalCategory.ARCHITECTURE and risk_level.at_least(RiskLevel.HIGH):
            return True

        # 2. Rank ladder
        try:
            floor = APPROVAL_FLOOR[TrustRank(trust_rank)]
        except (KeyError, ValueError):
            return True
        if floor is None:
            return False
        return risk_level.at_least(floor)

    def auto_approval_eligible(self,
                               risk_level: RiskLevel,
                               factors: Iterable[RiskFactor],
                               trust_rank: TrustRank) -> bool:
        risk_level = RiskLevel(risk_level)
        if risk_level == RiskLevel.CRITICAL:
            return False
        for factor in factors:
            if factor.category == SECURITY_FACTOR and factor.risk != RiskLevel.LOW:
                return False
        return self.can_auto_approve(risk_level, trust_rank)

    def can_auto_approve(self, risk_level: RiskLevel, trust_rank: TrustRank) -> bool:
        """Rank ladder only, without looking at individual factors."""
        risk_level = RiskLevel(risk_level)
        if risk_level == RiskLevel.CRITICAL:
            return False
        try:
            ceiling = AUTO_APPROVAL_CEILING[TrustRank(trust_rank)]
        except (KeyError, ValueError):
            return False
        if ceiling is None:
            return False
        return ceiling.at_least(risk_level)

    @staticmethod
    def auto_approval_categories(trust_rank: TrustRank) -> List[ApprovalCategory]:
        return list(AUTO_APPROVAL_CATEGORIES[TrustRank(trust_rank)])

    @staticmethod
    def categories_requiring_approval(trust_rank: TrustRank) -> List[ApprovalCategory]:
        allowed = AUTO_APPROVAL_CATEGORIES[TrustRank(trust_rank)]
        return [c for c in _ALL_CATEGORIES if c not in allowed]
