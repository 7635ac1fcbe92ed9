import logging
import re
from typing import Dict, List, Optional, Sequence

from .policy import SECURITY_FACTOR, TrustPolicy
from .types import (
    ProposedAction,
    RiskAssessmentResult,
    RiskFactor,
    RiskLevel,
    TaskContext,
    TrustRank,
)

logger = logging.getLogger(__name__)

FILE_FACTOR = "File Impact"
REVERSIBILITY_FACTOR = "Reversibility"
DEPENDENCY_FACTOR = "Dependency Changes"
DATABASE_FACTOR = "Database Impact"
API_FACTOR = "API Impact"

RISK_WEIGHTS: Dict[str, float] = {
    "file_count": 0.10,
    "critical_files": 0.25,
    "security": 0.30,
    "database": 0.25,
    "api": 0.20,
    "dependency": 0.15,
    "reversibility": 0.10,
}

# Lower bounds, checked highest first.
RISK_THRESHOLDS = [
    (6.0, RiskLevel.CRITICAL),
    (4.0, RiskLevel.HIGH),
    (2.0, RiskLevel.MEDIUM),
]

CRITICAL_FILE_PATTERNS = [
    re.compile(r"package\.json$"),
    re.compile(r"tsconfig\.json$"),
    re.compile(r"\.env$"),
    re.compile(r"database.*migration", re.I),
    re.compile(r"auth.*config", re.I),
    re.compile(r"security", re.I),
    re.compile(r"config.*prod", re.I),
    re.compile(r"docker.*compose", re.I),
    re.compile(r"k8s.*yaml$"),
    re.compile(r"helm.*yaml$"),
]

SECURITY_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"password", r"secret", r"token", r"auth", r"security", r"crypto",
        r"encrypt", r"permission", r"access.*control", r"oauth", r"jwt",
        r"ssl", r"tls",
    )
]

DEPENDENCY_PATTERN = re.compile(
    r"package\.json$|requirements\.txt$|cargo\.toml$|go\.mod$|pyproject\.toml$|pipfile$",
    re.I,
)
DATABASE_TEXT_PATTERN = re.compile(r"database|migration|schema|sql", re.I)
DATABASE_FILE_PATTERN = re.compile(r"migration|schema|\.sql$", re.I)
API_TEXT_PATTERN = re.compile(r"api|endpoint|route|controller", re.I)
API_FILE_PATTERN = re.compile(r"api|route|controller", re.I)

LEVEL_RECOMMENDATIONS = {
    RiskLevel.CRITICAL: [
        "Consider breaking this into smaller, safer changes",
        "Perform comprehensive testing in staging environment",
        "Prepare rollback plan before proceeding",
    ],
    RiskLevel.HIGH: [
        "Test thoroughly before deployment",
        "Consider phased rollout approach",
    ],
    RiskLevel.MEDIUM: [
        "Add regression tests for affected components",
    ],
}

FACTOR_RECOMMENDATIONS = {
    SECURITY_FACTOR: [
        "Perform security review before implementation",
        "Validate all input and sanitize outputs",
    ],
    DATABASE_FACTOR: [
        "Create database backup before applying changes",
        "Test migration scripts in development environment",
    ],
    API_FACTOR: [
        "Maintain backward compatibility when possible",
        "Update API documentation and client libraries",
    ],
    FILE_FACTOR: [
        "Review all critical file changes carefully",
    ],
}

EXPLANATIONS = {
    RiskLevel.LOW: "Low risk - minimal impact, easily reversible changes",
    RiskLevel.MEDIUM: "Medium risk - moderate impact, requires testing",
    RiskLevel.HIGH: "High risk - significant impact, requires careful review",
    RiskLevel.CRITICAL: "Critical risk - major impact, requires thorough planning and approval",
}


def score_to_level(score: float) -> RiskLevel:
    for threshold, level in RISK_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.LOW


def explain_risk_level(level: RiskLevel) -> str:
    return EXPLANATIONS.get(RiskLevel(level), "Unknown risk level")


def _matches_any(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


class RiskAssessor:
    """Scores proposed actions across six fixed dimensions.

    Each dimension produces a sub-score from pattern matches over action
    descriptions and affected paths. The overall score is the weighted sum of
    the sub-scores. The overall level is the level of that sum, raised to the
    level of any single dimension that is high or critical on its own.
    """

    def __init__(self, policy: Optional[TrustPolicy] = None, weights: Optional[Dict[str, float]] = None):
        self.policy = policy or TrustPolicy()
        self.weights = dict(RISK_WEIGHTS)
        if weights:
            self.weights.update(weights)

    def assess(self,
               context: TaskContext,
               actions: Sequence[ProposedAction],
               category=None) -> RiskAssessmentResult:
        actions = list(actions)
        trust_rank = context.trust_rank or TrustRank.NOVICE

        factors = (
            self.file_impact(actions),
            self.security_impact(context, actions),
            self.reversibility(actions),
            self.dependency_impact(actions),
            self.database_impact(actions),
            self.api_impact(actions),
        )

        score = self.weighted_score(factors)
        overall = self.overall_level(score, factors)

        requires_approval = self.policy.requires_approval(overall, trust_rank, category)
        eligible = self.policy.auto_approval_eligible(overall, factors, trust_rank)

        logger.debug(
            "Risk assessment: score=%.2f level=%s factors=%s",
            score, overall.value, [(f.category, f.score) for f in factors],
        )

        return RiskAssessmentResult(
            overall_risk=overall,
            score=score,
            factors=factors,
            recommendations=tuple(self.recommendations(factors, overall)),
            requires_approval=requires_approval,
            auto_approval_eligible=eligible,
        )

    @staticmethod
    def weighted_score(factors: Sequence[RiskFactor]) -> float:
        return sum(f.score * f.weight for f in factors)

    @staticmethod
    def overall_level(score: float, factors: Sequence[RiskFactor]) -> RiskLevel:
        """Level of the weighted score, raised to any single factor at high or critical.

        A dimension whose own sub-score reaches 4.0 therefore sets the floor for
        the whole assessment, however low the weighted sum is.
        """
        level = score_to_level(score)
        for factor in factors:
            if factor.risk.at_least(RiskLevel.HIGH):
                level = RiskLevel.highest(level, factor.risk)
        return level

    def _factor(self, category: str, score: float, weight: float, description: str) -> RiskFactor:
        return RiskFactor(
            category=category,
            score=score,
            risk=score_to_level(score),
            weight=weight,
            description=description,
        )

    def file_impact(self, actions: List[ProposedAction]) -> RiskFactor:
        files = [f for a in actions for f in a.files]
        critical = [f for f in files if _matches_any(CRITICAL_FILE_PATTERNS, f)]
        score = min(len(files) * 0.2, 3.0) + len(critical) * 2
        return self._factor(
            FILE_FACTOR, score,
            self.weights["file_count"] + self.weights["critical_files"],
            f"Modifying {len(files)} files ({len(critical)} critical)",
        )

    def security_impact(self, context: TaskContext, actions: List[ProposedAction]) -> RiskFactor:
        score = 0.0
        indicators = []

        # intent alone never scores: no actions means nothing to assess
        if actions and _matches_any(SECURITY_PATTERNS, context.intent or ""):
            score += 2
            indicators.append("security-related request")

        risky_actions = [a for a in actions if a.description and _matches_any(SECURITY_PATTERNS, a.description)]
        if risky_actions:
            score += len(risky_actions) * 1.5
            indicators.append(f"{len(risky_actions)} security-related actions")

        risky_files = [f for a in actions for f in a.files if _matches_any(SECURITY_PATTERNS, f)]
        if risky_files:
            score += len(risky_files) * 2
            indicators.append(f"{len(risky_files)} security-sensitive files")

        if indicators:
            description = f"Security-sensitive changes detected: {', '.join(indicators)}"
        else:
            description = "No significant security impact detected"
        return self._factor(SECURITY_FACTOR, score, self.weights["security"], description)

    def reversibility(self, actions: List[ProposedAction]) -> RiskFactor:
        irreversible = [a for a in actions if not a.reversible]
        return self._factor(
            REVERSIBILITY_FACTOR, len(irreversible) * 2.0, self.weights["reversibility"],
            f"{len(irreversible)} irreversible actions",
        )

    def dependency_impact(self, actions: List[ProposedAction]) -> RiskFactor:
        manifests = [f for a in actions for f in a.files if DEPENDENCY_PATTERN.search(f)]
        return self._factor(
            DEPENDENCY_FACTOR, len(manifests) * 1.5, self.weights["dependency"],
            f"{len(manifests)} dependency files affected",
        )

    def database_impact(self, actions: List[ProposedAction]) -> RiskFactor:
        hits = [
            a for a in actions
            if DATABASE_TEXT_PATTERN.search(a.description or "")
            or any(DATABASE_FILE_PATTERN.search(f) for f in a.files)
        ]
        return self._factor(
            DATABASE_FACTOR, len(hits) * 3.0, self.weights["database"],
            f"{len(hits)} database-related changes",
        )

    def api_impact(self, actions: List[ProposedAction]) -> RiskFactor:
        hits = [
            a for a in actions
            if API_TEXT_PATTERN.search(a.description or "")
            or any(API_FILE_PATTERN.search(f) for f in a.files)
        ]
        return self._factor(
            API_FACTOR, len(hits) * 2.0, self.weights["api"],
            f"{len(hits)} API-related changes",
        )

    @staticmethod
    def recommendations(factors: Sequence[RiskFactor], overall: RiskLevel) -> List[str]:
        result = list(LEVEL_RECOMMENDATIONS.get(overall, []))
        for factor in factors:
            if factor.risk.at_least(RiskLevel.HIGH):
                result.extend(FACTOR_RECOMMENDATIONS.get(factor.category, []))
        # de-duplicate, keep order
        return list(dict.fromkeys(result))
