import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .themes import ApprovalTheme, ThemeRegistry
from .types import ApprovalCategory, RiskLevel, TaskContext, TrustRank

logger = logging.getLogger(__name__)

_A = ApprovalCategory

# (keywords, category, weight)
CATEGORY_PATTERNS: List[Tuple[Tuple[str, ...], ApprovalCategory, float]] = [
    (("api", "endpoint", "route", "service", "microservice", "architecture",
      "design", "schema", "database", "migration"), _A.ARCHITECTURE, 1.0),
    (("new service", "create service", "add service", "service design"), _A.ARCHITECTURE, 1.2),
    (("implement", "add feature", "create function", "build", "develop", "code"), _A.IMPLEMENTATION, 0.8),
    (("bug fix", "fix bug", "resolve issue", "patch", "hotfix"), _A.IMPLEMENTATION, 0.6),
    (("integrate", "integration", "third party", "external api", "library"), _A.IMPLEMENTATION, 1.0),
    (("refactor", "optimize", "improve", "restructure", "cleanup", "reorganize"), _A.REFACTORING, 0.7),
    (("performance", "speed up", "faster", "optimize performance", "bottleneck"), _A.REFACTORING, 0.8),
    (("update dependencies", "upgrade", "dependency update", "package update"), _A.REFACTORING, 0.9),
    (("security", "auth", "authentication", "authorization", "permission",
      "encrypt", "decrypt"), _A.SECURITY, 1.5),
    (("password", "token", "jwt", "oauth", "ssl", "tls", "certificate"), _A.SECURITY, 1.4),
    (("vulnerability", "security fix", "patch security", "exploit", "xss",
      "sql injection"), _A.SECURITY, 1.6),
    (("cache", "caching", "redis", "memcached"), _A.PERFORMANCE, 0.8),
    (("scale", "scaling", "load balancer", "horizontal scaling"), _A.PERFORMANCE, 1.1),
    (("query optimization", "index", "performance tuning"), _A.PERFORMANCE, 0.9),
]

RISK_KEYWORDS: Dict[RiskLevel, Tuple[str, ...]] = {
    RiskLevel.CRITICAL: ("critical", "production", "live", "security", "authentication",
                         "database schema", "migration"),
    RiskLevel.HIGH: ("api", "integration", "service", "architecture", "breaking change", "major"),
    RiskLevel.MEDIUM: ("feature", "enhancement", "refactor", "optimization", "update"),
    RiskLevel.LOW: ("bug fix", "typo", "comment", "documentation", "style", "formatting"),
}
RISK_KEYWORD_POINTS = {RiskLevel.CRITICAL: 4, RiskLevel.HIGH: 3, RiskLevel.MEDIUM: 2, RiskLevel.LOW: 1}
URGENCY_KEYWORDS = ("urgent", "emergency", "asap", "immediately", "hotfix", "quick fix")


@dataclass
class AnalysisResult:
    category: Optional[ApprovalCategory]
    confidence: float
    risk_hint: RiskLevel
    themes: List[ApprovalTheme] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)

    @property
    def primary_theme_id(self) -> str:
        return self.themes[0].id if self.themes else "unknown"


class ContextAnalyzer:
    """Keyword heuristic mapping a task's intent to a category, risk hint and themes.

    Any object with an analyze(context) method returning an AnalysisResult can
    stand in for this class.
    """

    def __init__(self, themes: Optional[ThemeRegistry] = None):
        self.themes = themes or ThemeRegistry()

    def analyze(self, context: TaskContext) -> AnalysisResult:
        text = (context.intent or "").lower()
        category, confidence = self.detect_category(text)
        risk_hint, risk_terms = self.detect_risk(text)
        themes = self.recommend_themes(category, risk_hint, context.trust_rank)

        reasoning = []
        if category is None:
            reasoning.append("No category keywords found")
        else:
            reasoning.append(f"{round(confidence * 100)}% confidence this is a {category.value} task")
        if risk_terms:
            reasoning.append(f"Risk indicators: {', '.join(risk_terms)}")
        reasoning.append(f"{len(themes)} relevant approval theme(s) identified")

        return AnalysisResult(
            category=category,
            confidence=confidence,
            risk_hint=risk_hint,
            themes=themes,
            reasoning=reasoning,
        )

    @staticmethod
    def detect_category(text: str) -> Tuple[Optional[ApprovalCategory], float]:
        scores: Dict[ApprovalCategory, float] = {c: 0.0 for c in ApprovalCategory}
        for keywords, category, weight in CATEGORY_PATTERNS:
            for keyword in keywords:
                if keyword in text:
                    scores[category] += weight

        total = sum(scores.values())
        if total == 0:
            return None, 0.0
        top = max(scores, key=lambda c: scores[c])
        return top, min(scores[top] / total, 1.0)

    @staticmethod
    def detect_risk(text: str) -> Tuple[RiskLevel, List[str]]:
        points = 0
        terms = []
        for level, keywords in RISK_KEYWORDS.items():
            for keyword in keywords:
                if keyword in text:
                    points += RISK_KEYWORD_POINTS[level]
                    terms.append(f"{level.value}: {keyword}")
        if any(k in text for k in URGENCY_KEYWORDS):
            points += 2
            terms.append("urgency indicator detected")

        if points >= 8:
            return RiskLevel.CRITICAL, terms
        if points >= 5:
            return RiskLevel.HIGH, terms
        if points >= 3:
            return RiskLevel.MEDIUM, terms
        return RiskLevel.LOW, terms

    def recommend_themes(self,
                         category: Optional[ApprovalCategory],
                         risk_hint: RiskLevel,
                         trust_rank: Optional[TrustRank]) -> List[ApprovalTheme]:
        if category is None:
            return []
        themes = self.themes.by_category(category)
        if risk_hint == RiskLevel.CRITICAL:
            themes = [t for t in themes if t.impact.at_least(RiskLevel.HIGH)]

        rank = trust_rank or TrustRank.NOVICE
        if rank == TrustRank.NOVICE:
            return themes
        if rank == TrustRank.AUTONOMOUS:
            return [t for t in themes if t.impact == RiskLevel.CRITICAL]
        return [
            t for t in themes
            if t.impact == RiskLevel.CRITICAL
            or (t.impact == RiskLevel.HIGH and rank != TrustRank.TRUSTED)
            or (t.requires_confirmation and rank == TrustRank.LEARNING)
        ]
