import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .types import ApprovalCategory, RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalTheme:
    id: str
    category: ApprovalCategory
    title: str
    description: str
    impact: RiskLevel
    requires_confirmation: bool = True
    estimated_time: str = "Unknown"
    dependencies: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "impact": self.impact.value,
            "requires_confirmation": self.requires_confirmation,
            "estimated_time": self.estimated_time,
            "dependencies": list(self.dependencies),
        }


_A = ApprovalCategory
_R = RiskLevel

DEFAULT_THEMES = [
    ApprovalTheme("arch-new-service", _A.ARCHITECTURE, "New Service Creation",
                  "Creating a new microservice or major architectural component", _R.HIGH,
                  True, "2-4 hours", ("Database schema", "API gateway configuration", "Service discovery")),
    ApprovalTheme("arch-database-schema", _A.ARCHITECTURE, "Database Schema Changes",
                  "Modifying database structure, tables, or relationships", _R.CRITICAL,
                  True, "1-3 hours", ("Database migrations", "ORM updates", "Related service updates")),
    ApprovalTheme("arch-api-design", _A.ARCHITECTURE, "API Interface Design",
                  "Creating or modifying public API endpoints and contracts", _R.HIGH,
                  True, "1-2 hours", ("Client applications", "API documentation", "Version compatibility")),
    ApprovalTheme("impl-feature-addition", _A.IMPLEMENTATION, "New Feature Implementation",
                  "Adding new functionality to existing codebase", _R.MEDIUM,
                  True, "30 minutes - 2 hours", ("Existing modules", "Configuration updates")),
    ApprovalTheme("impl-bug-fix", _A.IMPLEMENTATION, "Bug Fix Implementation",
                  "Fixing identified bugs or issues in the codebase", _R.LOW,
                  False, "15 minutes - 1 hour", ("Related components", "Test suite updates")),
    ApprovalTheme("impl-integration", _A.IMPLEMENTATION, "Third-party Integration",
                  "Integrating external APIs, libraries, or services", _R.HIGH,
                  True, "1-4 hours", ("External service availability", "Configuration management")),
    ApprovalTheme("refactor-performance", _A.REFACTORING, "Performance Optimization",
                  "Optimizing code for better performance and efficiency", _R.MEDIUM,
                  False, "30 minutes - 2 hours", ("Performance monitoring", "Load testing")),
    ApprovalTheme("refactor-code-structure", _A.REFACTORING, "Code Structure Improvement",
                  "Reorganizing code for better maintainability and readability", _R.LOW,
                  False, "20 minutes - 1 hour", ("Test coverage",)),
    ApprovalTheme("refactor-dependency-update", _A.REFACTORING, "Dependency Updates",
                  "Updating third-party dependencies to newer versions", _R.MEDIUM,
                  True, "30 minutes - 2 hours", ("Compatibility testing", "Lock file updates")),
    ApprovalTheme("security-authentication", _A.SECURITY, "Authentication Implementation",
                  "Implementing or modifying authentication mechanisms", _R.CRITICAL,
                  True, "2-6 hours", ("User management", "Session handling", "Token storage")),
    ApprovalTheme("security-data-protection", _A.SECURITY, "Data Protection Implementation",
                  "Adding encryption or access control around sensitive data", _R.HIGH,
                  True, "1-3 hours", ("Key management", "Data classification")),
    ApprovalTheme("security-vulnerability-fix", _A.SECURITY, "Security Vulnerability Fix",
                  "Patching a known vulnerability", _R.CRITICAL,
                  True, "1-4 hours", ("Security audit", "Regression tests")),
    ApprovalTheme("perf-optimization", _A.PERFORMANCE, "Performance Optimization",
                  "Improving response times or resource usage", _R.MEDIUM,
                  False, "30 minutes - 3 hours", ("Benchmarks",)),
    ApprovalTheme("perf-caching", _A.PERFORMANCE, "Caching Implementation",
                  "Adding a caching layer for frequently accessed data", _R.MEDIUM,
                  False, "1-2 hours", ("Cache invalidation strategy", "Cache infrastructure")),
    ApprovalTheme("perf-scaling", _A.PERFORMANCE, "Scalability Improvements",
                  "Scaling services horizontally or vertically", _R.HIGH,
                  True, "2-8 hours", ("Infrastructure", "Load balancing", "Monitoring")),
]


class ThemeRegistry:
    """Catalogue of approval themes, keyed by id."""

    def __init__(self, themes: Optional[List[ApprovalTheme]] = None):
        self._themes: Dict[str, ApprovalTheme] = {}
        for theme in themes if themes is not None else DEFAULT_THEMES:
            self.add(theme)

    def add(self, theme: ApprovalTheme, replace: bool = False):
        if theme.id in self._themes and not replace:
            raise ValueError(f"Theme '{theme.id}' already registered")
        self._themes[theme.id] = theme

    def get(self, theme_id: str) -> Optional[ApprovalTheme]:
        return self._themes.get(theme_id)

    def all(self) -> List[ApprovalTheme]:
        return list(self._themes.values())

    def by_category(self, category: ApprovalCategory) -> List[ApprovalTheme]:
        return [t for t in self._themes.values() if t.category == category]

    def by_impact(self, impact: RiskLevel) -> List[ApprovalTheme]:
        return [t for t in self._themes.values() if t.impact == impact]

    def search(self, query: str) -> List[ApprovalTheme]:
        q = query.lower()
        return [t for t in self._themes.values() if q in t.title.lower() or q in t.description.lower()]
