import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from approval_core.engine.types import TrustRank

logger = logging.getLogger(__name__)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ApprovalConfig:
    enabled: bool = True
    default_trust_rank: str = "learning"
    auto_approval_timeout: float = 30.0
    max_pending: int = 5
    audit_trail_enabled: bool = True
    learning_enabled: bool = True
    audit_log_path: str = ''
    snapshot_path: str = ''
    default_branch: str = 'main'
    protected_branches: List[str] = field(default_factory=lambda: ['main', 'master'])
    author_name: str = 'Approval User'
    author_email: str = 'user@approvals.local'
    port: int = 5010
    mode: str = 'development'

    def __post_init__(self):
        try:
            TrustRank(self.default_trust_rank)
        except ValueError:
            raise ValueError(f"Unknown trust rank: {self.default_trust_rank}")

    @property
    def trust_rank(self) -> TrustRank:
        return TrustRank(self.default_trust_rank)

    @classmethod
    def from_env(cls, defaults: Optional[Dict[str, Any]] = None) -> 'ApprovalConfig':
        d = defaults or {}
        env = os.environ
        protected = env.get('APPROVAL_PROTECTED_BRANCHES')
        return cls(
            enabled=_env_bool(env['APPROVAL_ENABLED']) if 'APPROVAL_ENABLED' in env else d.get('enabled', True),
            default_trust_rank=env.get('APPROVAL_TRUST_RANK', d.get('default_trust_rank', 'learning')),
            auto_approval_timeout=float(env.get('APPROVAL_TIMEOUT', d.get('auto_approval_timeout', 30.0))),
            max_pending=int(env.get('APPROVAL_MAX_PENDING', d.get('max_pending', 5))),
            audit_trail_enabled=(_env_bool(env['APPROVAL_AUDIT_TRAIL']) if 'APPROVAL_AUDIT_TRAIL' in env
                                 else d.get('audit_trail_enabled', True)),
            learning_enabled=(_env_bool(env['APPROVAL_LEARNING']) if 'APPROVAL_LEARNING' in env
                              else d.get('learning_enabled', True)),
            audit_log_path=env.get('APPROVAL_AUDIT_LOG', d.get('audit_log_path', '')),
            snapshot_path=env.get('APPROVAL_SNAPSHOT', d.get('snapshot_path', '')),
            default_branch=env.get('APPROVAL_DEFAULT_BRANCH', d.get('default_branch', 'main')),
            protected_branches=protected.split(',') if protected else d.get('protected_branches', ['main', 'master']),
            author_name=env.get('APPROVAL_AUTHOR_NAME', d.get('author_name', 'Approval User')),
            author_email=env.get('APPROVAL_AUTHOR_EMAIL', d.get('author_email', 'user@approvals.local')),
            port=int(env.get('APPROVAL_PORT', d.get('port', 5010))),
            mode=env.get('APPROVAL_MODE', d.get('mode', 'development')),
        )

    @classmethod
    def from_file(cls, path: str, **overrides) -> 'ApprovalConfig':
        """Defaults, then the JSON file at path (if readable), then overrides."""
        config = cls()
        if path and os.path.exists(path):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                known = {f.name for f in fields(cls)}
                for key, val in data.items():
                    if key in known:
                        setattr(config, key, val)
                    else:
                        logger.warning("Ignoring unknown config key %s in %s", key, path)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to load approval config %s: %s", path, e)

        for key, val in overrides.items():
            if hasattr(config, key):
                setattr(config, key, val)
        config.__post_init__()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
