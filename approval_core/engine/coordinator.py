import asyncio
import copy
import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from approval_core.config import ApprovalConfig
from approval_core.errors import ConflictError, NotFoundError, StateError
from approval_core.events import (
    AutoApprovalTriggered,
    EventBus,
    RequestCancelled,
    RequestCreated,
    RequestTimedOut,
    ResponseRecorded,
    TrustRankChanged,
)
from .analyzer import ContextAnalyzer
from .policy import SECURITY_FACTOR, TrustPolicy
from .risk import RiskAssessor
from .types import (
    ApprovalAction,
    ApprovalCategory,
    ApprovalRequest,
    ApprovalResponse,
    ProposedAction,
    RiskAssessmentResult,
    RiskLevel,
    TaskContext,
    TrustRank,
    compare_ranks,
    utc_now,
)

logger = logging.getLogger(__name__)

# rank -> (successful tasks needed, next rank)
TRUST_PROGRESSION = {
    TrustRank.NOVICE: (5, TrustRank.LEARNING),
    TrustRank.LEARNING: (15, TrustRank.COLLABORATIVE),
    TrustRank.COLLABORATIVE: (30, TrustRank.TRUSTED),
}

AUDIT_TRAIL_LIMIT = 1000
AUDIT_TRAIL_KEEP = 500


@dataclass
class LearningMetrics:
    successful_tasks: int = 0
    total_approvals: int = 0
    automatic_approvals: int = 0
    user_satisfaction: int = 0


@dataclass
class TrustSettings:
    current_rank: TrustRank
    auto_approval_categories: List[ApprovalCategory] = field(default_factory=list)
    require_approval_for: List[ApprovalCategory] = field(default_factory=list)
    metrics: LearningMetrics = field(default_factory=LearningMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_rank": self.current_rank.value,
            "auto_approval_categories": [c.value for c in self.auto_approval_categories],
            "require_approval_for": [c.value for c in self.require_approval_for],
            "metrics": dataclasses.asdict(self.metrics),
        }


@dataclass(frozen=True)
class DecisionRecord:
    request_id: str
    action: ApprovalAction
    approved: bool
    risk_level: Optional[RiskLevel]
    category: Optional[ApprovalCategory]
    decision_time: float
    automatic: bool
    quick_decision: bool
    timestamp: Any = field(default_factory=utc_now)


@dataclass(frozen=True)
class Decision:
    """Result of submit(): either an immediate response or a pending request."""

    assessment: Optional[RiskAssessmentResult]
    response: Optional[ApprovalResponse] = None
    request: Optional[ApprovalRequest] = None

    @property
    def pending(self) -> bool:
        return self.response is None


class ApprovalCoordinator:
    """Owns the pending-request table and the requester's trust rank.

    Lifecycle per request:
        created -> auto-resolved
        created -> pending -> responded
        created -> pending -> timed out -> auto-resolved (low risk only)
        created -> pending -> cancelled

    Assessment, policy checks and table mutation are synchronous. The only
    suspension point is wait_for(), which parks the caller on a future keyed by
    request id until respond(), cancel() or the timeout resolves it.

    Table, trail and trust mutations hold ``lock``. Hosts that must check
    capacity and submit as one step hold it around both calls.
    """

    def __init__(self,
                 config: Optional[ApprovalConfig] = None,
                 bus: Optional[EventBus] = None,
                 assessor: Optional[RiskAssessor] = None,
                 analyzer=None):
        self.config = config or ApprovalConfig()
        self.bus = bus or EventBus()
        self.policy = TrustPolicy()
        self.assessor = assessor or RiskAssessor(self.policy)
        self.analyzer = analyzer or ContextAnalyzer()

        self._pending: Dict[str, ApprovalRequest] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._trail: List[DecisionRecord] = []
        self.lock = threading.RLock()

        rank = self.config.trust_rank
        self._settings = TrustSettings(
            current_rank=rank,
            auto_approval_categories=self.policy.auto_approval_categories(rank),
            require_approval_for=self.policy.categories_requiring_approval(rank),
        )

    # -- submission -------------------------------------------------------

    def submit(self,
               context: TaskContext,
               actions: Sequence[ProposedAction],
               category=None) -> Decision:
        """Assesses a proposed change and either resolves it or queues it for a human."""
        with self.lock:
            if not self.config.enabled:
                response = ApprovalResponse.auto("System disabled")
                self._record_automatic(response, None, None, "System disabled")
                return Decision(assessment=None, response=response)

            if context.trust_rank is None:
                context = dataclasses.replace(context, trust_rank=self._settings.current_rank)
            rank = context.trust_rank

            analysis = self.analyzer.analyze(context)
            resolved_category = ApprovalCategory.parse(category) or analysis.category
            assessment = self.assessor.assess(context, actions, resolved_category)
            risk = assessment.overall_risk

            # 1. Nothing to approve
            if not assessment.requires_approval and rank != TrustRank.NOVICE:
                response = ApprovalResponse.auto("Low risk - auto-approved")
                self._record_automatic(response, risk, resolved_category, "Risk does not require approval")
                return Decision(assessment=assessment, response=response)

            # 2. Trust-based auto-approval
            if assessment.auto_approval_eligible and self.policy.can_auto_approve(risk, rank):
                response = ApprovalResponse.auto("Auto-approved based on trust level")
                self._record_automatic(
                    response, risk, resolved_category,
                    "Trust level and risk assessment allow auto-approval",
                )
                return Decision(assessment=assessment, response=response)

            # 3. Queue for a human
            security_factor = assessment.factor(SECURITY_FACTOR)
            request = ApprovalRequest(
                id=str(uuid.uuid4()),
                theme_id=analysis.primary_theme_id,
                context=context,
                proposed_actions=tuple(actions),
                rationale=". ".join(assessment.recommendations) or "No rationale provided",
                risk_level=risk,
                security_impact=bool(security_factor and security_factor.risk != RiskLevel.LOW),
                category=resolved_category,
            )
            self._enqueue(request)
        return Decision(assessment=assessment, request=request)

    def _enqueue(self, request: ApprovalRequest):
        with self.lock:
            if request.id in self._pending:
                raise ConflictError(f"Approval request {request.id} is already pending")
            self._pending[request.id] = request
        logger.info("Approval request %s created (risk=%s, theme=%s)",
                    request.id, request.risk_level.value, request.theme_id)
        self.bus.publish(RequestCreated(request=request))

    async def request_approval(self,
                               context: TaskContext,
                               actions: Sequence[ProposedAction],
                               category=None) -> ApprovalResponse:
        """submit() followed by wait_for() when the decision needs a human."""
        decision = self.submit(context, actions, category)
        if decision.response is not None:
            return decision.response
        return await self.wait_for(decision.request.id)

    async def wait_for(self, request_id: str) -> ApprovalResponse:
        loop = asyncio.get_running_loop()
        with self.lock:
            request = self._pending.get(request_id)
            if request is None:
                raise NotFoundError(f"Approval request {request_id} not found")
            if request_id in self._waiters:
                raise ConflictError(f"Approval request {request_id} already has a waiter")

            future = loop.create_future()
            self._waiters[request_id] = future

            timeout = self.config.auto_approval_timeout
            if timeout and timeout > 0 and request.risk_level == RiskLevel.LOW:
                self._timers[request_id] = loop.call_later(timeout, self._expire, request_id)

        try:
            return await future
        except asyncio.CancelledError:
            with self.lock:
                if request_id in self._pending:
                    self.cancel(request_id, "Waiter cancelled")
            raise
        finally:
            self._waiters.pop(request_id, None)

    # -- resolution -------------------------------------------------------

    def respond(self,
                request_id: str,
                action,
                comment: Optional[str] = None,
                trust_rank=None,
                quick_decision: bool = False) -> ApprovalResponse:
        """Records the human decision for a pending request. Exactly once per id."""
        action = ApprovalAction(action)
        new_rank = TrustRank(trust_rank) if trust_rank else None

        with self.lock:
            # removed before anything else so a second response finds nothing
            request = self._pending.pop(request_id, None)
            if request is None:
                raise NotFoundError(f"Approval request {request_id} not found")
            self._cancel_timer(request_id)

            response = ApprovalResponse(
                request_id=request_id,
                action=action,
                approved=action in (ApprovalAction.APPROVE, ApprovalAction.TRUST),
                comment=comment,
                trust_rank=new_rank,
                quick_decision=quick_decision,
            )

            if action == ApprovalAction.TRUST and new_rank is not None:
                self.set_trust_rank(new_rank, "User granted trust")

            if self.config.audit_trail_enabled:
                self._append_trail(DecisionRecord(
                    request_id=request_id,
                    action=action,
                    approved=response.approved,
                    risk_level=request.risk_level,
                    category=request.category,
                    decision_time=(response.timestamp - request.created_at).total_seconds(),
                    automatic=False,
                    quick_decision=quick_decision,
                ))

            if self.config.learning_enabled:
                self._learn(response)

            logger.info("Approval request %s %s", request_id, "approved" if response.approved else "rejected")
            self.bus.publish(ResponseRecorded(
                response=response,
                request=request,
                risk_level=request.risk_level.value,
                category=request.category.value if request.category else None,
            ))
            self._resolve_waiter(request_id, response)
        return response

    def cancel(self, request_id: str, reason: str = "Cancelled"):
        """Drops a pending request without recording a decision."""
        with self.lock:
            request = self._pending.pop(request_id, None)
            if request is None:
                raise NotFoundError(f"Approval request {request_id} not found")
            self._cancel_timer(request_id)

            future = self._waiters.get(request_id)
            if future is not None and not future.done():
                future.set_exception(StateError(f"Approval request {request_id} was cancelled: {reason}"))

        logger.info("Approval request %s cancelled: %s", request_id, reason)
        self.bus.publish(RequestCancelled(request_id=request_id, reason=reason))

    def expire_overdue(self, now=None) -> List[ApprovalResponse]:
        """Times out overdue low-risk requests. For hosts that do not run an event loop."""
        timeout = self.config.auto_approval_timeout
        if not timeout or timeout <= 0:
            return []
        now = now or utc_now()
        with self.lock:
            overdue = [
                r.id for r in self._pending.values()
                if r.risk_level == RiskLevel.LOW and (now - r.created_at).total_seconds() >= timeout
            ]
            expired = [self._expire(request_id) for request_id in overdue]
        return [response for response in expired if response is not None]

    def _expire(self, request_id: str) -> Optional[ApprovalResponse]:
        with self.lock:
            self._cancel_timer(request_id)
            request = self._pending.pop(request_id, None)
            if request is None:
                return None

            logger.warning("Approval request %s timed out; auto-approving", request_id)
            response = ApprovalResponse.auto("Timeout auto-approval", prefix="timeout")
            self.bus.publish(RequestTimedOut(request_id=request_id))
            self._record_automatic(response, request.risk_level, request.category,
                                   "Timeout auto-approval", request=request)
            self._resolve_waiter(request_id, response)
        return response

    def _resolve_waiter(self, request_id: str, response: ApprovalResponse):
        future = self._waiters.get(request_id)
        if future is not None and not future.done():
            future.set_result(response)

    def _cancel_timer(self, request_id: str):
        handle = self._timers.pop(request_id, None)
        if handle is not None:
            handle.cancel()

    def _record_automatic(self,
                          response: ApprovalResponse,
                          risk: Optional[RiskLevel],
                          category: Optional[ApprovalCategory],
                          reason: str,
                          request: Optional[ApprovalRequest] = None):
        self._settings.metrics.automatic_approvals += 1
        if self.config.audit_trail_enabled:
            self._append_trail(DecisionRecord(
                request_id=request.id if request else response.request_id,
                action=response.action,
                approved=True,
                risk_level=risk,
                category=category,
                decision_time=0.0,
                automatic=True,
                quick_decision=response.quick_decision,
            ))
        logger.debug("Auto-approved %s: %s", response.request_id, reason)
        self.bus.publish(AutoApprovalTriggered(request_id=response.request_id, reason=reason))
        self.bus.publish(ResponseRecorded(
            response=response,
            request=request,
            risk_level=risk.value if risk else None,
            category=category.value if category else None,
        ))

    def _append_trail(self, record: DecisionRecord):
        self._trail.append(record)
        if len(self._trail) > AUDIT_TRAIL_LIMIT:
            self._trail = self._trail[-AUDIT_TRAIL_KEEP:]

    # -- trust ------------------------------------------------------------

    def _learn(self, response: ApprovalResponse):
        metrics = self._settings.metrics
        if response.approved:
            metrics.successful_tasks += 1
            metrics.total_approvals += 1
        if response.action == ApprovalAction.TRUST:
            metrics.user_satisfaction += 1
        self._check_progression()

    def _check_progression(self):
        step = TRUST_PROGRESSION.get(self._settings.current_rank)
        if step is None:
            return
        needed, next_rank = step
        if self._settings.metrics.successful_tasks >= needed:
            self._change_rank(next_rank, f"Automatic progression after {needed} successful tasks")

    def set_trust_rank(self, rank, reason: str = "Explicit trust change"):
        """Explicit change; unlike automatic progression this may lower the rank."""
        self._change_rank(TrustRank(rank), reason)

    def _change_rank(self, rank: TrustRank, reason: str):
        with self.lock:
            old = self._settings.current_rank
            if compare_ranks(old, rank) == 0:
                return
            self._settings.current_rank = rank
            self._settings.auto_approval_categories = self.policy.auto_approval_categories(rank)
            self._settings.require_approval_for = self.policy.categories_requiring_approval(rank)
        logger.info("Trust rank changed %s -> %s (%s)", old.value, rank.value, reason)
        self.bus.publish(TrustRankChanged(old_rank=old.value, new_rank=rank.value, reason=reason))

    @property
    def trust_rank(self) -> TrustRank:
        return self._settings.current_rank

    @property
    def trust_settings(self) -> TrustSettings:
        with self.lock:
            return copy.deepcopy(self._settings)

    # -- queries ----------------------------------------------------------

    def get_pending(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._pending.get(request_id)

    def list_pending(self) -> List[ApprovalRequest]:
        with self.lock:
            return list(self._pending.values())

    def has_capacity(self) -> bool:
        limit = self.config.max_pending
        with self.lock:
            return not limit or len(self._pending) < limit

    @property
    def decision_trail(self) -> List[DecisionRecord]:
        with self.lock:
            return list(self._trail)

    def statistics(self) -> Dict[str, Any]:
        with self.lock:
            trail = list(self._trail)
            pending = len(self._pending)
        automatic = sum(1 for r in trail if r.automatic)
        manual = sum(1 for r in trail
                     if not r.automatic and r.action == ApprovalAction.APPROVE and not r.quick_decision)
        rejections = sum(1 for r in trail if r.action == ApprovalAction.REJECT)
        timed = [r.decision_time for r in trail if not r.automatic]
        return {
            "total_requests": len(trail),
            "auto_approvals": automatic,
            "manual_approvals": manual,
            "rejections": rejections,
            "average_decision_time": sum(timed) / len(timed) if timed else 0.0,
            "pending": pending,
        }

    def update_config(self, **changes):
        self.config = dataclasses.replace(self.config, **changes)
