import asyncio
import threading
import uuid
from datetime import timedelta

import pytest

import approval_core.engine.coordinator as coordinator_module
from approval_core.config import ApprovalConfig
from approval_core.engine.coordinator import AUDIT_TRAIL_KEEP, ApprovalCoordinator
from approval_core.engine.types import (
    ApprovalAction,
    ProposedAction,
    RiskLevel,
    TaskContext,
    TrustRank,
    utc_now,
)
from approval_core.errors import ConflictError, NotFoundError, StateError
from approval_core.events import ALL, EventBus


def _coordinator(rank="novice", **overrides):
    bus = EventBus()
    events = []
    bus.subscribe(ALL, events.append)
    config = ApprovalConfig(default_trust_rank=rank, **overrides)
    return ApprovalCoordinator(config, bus=bus), events


def _kinds(events):
    return [e.kind for e in events]


def _high_risk():
    context = TaskContext(intent="Update build configuration")
    actions = [
        ProposedAction("edit", files=("package.json",)),
        ProposedAction("edit", files=("auth/config.ts",)),
    ]
    return context, actions


def _docs_change():
    context = TaskContext(intent="Fix typo in documentation")
    actions = [ProposedAction("edit", description="Fix typo in README", files=("docs/README.md",))]
    return context, actions


def test_low_risk_is_auto_approved_above_novice():
    coordinator, events = _coordinator("learning")
    decision = coordinator.submit(*_docs_change())

    assert not decision.pending
    assert decision.response.approved
    assert decision.response.comment == "Low risk - auto-approved"
    assert decision.response.request_id.startswith("auto-")
    assert coordinator.list_pending() == []
    assert _kinds(events) == ["auto-approval-triggered", "response-recorded"]
    assert coordinator.trust_settings.metrics.automatic_approvals == 1


def test_novice_always_waits_for_a_human():
    coordinator, events = _coordinator("novice")
    decision = coordinator.submit(*_docs_change())

    assert decision.pending
    assert decision.request.risk_level == RiskLevel.LOW
    assert coordinator.get_pending(decision.request.id) is decision.request
    assert _kinds(events) == ["request-created"]


def test_high_risk_request_is_queued():
    coordinator, _ = _coordinator("collaborative")
    decision = coordinator.submit(*_high_risk())

    assert decision.pending
    request = decision.request
    assert request.risk_level == RiskLevel.HIGH
    assert request.security_impact
    assert request.context.trust_rank == TrustRank.COLLABORATIVE
    assert request.rationale


def test_disabled_system_approves_everything():
    coordinator, events = _coordinator("novice", enabled=False)
    decision = coordinator.submit(*_high_risk())

    assert decision.assessment is None
    assert decision.response.approved
    assert decision.response.comment == "System disabled"
    assert _kinds(events) == ["auto-approval-triggered", "response-recorded"]


def test_update_config_applies_to_next_submission():
    coordinator, _ = _coordinator("novice")
    coordinator.update_config(enabled=False)
    assert not coordinator.submit(*_high_risk()).pending


def test_respond_is_exactly_once():
    coordinator, events = _coordinator("novice")
    request = coordinator.submit(*_high_risk()).request

    response = coordinator.respond(request.id, "approve", comment="looks fine")
    assert response.approved
    assert response.action == ApprovalAction.APPROVE
    assert response.request_id == request.id
    assert coordinator.get_pending(request.id) is None

    with pytest.raises(NotFoundError):
        coordinator.respond(request.id, "reject")

    recorded = [e for e in events if e.kind == "response-recorded"]
    assert len(recorded) == 1
    assert recorded[0].request is request
    assert recorded[0].risk_level == "high"


def test_reject_and_review_are_not_approvals():
    coordinator, _ = _coordinator("novice")
    first = coordinator.submit(*_high_risk()).request
    second = coordinator.submit(*_high_risk()).request

    assert not coordinator.respond(first.id, "reject").approved
    assert not coordinator.respond(second.id, "review").approved
    assert coordinator.trust_settings.metrics.successful_tasks == 0
    assert coordinator.statistics()["rejections"] == 1


def test_invalid_action_leaves_request_pending():
    coordinator, _ = _coordinator("novice")
    request = coordinator.submit(*_high_risk()).request
    with pytest.raises(ValueError):
        coordinator.respond(request.id, "maybe")
    assert coordinator.get_pending(request.id) is not None


def test_trust_response_changes_rank():
    coordinator, events = _coordinator("novice")
    request = coordinator.submit(*_high_risk()).request

    response = coordinator.respond(request.id, "trust", trust_rank="trusted")

    assert response.approved
    assert response.trust_rank == TrustRank.TRUSTED
    assert coordinator.trust_rank == TrustRank.TRUSTED
    settings = coordinator.trust_settings
    assert settings.metrics.user_satisfaction == 1
    assert [c.value for c in settings.auto_approval_categories] == ["refactoring", "implementation", "performance"]
    changed = [e for e in events if e.kind == "trust-rank-changed"]
    assert [(e.old_rank, e.new_rank) for e in changed] == [("novice", "trusted")]


def test_rank_progresses_one_step_at_a_time():
    coordinator, events = _coordinator("novice")
    ranks = []
    for _ in range(30):
        decision = coordinator.submit(*_high_risk())
        assert decision.pending
        coordinator.respond(decision.request.id, "approve")
        ranks.append(coordinator.trust_rank)

    assert ranks[3] == TrustRank.NOVICE
    assert ranks[4] == TrustRank.LEARNING
    assert ranks[13] == TrustRank.LEARNING
    assert ranks[14] == TrustRank.COLLABORATIVE
    assert ranks[28] == TrustRank.COLLABORATIVE
    assert ranks[29] == TrustRank.TRUSTED

    changes = [(e.old_rank, e.new_rank) for e in events if e.kind == "trust-rank-changed"]
    assert changes == [("novice", "learning"), ("learning", "collaborative"), ("collaborative", "trusted")]

    assert not coordinator.submit(*_high_risk()).pending


def test_learning_can_be_disabled():
    coordinator, _ = _coordinator("novice", learning_enabled=False)
    for _ in range(6):
        coordinator.respond(coordinator.submit(*_high_risk()).request.id, "approve")
    assert coordinator.trust_rank == TrustRank.NOVICE


def test_explicit_rank_change_can_lower():
    coordinator, events = _coordinator("trusted")
    coordinator.set_trust_rank("novice", "Reset after incident")
    coordinator.set_trust_rank(TrustRank.NOVICE)
    assert coordinator.trust_rank == TrustRank.NOVICE
    assert [e.reason for e in events] == ["Reset after incident"]


def test_cancel():
    coordinator, events = _coordinator("novice")
    request = coordinator.submit(*_high_risk()).request

    coordinator.cancel(request.id, "No longer needed")

    assert coordinator.list_pending() == []
    assert events[-1].kind == "request-cancelled"
    assert events[-1].reason == "No longer needed"
    with pytest.raises(NotFoundError):
        coordinator.cancel(request.id)
    with pytest.raises(NotFoundError):
        coordinator.respond(request.id, "approve")


def test_duplicate_request_id_is_rejected(monkeypatch):
    coordinator, _ = _coordinator("novice")
    fixed = uuid.UUID("12345678-1234-5678-1234-567812345678")
    monkeypatch.setattr(coordinator_module.uuid, "uuid4", lambda: fixed)

    coordinator.submit(*_high_risk())
    with pytest.raises(ConflictError):
        coordinator.submit(*_high_risk())
    assert len(coordinator.list_pending()) == 1


def test_expire_overdue_only_touches_low_risk():
    coordinator, events = _coordinator("novice", auto_approval_timeout=30)
    low = coordinator.submit(*_docs_change()).request
    high = coordinator.submit(*_high_risk()).request

    assert coordinator.expire_overdue() == []

    responses = coordinator.expire_overdue(now=utc_now() + timedelta(seconds=31))

    assert len(responses) == 1
    assert responses[0].approved
    assert responses[0].request_id.startswith("timeout-")
    assert [r.id for r in coordinator.list_pending()] == [high.id]
    assert "request-timed-out" in _kinds(events)
    recorded = [e for e in events if e.kind == "response-recorded"]
    assert recorded[-1].request is low
    assert coordinator.decision_trail[-1].request_id == low.id


def test_zero_timeout_disables_expiry():
    coordinator, _ = _coordinator("novice", auto_approval_timeout=0)
    coordinator.submit(*_docs_change())
    assert coordinator.expire_overdue(now=utc_now() + timedelta(days=1)) == []
    assert len(coordinator.list_pending()) == 1


def test_trail_is_trimmed():
    coordinator, _ = _coordinator("novice", enabled=False)
    for _ in range(1001):
        coordinator.submit(*_docs_change())
    assert len(coordinator.decision_trail) == AUDIT_TRAIL_KEEP
    assert coordinator.trust_settings.metrics.automatic_approvals == 1001


def test_trail_can_be_disabled():
    coordinator, _ = _coordinator("novice", audit_trail_enabled=False)
    coordinator.respond(coordinator.submit(*_high_risk()).request.id, "approve")
    assert coordinator.decision_trail == []


def test_capacity():
    coordinator, _ = _coordinator("novice", max_pending=1)
    assert coordinator.has_capacity()
    coordinator.submit(*_high_risk())
    assert not coordinator.has_capacity()

    unbounded, _ = _coordinator("novice", max_pending=0)
    for _ in range(10):
        unbounded.submit(*_high_risk())
    assert unbounded.has_capacity()


def test_statistics():
    coordinator, _ = _coordinator("learning")
    coordinator.submit(*_docs_change())
    request = coordinator.submit(*_high_risk()).request
    coordinator.respond(request.id, "approve")
    other = coordinator.submit(*_high_risk()).request

    stats = coordinator.statistics()
    assert stats["total_requests"] == 2
    assert stats["auto_approvals"] == 1
    assert stats["manual_approvals"] == 1
    assert stats["rejections"] == 0
    assert stats["pending"] == 1
    assert stats["average_decision_time"] >= 0
    assert coordinator.get_pending(other.id) is not None


def test_trust_settings_is_a_copy():
    coordinator, _ = _coordinator("novice")
    settings = coordinator.trust_settings
    settings.metrics.successful_tasks = 99
    assert coordinator.trust_settings.metrics.successful_tasks == 0
    assert coordinator.trust_settings.to_dict()["current_rank"] == "novice"


# -- async waiting -------------------------------------------------------------

def test_request_approval_resolves_on_response():
    coordinator, _ = _coordinator("novice")

    async def scenario():
        task = asyncio.ensure_future(coordinator.request_approval(*_high_risk()))
        await asyncio.sleep(0)
        pending = coordinator.list_pending()
        assert len(pending) == 1
        coordinator.respond(pending[0].id, "approve", comment="ship it")
        return await task

    response = asyncio.run(scenario())
    assert response.approved
    assert response.comment == "ship it"


def test_request_approval_returns_immediately_when_resolved():
    coordinator, _ = _coordinator("learning")
    response = asyncio.run(coordinator.request_approval(*_docs_change()))
    assert response.approved
    assert coordinator.list_pending() == []


def test_low_risk_wait_times_out():
    coordinator, events = _coordinator("novice", auto_approval_timeout=0.01)

    async def scenario():
        return await coordinator.request_approval(*_docs_change())

    response = asyncio.run(scenario())
    assert response.approved
    assert response.comment == "Timeout auto-approval"
    assert coordinator.list_pending() == []
    assert "request-timed-out" in _kinds(events)


def test_high_risk_wait_does_not_time_out():
    coordinator, _ = _coordinator("novice", auto_approval_timeout=0.01)

    async def scenario():
        request = coordinator.submit(*_high_risk()).request
        task = asyncio.ensure_future(coordinator.wait_for(request.id))
        await asyncio.sleep(0.05)
        assert not task.done()
        coordinator.respond(request.id, "reject")
        return await task

    response = asyncio.run(scenario())
    assert not response.approved


def test_cancel_fails_the_waiter():
    coordinator, _ = _coordinator("novice")

    async def scenario():
        request = coordinator.submit(*_high_risk()).request
        task = asyncio.ensure_future(coordinator.wait_for(request.id))
        await asyncio.sleep(0)
        coordinator.cancel(request.id, "Requester went away")
        with pytest.raises(StateError):
            await task

    asyncio.run(scenario())
    assert coordinator.list_pending() == []


def test_second_waiter_conflicts():
    coordinator, _ = _coordinator("novice")

    async def scenario():
        request = coordinator.submit(*_high_risk()).request
        first = asyncio.ensure_future(coordinator.wait_for(request.id))
        await asyncio.sleep(0)
        with pytest.raises(ConflictError):
            await coordinator.wait_for(request.id)
        coordinator.respond(request.id, "approve")
        return await first

    assert asyncio.run(scenario()).approved


def test_cancelled_waiter_cancels_request():
    coordinator, events = _coordinator("novice")

    async def scenario():
        request = coordinator.submit(*_high_risk()).request
        task = asyncio.ensure_future(coordinator.wait_for(request.id))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert coordinator.list_pending() == []
    assert events[-1].kind == "request-cancelled"
    assert events[-1].reason == "Waiter cancelled"


def test_wait_for_unknown_request():
    coordinator, _ = _coordinator("novice")
    with pytest.raises(NotFoundError):
        asyncio.run(coordinator.wait_for("missing"))


def test_concurrent_responses_resolve_once():
    coordinator, events = _coordinator()
    request = coordinator.submit(*_high_risk()).request
    outcomes = []

    def respond():
        try:
            outcomes.append(coordinator.respond(request.id, "approve"))
        except NotFoundError as e:
            outcomes.append(e)

    threads = [threading.Thread(target=respond) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for o in outcomes if isinstance(o, NotFoundError)) == 7
    assert _kinds(events).count("response-recorded") == 1
    assert coordinator.statistics()["total_requests"] == 1
