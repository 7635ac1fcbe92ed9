import logging
from typing import Optional

from approval_core.engine.types import ApprovalCategory, RiskLevel
from approval_core.events import EventBus, ResponseRecorded
from .models import Commit
from .repository import HistoryStore

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Turns every recorded approval decision into a commit on the current branch."""

    def __init__(self, store: HistoryStore, bus: EventBus):
        self.store = store
        self.bus = bus
        self.last_commit: Optional[Commit] = None

    def attach(self) -> "HistoryRecorder":
        self.bus.subscribe(ResponseRecorded.kind, self.on_response)
        return self

    def detach(self):
        self.bus.unsubscribe(ResponseRecorded.kind, self.on_response)

    def on_response(self, event: ResponseRecorded) -> Commit:
        self.last_commit = self.store.create_commit(
            event.response,
            risk_level=RiskLevel(event.risk_level) if event.risk_level else None,
            category=ApprovalCategory.parse(event.category),
        )
        return self.last_commit
