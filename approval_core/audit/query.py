import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditQuery:
    def __init__(self, file_path: str):
        self.file_path = file_path

    def get_all_events(self) -> List[Dict[str, Any]]:
        events = []
        try:
            with open(self.file_path, "r") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        events.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        except FileNotFoundError:
            pass
        return events

    def filter_events(self,
                      kind: Optional[str] = None,
                      actor: Optional[str] = None,
                      limit: Optional[int] = None,
                      offset: Optional[int] = None) -> List[Dict[str, Any]]:
        filtered = []
        for event in self.get_all_events():
            if kind and event.get("kind") != kind:
                continue
            if actor and event.get("actor") != actor.upper():
                continue
            filtered.append(event)
        start = offset or 0
        end = start + limit if limit else len(filtered)
        return filtered[start:end]

    def get_last_event(self) -> Optional[Dict[str, Any]]:
        events = self.get_all_events()
        return events[-1] if events else None

    def count_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.get_all_events():
            kind = event.get("kind", "unknown")
            counts[kind] = counts.get(kind, 0) + 1
        return counts
