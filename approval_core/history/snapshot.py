import json
import logging
import os
from typing import Optional

from approval_core.errors import StateError
from approval_core.events import EventBus
from .repository import HistoryStore

logger = logging.getLogger(__name__)


def save_snapshot(store: HistoryStore, path: str):
    """Writes the repository export to path, replacing the previous file atomically."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    # one writer per store at a time, the tmp path is shared
    with store.lock:
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(store.export_repository(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        count = len(store.repo.commits)
    logger.info("Saved repository snapshot to %s (%d commits)", path, count)


def load_snapshot(path: str, bus: Optional[EventBus] = None, **kwargs) -> HistoryStore:
    """Rebuilds a store from a snapshot file. The snapshot is verified before use."""
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise StateError(f"Snapshot {path} is not valid JSON: {e}")

    store = HistoryStore.from_snapshot(data, bus=bus, **kwargs)
    logger.info("Loaded repository snapshot from %s (%d commits)", path, len(store.repo.commits))
    return store


def open_store(path: str, config, bus: Optional[EventBus] = None) -> HistoryStore:
    """Loads path if it exists, otherwise starts an empty store from config."""
    if path and os.path.exists(path):
        return load_snapshot(
            path,
            bus=bus,
            protected_branches=config.protected_branches,
            author=config.author_name,
            email=config.author_email,
        )
    return HistoryStore.from_config(config, bus=bus)
