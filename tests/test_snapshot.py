import dataclasses
import json
import uuid

import pytest

from approval_core.config import ApprovalConfig
from approval_core.engine.types import ApprovalAction, ApprovalResponse, TrustRank
from approval_core.errors import StateError
from approval_core.history.integrity import verify_repository
from approval_core.history.repository import HistoryStore
from approval_core.history.snapshot import load_snapshot, open_store, save_snapshot


def _populated_store():
    store = HistoryStore()
    store.create_commit(ApprovalResponse(str(uuid.uuid4()), ApprovalAction.APPROVE, True))
    store.create_branch("feature")
    store.checkout_branch("feature")
    store.create_commit(ApprovalResponse(
        str(uuid.uuid4()), ApprovalAction.TRUST, True, trust_rank=TrustRank.COLLABORATIVE,
    ))
    store.checkout_branch("main")
    store.create_merge_request("Trust bump", "feature", "main")
    store.merge_branch("feature", "main")
    store.create_tag("v1")
    return store


def test_export_import_preserves_everything():
    store = _populated_store()
    exported = store.export_repository()

    restored = HistoryStore.from_snapshot(json.loads(json.dumps(exported)))

    assert restored.export_repository() == exported
    assert restored.repo.tags == store.repo.tags
    assert list(restored.repo.commits) == list(store.repo.commits)
    head = restored.get_commit(restored.resolve("v1"))
    assert head.is_merge


def test_restored_store_keeps_working():
    restored = HistoryStore.from_snapshot(_populated_store().export_repository())
    head = restored.get_commit(restored.resolve("v1"))
    commit = restored.create_commit(ApprovalResponse("next", ApprovalAction.REJECT, False))
    assert commit.parents == (head.id,)
    assert commit.diff.before == head.diff.after
    assert verify_repository(restored.repo)[0]


def test_verify_detects_tampering():
    store = _populated_store()
    assert verify_repository(store.repo) == (True, [])

    commit_id = store.repo.tags["v1"]
    commit = store.repo.commits[commit_id]
    store.repo.commits[commit_id] = dataclasses.replace(
        commit, metadata=dataclasses.replace(commit.metadata, message="Rewritten"),
    )
    store.repo.tags["ghost"] = "f" * 40

    is_valid, errors = verify_repository(store.repo)
    assert not is_valid
    assert any("content does not match id" in e for e in errors)
    assert any("Tag 'ghost'" in e for e in errors)


def test_verify_detects_missing_parent():
    store = _populated_store()
    first = next(iter(store.repo.commits))
    del store.repo.commits[first]
    is_valid, errors = verify_repository(store.repo)
    assert not is_valid
    assert any("missing parent" in e for e in errors)
    assert any("path commit" in e for e in errors)


def test_import_rejects_invalid_snapshots():
    data = _populated_store().export_repository()
    data["commits"][0]["response"]["approved"] = False
    with pytest.raises(StateError):
        HistoryStore.from_snapshot(data)

    with pytest.raises(StateError):
        HistoryStore.from_snapshot({"branches": {}})


def test_save_and_load(tmp_path):
    path = tmp_path / "nested" / "history.json"
    store = _populated_store()
    save_snapshot(store, str(path))

    assert path.exists()
    assert not (tmp_path / "nested" / "history.json.tmp").exists()

    loaded = load_snapshot(str(path))
    assert loaded.export_repository() == store.export_repository()


def test_load_rejects_corrupt_file(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{not json")
    with pytest.raises(StateError):
        load_snapshot(str(path))


def test_open_store(tmp_path):
    path = str(tmp_path / "history.json")
    config = ApprovalConfig(default_branch="trunk", protected_branches=["trunk"])

    fresh = open_store(path, config)
    assert fresh.repo.default_branch == "trunk"
    assert fresh.repo.commits == {}

    fresh.create_commit(ApprovalResponse("r1", ApprovalAction.APPROVE, True))
    save_snapshot(fresh, path)

    reopened = open_store(path, config)
    assert len(reopened.repo.commits) == 1
    assert reopened.repo.default_branch == "trunk"
