from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import pytest

from ao.memory.schema import AgentRole, InteractionLog, InteractionStatus, utc_now
from ao.memory.store import MemoryStore
from ao.retention import sweep


def _log(days_old: int) -> InteractionLog:
    return InteractionLog(
        role=AgentRole.QA,
        prompt=[],
        model="scripted-model",
        status=InteractionStatus.SUCCESS,
        created_at=utc_now() - timedelta(days=days_old),
    )


def _aged_file(path: Path, days_old: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{}", encoding="utf-8")
    stamp = (utc_now() - timedelta(days=days_old)).timestamp()
    os.utime(path, (stamp, stamp))
    return path


def test_dry_run_reports_without_deleting(store: MemoryStore, tmp_path: Path) -> None:
    store.record_interaction(_log(45))
    store.record_interaction(_log(1))
    logs = tmp_path / "logs"
    old_file = _aged_file(logs / "interactions" / "old.json", 45)
    _aged_file(logs / "interactions" / "new.json", 1)

    report = sweep(store, logs, days=30, dry_run=True)

    assert report.interactions == 1
    assert report.files == [old_file]
    assert old_file.exists()
    assert len(store.list_interactions()) == 2


def test_sweep_deletes_only_old_entries(store: MemoryStore, tmp_path: Path) -> None:
    store.record_interaction(_log(45))
    recent = _log(1)
    store.record_interaction(recent)
    logs = tmp_path / "logs"
    old_file = _aged_file(logs / "orchestrator.log", 45)
    keep = _aged_file(logs / "notes.md", 45)

    report = sweep(store, logs, days=30)

    assert report.interactions == 1
    assert [entry.id for entry in store.list_interactions()] == [recent.id]
    assert not old_file.exists()
    assert keep.exists()


def test_negative_days_rejected(store: MemoryStore) -> None:
    with pytest.raises(ValueError):
        sweep(store, None, days=-1)
