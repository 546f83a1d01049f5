"""Retention sweep for interaction logs and stale log artifacts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .memory.schema import utc_now
from .memory.store import MemoryStore

LOGGER = logging.getLogger(__name__)

_LOG_SUFFIXES = (".json", ".log", ".txt")


@dataclass(slots=True)
class SweepReport:
    cutoff: datetime
    dry_run: bool
    interactions: int = 0
    files: List[Path] = field(default_factory=list)


def sweep(
    store: MemoryStore,
    logs_dir: Optional[Path],
    *,
    days: int = 30,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> SweepReport:
    """Delete interaction records and log files older than ``days``.

    With ``dry_run`` nothing is removed; the report lists what would go.
    """
    if days < 0:
        raise ValueError("days must be zero or positive")
    cutoff = (now or utc_now()) - timedelta(days=days)
    report = SweepReport(cutoff=cutoff, dry_run=dry_run)

    if dry_run:
        report.interactions = store.count_interactions_before(cutoff)
    else:
        report.interactions = store.delete_interactions_before(cutoff)

    if logs_dir is not None and Path(logs_dir).is_dir():
        threshold = cutoff.timestamp()
        for path in sorted(Path(logs_dir).rglob("*")):
            if not path.is_file() or path.suffix not in _LOG_SUFFIXES:
                continue
            if path.stat().st_mtime >= threshold:
                continue
            report.files.append(path)
            if not dry_run:
                path.unlink(missing_ok=True)

    LOGGER.info(
        "%s %d interaction log(s) and %d file(s) older than %s",
        "Would delete" if dry_run else "Deleted",
        report.interactions,
        len(report.files),
        cutoff.isoformat(),
    )
    return report


__all__ = ["SweepReport", "sweep"]
