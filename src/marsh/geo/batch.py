#!/usr/bin/env python3
"""batch.py

Work-item planning and the batch runner shared by mask-merge and zonal-stats.

The work list (date × zone ids) is built once up front, then each item runs to
completion. Outcomes per date:
- ok       → the item returned normally
- skipped  → the item raised DateSkipped (missing mask, unreadable tile, ...)
- failed   → any other exception, or the per-item timeout expired

ConfigError is never caught here: a configuration problem aborts the whole run.

workers=1 runs in-process (and ignores timeout_s). workers>1 uses a process
pool with at most `workers` items in flight, so an item's deadline runs from
its submission. A worker cannot be cancelled mid-item: when an item times out
the pool is torn down (workers terminated) and the items that were still in
flight or queued rerun in a fresh pool. Item functions and their arguments must
be picklable (module-level functions, plain data).
"""

from __future__ import annotations

import datetime as dt
import logging
import multiprocessing
import time
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from marsh.errors import ConfigError, DateSkipped

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    """One acquisition date and the zones it covers."""

    date: dt.date
    path: Optional[Path] = None
    zone_ids: Tuple[str, ...] = ()


def plan_items(
    dates: Iterable[dt.date],
    paths: Optional[Dict[dt.date, Path]] = None,
    zone_ids: Sequence[str] = (),
) -> List[WorkItem]:
    """Build the work list once: one item per date, sorted by date."""
    paths = paths or {}
    zones = tuple(zone_ids)
    return [WorkItem(date=d, path=paths.get(d), zone_ids=zones) for d in sorted(set(dates))]


@dataclass
class Tally:
    """Per-date outcome counts for one run."""

    ok: List[dt.date] = field(default_factory=list)
    skipped: Dict[dt.date, str] = field(default_factory=dict)
    failed: Dict[dt.date, str] = field(default_factory=dict)
    results: Dict[dt.date, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.ok) + len(self.skipped) + len(self.failed)

    def record_ok(self, date: dt.date, result: Any) -> None:
        self.ok.append(date)
        self.results[date] = result

    def record_skip(self, date: dt.date, reason: str) -> None:
        logger.warning("[SKIP] %s: %s", date.isoformat(), reason)
        self.skipped[date] = reason

    def record_fail(self, date: dt.date, reason: str) -> None:
        logger.error("[FAIL] %s: %s", date.isoformat(), reason)
        self.failed[date] = reason

    def summary(self, label: str = "batch") -> str:
        lines = [f"[{label}] {self.total} dates: ok={len(self.ok)} skipped={len(self.skipped)} failed={len(self.failed)}"]
        for d, reason in sorted(self.skipped.items()):
            lines.append(f"  - skipped {d.isoformat()}: {reason}")
        for d, reason in sorted(self.failed.items()):
            lines.append(f"  - failed  {d.isoformat()}: {reason}")
        return "\n".join(lines)


def run_items(
    items: Sequence[WorkItem],
    fn: Callable[..., Any],
    *args: Any,
    workers: int = 1,
    timeout_s: Optional[float] = None,
) -> Tally:
    """Run fn(item, *args) for every item and tally the outcome per date."""
    tally = Tally()
    if workers <= 1:
        for item in items:
            _run_one(tally, item, fn, args)
        return tally

    pending = list(items)
    while pending:
        pending = _run_pool(tally, pending, fn, args, workers, timeout_s)
    return tally


def _run_one(tally: Tally, item: WorkItem, fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
    try:
        result = fn(item, *args)
    except DateSkipped as e:
        tally.record_skip(item.date, e.reason)
    except Exception as e:
        tally.record_fail(item.date, f"{type(e).__name__}: {e}")
    else:
        tally.record_ok(item.date, result)


def _record_future(tally: Tally, item: WorkItem, future: Future) -> None:
    try:
        result = future.result()
    except DateSkipped as e:
        tally.record_skip(item.date, e.reason)
    except Exception as e:
        tally.record_fail(item.date, f"{type(e).__name__}: {e}")
    else:
        tally.record_ok(item.date, result)


def _run_pool(
    tally: Tally,
    items: List[WorkItem],
    fn: Callable[..., Any],
    args: Tuple[Any, ...],
    workers: int,
    timeout_s: Optional[float],
) -> List[WorkItem]:
    """Run items in one process pool.

    Returns the items to rerun in a fresh pool: empty when every item finished,
    otherwise the ones cut short by a torn-down pool.
    """
    before = set(multiprocessing.active_children())
    executor = ProcessPoolExecutor(max_workers=workers)
    queue = list(items)
    running: Dict[Future, Tuple[WorkItem, float]] = {}
    try:
        while queue or running:
            while queue and len(running) < workers:
                item = queue[0]
                try:
                    future = executor.submit(fn, item, *args)
                except BrokenProcessPool:
                    break
                queue.pop(0)
                running[future] = (item, time.monotonic())

            if not running:
                # pool broke before anything was in flight
                return queue

            wait_s = None
            if timeout_s is not None:
                oldest = min(started for _, started in running.values())
                wait_s = max(0.0, oldest + timeout_s - time.monotonic())
            done, _ = wait(list(running), timeout=wait_s, return_when=FIRST_COMPLETED)

            broken = False
            for future in done:
                item, _ = running.pop(future)
                broken = broken or isinstance(future.exception(), BrokenProcessPool)
                _record_future(tally, item, future)

            expired = []
            if timeout_s is not None:
                now = time.monotonic()
                expired = [f for f, (_, started) in running.items() if now - started >= timeout_s]
            for future in expired:
                item, _ = running.pop(future)
                tally.record_fail(item.date, f"timed out after {timeout_s:g}s")

            if expired or broken:
                retry = [item for item, _ in running.values()] + queue
                _teardown(executor, before)
                return retry
    except ConfigError:
        _teardown(executor, before)
        raise

    executor.shutdown(wait=True)
    return []


def _teardown(executor: ProcessPoolExecutor, before: set) -> None:
    """Stop a pool without waiting for its busy workers."""
    executor.shutdown(wait=False, cancel_futures=True)
    workers = set(multiprocessing.active_children()) - before
    for proc in workers:
        proc.terminate()
    for proc in workers:
        proc.join(timeout=5)
    if workers:
        logger.warning("Terminated %d pool workers", len(workers))
