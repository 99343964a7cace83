#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
import operator
import pickle
import time

import pytest

from marsh.errors import ConfigError, DateSkipped
from marsh.geo.batch import Tally, WorkItem, plan_items, run_items


def _work(item: WorkItem, scale: int) -> int:
    if item.date.day == 2:
        raise DateSkipped(item.date.isoformat(), "missing mask")
    if item.date.day == 3:
        raise RuntimeError("boom")
    return item.date.day * scale


def _bad_config(item: WorkItem) -> None:
    raise ConfigError("tile resolutions differ")


def _hang_on_first(item: WorkItem) -> int:
    if item.date.day == 1:
        time.sleep(120)
    return item.date.day


def _days(*days):
    return [dt.date(2021, 6, x) for x in days]


def test_plan_items_sorted_and_unique():
    items = plan_items(_days(3, 1, 3), zone_ids=["78201"])
    assert [i.date.day for i in items] == [1, 3]
    assert all(i.zone_ids == ("78201",) for i in items)


def test_run_items_tallies_each_outcome():
    tally = run_items(plan_items(_days(1, 2, 3, 4)), _work, 10)

    assert tally.ok == _days(1, 4)
    assert tally.results == {dt.date(2021, 6, 1): 10, dt.date(2021, 6, 4): 40}
    assert tally.skipped == {dt.date(2021, 6, 2): "missing mask"}
    assert "RuntimeError: boom" in tally.failed[dt.date(2021, 6, 3)]
    assert tally.total == 4


def test_config_error_aborts_the_run():
    with pytest.raises(ConfigError):
        run_items(plan_items(_days(1, 2)), _bad_config)


def test_run_items_in_worker_processes():
    tally = run_items(plan_items(_days(1, 2)), operator.attrgetter("date"), workers=2, timeout_s=60)
    assert sorted(tally.ok) == _days(1, 2)
    assert tally.results[dt.date(2021, 6, 2)] == dt.date(2021, 6, 2)


def test_date_skipped_survives_pickling():
    err = pickle.loads(pickle.dumps(DateSkipped("2021-06-02", "missing mask")))
    assert err.reason == "missing mask"
    assert str(err) == "2021-06-02: missing mask"


def test_tally_summary_lists_problem_dates():
    tally = Tally()
    tally.record_ok(dt.date(2021, 6, 1), None)
    tally.record_skip(dt.date(2021, 6, 2), "missing mask")
    text = tally.summary("mask-merge")
    assert text.splitlines()[0] == "[mask-merge] 2 dates: ok=1 skipped=1 failed=0"
    assert "skipped 2021-06-02: missing mask" in text


def test_hung_item_times_out_without_blocking_the_batch():
    start = time.monotonic()
    tally = run_items(plan_items(_days(1, 2, 3, 4)), _hang_on_first, workers=2, timeout_s=3)
    elapsed = time.monotonic() - start

    assert elapsed < 60
    assert tally.failed == {dt.date(2021, 6, 1): "timed out after 3s"}
    assert sorted(tally.ok) == _days(2, 3, 4)
    assert tally.total == 4


def test_timeout_message_keeps_fractional_seconds():
    tally = run_items(plan_items(_days(1)), _hang_on_first, workers=2, timeout_s=0.5)
    assert tally.failed[dt.date(2021, 6, 1)] == "timed out after 0.5s"


def test_config_error_aborts_worker_processes():
    with pytest.raises(ConfigError):
        run_items(plan_items(_days(1, 2)), _bad_config, workers=2)
