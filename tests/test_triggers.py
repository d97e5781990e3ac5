"""Tests for next fire time computation."""

from datetime import UTC, datetime, timedelta

import pytest

from pytaxis.models import Schedule
from pytaxis.scheduler import CronEvaluator, CroniterEvaluator, next_run_at

NOW = datetime(2024, 1, 1, 12, 0, 30, tzinfo=UTC)


def test_interval_fires_after_every():
    schedule = Schedule(every=300)

    assert schedule.every == timedelta(minutes=5)
    assert next_run_at(schedule, NOW) == NOW + timedelta(minutes=5)


def test_cron_fires_strictly_after_now():
    at_noon = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    assert next_run_at(Schedule(cron="0 * * * *"), NOW) == datetime(2024, 1, 1, 13, 0, tzinfo=UTC)
    assert next_run_at(Schedule(cron="0 12 * * *"), at_noon) == datetime(
        2024, 1, 2, 12, 0, tzinfo=UTC
    )


def test_multiple_cron_expressions_take_the_earliest():
    schedule = Schedule(cron=["0 18 * * *", "15 12 * * *"])

    assert next_run_at(schedule, NOW) == datetime(2024, 1, 1, 12, 15, tzinfo=UTC)


def test_naive_times_are_treated_as_utc():
    naive = datetime(2024, 1, 1, 12, 0, 30)

    fire = CroniterEvaluator().next_fire_time("*/5 * * * *", naive)

    assert fire == datetime(2024, 1, 1, 12, 5, tzinfo=UTC)


def test_invalid_cron_raises_value_error():
    evaluator = CroniterEvaluator()

    with pytest.raises(ValueError, match="Invalid cron expression"):
        evaluator.next_fire_time("not a cron", NOW)
    assert not evaluator.is_valid("61 * * * *")
    assert evaluator.is_valid("*/15 * * * *")


def test_one_shot_at():
    future = NOW + timedelta(hours=1)
    past = NOW - timedelta(hours=1)

    assert next_run_at(Schedule(at=future), NOW) == future
    assert next_run_at(Schedule(at=past), NOW) is None
    assert next_run_at(Schedule(at=NOW), NOW) is None


def test_naive_one_shot_at_is_read_as_utc():
    schedule = Schedule(at=datetime(2024, 1, 1, 13, 0))

    assert schedule.at == datetime(2024, 1, 1, 13, 0, tzinfo=UTC)
    assert next_run_at(schedule, NOW) == datetime(2024, 1, 1, 13, 0, tzinfo=UTC)
    assert next_run_at(Schedule(at=datetime(2024, 1, 1, 11, 0)), NOW) is None


def test_relative_one_shot_is_anchored_at_insertion():
    inserted = NOW - timedelta(seconds=10)
    schedule = Schedule(in_=30)

    assert next_run_at(schedule, NOW, inserted_at=inserted) == inserted + timedelta(seconds=30)
    assert next_run_at(schedule, NOW) == NOW + timedelta(seconds=30)


def test_event_jobs_have_no_fire_time():
    assert next_run_at(Schedule(on_event="orders.created"), NOW) is None
    assert next_run_at(Schedule(), NOW) is None


def test_custom_evaluator():
    class EveryMinute:
        def next_fire_time(self, expr, after):
            return after.replace(second=0, microsecond=0) + timedelta(minutes=1)

    evaluator = EveryMinute()

    assert isinstance(evaluator, CronEvaluator)
    assert next_run_at(Schedule(cron="anything"), NOW, evaluator) == datetime(
        2024, 1, 1, 12, 1, tzinfo=UTC
    )


def test_schedule_kind_and_one_shot():
    assert Schedule(cron="* * * * *").kind == "cron"
    assert Schedule(in_=5).kind == "in"
    assert Schedule(in_=5).is_one_shot
    assert not Schedule(every=5).is_one_shot
    assert Schedule(cron="* * * * *").cron_expressions == ("* * * * *",)
