"""Tests for spaced-repetition review scheduling."""

from datetime import timedelta

import pytest

from config import SchedulerConfig
from conftest import START, make_attempt
from models import (
    Problem,
    ReviewOutcome,
    ReviewStatus,
    StreakState,
    Student,
    StudentProgress,
    StudentStats,
    TopicProgress,
)
from scheduler import (
    ReviewScheduler,
    close_item,
    next_due,
    next_interval,
    schedule_next,
)


def empty_progress(student_id: str = "s001") -> StudentProgress:
    return StudentProgress(
        student=Student(id=student_id),
        stats=StudentStats(student_id=student_id),
        streak=StreakState(student_id=student_id),
    )


def problem(topic: str = "algebra", difficulty: int = 5) -> Problem:
    return Problem(
        id=f"{topic}-{difficulty}", topic=topic, difficulty=difficulty, correct_answer="1"
    )


class TestNextInterval:
    def test_fresh_topic_uses_floor(self):
        config = SchedulerConfig()
        assert next_interval(None, True, config) == config.floor_interval_days
        assert next_interval(None, False, config) == config.floor_interval_days

    def test_success_grows_interval(self):
        config = SchedulerConfig()
        item = schedule_next("s001", "algebra", None, True, START)
        assert next_interval(item, True, config) == pytest.approx(2.5)

    def test_growth_is_capped(self):
        config = SchedulerConfig(max_interval_days=30)
        item = schedule_next("s001", "algebra", None, True, START, config=config)
        item = item.model_copy(update={"interval_days": 29.0})
        assert next_interval(item, True, config) == 30
        item = item.model_copy(update={"interval_days": 30.0})
        assert next_interval(item, True, config) == 30

    def test_lapse_resets_to_floor(self):
        config = SchedulerConfig()
        item = schedule_next("s001", "algebra", None, True, START)
        item = item.model_copy(update={"interval_days": 40.0})
        assert next_interval(item, False, config) == config.floor_interval_days


class TestScheduleNext:
    def test_first_item(self):
        item = schedule_next("s001", "algebra", None, True, START, problem_id="p1")
        assert item.status == ReviewStatus.SCHEDULED
        assert item.due_at == START + timedelta(days=1)
        assert item.lapse_count == 0
        assert item.review_count == 0
        assert item.problem_id == "p1"

    def test_fresh_incorrect_is_not_a_lapse(self):
        item = schedule_next("s001", "algebra", None, False, START)
        assert item.lapse_count == 0

    def test_successor_carries_counts(self):
        first = schedule_next("s001", "algebra", None, True, START)
        later = START + timedelta(days=1)
        second = schedule_next("s001", "algebra", first, True, later)
        assert second.review_count == 1
        assert second.due_at == later + timedelta(days=2.5)
        third = schedule_next("s001", "algebra", second, False, later)
        assert third.lapse_count == 1
        assert third.review_count == 2
        assert third.interval_days == 1

    def test_close_item(self):
        item = schedule_next("s001", "algebra", None, True, START)
        closed = close_item(item, False, START + timedelta(days=2))
        assert closed.status == ReviewStatus.REVIEWED
        assert closed.outcome == ReviewOutcome.LAPSE
        assert closed.id == item.id
        assert not closed.is_active
        assert item.is_active


class TestItemState:
    def test_scheduled_until_due(self):
        item = schedule_next("s001", "algebra", None, True, START)
        assert item.state_at(START) == ReviewStatus.SCHEDULED
        assert item.state_at(START + timedelta(hours=23)) == ReviewStatus.SCHEDULED
        assert item.state_at(START + timedelta(days=1)) == ReviewStatus.DUE

    def test_overdue_items_stay_due(self):
        item = schedule_next("s001", "algebra", None, True, START)
        assert item.state_at(START + timedelta(days=365)) == ReviewStatus.DUE

    def test_reviewed_items_stay_reviewed(self):
        item = close_item(
            schedule_next("s001", "algebra", None, True, START), True, START
        )
        assert item.state_at(START + timedelta(days=10)) == ReviewStatus.REVIEWED


class TestReviewScheduler:
    def test_first_attempt_opens_item(self):
        progress = empty_progress()
        reviewed, new_item = ReviewScheduler().apply_attempt(
            progress, make_attempt(problem())
        )
        assert reviewed is None
        assert progress.active_reviews["algebra"] is new_item
        assert new_item.due_at == START + timedelta(days=1)

    def test_one_active_item_per_topic(self):
        scheduler = ReviewScheduler()
        progress = empty_progress()
        history = []
        for i in range(6):
            reviewed, new_item = scheduler.apply_attempt(
                progress,
                make_attempt(
                    problem(), correct=i != 3, key=f"k{i}",
                    submitted_at=START + timedelta(days=i),
                ),
            )
            if reviewed is not None:
                history.append(reviewed)
            active = [item for item in progress.active_reviews.values() if item.is_active]
            assert len(active) == 1
        assert len(history) == 5
        assert all(item.status == ReviewStatus.REVIEWED for item in history)

    def test_lapse_after_three_successes(self):
        scheduler = ReviewScheduler()
        progress = empty_progress()
        scheduler.apply_attempt(progress, make_attempt(problem("geometry"), key="g0"))
        geometry_item = progress.active_reviews["geometry"]

        at = START
        for i in range(4):
            scheduler.apply_attempt(
                progress, make_attempt(problem(), key=f"k{i}", submitted_at=at)
            )
            at += timedelta(days=3)
        before = progress.active_reviews["algebra"]
        assert before.interval_days > 1

        reviewed, after = scheduler.apply_attempt(
            progress, make_attempt(problem(), correct=False, key="miss", submitted_at=at)
        )
        assert reviewed.outcome == ReviewOutcome.LAPSE
        assert after.interval_days == SchedulerConfig().floor_interval_days
        assert after.lapse_count == before.lapse_count + 1
        assert after.due_at == at + timedelta(days=1)
        assert progress.active_reviews["geometry"] is geometry_item


class TestNextDue:
    def _items(self):
        algebra = schedule_next("s001", "algebra", None, True, START)
        geometry = schedule_next("s001", "geometry", None, True, START)
        counting = schedule_next(
            "s001", "counting", None, True, START - timedelta(days=3)
        )
        future = schedule_next(
            "s001", "number_theory", None, True, START + timedelta(days=5)
        )
        return [algebra, geometry, counting, future]

    def test_orders_by_overdue_then_mastery(self):
        now = START + timedelta(days=2)
        mastery = {"algebra": 70.0, "geometry": 40.0, "counting": 90.0}
        due = next_due(self._items(), mastery, now, limit=10)
        assert [item.topic for item in due] == ["counting", "geometry", "algebra"]

    def test_respects_limit(self):
        now = START + timedelta(days=2)
        assert len(next_due(self._items(), {}, now, limit=2)) == 2

    @pytest.mark.parametrize("limit", [0, -3])
    def test_non_positive_limit(self, limit):
        assert next_due(self._items(), {}, START + timedelta(days=30), limit) == []

    def test_nothing_due(self):
        assert next_due(self._items()[:2], {}, START, limit=5) == []

    def test_scheduler_uses_topic_mastery(self):
        progress = empty_progress()
        scheduler = ReviewScheduler()
        for topic, mastery in [("algebra", 80.0), ("geometry", 20.0)]:
            scheduler.apply_attempt(progress, make_attempt(problem(topic), key=topic))
            progress.topics[topic] = TopicProgress(
                student_id="s001", topic=topic, mastery=mastery
            )
        due = scheduler.next_due(progress, 5, START + timedelta(days=1))
        assert [item.topic for item in due] == ["geometry", "algebra"]
