"""Spaced-repetition scheduling of topic reviews.

Each (student, topic) has at most one active ReviewItem. Every attempt on
the topic closes the active item (status `reviewed`) and opens its
successor:

- success: interval * growth_factor, capped at max_interval_days
- lapse:   interval reset to floor_interval_days, lapse_count + 1
- fresh topic (no item yet): floor interval

An active item whose due time has passed is reported as `due` until the
next attempt on its topic; nothing expires on a timer.
"""

import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from config import SchedulerConfig
from models import (
    ProblemAttempt,
    ReviewItem,
    ReviewOutcome,
    ReviewStatus,
    StudentProgress,
    as_utc,
)


def new_review_id() -> str:
    return str(uuid.uuid4())


def next_interval(
    previous: ReviewItem | None, correct: bool, config: SchedulerConfig
) -> float:
    """Interval in days for the item that follows `previous`."""
    if previous is None or not correct:
        return config.floor_interval_days
    grown = previous.interval_days * config.growth_factor
    return min(config.max_interval_days, max(grown, config.floor_interval_days))


def close_item(item: ReviewItem, correct: bool, now: datetime) -> ReviewItem:
    """Return a reviewed copy of an active item."""
    return item.model_copy(
        update={
            "status": ReviewStatus.REVIEWED,
            "reviewed_at": as_utc(now),
            "outcome": ReviewOutcome.SUCCESS if correct else ReviewOutcome.LAPSE,
        }
    )


def schedule_next(
    student_id: str,
    topic: str,
    previous: ReviewItem | None,
    correct: bool,
    now: datetime,
    problem_id: str | None = None,
    config: SchedulerConfig | None = None,
) -> ReviewItem:
    """Create the scheduled successor of `previous` (or a first item)."""
    config = config or SchedulerConfig()
    now = as_utc(now)
    interval = next_interval(previous, correct, config)

    lapse_count = previous.lapse_count if previous else 0
    review_count = previous.review_count + 1 if previous else 0
    if previous is not None and not correct:
        lapse_count += 1

    return ReviewItem(
        id=new_review_id(),
        student_id=student_id,
        topic=topic,
        problem_id=problem_id,
        status=ReviewStatus.SCHEDULED,
        created_at=now,
        due_at=now + timedelta(days=interval),
        interval_days=interval,
        lapse_count=lapse_count,
        review_count=review_count,
    )


class ReviewScheduler:
    """Applies attempts to a student's review queue."""

    def __init__(self, config: SchedulerConfig | None = None):
        self.config = config or SchedulerConfig()

    def apply_attempt(
        self, progress: StudentProgress, attempt: ProblemAttempt
    ) -> tuple[ReviewItem | None, ReviewItem]:
        """
        Close the topic's active item (if any) and schedule its successor.

        The new item replaces the old one in `progress.active_reviews`, so
        the queue never holds two active items for one topic.

        Returns:
            Tuple of (reviewed item or None, new scheduled item).
        """
        previous = progress.active_reviews.get(attempt.topic)
        reviewed = (
            close_item(previous, attempt.is_correct, attempt.submitted_at)
            if previous is not None
            else None
        )
        new_item = schedule_next(
            student_id=progress.student_id,
            topic=attempt.topic,
            previous=previous,
            correct=attempt.is_correct,
            now=attempt.submitted_at,
            problem_id=attempt.problem_id,
            config=self.config,
        )
        progress.active_reviews[attempt.topic] = new_item
        return reviewed, new_item

    def next_due(
        self, progress: StudentProgress, limit: int, now: datetime
    ) -> list[ReviewItem]:
        mastery = {topic: p.mastery for topic, p in progress.topics.items()}
        return next_due(progress.active_reviews.values(), mastery, now, limit)


def next_due(
    items: Iterable[ReviewItem],
    topic_mastery: Mapping[str, float],
    now: datetime,
    limit: int,
) -> list[ReviewItem]:
    """
    Up to `limit` due-or-overdue items, most overdue first, then weakest
    topic first.
    """
    if limit <= 0:
        return []

    due = [item for item in items if item.state_at(now) == ReviewStatus.DUE]
    due.sort(
        key=lambda item: (
            -item.overdue_seconds(now),
            topic_mastery.get(item.topic, 0.0),
            item.topic,
        )
    )
    return due[:limit]
