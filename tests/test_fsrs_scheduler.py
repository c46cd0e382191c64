"""Unit tests for FSRS retrievability estimates."""

from datetime import timedelta

from fsrs import State

from conftest import START
from fsrs_scheduler import get_retrievability, get_scheduler, review_item_to_card
from scheduler import close_item, schedule_next


class TestReviewItemToCard:
    def test_card_mirrors_item(self):
        item = schedule_next("s001", "algebra", None, True, START)
        card = review_item_to_card(item)
        assert card.state == State.Review
        assert card.stability == item.interval_days
        assert card.due == item.due_at
        assert card.last_review == item.created_at

    def test_tiny_intervals_get_minimum_stability(self):
        item = schedule_next("s001", "algebra", None, True, START)
        item = item.model_copy(update={"interval_days": 0.0})
        assert review_item_to_card(item).stability > 0


class TestRetrievability:
    def test_scheduler_is_shared(self):
        assert get_scheduler() is get_scheduler()

    def test_decreases_over_time(self):
        item = schedule_next("s001", "algebra", None, True, START)
        early = get_retrievability(item, START + timedelta(hours=1))
        late = get_retrievability(item, START + timedelta(days=10))
        assert 0.0 < late < early <= 1.0

    def test_longer_intervals_retain_better(self):
        short = schedule_next("s001", "algebra", None, True, START)
        long = short.model_copy(update={"interval_days": 30.0})
        at = START + timedelta(days=5)
        assert get_retrievability(long, at) > get_retrievability(short, at)

    def test_reviewed_items_have_none(self):
        item = close_item(schedule_next("s001", "algebra", None, True, START), True, START)
        assert get_retrievability(item, START) is None
