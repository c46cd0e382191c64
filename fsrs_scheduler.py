"""
Recall-probability estimates for review items.

Interval growth itself is handled by `scheduler`; this module maps a
ReviewItem onto a py-fsrs Card (the item's interval standing in for FSRS
stability) so the FSRS forgetting curve can estimate how likely the student
still remembers the topic at a given moment.
"""

from datetime import datetime, timezone

from fsrs import Card, Scheduler, State

from models import ReviewItem, ReviewStatus, as_utc

# Neutral FSRS difficulty; retrievability does not depend on it
DEFAULT_CARD_DIFFICULTY = 5.0
MIN_STABILITY_DAYS = 0.1

# Global FSRS scheduler with default parameters
_scheduler = Scheduler()


def get_scheduler() -> Scheduler:
    """Get the global FSRS scheduler instance."""
    return _scheduler


def review_item_to_card(item: ReviewItem) -> Card:
    """Convert a ReviewItem to a py-fsrs Card in the Review state."""
    card = Card()
    card.state = State.Review
    card.step = None
    card.stability = max(item.interval_days, MIN_STABILITY_DAYS)
    card.difficulty = DEFAULT_CARD_DIFFICULTY
    card.due = as_utc(item.due_at)
    # The interval was chosen at creation time, which is the last review
    card.last_review = as_utc(item.created_at)
    return card


def get_retrievability(item: ReviewItem, now: datetime | None = None) -> float | None:
    """
    Probability (0-1) that the student still recalls the item's topic.
    Returns None for items that have already been reviewed.
    """
    if item.status == ReviewStatus.REVIEWED:
        return None
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    card = review_item_to_card(item)
    return get_scheduler().get_card_retrievability(card, current_datetime=now)
