"""Incremental mastery estimation per (student, topic).

Mastery is an exponentially smoothed score on a 0-100 scale. Problem
difficulty d (1-10) sits on the same scale at 10*d, so the gap between the
problem and the student's current level decides how much an outcome counts:

- correct:   M += lr * w * (100 - M),  w grows with (10d - M)
- incorrect: M -= lr * w * M,          w grows with (M - 10d)

The learning rate lr shrinks as the attempt count grows, so the estimate
settles instead of oscillating.
"""

from config import MasteryConfig
from models import ProblemAttempt, TopicProgress

MASTERY_MIN = 0.0
MASTERY_MAX = 100.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def difficulty_level(difficulty: int) -> float:
    """Position of a problem difficulty on the mastery scale."""
    return difficulty * 10.0


def learning_rate(attempts: int, config: MasteryConfig) -> float:
    """Step size for the next update, given the attempts made so far."""
    lr = config.base_learning_rate / (1 + config.learning_rate_decay * attempts)
    return max(config.min_learning_rate, lr)


def correct_weight(
    mastery: float, difficulty: int, hints_used: int, config: MasteryConfig
) -> float:
    """How much a correct answer counts: more for harder problems."""
    gap = difficulty_level(difficulty) - mastery
    weight = _clamp(1 + gap / config.difficulty_spread, config.min_weight, config.max_weight)
    return weight * config.hint_discount**hints_used


def incorrect_weight(mastery: float, difficulty: int, config: MasteryConfig) -> float:
    """How much a miss costs: more for problems below the student's level."""
    gap = mastery - difficulty_level(difficulty)
    return _clamp(1 + gap / config.difficulty_spread, config.min_weight, config.max_weight)


def bootstrap_progress(
    student_id: str, topic: str, config: MasteryConfig | None = None
) -> TopicProgress:
    """A fresh TopicProgress at the neutral starting mastery."""
    config = config or MasteryConfig()
    return TopicProgress(
        student_id=student_id, topic=topic, mastery=config.neutral_mastery
    )


def update_mastery(
    progress: TopicProgress,
    correct: bool,
    difficulty: int,
    hints_used: int = 0,
    config: MasteryConfig | None = None,
) -> float:
    """
    Apply one outcome to the progress record's mastery.

    Only the mastery score is touched; counters are updated separately by
    `record_attempt`. Returns the new mastery.
    """
    config = config or MasteryConfig()
    m = progress.mastery
    lr = learning_rate(progress.attempts, config)

    if correct:
        w = correct_weight(m, difficulty, hints_used, config)
        m_new = m + lr * w * (MASTERY_MAX - m)
    else:
        w = incorrect_weight(m, difficulty, config)
        m_new = m - lr * w * m

    progress.mastery = _clamp(m_new, MASTERY_MIN, MASTERY_MAX)
    return progress.mastery


def record_attempt(
    progress: TopicProgress,
    attempt: ProblemAttempt,
    config: MasteryConfig | None = None,
) -> TopicProgress:
    """
    Update mastery, then practice statistics, for a validated attempt.

    The learning rate uses the attempt count from before this attempt.
    """
    update_mastery(
        progress,
        correct=attempt.is_correct,
        difficulty=attempt.difficulty,
        hints_used=attempt.hints_used,
        config=config,
    )

    progress.attempts += 1
    if attempt.is_correct:
        progress.correct += 1
    progress.total_time_spent += attempt.time_spent
    if progress.last_practiced is None or attempt.submitted_at > progress.last_practiced:
        progress.last_practiced = attempt.submitted_at

    return progress
