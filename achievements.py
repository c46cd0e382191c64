"""Achievement unlock evaluation.

Requirements are a closed set of tagged variants (`RequirementType`). Each
variant has one predicate in `REQUIREMENT_CHECKS`; adding a new kind of
achievement means adding a variant and a predicate, nothing else.

Evaluation is pure: it proposes StudentAchievement records and leaves
persisting them to the caller.
"""

from collections.abc import Callable, Iterable
from datetime import datetime

from config import AchievementConfig
from models import (
    Achievement,
    AchievementRequirement,
    RequirementType,
    StudentAchievement,
    StudentAggregates,
)

RequirementCheck = Callable[
    [AchievementRequirement, StudentAggregates, AchievementConfig], bool
]


def _problems_solved(
    req: AchievementRequirement, agg: StudentAggregates, config: AchievementConfig
) -> bool:
    return agg.problems_solved >= req.target_value


def _topic_mastery(
    req: AchievementRequirement, agg: StudentAggregates, config: AchievementConfig
) -> bool:
    if req.topic is None:
        # Unscoped: mastery in any topic counts
        return any(m >= req.target_value for m in agg.topic_mastery.values())
    return agg.topic_mastery.get(req.topic, 0.0) >= req.target_value


def _streak_days(
    req: AchievementRequirement, agg: StudentAggregates, config: AchievementConfig
) -> bool:
    return agg.current_streak >= req.target_value


def _competition_participation(
    req: AchievementRequirement, agg: StudentAggregates, config: AchievementConfig
) -> bool:
    if req.competition is None:
        return sum(agg.competition_attempts.values()) >= req.target_value
    return agg.competition_attempts.get(req.competition, 0) >= req.target_value


def _accuracy_rate(
    req: AchievementRequirement, agg: StudentAggregates, config: AchievementConfig
) -> bool:
    # target_value is a percentage
    if agg.problems_attempted < max(1, config.min_attempts_for_accuracy):
        return False
    return agg.accuracy * 100 >= req.target_value


REQUIREMENT_CHECKS: dict[RequirementType, RequirementCheck] = {
    RequirementType.PROBLEMS_SOLVED: _problems_solved,
    RequirementType.TOPIC_MASTERY: _topic_mastery,
    RequirementType.STREAK_DAYS: _streak_days,
    RequirementType.COMPETITION_PARTICIPATION: _competition_participation,
    RequirementType.ACCURACY_RATE: _accuracy_rate,
}


def requirement_met(
    req: AchievementRequirement,
    aggregates: StudentAggregates,
    config: AchievementConfig | None = None,
) -> bool:
    check = REQUIREMENT_CHECKS[req.type]
    return check(req, aggregates, config or AchievementConfig())


class AchievementEvaluator:
    """Checks achievement definitions against a student's aggregates."""

    def __init__(self, config: AchievementConfig | None = None):
        self.config = config or AchievementConfig()

    def is_unlocked(self, achievement: Achievement, aggregates: StudentAggregates) -> bool:
        """All requirements must hold at once; an empty list never unlocks."""
        if not achievement.requirements:
            return False
        return all(
            requirement_met(req, aggregates, self.config)
            for req in achievement.requirements
        )

    def evaluate(
        self,
        student_id: str,
        achievements: Iterable[Achievement],
        aggregates: StudentAggregates,
        earned_ids: set[str],
        now: datetime,
    ) -> list[StudentAchievement]:
        """
        Propose unlocks for every active, not-yet-earned achievement whose
        requirements are all satisfied, in definition order.
        """
        unlocked: list[StudentAchievement] = []
        seen = set(earned_ids)
        for achievement in achievements:
            if not achievement.is_active or achievement.id in seen:
                continue
            if self.is_unlocked(achievement, aggregates):
                unlocked.append(
                    StudentAchievement(
                        student_id=student_id,
                        achievement_id=achievement.id,
                        earned_at=now,
                    )
                )
                seen.add(achievement.id)
        return unlocked
