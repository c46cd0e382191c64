import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    FAMILY = "family"


class ProblemType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    FREE_RESPONSE = "free_response"
    PROOF = "proof"
    FILL_IN_BLANK = "fill_in_blank"


class AnswerFormat(str, Enum):
    """How a submitted answer is parsed and graded."""

    NUMERIC = "numeric"
    CHOICE = "choice"
    TEXT = "text"


class AchievementCategory(str, Enum):
    MASTERY = "mastery"
    STREAK = "streak"
    PARTICIPATION = "participation"
    COLLABORATION = "collaboration"
    MILESTONE = "milestone"


class AchievementRarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class RequirementType(str, Enum):
    """Closed set of unlock predicate kinds."""

    PROBLEMS_SOLVED = "problems_solved"
    TOPIC_MASTERY = "topic_mastery"
    STREAK_DAYS = "streak_days"
    COMPETITION_PARTICIPATION = "competition_participation"
    ACCURACY_RATE = "accuracy_rate"


class ReviewStatus(str, Enum):
    SCHEDULED = "scheduled"
    DUE = "due"  # derived, never persisted
    REVIEWED = "reviewed"


class ReviewOutcome(str, Enum):
    SUCCESS = "success"
    LAPSE = "lapse"


class StreakStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    GRACE = "grace"


class SubmissionStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


# ============================================================================
# Reference data (owned by the content store)
# ============================================================================


class Student(BaseModel):
    id: str
    name: str = ""
    grade: int = Field(default=6, ge=0, le=12)
    enrolled_at: datetime = Field(default_factory=utc_now)
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    timezone: str = "UTC"  # IANA name, defines the student's local day
    active: bool = True


class Problem(BaseModel):
    id: str
    topic: str
    subtopic: str = ""
    difficulty: int = Field(ge=1, le=10)
    problem_type: ProblemType = ProblemType.FREE_RESPONSE
    answer_format: AnswerFormat = AnswerFormat.NUMERIC
    correct_answer: str
    alternative_answers: list[str] = Field(default_factory=list)
    choices: list[str] = Field(default_factory=list)
    points: int = Field(default=10, ge=0)
    competition: str | None = None  # e.g. "amc8", "mathcounts"
    hint_count: int = Field(default=3, ge=0)
    estimated_time: int = Field(default=5, ge=0)  # minutes


class AchievementRequirement(BaseModel):
    """A single unlock predicate: `type` compared against `target_value`."""

    type: RequirementType
    target_value: float
    topic: str | None = None
    competition: str | None = None


class Achievement(BaseModel):
    id: str
    name: str
    description: str = ""
    category: AchievementCategory = AchievementCategory.MILESTONE
    rarity: AchievementRarity = AchievementRarity.COMMON
    points: int = Field(default=0, ge=0)
    requirements: list[AchievementRequirement] = Field(default_factory=list)
    is_active: bool = True


# ============================================================================
# Attempts
# ============================================================================


class AttemptSubmission(BaseModel):
    """Raw attempt as received from a client, before validation."""

    student_id: str
    problem_id: str
    submitted_answer: Any
    time_spent: float
    hints_used: int = 0
    idempotency_key: str
    submitted_at: datetime | None = None
    gave_up: bool = False


class ProblemAttempt(BaseModel):
    """An immutable, validated and graded attempt."""

    model_config = {"frozen": True}

    student_id: str
    problem_id: str
    topic: str
    difficulty: int
    competition: str | None = None
    submitted_answer: str
    is_correct: bool
    points_earned: int = 0
    time_spent: float
    hints_used: int = 0
    submitted_at: datetime
    idempotency_key: str
    # 1 for the first attempt by this student on this problem
    attempt_number: int = Field(default=1, ge=1)
    gave_up: bool = False


# ============================================================================
# Mutable per-student state
# ============================================================================


class TopicProgress(BaseModel):
    student_id: str
    topic: str
    mastery: float = Field(default=50.0, ge=0.0, le=100.0)
    attempts: int = 0
    correct: int = 0
    total_time_spent: float = 0.0
    last_practiced: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def accuracy(self) -> float:
        """Fraction of attempts answered correctly (0.0 when unpracticed)."""
        if self.attempts == 0:
            return 0.0
        return self.correct / self.attempts

    @computed_field  # type: ignore[prop-decorator]
    @property
    def recommended_difficulty(self) -> int:
        """Difficulty (1-10) to serve next, derived from mastery."""
        return recommended_difficulty(self.mastery)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_time(self) -> float:
        """Average seconds spent per attempt."""
        if self.attempts == 0:
            return 0.0
        return self.total_time_spent / self.attempts


def recommended_difficulty(mastery: float) -> int:
    """Monotone map from mastery (0-100) to a difficulty level (1-10)."""
    return min(10, max(1, math.ceil(mastery / 10)))


class ReviewItem(BaseModel):
    id: str
    student_id: str
    topic: str
    problem_id: str | None = None
    status: ReviewStatus = ReviewStatus.SCHEDULED
    created_at: datetime
    due_at: datetime
    interval_days: float
    lapse_count: int = 0
    review_count: int = 0
    reviewed_at: datetime | None = None
    outcome: ReviewOutcome | None = None

    @property
    def is_active(self) -> bool:
        return self.status != ReviewStatus.REVIEWED

    def state_at(self, now: datetime) -> ReviewStatus:
        """Scheduled items whose due time has passed are reported as due."""
        if self.status == ReviewStatus.REVIEWED:
            return ReviewStatus.REVIEWED
        if as_utc(now) >= as_utc(self.due_at):
            return ReviewStatus.DUE
        return ReviewStatus.SCHEDULED

    def overdue_seconds(self, now: datetime) -> float:
        return (as_utc(now) - as_utc(self.due_at)).total_seconds()


class StreakState(BaseModel):
    student_id: str
    current: int = Field(default=0, ge=0)
    longest: int = Field(default=0, ge=0)
    last_credited: date | None = None
    grace_tokens: int = Field(default=0, ge=0)
    in_grace: bool = False


class StudentAchievement(BaseModel):
    model_config = {"frozen": True}

    student_id: str
    achievement_id: str
    earned_at: datetime


class StudentStats(BaseModel):
    """Aggregate counters that feed achievement evaluation."""

    student_id: str
    problems_attempted: int = 0
    problems_solved: int = 0
    total_points: int = 0
    total_time_spent: float = 0.0
    competition_attempts: dict[str, int] = Field(default_factory=dict)
    points_per_level: int = Field(default=500, gt=0, exclude=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def accuracy(self) -> float:
        if self.problems_attempted == 0:
            return 0.0
        return self.problems_solved / self.problems_attempted

    @computed_field  # type: ignore[prop-decorator]
    @property
    def level(self) -> int:
        return 1 + self.total_points // self.points_per_level


class StudentAggregates(BaseModel):
    """Read-only view handed to the achievement evaluator."""

    problems_solved: int
    problems_attempted: int
    accuracy: float
    topic_mastery: dict[str, float]
    current_streak: int
    longest_streak: int
    competition_attempts: dict[str, int]


class StudentProgress(BaseModel):
    """Everything the coordinator mutates for one student, as one unit."""

    student: Student
    stats: StudentStats
    streak: StreakState
    topics: dict[str, TopicProgress] = Field(default_factory=dict)
    active_reviews: dict[str, ReviewItem] = Field(default_factory=dict)
    achievements: list[StudentAchievement] = Field(default_factory=list)

    @property
    def student_id(self) -> str:
        return self.student.id

    def earned_ids(self) -> set[str]:
        return {a.achievement_id for a in self.achievements}

    def aggregates(self) -> StudentAggregates:
        return StudentAggregates(
            problems_solved=self.stats.problems_solved,
            problems_attempted=self.stats.problems_attempted,
            accuracy=self.stats.accuracy,
            topic_mastery={t: p.mastery for t, p in self.topics.items()},
            current_streak=self.streak.current,
            longest_streak=self.streak.longest,
            competition_attempts=dict(self.stats.competition_attempts),
        )


class ProgressionUpdate(BaseModel):
    """The all-or-nothing set of writes produced by one attempt."""

    attempt: ProblemAttempt
    topic_progress: TopicProgress
    reviewed_item: ReviewItem | None = None
    new_item: ReviewItem
    streak: StreakState
    stats: StudentStats
    unlocked: list[StudentAchievement] = Field(default_factory=list)


class UnlockEvent(BaseModel):
    """Notification emitted after an achievement unlock is committed."""

    student_id: str
    achievement: Achievement
    earned_at: datetime


class SubmissionResult(BaseModel):
    status: SubmissionStatus
    reason: str | None = None
    message: str | None = None
    attempt: ProblemAttempt | None = None
    unlocked: list[StudentAchievement] = Field(default_factory=list)

    @property
    def accepted(self) -> bool:
        """Duplicates count as accepted: the event has already been applied."""
        return self.status != SubmissionStatus.REJECTED
