"""Data models for the learning-curve simulator."""

from datetime import datetime
from pydantic import BaseModel, Field


class SimulatedStudentConfig(BaseModel):
    """Configuration for a simulated student's learning behavior."""

    # Learning rate: how fast true knowledge increases per correct attempt
    # Higher = faster learner (0.1 = slow, 0.3 = average, 0.5 = fast)
    learning_rate: float = Field(default=0.3, ge=0.0, le=1.0)

    # Retention rate: fraction of knowledge kept per day without practice
    # (0.95 = good memory, 0.9 = average, 0.8 = poor)
    retention_rate: float = Field(default=0.9, ge=0.0, le=1.0)

    # Probability of a wrong answer despite knowing the material
    slip_rate: float = Field(default=0.1, ge=0.0, le=0.5)

    # Probability of a right answer without knowing the material
    guess_rate: float = Field(default=0.2, ge=0.0, le=0.5)

    # Probability the student practices at all on a given day
    practice_probability: float = Field(default=0.9, ge=0.0, le=1.0)


class SimulatedStudent(BaseModel):
    """A simulated student with a hidden, true knowledge state."""

    config: SimulatedStudentConfig

    # True knowledge per topic (0-1); the engine's mastery estimates this
    true_knowledge: dict[str, float] = Field(default_factory=dict)

    # When each topic was first practiced
    first_encounter: dict[str, datetime] = Field(default_factory=dict)

    def get_true_knowledge(self, topic: str) -> float:
        """True knowledge of a topic (0.0 if never seen)."""
        return self.true_knowledge.get(topic, 0.0)

    def update_true_knowledge(
        self, topic: str, correct: bool, current_time: datetime
    ) -> None:
        """Update true knowledge after an attempt."""
        if topic not in self.first_encounter:
            self.first_encounter[topic] = current_time

        current = self.get_true_knowledge(topic)

        if correct:
            # k_new = k + learning_rate * (1 - k)
            new_knowledge = current + self.config.learning_rate * (1.0 - current)
        else:
            # Working through a miss still teaches a little
            new_knowledge = current + self.config.learning_rate * 0.2 * (1.0 - current)

        self.true_knowledge[topic] = min(1.0, max(0.0, new_knowledge))

    def apply_forgetting(self, topic: str, days_elapsed: float) -> None:
        """Exponential decay: k_new = k * retention_rate^days."""
        if topic not in self.true_knowledge:
            return
        decay_factor = self.config.retention_rate**days_elapsed
        self.true_knowledge[topic] = self.true_knowledge[topic] * decay_factor


class AttemptResult(BaseModel):
    """Result of a single simulated attempt."""

    timestamp: datetime
    day: int  # Day number in simulation (1-indexed)
    attempt_number: int  # Attempt number within day
    topic: str
    problem_id: str
    difficulty: int
    was_review: bool
    is_correct: bool

    # Ground truth vs estimated mastery
    true_knowledge_before: float
    mastery_before: float
    mastery_after: float

    unlocked: list[str] = Field(default_factory=list)


class DailySummary(BaseModel):
    """Summary of a single simulated day."""

    day: int
    date: datetime
    practiced: bool
    total_attempts: int
    correct_count: int
    accuracy: float
    reviews_due: int  # Due at the start of the day

    topics_practiced: list[str]
    streak: int
    grace_tokens: int

    # Snapshot at end of day
    avg_true_knowledge: float
    avg_mastery: float


class TopicSnapshot(BaseModel):
    """Point-in-time snapshot of one topic's state."""

    timestamp: datetime
    day: int
    attempt_number: int

    true_knowledge: float
    mastery: float
    recommended_difficulty: int
    attempts: int
    correct: int

    interval_days: float | None = None
    retrievability: float | None = None


class TopicTrajectory(BaseModel):
    """Complete trajectory of a topic during simulation."""

    topic: str
    first_practiced: datetime | None = None
    snapshots: list[TopicSnapshot] = Field(default_factory=list)


class SimulationResults(BaseModel):
    """Complete results of a simulation run."""

    # Configuration
    config: SimulatedStudentConfig
    days_simulated: int
    attempts_per_day: int
    random_seed: int | None
    start_time: datetime
    end_time: datetime

    # Summary statistics
    total_attempts: int
    total_correct: int
    overall_accuracy: float

    # Detailed breakdowns
    daily_summaries: list[DailySummary]
    attempt_results: list[AttemptResult]
    topic_trajectories: dict[str, TopicTrajectory]

    # Final state
    final_streak: int
    longest_streak: int
    final_reviews_due: int
    total_points: int
    level: int
    achievements_unlocked: list[str]
    # Mean |mastery/100 - true knowledge| over practiced topics
    mastery_error: float
