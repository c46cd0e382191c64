"""Abstract repository interfaces for the storage layer."""

from abc import ABC, abstractmethod

from models import (
    Achievement,
    Problem,
    ProblemAttempt,
    ProgressionUpdate,
    ReviewItem,
    StreakState,
    Student,
    StudentAchievement,
    StudentProgress,
    StudentStats,
    TopicProgress,
)


class ContentStore(ABC):
    """Read access to immutable reference data, plus the admin writes that
    populate it."""

    @abstractmethod
    def get_student(self, student_id: str) -> Student | None:
        """Load a student by ID.

        Returns:
            The student, or None if not found.
        """
        pass

    @abstractmethod
    def get_problem(self, problem_id: str) -> Problem | None:
        """Load a problem by ID.

        Returns:
            The problem, or None if not found.
        """
        pass

    @abstractmethod
    def list_problems(
        self, topic: str | None = None, difficulty: int | None = None
    ) -> list[Problem]:
        """List problems, optionally filtered by topic and difficulty."""
        pass

    @abstractmethod
    def get_achievements(self) -> list[Achievement]:
        """Snapshot of all achievement definitions, in insertion order."""
        pass

    @abstractmethod
    def add_student(self, student: Student) -> None:
        """Insert or replace a student."""
        pass

    @abstractmethod
    def deactivate_student(self, student_id: str) -> None:
        """Mark a student inactive. Students are never deleted."""
        pass

    @abstractmethod
    def add_problem(self, problem: Problem) -> None:
        """Insert or replace a problem."""
        pass

    @abstractmethod
    def add_achievement(self, achievement: Achievement) -> None:
        """Insert or update an achievement definition.

        Updating keeps the definition's original position.
        """
        pass


class ProgressRepository(ABC):
    """Storage for per-student progression state."""

    @abstractmethod
    def has_attempt(self, student_id: str, idempotency_key: str) -> bool:
        """Whether an attempt with this key has already been applied."""
        pass

    @abstractmethod
    def get_topic_progress(self, student_id: str) -> list[TopicProgress]:
        """All topic progress records for a student."""
        pass

    @abstractmethod
    def get_active_reviews(self, student_id: str) -> list[ReviewItem]:
        """All non-reviewed review items for a student."""
        pass

    @abstractmethod
    def get_review_history(
        self, student_id: str, topic: str | None = None
    ) -> list[ReviewItem]:
        """All review items (active and reviewed), oldest first."""
        pass

    @abstractmethod
    def get_streak(self, student_id: str) -> StreakState | None:
        pass

    @abstractmethod
    def get_stats(self, student_id: str) -> StudentStats | None:
        pass

    @abstractmethod
    def get_student_achievements(self, student_id: str) -> list[StudentAchievement]:
        pass

    @abstractmethod
    def list_attempts(
        self, student_id: str, limit: int | None = None
    ) -> list[ProblemAttempt]:
        """Applied attempts for a student, in submission order.

        With `limit`, only the most recent `limit` attempts.
        """
        pass

    @abstractmethod
    def count_attempts(self, student_id: str, problem_id: str) -> int:
        """How many attempts a student has made on one problem."""
        pass

    def load_progress(
        self,
        student: Student,
        initial_grace_tokens: int = 0,
        points_per_level: int = 500,
    ) -> StudentProgress:
        """Assemble the committed state of one student.

        Students with no history get an empty streak and zeroed stats.
        """
        stats = self.get_stats(student.id) or StudentStats(student_id=student.id)
        streak = self.get_streak(student.id) or StreakState(
            student_id=student.id, grace_tokens=initial_grace_tokens
        )
        return StudentProgress(
            student=student,
            stats=stats.model_copy(update={"points_per_level": points_per_level}),
            streak=streak,
            topics={p.topic: p for p in self.get_topic_progress(student.id)},
            active_reviews={r.topic: r for r in self.get_active_reviews(student.id)},
            achievements=self.get_student_achievements(student.id),
        )

    @abstractmethod
    def commit(self, update: ProgressionUpdate) -> None:
        """Persist every write of one coordinated update atomically.

        Raises:
            ConflictError: The attempt's idempotency key is already stored.
            PersistenceError: The transaction could not be committed.
        """
        pass
