"""Shared pytest fixtures for the progression engine test suite."""

import pytest
from datetime import datetime, timedelta, timezone

import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Settings
from coordinator import ProgressionCoordinator
from models import (
    Achievement,
    AchievementRequirement,
    AnswerFormat,
    Problem,
    ProblemAttempt,
    RequirementType,
    Student,
)
from simulator_models import SimulatedStudentConfig
from storage import (
    SQLiteContentStore,
    SQLiteProgressRepository,
    init_schema,
)

START = datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for injecting `now` into the coordinator."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_attempt(
    problem: Problem,
    correct: bool = True,
    student_id: str = "s001",
    submitted_at: datetime = START,
    key: str = "k1",
    hints_used: int = 0,
    time_spent: float = 60.0,
) -> ProblemAttempt:
    """A graded attempt built directly, bypassing validation."""
    return ProblemAttempt(
        student_id=student_id,
        problem_id=problem.id,
        topic=problem.topic,
        difficulty=problem.difficulty,
        competition=problem.competition,
        submitted_answer=problem.correct_answer if correct else "wrong",
        is_correct=correct,
        points_earned=problem.points if correct else 0,
        time_spent=time_spent,
        hints_used=hints_used,
        submitted_at=submitted_at,
        idempotency_key=key,
    )


@pytest.fixture
def sample_students() -> list[Student]:
    return [
        Student(id="s001", name="Ada", grade=6, enrolled_at=START),
        Student(id="s002", name="Ben", grade=8, enrolled_at=START),
        Student(
            id="s003",
            name="Chen",
            grade=7,
            enrolled_at=START,
            timezone="Asia/Shanghai",
        ),
        Student(id="s-inactive", name="Gone", enrolled_at=START, active=False),
    ]


@pytest.fixture
def sample_problems() -> list[Problem]:
    """Algebra at every difficulty, plus a few other topics and formats."""
    problems = [
        Problem(
            id=f"alg-{d:02d}",
            topic="algebra",
            difficulty=d,
            correct_answer=str(d * 3),
            points=10,
        )
        for d in range(1, 11)
    ]
    problems.extend(
        [
            Problem(
                id="geo-05",
                topic="geometry",
                difficulty=5,
                correct_answer="3/4",
                alternative_answers=["0.75"],
                points=15,
            ),
            Problem(
                id="amc-06",
                topic="counting",
                difficulty=6,
                answer_format=AnswerFormat.CHOICE,
                correct_answer="C",
                choices=["1", "2", "3", "4", "5"],
                points=20,
                competition="amc8",
            ),
            Problem(
                id="nt-03",
                topic="number_theory",
                difficulty=3,
                answer_format=AnswerFormat.TEXT,
                correct_answer="Twin Primes",
                alternative_answers=["twin prime"],
                points=10,
                hint_count=2,
            ),
        ]
    )
    return problems


@pytest.fixture
def problems_by_id(sample_problems) -> dict[str, Problem]:
    return {p.id: p for p in sample_problems}


@pytest.fixture
def sample_achievements() -> list[Achievement]:
    return [
        Achievement(
            id="first-steps",
            name="First Steps",
            points=10,
            requirements=[
                AchievementRequirement(
                    type=RequirementType.PROBLEMS_SOLVED, target_value=1
                )
            ],
        ),
        Achievement(
            id="two-day",
            name="Two in a Row",
            points=5,
            requirements=[
                AchievementRequirement(type=RequirementType.STREAK_DAYS, target_value=2)
            ],
        ),
        Achievement(
            id="retired",
            name="Retired",
            is_active=False,
            requirements=[
                AchievementRequirement(
                    type=RequirementType.PROBLEMS_SOLVED, target_value=1
                )
            ],
        ),
        Achievement(id="placeholder", name="Placeholder", requirements=[]),
    ]


@pytest.fixture
def test_db_path(tmp_path) -> Path:
    """Create a temporary database path for testing."""
    db_path = tmp_path / "test_progression.db"
    init_schema(db_path)
    return db_path


@pytest.fixture
def content_store(
    test_db_path, sample_students, sample_problems, sample_achievements
) -> SQLiteContentStore:
    """A content store populated with the sample data."""
    store = SQLiteContentStore(test_db_path)
    for student in sample_students:
        store.add_student(student)
    for problem in sample_problems:
        store.add_problem(problem)
    for achievement in sample_achievements:
        store.add_achievement(achievement)
    return store


@pytest.fixture
def progress_repo(test_db_path) -> SQLiteProgressRepository:
    return SQLiteProgressRepository(test_db_path)


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from the environment."""
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator(content_store, progress_repo, settings, clock):
    """A coordinator wired to the temporary database and a fixed clock."""
    coord = ProgressionCoordinator(
        content_store, progress_repo, settings=settings, now=clock
    )
    yield coord
    coord.close()


@pytest.fixture
def default_simulator_config() -> SimulatedStudentConfig:
    """Create a default simulator configuration."""
    return SimulatedStudentConfig(
        learning_rate=0.3,
        retention_rate=0.9,
        slip_rate=0.1,
        guess_rate=0.2,
        practice_probability=1.0,
    )
