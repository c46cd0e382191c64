"""SQLite implementations of repository interfaces."""

import json
import sqlite3
from datetime import date, datetime
from pathlib import Path

from .base import ContentStore, ProgressRepository
from .connection import DEFAULT_TIMEOUT_SECONDS, get_connection
from config import DEFAULT_DB_PATH
from errors import ConflictError, PersistenceError
from models import (
    Achievement,
    AchievementRequirement,
    AnswerFormat,
    Problem,
    ProblemAttempt,
    ProblemType,
    ProgressionUpdate,
    ReviewItem,
    ReviewOutcome,
    ReviewStatus,
    StreakState,
    Student,
    StudentAchievement,
    StudentStats,
    SubscriptionTier,
    TopicProgress,
)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


class SQLiteContentStore(ContentStore):
    """SQLite implementation of ContentStore."""

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_student(self, student_id: str) -> Student | None:
        """Load a student by ID."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT * FROM students WHERE id = ?", (student_id,))
            row = cursor.fetchone()
            return self._row_to_student(row) if row else None
        finally:
            conn.close()

    def get_problem(self, problem_id: str) -> Problem | None:
        """Load a problem by ID."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT * FROM problems WHERE id = ?", (problem_id,))
            row = cursor.fetchone()
            return self._row_to_problem(row) if row else None
        finally:
            conn.close()

    def list_problems(
        self, topic: str | None = None, difficulty: int | None = None
    ) -> list[Problem]:
        """List problems, optionally filtered by topic and difficulty."""
        sql = "SELECT * FROM problems WHERE 1 = 1"
        params: list = []
        if topic is not None:
            sql += " AND topic = ?"
            params.append(topic)
        if difficulty is not None:
            sql += " AND difficulty = ?"
            params.append(difficulty)
        sql += " ORDER BY topic, difficulty, id"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(sql, params)
            return [self._row_to_problem(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_achievements(self) -> list[Achievement]:
        """Load all achievement definitions in insertion order."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT * FROM achievements ORDER BY position")
            return [self._row_to_achievement(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def add_student(self, student: Student) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """INSERT OR REPLACE INTO students
                (id, name, grade, enrolled_at, subscription_tier, timezone, active)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    student.id,
                    student.name,
                    student.grade,
                    _iso(student.enrolled_at),
                    student.subscription_tier.value,
                    student.timezone,
                    int(student.active),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def deactivate_student(self, student_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE students SET active = 0 WHERE id = ?", (student_id,))
            conn.commit()
        finally:
            conn.close()

    def add_problem(self, problem: Problem) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """INSERT OR REPLACE INTO problems
                (id, topic, subtopic, difficulty, problem_type, answer_format,
                 correct_answer, alternative_answers, choices, points,
                 competition, hint_count, estimated_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    problem.id,
                    problem.topic,
                    problem.subtopic,
                    problem.difficulty,
                    problem.problem_type.value,
                    problem.answer_format.value,
                    problem.correct_answer,
                    json.dumps(problem.alternative_answers),
                    json.dumps(problem.choices),
                    problem.points,
                    problem.competition,
                    problem.hint_count,
                    problem.estimated_time,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def add_achievement(self, achievement: Achievement) -> None:
        requirements_json = json.dumps(
            [req.model_dump(mode="json") for req in achievement.requirements]
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """INSERT INTO achievements
                (id, position, name, description, category, rarity, points,
                 requirements, is_active)
                VALUES (?, (SELECT COALESCE(MAX(position), 0) + 1 FROM achievements),
                        ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    category = excluded.category,
                    rarity = excluded.rarity,
                    points = excluded.points,
                    requirements = excluded.requirements,
                    is_active = excluded.is_active""",
                (
                    achievement.id,
                    achievement.name,
                    achievement.description,
                    achievement.category.value,
                    achievement.rarity.value,
                    achievement.points,
                    requirements_json,
                    int(achievement.is_active),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def _row_to_student(self, row) -> Student:
        """Convert a database row to a Student model."""
        return Student(
            id=row["id"],
            name=row["name"],
            grade=row["grade"],
            enrolled_at=datetime.fromisoformat(row["enrolled_at"]),
            subscription_tier=SubscriptionTier(row["subscription_tier"]),
            timezone=row["timezone"],
            active=bool(row["active"]),
        )

    def _row_to_problem(self, row) -> Problem:
        """Convert a database row to a Problem model."""
        return Problem(
            id=row["id"],
            topic=row["topic"],
            subtopic=row["subtopic"],
            difficulty=row["difficulty"],
            problem_type=ProblemType(row["problem_type"]),
            answer_format=AnswerFormat(row["answer_format"]),
            correct_answer=row["correct_answer"],
            alternative_answers=json.loads(row["alternative_answers"]),
            choices=json.loads(row["choices"]),
            points=row["points"],
            competition=row["competition"],
            hint_count=row["hint_count"],
            estimated_time=row["estimated_time"],
        )

    def _row_to_achievement(self, row) -> Achievement:
        """Convert a database row to an Achievement model."""
        return Achievement(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            category=row["category"],
            rarity=row["rarity"],
            points=row["points"],
            requirements=[
                AchievementRequirement.model_validate(req)
                for req in json.loads(row["requirements"])
            ],
            is_active=bool(row["is_active"]),
        )


class SQLiteProgressRepository(ProgressRepository):
    """SQLite implementation of ProgressRepository."""

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.timeout)

    def has_attempt(self, student_id: str, idempotency_key: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT 1 FROM attempts WHERE student_id = ? AND idempotency_key = ?",
                (student_id, idempotency_key),
            )
            return cursor.fetchone() is not None
        finally:
            conn.close()

    def get_topic_progress(self, student_id: str) -> list[TopicProgress]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM topic_progress WHERE student_id = ? ORDER BY topic",
                (student_id,),
            )
            return [self._row_to_progress(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_active_reviews(self, student_id: str) -> list[ReviewItem]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """SELECT * FROM review_items
                WHERE student_id = ? AND status != 'reviewed'
                ORDER BY due_at""",
                (student_id,),
            )
            return [self._row_to_review(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_review_history(
        self, student_id: str, topic: str | None = None
    ) -> list[ReviewItem]:
        sql = "SELECT * FROM review_items WHERE student_id = ?"
        params: list = [student_id]
        if topic is not None:
            sql += " AND topic = ?"
            params.append(topic)
        sql += " ORDER BY created_at, rowid"

        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            return [self._row_to_review(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_streak(self, student_id: str) -> StreakState | None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM streaks WHERE student_id = ?", (student_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return StreakState(
                student_id=row["student_id"],
                current=row["current"],
                longest=row["longest"],
                last_credited=date.fromisoformat(row["last_credited"])
                if row["last_credited"]
                else None,
                grace_tokens=row["grace_tokens"],
                in_grace=bool(row["in_grace"]),
            )
        finally:
            conn.close()

    def get_stats(self, student_id: str) -> StudentStats | None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM student_stats WHERE student_id = ?", (student_id,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return StudentStats(
                student_id=row["student_id"],
                problems_attempted=row["problems_attempted"],
                problems_solved=row["problems_solved"],
                total_points=row["total_points"],
                total_time_spent=row["total_time_spent"],
                competition_attempts=json.loads(row["competition_attempts"]),
            )
        finally:
            conn.close()

    def get_student_achievements(self, student_id: str) -> list[StudentAchievement]:
        conn = self._connect()
        try:
            cursor = conn.execute(
                """SELECT * FROM student_achievements WHERE student_id = ?
                ORDER BY earned_at, rowid""",
                (student_id,),
            )
            return [
                StudentAchievement(
                    student_id=row["student_id"],
                    achievement_id=row["achievement_id"],
                    earned_at=datetime.fromisoformat(row["earned_at"]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def list_attempts(
        self, student_id: str, limit: int | None = None
    ) -> list[ProblemAttempt]:
        """Applied attempts in submission order; with `limit`, only the latest."""
        conn = self._connect()
        try:
            if limit is None:
                cursor = conn.execute(
                    """SELECT * FROM attempts WHERE student_id = ?
                    ORDER BY submitted_at, rowid""",
                    (student_id,),
                )
            else:
                cursor = conn.execute(
                    """SELECT * FROM (
                        SELECT *, rowid AS rid FROM attempts WHERE student_id = ?
                        ORDER BY submitted_at DESC, rowid DESC LIMIT ?
                    ) ORDER BY submitted_at, rid""",
                    (student_id, limit),
                )
            return [self._row_to_attempt(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_attempts(self, student_id: str, problem_id: str) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM attempts WHERE student_id = ? AND problem_id = ?",
                (student_id, problem_id),
            )
            return cursor.fetchone()[0]
        finally:
            conn.close()

    def commit(self, update: ProgressionUpdate) -> None:
        """Write one coordinated update in a single transaction."""
        try:
            conn = self._connect()
        except sqlite3.OperationalError as e:
            raise PersistenceError(f"Could not open database: {e}", retryable=True) from e

        try:
            conn.execute("BEGIN IMMEDIATE")
            attempt = update.attempt
            cursor = conn.execute(
                "SELECT 1 FROM attempts WHERE student_id = ? AND idempotency_key = ?",
                (attempt.student_id, attempt.idempotency_key),
            )
            if cursor.fetchone() is not None:
                raise ConflictError(attempt.student_id, attempt.idempotency_key)

            self._insert_attempt(conn, attempt)
            self._upsert_progress(conn, update.topic_progress)
            if update.reviewed_item is not None:
                self._close_review(conn, update.reviewed_item)
            self._insert_review(conn, update.new_item)
            self._upsert_streak(conn, update.streak)
            self._upsert_stats(conn, update.stats)
            for earned in update.unlocked:
                conn.execute(
                    """INSERT INTO student_achievements
                    (student_id, achievement_id, earned_at) VALUES (?, ?, ?)""",
                    (earned.student_id, earned.achievement_id, _iso(earned.earned_at)),
                )
            conn.commit()
        except ConflictError:
            conn.rollback()
            raise
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise PersistenceError(f"Commit failed: {e}", retryable=True) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Commit failed: {e}") from e
        finally:
            conn.close()

    def _insert_attempt(self, conn, attempt: ProblemAttempt) -> None:
        conn.execute(
            """INSERT INTO attempts
            (student_id, idempotency_key, problem_id, topic, difficulty,
             competition, submitted_answer, is_correct, points_earned,
             time_spent, hints_used, submitted_at, attempt_number, gave_up)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                attempt.student_id,
                attempt.idempotency_key,
                attempt.problem_id,
                attempt.topic,
                attempt.difficulty,
                attempt.competition,
                attempt.submitted_answer,
                int(attempt.is_correct),
                attempt.points_earned,
                attempt.time_spent,
                attempt.hints_used,
                _iso(attempt.submitted_at),
                attempt.attempt_number,
                int(attempt.gave_up),
            ),
        )

    def _upsert_progress(self, conn, progress: TopicProgress) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO topic_progress
            (student_id, topic, mastery, attempts, correct, total_time_spent,
             last_practiced)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                progress.student_id,
                progress.topic,
                progress.mastery,
                progress.attempts,
                progress.correct,
                progress.total_time_spent,
                _iso(progress.last_practiced),
            ),
        )

    def _close_review(self, conn, item: ReviewItem) -> None:
        # Close before inserting the successor so the active index stays unique
        conn.execute(
            """UPDATE review_items SET status = ?, reviewed_at = ?, outcome = ?
            WHERE id = ?""",
            (
                item.status.value,
                _iso(item.reviewed_at),
                item.outcome.value if item.outcome else None,
                item.id,
            ),
        )

    def _insert_review(self, conn, item: ReviewItem) -> None:
        conn.execute(
            """INSERT INTO review_items
            (id, student_id, topic, problem_id, status, created_at, due_at,
             interval_days, lapse_count, review_count, reviewed_at, outcome)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                item.student_id,
                item.topic,
                item.problem_id,
                item.status.value,
                _iso(item.created_at),
                _iso(item.due_at),
                item.interval_days,
                item.lapse_count,
                item.review_count,
                _iso(item.reviewed_at),
                item.outcome.value if item.outcome else None,
            ),
        )

    def _upsert_streak(self, conn, streak: StreakState) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO streaks
            (student_id, current, longest, last_credited, grace_tokens, in_grace)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (
                streak.student_id,
                streak.current,
                streak.longest,
                _iso(streak.last_credited),
                streak.grace_tokens,
                int(streak.in_grace),
            ),
        )

    def _upsert_stats(self, conn, stats: StudentStats) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO student_stats
            (student_id, problems_attempted, problems_solved, total_points,
             total_time_spent, competition_attempts)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (
                stats.student_id,
                stats.problems_attempted,
                stats.problems_solved,
                stats.total_points,
                stats.total_time_spent,
                json.dumps(stats.competition_attempts),
            ),
        )

    def _row_to_progress(self, row) -> TopicProgress:
        """Convert a database row to a TopicProgress model."""
        return TopicProgress(
            student_id=row["student_id"],
            topic=row["topic"],
            mastery=row["mastery"],
            attempts=row["attempts"],
            correct=row["correct"],
            total_time_spent=row["total_time_spent"],
            last_practiced=_dt(row["last_practiced"]),
        )

    def _row_to_review(self, row) -> ReviewItem:
        """Convert a database row to a ReviewItem model."""
        return ReviewItem(
            id=row["id"],
            student_id=row["student_id"],
            topic=row["topic"],
            problem_id=row["problem_id"],
            status=ReviewStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            due_at=datetime.fromisoformat(row["due_at"]),
            interval_days=row["interval_days"],
            lapse_count=row["lapse_count"],
            review_count=row["review_count"],
            reviewed_at=_dt(row["reviewed_at"]),
            outcome=ReviewOutcome(row["outcome"]) if row["outcome"] else None,
        )

    def _row_to_attempt(self, row) -> ProblemAttempt:
        """Convert a database row to a ProblemAttempt model."""
        return ProblemAttempt(
            student_id=row["student_id"],
            problem_id=row["problem_id"],
            topic=row["topic"],
            difficulty=row["difficulty"],
            competition=row["competition"],
            submitted_answer=row["submitted_answer"],
            is_correct=bool(row["is_correct"]),
            points_earned=row["points_earned"],
            time_spent=row["time_spent"],
            hints_used=row["hints_used"],
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            idempotency_key=row["idempotency_key"],
            attempt_number=row["attempt_number"],
            gave_up=bool(row["gave_up"]),
        )
