"""Progression coordinator.

Owns every write to per-student progression state. Each student gets an
actor: a single-worker executor that applies that student's attempts one
at a time, in arrival order. Different students are processed in parallel.

Inside the actor one attempt becomes one `ProgressionUpdate`:

    mastery -> streak -> stats -> scheduler -> achievements -> commit

The update is computed on a private copy of the student's committed
snapshot and only published after the repository commit succeeds, so
readers never observe a half-applied attempt.
"""

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any

import pydantic
from loguru import logger

from achievements import AchievementEvaluator
from config import Settings, get_settings
from errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    RejectedAttempt,
    RejectionReason,
)
from mastery import bootstrap_progress, record_attempt
from models import (
    Achievement,
    AttemptSubmission,
    Problem,
    ProblemAttempt,
    ProgressionUpdate,
    ReviewItem,
    StreakState,
    StreakStatus,
    StudentAchievement,
    StudentProgress,
    StudentStats,
    SubmissionResult,
    SubmissionStatus,
    TopicProgress,
    UnlockEvent,
    utc_now,
)
from scheduler import ReviewScheduler
from storage.base import ContentStore, ProgressRepository
from streak import credit_day, local_date, status_on
from validator import AttemptValidator

UnlockListener = Callable[[UnlockEvent], None]

DEFAULT_REVIEW_LIMIT = 10
DEFAULT_PROBLEM_LIMIT = 5


class ProgressionCoordinator:
    """Validates attempts and applies them to student progress atomically."""

    def __init__(
        self,
        content: ContentStore,
        repository: ProgressRepository,
        settings: Settings | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.content = content
        self.repository = repository
        self.settings = settings or get_settings()
        self.validator = AttemptValidator(content, repository, self.settings.validator)
        self.scheduler = ReviewScheduler(self.settings.scheduler)
        self.evaluator = AchievementEvaluator(self.settings.achievements)
        self._now = now or utc_now

        # Guards the registries below, never an update itself
        self._lock = threading.Lock()
        self._actors: dict[str, ThreadPoolExecutor] = {}
        # Queued or running attempts per actor; the actor retires at zero
        self._pending: dict[str, int] = {}
        # Least recently used first
        self._snapshots: OrderedDict[str, StudentProgress] = OrderedDict()
        # Bumped on every publish, so a slow load never caches stale state
        self._generation = 0
        self._listeners: list[UnlockListener] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def submit_attempt(
        self,
        student_id: str,
        problem_id: str,
        submitted_answer: Any,
        time_spent: float,
        hints_used: int = 0,
        idempotency_key: str = "",
        submitted_at: datetime | None = None,
        gave_up: bool = False,
        timeout: float | None = None,
    ) -> SubmissionResult:
        """Validate an attempt and apply it to the student's progress.

        Blocks until the student's actor has committed the update.

        Returns:
            A SubmissionResult. Rejected and duplicate attempts are reported
            through its status rather than raised.

        Raises:
            TimeoutError: The update did not finish within `timeout`
                seconds. It still completes in the background.
            PersistenceError: The update could not be committed.
        """
        try:
            raw = AttemptSubmission(
                student_id=student_id,
                problem_id=problem_id,
                submitted_answer=submitted_answer,
                time_spent=time_spent,
                hints_used=hints_used,
                idempotency_key=idempotency_key,
                submitted_at=submitted_at,
                gave_up=gave_up,
            )
        except pydantic.ValidationError as e:
            return SubmissionResult(
                status=SubmissionStatus.REJECTED,
                reason=RejectionReason.MALFORMED_ANSWER.value,
                message=str(e),
            )
        return self.submit(raw, timeout=timeout)

    def submit(
        self, raw: AttemptSubmission, timeout: float | None = None
    ) -> SubmissionResult:
        """Submit an already-built AttemptSubmission."""
        future = self.submit_async(raw)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            raise TimeoutError(
                f"attempt {raw.idempotency_key!r} for {raw.student_id!r} "
                f"still processing after {timeout}s"
            ) from e

    def submit_async(self, raw: AttemptSubmission) -> Future:
        """Validate on the calling thread and queue the attempt on its actor.

        Returns:
            A future resolving to the SubmissionResult.
        """
        try:
            attempt = self.validator.validate(raw, self._now())
        except ConflictError as e:
            return _resolved(_duplicate(e))
        except RejectedAttempt as e:
            return _resolved(
                SubmissionResult(
                    status=SubmissionStatus.REJECTED,
                    reason=e.reason.value,
                    message=e.message,
                )
            )
        return self._enqueue(attempt)

    def subscribe(self, listener: UnlockListener) -> None:
        """Register a callback for committed achievement unlocks."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: UnlockListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Egress
    # ------------------------------------------------------------------

    def get_topic_progress(self, student_id: str, topic: str) -> TopicProgress:
        """
        Raises:
            NotFoundError: Unknown student, or no attempts on the topic yet.
        """
        progress = self._snapshot(student_id).topics.get(topic)
        if progress is None:
            raise NotFoundError("topic", topic)
        return progress.model_copy(deep=True)

    def get_all_topic_progress(self, student_id: str) -> list[TopicProgress]:
        snapshot = self._snapshot(student_id)
        return [
            snapshot.topics[topic].model_copy(deep=True)
            for topic in sorted(snapshot.topics)
        ]

    def get_due_reviews(
        self, student_id: str, limit: int = DEFAULT_REVIEW_LIMIT
    ) -> list[ReviewItem]:
        """Due or overdue review items, most urgent first."""
        snapshot = self._snapshot(student_id)
        due = self.scheduler.next_due(snapshot, limit, self._now())
        return [item.model_copy() for item in due]

    def get_streak(self, student_id: str) -> StreakState:
        return self._snapshot(student_id).streak.model_copy()

    def get_streak_status(self, student_id: str) -> StreakStatus:
        """Whether the streak is active, in grace or lapsed as of now."""
        snapshot = self._snapshot(student_id)
        today = local_date(self._now(), snapshot.student.timezone)
        return status_on(snapshot.streak, today, self.settings.streak)

    def get_achievements(self, student_id: str) -> list[StudentAchievement]:
        return list(self._snapshot(student_id).achievements)

    def get_stats(self, student_id: str) -> StudentStats:
        return self._snapshot(student_id).stats.model_copy(deep=True)

    def get_next_problems(
        self, student_id: str, topic: str, limit: int = DEFAULT_PROBLEM_LIMIT
    ) -> list[Problem]:
        """Problems to serve next in `topic`, nearest the recommended difficulty.

        Problems solved within the last `recent_attempts_window` attempts go
        to the back of the list, so a topic with problems never comes back
        empty.

        Raises:
            NotFoundError: Unknown student.
        """
        snapshot = self._snapshot(student_id)
        if limit <= 0:
            return []
        progress = snapshot.topics.get(topic) or bootstrap_progress(
            student_id, topic, self.settings.mastery
        )
        target = progress.recommended_difficulty

        window = self.settings.coordinator.recent_attempts_window
        solved = set()
        if window:
            recent = self.repository.list_attempts(student_id, limit=window)
            solved = {a.problem_id for a in recent if a.is_correct}

        candidates = self.content.list_problems(topic=topic)
        candidates.sort(
            key=lambda p: (p.id in solved, abs(p.difficulty - target), p.difficulty, p.id)
        )
        return candidates[:limit]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self, wait: bool = True) -> None:
        """Stop accepting attempts and shut down all actors."""
        with self._lock:
            self._closed = True
            actors = list(self._actors.values())
            self._actors.clear()
            self._pending.clear()
        for actor in actors:
            actor.shutdown(wait=wait)

    def __enter__(self) -> "ProgressionCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Actor internals
    # ------------------------------------------------------------------

    def _enqueue(self, attempt: ProblemAttempt) -> Future:
        sid = attempt.student_id
        with self._lock:
            if self._closed:
                raise RuntimeError("coordinator is closed")
            actor = self._actors.get(sid)
            if actor is None:
                actor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"student-{sid}"
                )
                self._actors[sid] = actor
            self._pending[sid] = self._pending.get(sid, 0) + 1
            # Submitted under the lock so a retiring actor never drops work
            return actor.submit(self._run, attempt)

    def _run(self, attempt: ProblemAttempt) -> SubmissionResult:
        try:
            return self._apply(attempt)
        finally:
            self._release_actor(attempt.student_id)

    def _release_actor(self, student_id: str) -> None:
        """Retire the student's actor once its queue is empty."""
        with self._lock:
            remaining = self._pending.get(student_id, 1) - 1
            if remaining > 0:
                self._pending[student_id] = remaining
                return
            self._pending.pop(student_id, None)
            actor = self._actors.pop(student_id, None)
        if actor is not None:
            # Called from the actor's own worker; it exits after this task
            actor.shutdown(wait=False)

    def _snapshot(self, student_id: str) -> StudentProgress:
        """Last committed state of a student, loaded on a cache miss."""
        with self._lock:
            snapshot = self._snapshots.get(student_id)
            if snapshot is not None:
                self._snapshots.move_to_end(student_id)
                return snapshot
            generation = self._generation

        student = self.content.get_student(student_id)
        if student is None:
            raise NotFoundError("student", student_id)
        streak_config = self.settings.streak
        loaded = self.repository.load_progress(
            student,
            initial_grace_tokens=min(
                streak_config.initial_grace_tokens, streak_config.max_grace_tokens
            ),
            points_per_level=self.settings.achievements.points_per_level,
        )
        with self._lock:
            # Anything published since the load started may be newer
            if student_id not in self._snapshots and self._generation == generation:
                self._cache(student_id, loaded)
            return self._snapshots.get(student_id, loaded)

    def _publish(self, student_id: str, progress: StudentProgress) -> None:
        with self._lock:
            self._generation += 1
            self._cache(student_id, progress)

    def _cache(self, student_id: str, progress: StudentProgress) -> None:
        """Store a snapshot, evicting the least recently used. Caller holds the lock."""
        self._snapshots[student_id] = progress
        self._snapshots.move_to_end(student_id)
        while len(self._snapshots) > self.settings.coordinator.max_cached_students:
            self._snapshots.popitem(last=False)

    def _apply(self, attempt: ProblemAttempt) -> SubmissionResult:
        """Runs on the student's actor thread."""
        sid = attempt.student_id
        if self.repository.has_attempt(sid, attempt.idempotency_key):
            return _duplicate(ConflictError(sid, attempt.idempotency_key))

        working = self._snapshot(sid).model_copy(deep=True)
        previous = self.repository.count_attempts(sid, attempt.problem_id)
        attempt = attempt.model_copy(update={"attempt_number": previous + 1})
        student = self.content.get_student(sid)
        if student is not None:
            working.student = student

        update, definitions = self._build_update(working, attempt)

        try:
            self._commit(update)
        except ConflictError as e:
            # Applied by another process between the check and the commit
            return _duplicate(e)

        self._publish(sid, working)

        if update.unlocked:
            self._notify(update.unlocked, definitions)

        return SubmissionResult(
            status=SubmissionStatus.ACCEPTED,
            attempt=attempt,
            unlocked=update.unlocked,
        )

    def _build_update(
        self, progress: StudentProgress, attempt: ProblemAttempt
    ) -> tuple[ProgressionUpdate, dict[str, Achievement]]:
        """Apply one attempt to `progress` in place and collect the writes."""
        # Mastery
        topic = progress.topics.get(attempt.topic)
        if topic is None:
            topic = bootstrap_progress(
                progress.student_id, attempt.topic, self.settings.mastery
            )
            progress.topics[attempt.topic] = topic
        record_attempt(topic, attempt, self.settings.mastery)

        # Streak
        day = local_date(attempt.submitted_at, progress.student.timezone)
        credit_day(progress.streak, day, self.settings.streak)

        # Stats
        stats = progress.stats
        stats.problems_attempted += 1
        if attempt.is_correct:
            stats.problems_solved += 1
        stats.total_points += attempt.points_earned
        stats.total_time_spent += attempt.time_spent
        if attempt.competition:
            stats.competition_attempts[attempt.competition] = (
                stats.competition_attempts.get(attempt.competition, 0) + 1
            )

        # Reviews
        reviewed, new_item = self.scheduler.apply_attempt(progress, attempt)

        # Achievements, against a fresh snapshot of the definitions
        definitions = {a.id: a for a in self.content.get_achievements()}
        unlocked = self.evaluator.evaluate(
            progress.student_id,
            definitions.values(),
            progress.aggregates(),
            progress.earned_ids(),
            self._now(),
        )
        for earned in unlocked:
            stats.total_points += definitions[earned.achievement_id].points
        progress.achievements.extend(unlocked)

        update = ProgressionUpdate(
            attempt=attempt,
            topic_progress=topic,
            reviewed_item=reviewed,
            new_item=new_item,
            streak=progress.streak,
            stats=stats,
            unlocked=unlocked,
        )
        return update, definitions

    def _commit(self, update: ProgressionUpdate) -> None:
        """Commit the whole update, retrying transient storage failures."""
        persistence = self.settings.persistence
        key = update.attempt.idempotency_key
        for attempt_no in range(1, persistence.max_retries + 1):
            try:
                self.repository.commit(update)
            except PersistenceError as e:
                if not e.retryable or attempt_no == persistence.max_retries:
                    logger.error(
                        f"Giving up on attempt {key} for {update.attempt.student_id} "
                        f"after {attempt_no} tries: {e}"
                    )
                    raise
                logger.warning(
                    f"Commit of attempt {key} failed (try {attempt_no}), retrying: {e}"
                )
                time.sleep(persistence.retry_backoff_seconds * attempt_no)
            else:
                logger.debug(
                    f"Committed attempt {key} for {update.attempt.student_id} "
                    f"({update.attempt.topic}, correct={update.attempt.is_correct})"
                )
                return

    def _notify(
        self, unlocked: list[StudentAchievement], definitions: dict[str, Achievement]
    ) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for earned in unlocked:
            achievement = definitions[earned.achievement_id]
            logger.info(f"{earned.student_id} unlocked {achievement.name!r}")
            event = UnlockEvent(
                student_id=earned.student_id,
                achievement=achievement,
                earned_at=earned.earned_at,
            )
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    # The unlock is already committed
                    logger.exception(f"Unlock listener {listener!r} failed")


def _duplicate(error: ConflictError) -> SubmissionResult:
    return SubmissionResult(
        status=SubmissionStatus.DUPLICATE,
        reason=error.reason.value,
        message=error.message,
    )


def _resolved(result: SubmissionResult) -> Future:
    future: Future = Future()
    future.set_result(result)
    return future
