"""Integration tests for the progression coordinator."""

import threading
from datetime import timedelta

import pytest

from config import CoordinatorConfig, PersistenceConfig, Settings
from conftest import START, FakeClock
from coordinator import ProgressionCoordinator
from errors import NotFoundError, PersistenceError, RejectionReason
from models import (
    AttemptSubmission,
    ReviewStatus,
    Student,
    SubmissionStatus,
    UnlockEvent,
)
from storage import SQLiteProgressRepository


def submit(coordinator, problem_id, answer, key, student_id="s001", **kwargs):
    return coordinator.submit_attempt(
        student_id=student_id,
        problem_id=problem_id,
        submitted_answer=answer,
        time_spent=kwargs.pop("time_spent", 60.0),
        idempotency_key=key,
        **kwargs,
    )


def correct_answer(problems_by_id, problem_id):
    return problems_by_id[problem_id].correct_answer


class TestSubmission:
    def test_first_correct_attempt(self, coordinator, problems_by_id, settings):
        result = submit(coordinator, "alg-05", "15", "k1")

        assert result.status == SubmissionStatus.ACCEPTED
        assert result.attempt.is_correct

        progress = coordinator.get_topic_progress("s001", "algebra")
        assert progress.mastery > settings.mastery.neutral_mastery
        assert progress.attempts == 1

        reviews = coordinator.repository.get_active_reviews("s001")
        assert len(reviews) == 1
        assert reviews[0].due_at == START + timedelta(
            days=settings.scheduler.floor_interval_days
        )
        assert coordinator.get_streak("s001").current == 1

    def test_rejection_is_reported_not_raised(self, coordinator):
        result = submit(coordinator, "alg-05", "fifteen", "k1")
        assert result.status == SubmissionStatus.REJECTED
        assert result.reason == "malformed_answer"
        assert not result.accepted
        with pytest.raises(NotFoundError):
            coordinator.get_topic_progress("s001", "algebra")

    @pytest.mark.parametrize(
        "problem_id,answer",
        [("amc-06", "\u00b2"), ("alg-05", "1e5000"), ("alg-05", "1e999999999")],
    )
    def test_oversized_or_non_ascii_answers_are_rejected(
        self, coordinator, problem_id, answer
    ):
        result = submit(coordinator, problem_id, answer, "k1")
        assert result.status == SubmissionStatus.REJECTED
        assert result.reason == RejectionReason.MALFORMED_ANSWER.value

    def test_unknown_student_rejected(self, coordinator):
        result = submit(coordinator, "alg-05", "15", "k1", student_id="ghost")
        assert result.reason == "unknown_reference"

    def test_bad_field_types_are_rejected(self, coordinator):
        result = coordinator.submit_attempt(
            student_id="s001",
            problem_id="alg-05",
            submitted_answer="15",
            time_spent="a while",
            idempotency_key="k1",
        )
        assert result.status == SubmissionStatus.REJECTED
        assert result.reason == RejectionReason.MALFORMED_ANSWER.value

    def test_stats_and_points(self, coordinator):
        submit(coordinator, "amc-06", "C", "k1")
        submit(coordinator, "alg-05", "16", "k2")
        stats = coordinator.get_stats("s001")
        assert stats.problems_attempted == 2
        assert stats.problems_solved == 1
        assert stats.competition_attempts == {"amc8": 1}
        # 20 problem points + 10 for "First Steps"
        assert stats.total_points == 30
        assert stats.total_time_spent == 120.0


class TestIdempotence:
    def test_duplicate_submission_is_a_no_op(self, coordinator):
        first = submit(coordinator, "alg-05", "15", "same")
        snapshot = (
            coordinator.get_topic_progress("s001", "algebra"),
            coordinator.get_streak("s001"),
            coordinator.repository.get_review_history("s001"),
            coordinator.get_stats("s001"),
        )

        second = submit(coordinator, "alg-05", "15", "same")

        assert first.status == SubmissionStatus.ACCEPTED
        assert second.status == SubmissionStatus.DUPLICATE
        assert second.accepted
        assert second.reason == "duplicate_key"
        assert snapshot == (
            coordinator.get_topic_progress("s001", "algebra"),
            coordinator.get_streak("s001"),
            coordinator.repository.get_review_history("s001"),
            coordinator.get_stats("s001"),
        )

    def test_duplicate_with_different_answer_is_still_a_no_op(self, coordinator):
        submit(coordinator, "alg-05", "15", "same")
        mastery = coordinator.get_topic_progress("s001", "algebra").mastery
        result = submit(coordinator, "alg-05", "99", "same")
        assert result.status == SubmissionStatus.DUPLICATE
        assert coordinator.get_topic_progress("s001", "algebra").mastery == mastery

    def test_concurrent_duplicates_apply_once(self, coordinator):
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(submit(coordinator, "alg-05", "15", "race"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        statuses = [r.status for r in results]
        assert statuses.count(SubmissionStatus.ACCEPTED) == 1
        assert statuses.count(SubmissionStatus.DUPLICATE) == 7
        assert coordinator.get_topic_progress("s001", "algebra").attempts == 1

    def test_state_survives_restart(
        self, content_store, progress_repo, settings, clock
    ):
        with ProgressionCoordinator(
            content_store, progress_repo, settings=settings, now=clock
        ) as first:
            submit(first, "alg-05", "15", "k1")
            mastery = first.get_topic_progress("s001", "algebra").mastery

        with ProgressionCoordinator(
            content_store, progress_repo, settings=settings, now=clock
        ) as second:
            assert second.get_topic_progress("s001", "algebra").mastery == mastery
            assert submit(second, "alg-05", "15", "k1").status == SubmissionStatus.DUPLICATE


class TestScenarios:
    def test_ten_correct_on_increasing_difficulty(self, coordinator, problems_by_id):
        masteries = []
        difficulties = []
        for d in range(1, 11):
            pid = f"alg-{d:02d}"
            result = submit(coordinator, pid, correct_answer(problems_by_id, pid), f"k{d}")
            assert result.accepted
            progress = coordinator.get_topic_progress("s001", "algebra")
            masteries.append(progress.mastery)
            difficulties.append(progress.recommended_difficulty)

        assert masteries[0] > 50.0
        assert all(b > a for a, b in zip(masteries, masteries[1:]))
        assert max(difficulties) > min(difficulties)

    def test_lapse_after_three_successful_reviews(self, coordinator, clock, settings):
        submit(coordinator, "geo-05", "3/4", "geo")
        geometry_before = coordinator.repository.get_active_reviews("s001")
        geometry_item = next(i for i in geometry_before if i.topic == "geometry")

        for i in range(4):
            submit(coordinator, "alg-05", "15", f"ok{i}")
            clock.advance(days=1)
        before = next(
            i for i in coordinator.repository.get_active_reviews("s001")
            if i.topic == "algebra"
        )
        assert before.review_count == 3

        submit(coordinator, "alg-05", "14", "miss")

        active = {i.topic: i for i in coordinator.repository.get_active_reviews("s001")}
        assert active["algebra"].interval_days == settings.scheduler.floor_interval_days
        assert active["algebra"].lapse_count == before.lapse_count + 1
        assert active["geometry"] == geometry_item

    def test_consecutive_days_then_gap(self, coordinator, clock):
        submit(coordinator, "alg-01", "3", "d1")
        clock.advance(days=1)
        submit(coordinator, "alg-01", "3", "d2")
        assert coordinator.get_streak("s001").current == 2

        clock.advance(days=3)
        submit(coordinator, "alg-01", "3", "d5")
        streak = coordinator.get_streak("s001")
        assert streak.current == 1
        assert streak.longest == 2

    def test_streak_uses_student_timezone(self, coordinator, clock):
        # 15:00 UTC is 23:00 in Shanghai; 17:00 UTC is the next local day
        submit(coordinator, "alg-01", "3", "t1", student_id="s003")
        clock.advance(hours=2)
        submit(coordinator, "alg-01", "3", "t2", student_id="s003")
        assert coordinator.get_streak("s003").current == 2

    def test_one_active_review_per_topic(self, coordinator, clock):
        for i in range(6):
            submit(coordinator, "alg-05", "15" if i % 2 else "1", f"k{i}")
            clock.advance(hours=10)
            active = coordinator.repository.get_active_reviews("s001")
            assert len([a for a in active if a.topic == "algebra"]) == 1


class TestReads:
    def test_unknown_student_raises(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.get_streak("ghost")
        with pytest.raises(NotFoundError):
            coordinator.get_due_reviews("ghost")

    def test_unpracticed_student_has_empty_state(self, coordinator):
        assert coordinator.get_all_topic_progress("s002") == []
        assert coordinator.get_streak("s002").current == 0
        assert coordinator.get_achievements("s002") == []

    def test_due_reviews(self, coordinator, clock):
        submit(coordinator, "alg-05", "15", "k1")
        submit(coordinator, "geo-05", "0.75", "k2")
        assert coordinator.get_due_reviews("s001") == []

        clock.advance(days=2)
        due = coordinator.get_due_reviews("s001", limit=5)
        assert {item.topic for item in due} == {"algebra", "geometry"}
        assert all(item.state_at(clock()) == ReviewStatus.DUE for item in due)
        assert coordinator.get_due_reviews("s001", limit=1)[0] in due
        assert coordinator.get_due_reviews("s001", limit=0) == []

    def test_returned_state_is_a_copy(self, coordinator):
        submit(coordinator, "alg-05", "15", "k1")
        progress = coordinator.get_topic_progress("s001", "algebra")
        progress.mastery = 0.0
        assert coordinator.get_topic_progress("s001", "algebra").mastery > 0.0

    def test_streak_status(self, coordinator, clock):
        submit(coordinator, "alg-01", "3", "k1")
        assert coordinator.get_streak_status("s001").value == "active"
        clock.advance(days=5)
        assert coordinator.get_streak_status("s001").value == "inactive"


class TestAchievements:
    def test_unlocks_are_persisted_and_notified(self, coordinator, clock):
        events: list[UnlockEvent] = []
        coordinator.subscribe(events.append)

        result = submit(coordinator, "alg-05", "15", "k1")
        assert [u.achievement_id for u in result.unlocked] == ["first-steps"]
        assert [e.achievement.id for e in events] == ["first-steps"]

        clock.advance(days=1)
        result = submit(coordinator, "alg-05", "15", "k2")
        assert [u.achievement_id for u in result.unlocked] == ["two-day"]

        earned = [a.achievement_id for a in coordinator.get_achievements("s001")]
        assert earned == ["first-steps", "two-day"]
        assert [
            a.achievement_id
            for a in coordinator.repository.get_student_achievements("s001")
        ] == earned

    def test_unlocks_are_monotone(self, coordinator, clock):
        submit(coordinator, "alg-05", "15", "k1")
        for i in range(5):
            clock.advance(days=3)
            submit(coordinator, "alg-05", "1", f"miss{i}")
            earned = [a.achievement_id for a in coordinator.get_achievements("s001")]
            assert earned.count("first-steps") == 1

    def test_inactive_and_empty_definitions_never_unlock(self, coordinator):
        submit(coordinator, "alg-05", "15", "k1")
        earned = {a.achievement_id for a in coordinator.get_achievements("s001")}
        assert "retired" not in earned
        assert "placeholder" not in earned

    def test_definitions_are_reread(self, coordinator, content_store, sample_achievements):
        submit(coordinator, "alg-05", "15", "k1")
        reactivated = sample_achievements[2].model_copy(update={"is_active": True})
        content_store.add_achievement(reactivated)
        result = submit(coordinator, "alg-05", "15", "k2")
        assert [u.achievement_id for u in result.unlocked] == ["retired"]

    def test_failing_listener_does_not_break_submission(self, coordinator):
        def broken(event):
            raise RuntimeError("listener down")

        coordinator.subscribe(broken)
        result = submit(coordinator, "alg-05", "15", "k1")
        assert result.status == SubmissionStatus.ACCEPTED
        coordinator.unsubscribe(broken)


class TestConcurrency:
    def test_students_progress_independently(self, coordinator):
        errors = []

        def run(student_id):
            try:
                for i in range(5):
                    result = submit(
                        coordinator, "alg-05", "15", f"{student_id}-{i}",
                        student_id=student_id,
                    )
                    assert result.accepted
            except AssertionError as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(sid,)) for sid in ("s001", "s002", "s003")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for sid in ("s001", "s002", "s003"):
            assert coordinator.get_topic_progress(sid, "algebra").attempts == 5
            assert coordinator.get_stats(sid).problems_attempted == 5

    def test_same_student_serialized(self, coordinator):
        futures = []
        for i in range(20):
            futures.append(
                coordinator.submit_async(
                    AttemptSubmission(
                        student_id="s001",
                        problem_id="alg-05",
                        submitted_answer="15",
                        time_spent=10.0,
                        idempotency_key=f"k{i}",
                    )
                )
            )
        for future in futures:
            assert future.result(timeout=30).accepted

        progress = coordinator.get_topic_progress("s001", "algebra")
        assert progress.attempts == 20
        assert len(coordinator.repository.list_attempts("s001")) == 20
        assert len(coordinator.repository.get_active_reviews("s001")) == 1


class FlakyRepository(SQLiteProgressRepository):
    """Fails the first `failures` commits with a transient error."""

    def __init__(self, db_path, failures: int, retryable: bool = True):
        super().__init__(db_path)
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    def commit(self, update):
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceError("database is locked", retryable=self.retryable)
        super().commit(update)


class TestPersistenceFailures:
    def _settings(self, retries=3):
        return Settings(
            _env_file=None,
            persistence=PersistenceConfig(max_retries=retries, retry_backoff_seconds=0),
        )

    def test_transient_failure_is_retried(self, content_store, test_db_path):
        repo = FlakyRepository(test_db_path, failures=2)
        with ProgressionCoordinator(
            content_store, repo, settings=self._settings(), now=FakeClock()
        ) as coordinator:
            result = submit(coordinator, "alg-05", "15", "k1")
            assert result.status == SubmissionStatus.ACCEPTED
            assert repo.calls == 3

    def test_exhausted_retries_leave_no_partial_state(self, content_store, test_db_path):
        repo = FlakyRepository(test_db_path, failures=10)
        with ProgressionCoordinator(
            content_store, repo, settings=self._settings(retries=2), now=FakeClock()
        ) as coordinator:
            with pytest.raises(PersistenceError):
                submit(coordinator, "alg-05", "15", "k1")
            assert repo.calls == 2
            assert coordinator.get_all_topic_progress("s001") == []
            assert coordinator.get_streak("s001").current == 0
            assert not repo.has_attempt("s001", "k1")

    def test_permanent_failure_is_not_retried(self, content_store, test_db_path):
        repo = FlakyRepository(test_db_path, failures=1, retryable=False)
        with ProgressionCoordinator(
            content_store, repo, settings=self._settings(), now=FakeClock()
        ) as coordinator:
            with pytest.raises(PersistenceError):
                submit(coordinator, "alg-05", "15", "k1")
            assert repo.calls == 1
            # The same attempt can be resubmitted once storage recovers
            assert submit(coordinator, "alg-05", "15", "k1").accepted


class BlockingRepository(SQLiteProgressRepository):
    """Holds every commit until `release` is set."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.entered = threading.Event()
        self.release = threading.Event()

    def commit(self, update):
        self.entered.set()
        self.release.wait(timeout=10)
        super().commit(update)


def test_timeout_leaves_work_running(content_store, test_db_path, settings):
    repo = BlockingRepository(test_db_path)
    with ProgressionCoordinator(
        content_store, repo, settings=settings, now=FakeClock()
    ) as coordinator:
        with pytest.raises(TimeoutError):
            submit(coordinator, "alg-05", "15", "slow", timeout=0.05)
        repo.release.set()
        # Queued behind the first attempt on the same actor
        result = submit(coordinator, "alg-05", "15", "next", timeout=10)
        assert result.accepted
        assert repo.has_attempt("s001", "slow")
        assert coordinator.get_topic_progress("s001", "algebra").attempts == 2


def test_readers_see_only_committed_state(content_store, test_db_path, settings):
    repo = BlockingRepository(test_db_path)
    repo.release.set()
    clock = FakeClock()
    with ProgressionCoordinator(
        content_store, repo, settings=settings, now=clock
    ) as coordinator:
        submit(coordinator, "alg-05", "15", "k1")
        streak_before = coordinator.get_streak("s001")
        stats_before = coordinator.get_stats("s001")

        repo.release.clear()
        repo.entered.clear()
        clock.advance(days=1)
        future = coordinator.submit_async(
            AttemptSubmission(
                student_id="s001",
                problem_id="alg-06",
                submitted_answer="18",
                time_spent=60.0,
                idempotency_key="k2",
            )
        )
        assert repo.entered.wait(timeout=5)

        seen = {}

        def read():
            seen["progress"] = coordinator.get_topic_progress("s001", "algebra")
            seen["streak"] = coordinator.get_streak("s001")
            seen["stats"] = coordinator.get_stats("s001")

        reader = threading.Thread(target=read)
        reader.start()
        reader.join(timeout=5)

        # The commit is still held: nothing of k2 is visible
        assert seen["progress"].attempts == 1
        assert seen["streak"] == streak_before
        assert seen["stats"] == stats_before

        repo.release.set()
        assert future.result(timeout=10).accepted
        assert coordinator.get_topic_progress("s001", "algebra").attempts == 2
        assert coordinator.get_streak("s001").current == 2
        assert coordinator.get_stats("s001").problems_attempted == 2


class TestResourceBounds:
    @pytest.fixture
    def many_students(self, content_store):
        ids = [f"st-{i:02d}" for i in range(12)]
        for student_id in ids:
            content_store.add_student(Student(id=student_id, enrolled_at=START))
        return ids

    def test_idle_actors_are_retired(self, coordinator, many_students):
        for i, student_id in enumerate(many_students):
            result = submit(coordinator, "alg-05", "15", f"k{i}", student_id=student_id)
            assert result.accepted

        assert coordinator._actors == {}
        assert coordinator._pending == {}
        workers = [t for t in threading.enumerate() if t.name.startswith("student-")]
        for worker in workers:
            worker.join(timeout=5)
        assert not any(worker.is_alive() for worker in workers)

    def test_actor_retires_after_burst(self, coordinator):
        futures = [
            coordinator.submit_async(
                AttemptSubmission(
                    student_id="s001",
                    problem_id=f"alg-{d:02d}",
                    submitted_answer=str(d * 3),
                    time_spent=60.0,
                    idempotency_key=f"k{d}",
                )
            )
            for d in range(1, 6)
        ]
        assert all(f.result(timeout=10).accepted for f in futures)
        assert coordinator.get_topic_progress("s001", "algebra").attempts == 5
        assert coordinator._actors == {}

    def test_snapshot_cache_is_bounded(
        self, content_store, progress_repo, clock, many_students
    ):
        settings = Settings(
            _env_file=None, coordinator=CoordinatorConfig(max_cached_students=3)
        )
        with ProgressionCoordinator(
            content_store, progress_repo, settings=settings, now=clock
        ) as coordinator:
            for i, student_id in enumerate(many_students):
                submit(coordinator, "alg-05", "15", f"k{i}", student_id=student_id)
                assert len(coordinator._snapshots) <= 3

            assert list(coordinator._snapshots) == many_students[-3:]
            # Evicted students reload their committed state
            assert coordinator.get_stats(many_students[0]).problems_attempted == 1
            assert len(coordinator._snapshots) == 3
            assert many_students[0] in coordinator._snapshots


class TestNextProblems:
    def test_fresh_student_gets_neutral_difficulty(self, coordinator):
        problems = coordinator.get_next_problems("s001", "algebra", limit=3)
        assert [p.id for p in problems] == ["alg-05", "alg-04", "alg-06"]

    def test_follows_recommended_difficulty(self, coordinator):
        submit(coordinator, "alg-05", "15", "k1")
        target = coordinator.get_topic_progress("s001", "algebra").recommended_difficulty

        problems = coordinator.get_next_problems("s001", "algebra", limit=10)
        assert len(problems) == 10
        assert problems[0].difficulty == target
        assert "alg-05" not in [p.id for p in problems[:-1]]
        # Recently solved problems are only offered last
        assert problems[-1].id == "alg-05"

    def test_wrong_answers_are_served_again(self, coordinator):
        submit(coordinator, "alg-05", "1", "k1")
        ids = [p.id for p in coordinator.get_next_problems("s001", "algebra", limit=10)]
        # Mastery dropped below neutral, so the hardest problem is furthest away
        assert ids[-1] == "alg-10"

    def test_window_zero_ignores_history(
        self, content_store, progress_repo, clock
    ):
        settings = Settings(
            _env_file=None, coordinator=CoordinatorConfig(recent_attempts_window=0)
        )
        with ProgressionCoordinator(
            content_store, progress_repo, settings=settings, now=clock
        ) as coordinator:
            submit(coordinator, "alg-05", "15", "k1")
            ids = [
                p.id for p in coordinator.get_next_problems("s001", "algebra", limit=10)
            ]
            # Ranked by difficulty gap alone; mastery rose above neutral
            assert ids[-1] == "alg-01"

    def test_limits_and_unknowns(self, coordinator):
        assert coordinator.get_next_problems("s001", "algebra", limit=0) == []
        assert coordinator.get_next_problems("s001", "topology") == []
        assert len(coordinator.get_next_problems("s001", "algebra")) == 5
        with pytest.raises(NotFoundError):
            coordinator.get_next_problems("ghost", "algebra")


class TestAttemptNumbering:
    def test_numbers_count_per_problem(self, coordinator):
        first = submit(coordinator, "alg-05", "1", "k1")
        second = submit(coordinator, "alg-05", "15", "k2")
        other = submit(coordinator, "alg-06", "18", "k3")

        assert first.attempt.attempt_number == 1
        assert second.attempt.attempt_number == 2
        assert other.attempt.attempt_number == 1
        stored = coordinator.repository.list_attempts("s001")
        assert [a.attempt_number for a in stored] == [1, 2, 1]

    def test_duplicate_does_not_advance_number(self, coordinator):
        submit(coordinator, "alg-05", "15", "k1")
        assert submit(coordinator, "alg-05", "15", "k1").status == SubmissionStatus.DUPLICATE
        assert submit(coordinator, "alg-05", "15", "k2").attempt.attempt_number == 2

    def test_giving_up_counts_as_incorrect(self, coordinator):
        result = submit(coordinator, "alg-05", "", "k1", gave_up=True)

        assert result.accepted
        assert result.attempt.gave_up is True
        assert result.attempt.is_correct is False
        assert result.attempt.points_earned == 0
        progress = coordinator.get_topic_progress("s001", "algebra")
        assert progress.attempts == 1 and progress.correct == 0
        assert coordinator.get_stats("s001").problems_solved == 0
