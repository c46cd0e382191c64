"""Core simulation logic for the learning-curve simulator.

A simulated student with a hidden true knowledge level per topic answers
problems served at the engine's recommended difficulty. Every answer goes
through the real ProgressionCoordinator against its own SQLite database,
so the run exercises validation, mastery, streaks, reviews and achievements
exactly as production traffic would.
"""

import json
import random
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

from config import Settings, get_settings
from coordinator import ProgressionCoordinator
from fsrs_scheduler import get_retrievability
from mastery import bootstrap_progress
from models import (
    Achievement,
    AnswerFormat,
    Problem,
    Student,
    TopicProgress,
    UnlockEvent,
    utc_now,
)
from simulator_models import (
    SimulatedStudentConfig,
    SimulatedStudent,
    AttemptResult,
    DailySummary,
    TopicSnapshot,
    TopicTrajectory,
    SimulationResults,
)
from storage import get_content_store, get_progress_repo, init_schema
from validator import DEFAULT_CHOICE_COUNT, parse_choice, parse_numeric

SIM_STUDENT_ID = "sim-student"
SECONDS_BETWEEN_ATTEMPTS = 120


def wrong_answer(problem: Problem) -> str:
    """A well-formed answer that is graded incorrect."""
    if problem.answer_format == AnswerFormat.NUMERIC:
        value = parse_numeric(problem.correct_answer)
        return str((value or 0) + 1)
    if problem.answer_format == AnswerFormat.CHOICE:
        count = len(problem.choices) or DEFAULT_CHOICE_COUNT
        index = parse_choice(problem.correct_answer, count) or 0
        return str((index + 1) % count)
    return f"not {problem.correct_answer}"


class ResponseGenerator:
    """Generates simulated student responses based on true knowledge."""

    def __init__(self, student: SimulatedStudent):
        self.student = student

    def generate_response(self, problem: Problem) -> bool:
        """
        Generate a response (correct/incorrect) based on:
        1. True knowledge of the problem's topic
        2. Problem difficulty
        3. Slip and guess rates
        """
        knowledge = self.student.get_true_knowledge(problem.topic)

        # Difficulty 10 costs at most 30% of effective knowledge
        difficulty_factor = 1.0 - (problem.difficulty / 10) * 0.3
        effective_knowledge = knowledge * difficulty_factor

        # P(correct) = P(knows) * (1 - P(slip)) + P(not knows) * P(guess)
        p_correct = (
            effective_knowledge * (1 - self.student.config.slip_rate)
            + (1 - effective_knowledge) * self.student.config.guess_rate
        )

        return random.random() < p_correct


class Simulator:
    """Runs the student simulation against a real coordinator."""

    def __init__(
        self,
        problems: list[Problem],
        config: SimulatedStudentConfig,
        db_path: Path,
        achievements: list[Achievement] | None = None,
        settings: Settings | None = None,
    ):
        if not problems:
            raise ValueError("Simulation needs at least one problem")

        self.problems = problems
        self.topics = sorted({p.topic for p in problems})
        self.config = config

        start = utc_now().replace(hour=9, minute=0, second=0, microsecond=0)
        self.current_time = start

        init_schema(db_path)
        content = get_content_store(db_path)
        content.add_student(Student(id=SIM_STUDENT_ID, name="Simulated Student"))
        for problem in problems:
            content.add_problem(problem)
        for achievement in achievements or []:
            content.add_achievement(achievement)

        settings = settings or get_settings()
        self.coordinator = ProgressionCoordinator(
            content,
            get_progress_repo(db_path, timeout=settings.persistence.timeout_seconds),
            settings=settings,
            now=lambda: self.current_time,
        )
        self.coordinator.subscribe(self._on_unlock)

        self.student = SimulatedStudent(config=config)
        self.response_generator = ResponseGenerator(self.student)

        # Results tracking
        self.attempt_results: list[AttemptResult] = []
        self.daily_summaries: list[DailySummary] = []
        self.topic_trajectories: dict[str, TopicTrajectory] = {}
        self.unlocked: list[str] = []
        self._pending_unlocks: list[str] = []
        self._sequence = 0

    def _on_unlock(self, event: UnlockEvent) -> None:
        self.unlocked.append(event.achievement.name)
        self._pending_unlocks.append(event.achievement.name)

    def run(
        self,
        days: int,
        attempts_per_day: int,
        verbose: bool = False,
    ) -> SimulationResults:
        """Run the full simulation."""
        start_time = self.current_time
        try:
            for day in range(1, days + 1):
                day_start = start_time + timedelta(days=day - 1)
                self.current_time = day_start
                self._simulate_day(day, attempts_per_day, verbose)
                self._apply_daily_forgetting()
            end_time = start_time + timedelta(days=days)
            self.current_time = end_time
            return self._compile_results(start_time, end_time, days, attempts_per_day)
        finally:
            self.coordinator.close()

    def _simulate_day(
        self, day: int, attempts_per_day: int, verbose: bool
    ) -> DailySummary:
        """Simulate a single day of practice."""
        due = self.coordinator.get_due_reviews(SIM_STUDENT_ID, limit=attempts_per_day)
        practiced = random.random() < self.config.practice_probability

        day_correct = 0
        day_attempts = 0
        topics_practiced: set[str] = set()

        if practiced:
            # Due reviews first, then new practice spread over the topics
            queue = [(item.topic, True) for item in due]
            while len(queue) < attempts_per_day:
                queue.append((random.choice(self.topics), False))

            for attempt_number, (topic, was_review) in enumerate(queue, start=1):
                result = self._attempt(day, attempt_number, topic, was_review)
                self.attempt_results.append(result)
                day_attempts += 1
                topics_practiced.add(topic)
                if result.is_correct:
                    day_correct += 1
                if verbose:
                    self._print_attempt_result(result)
                self.current_time += timedelta(seconds=SECONDS_BETWEEN_ATTEMPTS)

        streak = self.coordinator.get_streak(SIM_STUDENT_ID)
        summary = DailySummary(
            day=day,
            date=self.current_time,
            practiced=practiced,
            total_attempts=day_attempts,
            correct_count=day_correct,
            accuracy=day_correct / day_attempts if day_attempts > 0 else 0.0,
            reviews_due=len(due),
            topics_practiced=sorted(topics_practiced),
            streak=streak.current,
            grace_tokens=streak.grace_tokens,
            avg_true_knowledge=self._calc_avg_true_knowledge(),
            avg_mastery=self._calc_avg_mastery(),
        )
        print(
            f"day {day}: {day_attempts} attempts, {len(due)} reviews due, "
            f"streak {streak.current}"
        )

        self.daily_summaries.append(summary)
        return summary

    def _choose_problem(self, topic: str) -> Problem:
        """One of the two problems the coordinator would serve next."""
        return random.choice(
            self.coordinator.get_next_problems(SIM_STUDENT_ID, topic, limit=2)
        )

    def _attempt(
        self, day: int, attempt_number: int, topic: str, was_review: bool
    ) -> AttemptResult:
        problem = self._choose_problem(topic)
        true_before = self.student.get_true_knowledge(topic)
        mastery_before = self._mastery_record(topic).mastery

        is_correct = self.response_generator.generate_response(problem)
        answer = problem.correct_answer if is_correct else wrong_answer(problem)

        self._sequence += 1
        self._pending_unlocks = []
        result = self.coordinator.submit_attempt(
            student_id=SIM_STUDENT_ID,
            problem_id=problem.id,
            submitted_answer=answer,
            time_spent=problem.estimated_time * 60,
            idempotency_key=f"sim-{self._sequence}",
        )
        if not result.accepted:
            raise RuntimeError(f"Simulated attempt rejected: {result.message}")

        self.student.update_true_knowledge(topic, is_correct, self.current_time)
        progress = self._mastery_record(topic)
        self._record_topic_snapshot(topic, day, attempt_number)

        return AttemptResult(
            timestamp=self.current_time,
            day=day,
            attempt_number=attempt_number,
            topic=topic,
            problem_id=problem.id,
            difficulty=problem.difficulty,
            was_review=was_review,
            is_correct=result.attempt.is_correct if result.attempt else is_correct,
            true_knowledge_before=true_before,
            mastery_before=mastery_before,
            mastery_after=progress.mastery,
            unlocked=list(self._pending_unlocks),
        )

    def _mastery_record(self, topic: str) -> TopicProgress:
        """Committed TopicProgress, or a neutral one for unpracticed topics."""
        for progress in self.coordinator.get_all_topic_progress(SIM_STUDENT_ID):
            if progress.topic == topic:
                return progress
        return bootstrap_progress(
            SIM_STUDENT_ID, topic, self.coordinator.settings.mastery
        )

    def _apply_daily_forgetting(self) -> None:
        """Apply forgetting curve to all practiced topics."""
        for topic in self.student.true_knowledge:
            self.student.apply_forgetting(topic, days_elapsed=1.0)

    def _record_topic_snapshot(self, topic: str, day: int, attempt_number: int) -> None:
        if topic not in self.topic_trajectories:
            self.topic_trajectories[topic] = TopicTrajectory(
                topic=topic, first_practiced=self.current_time
            )

        progress = self._mastery_record(topic)
        history = self.coordinator.repository.get_review_history(SIM_STUDENT_ID, topic)
        active = next((item for item in history if item.is_active), None)

        self.topic_trajectories[topic].snapshots.append(
            TopicSnapshot(
                timestamp=self.current_time,
                day=day,
                attempt_number=attempt_number,
                true_knowledge=self.student.get_true_knowledge(topic),
                mastery=progress.mastery,
                recommended_difficulty=progress.recommended_difficulty,
                attempts=progress.attempts,
                correct=progress.correct,
                interval_days=active.interval_days if active else None,
                retrievability=get_retrievability(active, self.current_time)
                if active
                else None,
            )
        )

    def _calc_avg_true_knowledge(self) -> float:
        if not self.student.true_knowledge:
            return 0.0
        return sum(self.student.true_knowledge.values()) / len(
            self.student.true_knowledge
        )

    def _calc_avg_mastery(self) -> float:
        records = self.coordinator.get_all_topic_progress(SIM_STUDENT_ID)
        if not records:
            return 0.0
        return sum(p.mastery for p in records) / len(records)

    def _calc_mastery_error(self) -> float:
        records = self.coordinator.get_all_topic_progress(SIM_STUDENT_ID)
        if not records:
            return 0.0
        return sum(
            abs(p.mastery / 100 - self.student.get_true_knowledge(p.topic))
            for p in records
        ) / len(records)

    def _print_attempt_result(self, result: AttemptResult) -> None:
        """Print verbose attempt result."""
        status = "correct" if result.is_correct else "incorrect"
        kind = "review" if result.was_review else "practice"
        print(
            f"  Day {result.day}, #{result.attempt_number} {kind}: "
            f"{result.topic} d{result.difficulty} - {status} | "
            f"true={result.true_knowledge_before:.2f}, "
            f"mastery={result.mastery_before:.1f}->{result.mastery_after:.1f}"
        )

    def _compile_results(
        self,
        start_time: datetime,
        end_time: datetime,
        days: int,
        attempts_per_day: int,
    ) -> SimulationResults:
        """Compile all results into final output."""
        total_correct = sum(1 for r in self.attempt_results if r.is_correct)
        total_attempts = len(self.attempt_results)
        streak = self.coordinator.get_streak(SIM_STUDENT_ID)
        stats = self.coordinator.get_stats(SIM_STUDENT_ID)

        return SimulationResults(
            config=self.config,
            days_simulated=days,
            attempts_per_day=attempts_per_day,
            random_seed=None,  # Will be set by caller if applicable
            start_time=start_time,
            end_time=end_time,
            total_attempts=total_attempts,
            total_correct=total_correct,
            overall_accuracy=total_correct / total_attempts
            if total_attempts > 0
            else 0.0,
            daily_summaries=self.daily_summaries,
            attempt_results=self.attempt_results,
            topic_trajectories=self.topic_trajectories,
            final_streak=streak.current,
            longest_streak=streak.longest,
            final_reviews_due=len(
                self.coordinator.get_due_reviews(SIM_STUDENT_ID, limit=len(self.topics))
            ),
            total_points=stats.total_points,
            level=stats.level,
            achievements_unlocked=list(self.unlocked),
            mastery_error=self._calc_mastery_error(),
        )


def print_console_summary(results: SimulationResults) -> None:
    """Print formatted console summary of simulation results."""
    print()
    print("=" * 80)
    print("                        SIMULATION COMPLETE")
    print("=" * 80)
    print()
    print("Configuration:")
    print(f"  Days simulated:     {results.days_simulated}")
    print(f"  Attempts per day:   {results.attempts_per_day}")
    print(f"  Total attempts:     {results.total_attempts}")
    print()
    print("Student Parameters:")
    print(f"  Learning rate:      {results.config.learning_rate:.2f}")
    print(f"  Retention rate:     {results.config.retention_rate:.2f}")
    print(f"  Slip rate:          {results.config.slip_rate:.2f}")
    print(f"  Guess rate:         {results.config.guess_rate:.2f}")
    print(f"  Practice prob.:     {results.config.practice_probability:.2f}")
    print()
    print("=" * 80)
    print("                        OVERALL RESULTS")
    print("=" * 80)
    print()
    print(
        f"Total correct:        {results.total_correct} / {results.total_attempts} "
        f"({results.overall_accuracy * 100:.1f}%)"
    )
    print(f"Streak:               {results.final_streak} (longest {results.longest_streak})")
    print(f"Reviews due at end:   {results.final_reviews_due}")
    print(f"Points / level:       {results.total_points} / {results.level}")
    print(f"Mastery error:        {results.mastery_error:.3f}")
    if results.achievements_unlocked:
        print(f"Achievements:         {', '.join(results.achievements_unlocked)}")
    print()
    print("=" * 80)
    print("                        DAILY BREAKDOWN")
    print("=" * 80)
    print()
    print("Day   Attempts  Correct  Accuracy  Due  Streak")
    print("----  --------  -------  --------  ---  ------")

    for summary in results.daily_summaries:
        print(
            f"{summary.day:4d}  {summary.total_attempts:8d}  "
            f"{summary.correct_count:7d}  {summary.accuracy * 100:7.1f}%  "
            f"{summary.reviews_due:3d}  {summary.streak:6d}"
        )

    print()
    print("=" * 80)
    print("                        MASTERY vs TRUE KNOWLEDGE")
    print("=" * 80)
    print()
    print("Topic             True Knowledge   Mastery   Difficulty   Attempts")
    print("----------------  --------------   -------   ----------   --------")

    sorted_trajectories = sorted(
        results.topic_trajectories.values(),
        key=lambda t: t.snapshots[-1].attempts if t.snapshots else 0,
        reverse=True,
    )

    for traj in sorted_trajectories:
        if not traj.snapshots:
            continue
        final = traj.snapshots[-1]
        print(
            f"{traj.topic:16s}  {final.true_knowledge:14.2f}   "
            f"{final.mastery:7.1f}   {final.recommended_difficulty:10d}   "
            f"{final.attempts:8d}"
        )

    print()


def save_json_results(results: SimulationResults, output_path: Path) -> None:
    """Save simulation results to JSON file."""
    data = json.loads(results.model_dump_json())

    with open(output_path, "w") as f:
        json.dump(data, f, indent=2, default=str)


def run_simulation_and_report(
    problems: list[Problem],
    config: SimulatedStudentConfig,
    days: int,
    attempts_per_day: int,
    output_path: Path,
    achievements: list[Achievement] | None = None,
    verbose: bool = False,
    seed: int | None = None,
    settings: Settings | None = None,
) -> SimulationResults:
    """Run simulation on a throwaway database and generate all outputs."""
    if seed is not None:
        random.seed(seed)

    with tempfile.TemporaryDirectory() as tmp:
        simulator = Simulator(
            problems,
            config,
            db_path=Path(tmp) / "simulation.db",
            achievements=achievements,
            settings=settings,
        )
        results = simulator.run(days, attempts_per_day, verbose)

    results.random_seed = seed

    print_console_summary(results)

    save_json_results(results, output_path)
    print(f"Results saved to: {output_path}")

    return results
