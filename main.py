import argparse
import json
import sys
import uuid
from pathlib import Path

from config import get_settings
from coordinator import ProgressionCoordinator
from errors import NotFoundError, PersistenceError
from fsrs_scheduler import get_retrievability
from logging_config import configure_logging
from models import utc_now
from storage import (
    get_content_store,
    get_progress_repo,
    init_schema,
    load_content_bundle,
)
from ui import (
    CONSOLE,
    AchievementTable,
    ReviewTable,
    StreakPanel,
    SubmissionPanel,
    TopicProgressTable,
)

DATA_DIR = Path(__file__).parent / "data"
SAMPLE_BUNDLE = DATA_DIR / "sample_content.json"


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with subcommands."""
    parser = argparse.ArgumentParser(description="MathChamp progression engine")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite database path (default: from settings)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level, e.g. DEBUG or INFO (default: from settings)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Seed subcommand
    seed_parser = subparsers.add_parser("seed", help="Load a JSON content bundle")
    seed_parser.add_argument(
        "bundle",
        type=Path,
        nargs="?",
        default=SAMPLE_BUNDLE,
        help="Bundle file (default: data/sample_content.json)",
    )

    # Submit subcommand
    submit_parser = subparsers.add_parser("submit", help="Submit an attempt")
    submit_parser.add_argument("student_id")
    submit_parser.add_argument("problem_id")
    submit_parser.add_argument("answer", nargs="?", default="")
    submit_parser.add_argument(
        "--time",
        "-t",
        type=float,
        default=60.0,
        help="Seconds spent on the problem (default: 60)",
    )
    submit_parser.add_argument(
        "--hints", type=int, default=0, help="Hints used (default: 0)"
    )
    submit_parser.add_argument(
        "--key",
        "-k",
        default=None,
        help="Idempotency key (default: a new random key)",
    )
    submit_parser.add_argument(
        "--give-up", action="store_true", help="Record the problem as given up"
    )

    # Status subcommand
    status_parser = subparsers.add_parser("status", help="Show a student's progress")
    status_parser.add_argument("student_id")

    # Reviews subcommand
    reviews_parser = subparsers.add_parser("reviews", help="Show due reviews")
    reviews_parser.add_argument("student_id")
    reviews_parser.add_argument(
        "--limit", "-n", type=int, default=10, help="Maximum reviews (default: 10)"
    )

    # Simulate subcommand
    sim_parser = subparsers.add_parser("simulate", help="Run student simulation")
    sim_parser.add_argument(
        "--bundle",
        type=Path,
        default=SAMPLE_BUNDLE,
        help="Content bundle providing problems and achievements",
    )
    sim_parser.add_argument(
        "--days",
        "-d",
        type=int,
        default=30,
        help="Number of days to simulate (default: 30)",
    )
    sim_parser.add_argument(
        "--attempts-per-day",
        "-a",
        type=int,
        default=8,
        help="Attempts per day (default: 8)",
    )
    sim_parser.add_argument(
        "--learning-rate",
        "-l",
        type=float,
        default=0.3,
        help="Student learning rate 0.0-1.0 (default: 0.3)",
    )
    sim_parser.add_argument(
        "--retention-rate",
        "-r",
        type=float,
        default=0.9,
        help="Student retention rate 0.0-1.0 (default: 0.9)",
    )
    sim_parser.add_argument(
        "--slip-rate",
        "-s",
        type=float,
        default=0.1,
        help="Error/slip rate 0.0-0.5 (default: 0.1)",
    )
    sim_parser.add_argument(
        "--guess-rate",
        "-g",
        type=float,
        default=0.2,
        help="Guess rate 0.0-0.5 (default: 0.2)",
    )
    sim_parser.add_argument(
        "--practice-probability",
        "-p",
        type=float,
        default=0.9,
        help="Chance of practicing on a given day (default: 0.9)",
    )
    sim_parser.add_argument(
        "--output",
        "-o",
        type=str,
        default="simulation_results.json",
        help="Output JSON file path (default: simulation_results.json)",
    )
    sim_parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Print detailed attempt-by-attempt output",
    )
    sim_parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducibility",
    )

    return parser


def build_coordinator(db_path: Path) -> ProgressionCoordinator:
    """Wire a coordinator to the SQLite stores at `db_path`."""
    settings = get_settings()
    init_schema(db_path)
    return ProgressionCoordinator(
        get_content_store(db_path),
        get_progress_repo(db_path, timeout=settings.persistence.timeout_seconds),
        settings=settings,
    )


def run_seed(args, db_path: Path) -> int:
    init_schema(db_path)
    counts = load_content_bundle(get_content_store(db_path), args.bundle)
    CONSOLE.print(
        f"Loaded {counts['students']} students, {counts['problems']} problems and "
        f"{counts['achievements']} achievements into {db_path}",
        style="success",
    )
    return 0


def run_submit(args, db_path: Path) -> int:
    with build_coordinator(db_path) as coordinator:
        result = coordinator.submit_attempt(
            student_id=args.student_id,
            problem_id=args.problem_id,
            submitted_answer=args.answer,
            time_spent=args.time,
            hints_used=args.hints,
            idempotency_key=args.key or str(uuid.uuid4()),
            gave_up=args.give_up,
        )
        definitions = {a.id: a for a in coordinator.content.get_achievements()}
    CONSOLE.print(SubmissionPanel(result, definitions))
    return 0 if result.accepted else 1


def run_status(args, db_path: Path) -> int:
    with build_coordinator(db_path) as coordinator:
        topics = coordinator.get_all_topic_progress(args.student_id)
        streak = coordinator.get_streak(args.student_id)
        status = coordinator.get_streak_status(args.student_id)
        stats = coordinator.get_stats(args.student_id)
        earned = coordinator.get_achievements(args.student_id)
        definitions = {a.id: a for a in coordinator.content.get_achievements()}

    CONSOLE.print(StreakPanel(streak, status, stats))
    if topics:
        CONSOLE.print(TopicProgressTable(topics))
    else:
        CONSOLE.print("No topics practiced yet.", style="muted")
    if earned:
        CONSOLE.print(AchievementTable(earned, definitions))
    return 0


def run_reviews(args, db_path: Path) -> int:
    with build_coordinator(db_path) as coordinator:
        reviews = coordinator.get_due_reviews(args.student_id, limit=args.limit)
    if not reviews:
        CONSOLE.print("Nothing due for review.", style="muted")
        return 0
    now = utc_now()
    retrievability = {item.id: get_retrievability(item, now) for item in reviews}
    CONSOLE.print(ReviewTable(reviews, retrievability))
    return 0


def run_simulation(args) -> int:
    """Run the simulation subcommand."""
    from simulate import run_simulation_and_report
    from simulator_models import SimulatedStudentConfig
    from models import Achievement, Problem

    config = SimulatedStudentConfig(
        learning_rate=args.learning_rate,
        retention_rate=args.retention_rate,
        slip_rate=args.slip_rate,
        guess_rate=args.guess_rate,
        practice_probability=args.practice_probability,
    )

    with open(args.bundle) as f:
        bundle = json.load(f)
    problems = [Problem.model_validate(p) for p in bundle.get("problems", [])]
    achievements = [Achievement.model_validate(a) for a in bundle.get("achievements", [])]

    if not problems:
        CONSOLE.print(f"Error: No problems found in {args.bundle}.", style="error")
        return 1

    CONSOLE.print("=" * 40, style="bold blue")
    CONSOLE.print("    Student Simulator", style="bold blue")
    CONSOLE.print("=" * 40, style="bold blue")
    CONSOLE.print()

    CONSOLE.print(
        f"Simulating {args.days} days with {args.attempts_per_day} attempts/day..."
    )
    if args.seed is not None:
        CONSOLE.print(f"Random seed: {args.seed}")
    CONSOLE.print()

    run_simulation_and_report(
        problems=problems,
        config=config,
        days=args.days,
        attempts_per_day=args.attempts_per_day,
        output_path=Path(args.output),
        achievements=achievements,
        verbose=args.verbose,
        seed=args.seed,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point with CLI routing."""
    parser = create_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_json)
    db_path = args.db or settings.persistence.db_path

    try:
        if args.command == "seed":
            return run_seed(args, db_path)
        if args.command == "submit":
            return run_submit(args, db_path)
        if args.command == "status":
            return run_status(args, db_path)
        if args.command == "reviews":
            return run_reviews(args, db_path)
        if args.command == "simulate":
            return run_simulation(args)
    except NotFoundError as e:
        CONSOLE.print(f"Error: {e}", style="error")
        return 1
    except PersistenceError as e:
        CONSOLE.print(f"Storage error: {e}", style="error")
        return 2

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
