"""Attempt validation and grading.

Turns a raw `AttemptSubmission` into an immutable, graded `ProblemAttempt`,
or raises `RejectedAttempt`. Nothing in here mutates state; the only side
effect is a log line per rejection.
"""

import math
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any

from loguru import logger

from config import ValidatorConfig
from errors import ConflictError, RejectedAttempt, RejectionReason
from models import (
    AnswerFormat,
    AttemptSubmission,
    Problem,
    ProblemAttempt,
    as_utc,
)
from storage.base import ContentStore, ProgressRepository

# Choice problems without an explicit choice list are AMC style: A-E
DEFAULT_CHOICE_COUNT = 5
# Tolerated client clock skew for submitted_at
MAX_CLOCK_SKEW = timedelta(minutes=5)
# Longest numeric answer text accepted before parsing
DEFAULT_NUMERIC_LENGTH = 64
# Largest decimal exponent accepted, as in "1e100"
MAX_EXPONENT = 100


def parse_numeric(
    value: Any, max_length: int = DEFAULT_NUMERIC_LENGTH
) -> Fraction | None:
    """Parse integers, decimals and fractions ("3/4") exactly.

    Text longer than `max_length` or with an exponent beyond MAX_EXPONENT
    is refused before it reaches Fraction.
    """
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, int):
            text = str(value)
        elif isinstance(value, float):
            # Via repr so 0.1 means 1/10, not its binary expansion
            text = repr(value)
        elif isinstance(value, str):
            text = value.strip().replace(",", "")
        else:
            return None
    except ValueError:
        # int too large to render
        return None

    if not text or len(text) > max_length:
        return None
    _, has_exponent, exponent = text.casefold().partition("e")
    try:
        if has_exponent and abs(int(exponent)) > MAX_EXPONENT:
            return None
        return Fraction(text)
    except (ValueError, OverflowError, ZeroDivisionError):
        return None


def parse_choice(value: Any, choice_count: int) -> int | None:
    """Parse a 0-based choice index or a letter label (A, B, ...)."""
    if isinstance(value, bool):
        return None
    index: int | None = None
    if isinstance(value, int):
        index = value
    elif isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            index = int(text)
        elif len(text) == 1 and text.isascii() and text.isalpha():
            index = ord(text.upper()) - ord("A")
    if index is None or not 0 <= index < choice_count:
        return None
    return index


def normalize_text(value: str) -> str:
    return " ".join(value.split()).casefold()


def _preview(value: Any, width: int = 40) -> str:
    """Short description of a submitted answer for rejection messages."""
    if isinstance(value, str):
        return repr(value if len(value) <= width else value[:width] + "...")
    if isinstance(value, (bool, float)):
        return repr(value)
    return type(value).__name__


class AttemptValidator:
    """Checks references, idempotency, answer shape and timing of attempts."""

    def __init__(
        self,
        content: ContentStore,
        progress: ProgressRepository,
        config: ValidatorConfig | None = None,
    ):
        self.content = content
        self.progress = progress
        self.config = config or ValidatorConfig()

    def validate(self, raw: AttemptSubmission, now: datetime) -> ProblemAttempt:
        """Validate and grade a raw attempt.

        Raises:
            RejectedAttempt: unknown reference, malformed answer or
                implausible timing.
            ConflictError: the idempotency key was already applied.
        """
        try:
            return self._validate(raw, now)
        except ConflictError:
            logger.debug(
                f"Duplicate attempt {raw.idempotency_key} for {raw.student_id}"
            )
            raise
        except RejectedAttempt as e:
            logger.info(
                f"Rejected attempt {raw.idempotency_key} from {raw.student_id} "
                f"on {raw.problem_id}: {e}"
            )
            raise

    def _validate(self, raw: AttemptSubmission, now: datetime) -> ProblemAttempt:
        student = self.content.get_student(raw.student_id)
        if student is None:
            raise RejectedAttempt(
                RejectionReason.UNKNOWN_REFERENCE,
                f"unknown student {raw.student_id!r}",
            )
        if not student.active:
            raise RejectedAttempt(
                RejectionReason.INACTIVE_STUDENT,
                f"student {raw.student_id!r} is deactivated",
            )
        problem = self.content.get_problem(raw.problem_id)
        if problem is None:
            raise RejectedAttempt(
                RejectionReason.UNKNOWN_REFERENCE,
                f"unknown problem {raw.problem_id!r}",
            )

        if not raw.idempotency_key:
            raise RejectedAttempt(
                RejectionReason.MALFORMED_ANSWER, "missing idempotency key"
            )
        if self.progress.has_attempt(raw.student_id, raw.idempotency_key):
            raise ConflictError(raw.student_id, raw.idempotency_key)

        if raw.gave_up:
            # Graded wrong without looking at the answer
            answer, is_correct = "", False
        else:
            answer, is_correct = self.grade(problem, raw.submitted_answer)
        submitted_at = self._check_timing(raw, problem, now)

        return ProblemAttempt(
            student_id=student.id,
            problem_id=problem.id,
            topic=problem.topic,
            difficulty=problem.difficulty,
            competition=problem.competition,
            submitted_answer=answer,
            is_correct=is_correct,
            points_earned=self.points_for(problem, is_correct, raw.hints_used),
            time_spent=float(raw.time_spent),
            hints_used=raw.hints_used,
            submitted_at=submitted_at,
            idempotency_key=raw.idempotency_key,
            gave_up=raw.gave_up,
        )

    def grade(self, problem: Problem, submitted: Any) -> tuple[str, bool]:
        """Check answer shape for the problem's format and grade it.

        Returns:
            Tuple of (normalized answer text, is_correct).
        """
        if problem.answer_format == AnswerFormat.NUMERIC:
            value = parse_numeric(submitted, self.config.max_numeric_answer_length)
            if value is None:
                raise RejectedAttempt(
                    RejectionReason.MALFORMED_ANSWER,
                    f"expected a number, got {_preview(submitted)}",
                )
            accepted = {
                v
                for v in (
                    parse_numeric(a)
                    for a in [problem.correct_answer, *problem.alternative_answers]
                )
                if v is not None
            }
            try:
                answer = str(value)
            except ValueError as e:
                raise RejectedAttempt(
                    RejectionReason.MALFORMED_ANSWER, f"number too large: {e}"
                ) from e
            return answer, value in accepted

        if problem.answer_format == AnswerFormat.CHOICE:
            count = len(problem.choices) or DEFAULT_CHOICE_COUNT
            index = parse_choice(submitted, count)
            if index is None:
                raise RejectedAttempt(
                    RejectionReason.MALFORMED_ANSWER,
                    f"expected a choice among {count} options, got {_preview(submitted)}",
                )
            return str(index), index == parse_choice(problem.correct_answer, count)

        # Free text
        if not isinstance(submitted, str) or not submitted.strip():
            raise RejectedAttempt(
                RejectionReason.MALFORMED_ANSWER, "expected a non-empty answer"
            )
        if len(submitted) > self.config.max_text_answer_length:
            raise RejectedAttempt(
                RejectionReason.MALFORMED_ANSWER,
                f"answer longer than {self.config.max_text_answer_length} characters",
            )
        answer = normalize_text(submitted)
        accepted_text = {
            normalize_text(a)
            for a in [problem.correct_answer, *problem.alternative_answers]
        }
        return answer, answer in accepted_text

    def points_for(self, problem: Problem, is_correct: bool, hints_used: int) -> int:
        if not is_correct:
            return 0
        factor = max(0.0, 1.0 - self.config.hint_penalty * hints_used)
        return round(problem.points * factor)

    def _check_timing(
        self, raw: AttemptSubmission, problem: Problem, now: datetime
    ) -> datetime:
        time_spent = raw.time_spent
        if not math.isfinite(time_spent) or time_spent < 0:
            raise RejectedAttempt(
                RejectionReason.IMPLAUSIBLE_TIMING,
                f"time spent must be non-negative, got {time_spent}",
            )
        if time_spent >= self.config.max_time_spent_seconds:
            raise RejectedAttempt(
                RejectionReason.IMPLAUSIBLE_TIMING,
                f"time spent {time_spent}s exceeds "
                f"{self.config.max_time_spent_seconds}s",
            )
        if not 0 <= raw.hints_used <= problem.hint_count:
            raise RejectedAttempt(
                RejectionReason.MALFORMED_ANSWER,
                f"hints used must be between 0 and {problem.hint_count}",
            )

        now = as_utc(now)
        if raw.submitted_at is None:
            return now
        submitted_at = as_utc(raw.submitted_at)
        if submitted_at > now + MAX_CLOCK_SKEW:
            raise RejectedAttempt(
                RejectionReason.IMPLAUSIBLE_TIMING,
                f"attempt timestamp {submitted_at.isoformat()} is in the future",
            )
        return submitted_at
