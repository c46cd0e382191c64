from datetime import datetime

from rich.text import Text
from rich.panel import Panel
from rich.table import Table
from rich.style import Style
from rich.align import Align
from rich import box

from models import (
    Achievement,
    ReviewItem,
    StreakState,
    StreakStatus,
    StudentAchievement,
    StudentStats,
    SubmissionResult,
    SubmissionStatus,
    TopicProgress,
)
from ui.styles import (
    PRIMARY_INDIGO,
    ACCENT_GOLD,
    SUCCESS_GREEN,
    ERROR_RED,
    INFO_BLUE,
    MUTED_GRAY,
    TEXT_WHITE,
    create_error_header,
    create_success_header,
    get_mastery_style,
    get_rarity_style,
    get_retrievability_style,
)


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "N/A"


class SubmissionPanel:
    """Outcome of one submitted attempt."""

    def __init__(
        self,
        result: SubmissionResult,
        achievements: dict[str, Achievement] | None = None,
    ):
        self.result = result
        self.achievements = achievements or {}

    def render(self) -> Panel:
        content = Text()
        result = self.result

        if result.status == SubmissionStatus.REJECTED:
            content.append("Rejected: ", Style(color=ERROR_RED, bold=True))
            content.append(f"{result.reason}\n", Style(color=ERROR_RED))
            content.append(result.message or "", Style(color=MUTED_GRAY))
            border = ERROR_RED
        elif result.status == SubmissionStatus.DUPLICATE:
            content.append("Already recorded", Style(color=INFO_BLUE, bold=True))
            content.append("\nThis attempt was applied earlier.", Style(color=MUTED_GRAY))
            border = INFO_BLUE
        else:
            attempt = result.attempt
            correct = attempt is not None and attempt.is_correct
            content.append(create_success_header() if correct else create_error_header())
            if attempt is not None:
                answered = (
                    "You gave up"
                    if attempt.gave_up
                    else f"You answered: {attempt.submitted_answer}"
                )
                content.append(
                    f"\n{answered} (attempt {attempt.attempt_number})\n",
                    Style(color=MUTED_GRAY),
                )
                content.append("Points earned: ", Style(color=MUTED_GRAY))
                content.append(
                    str(attempt.points_earned), Style(color=ACCENT_GOLD, bold=True)
                )
            for earned in result.unlocked:
                achievement = self.achievements.get(earned.achievement_id)
                name = achievement.name if achievement else earned.achievement_id
                content.append("\n\n🏆 Unlocked: ", Style(color=ACCENT_GOLD, bold=True))
                content.append(name, Style(color=TEXT_WHITE, bold=True))
            border = SUCCESS_GREEN if correct else ERROR_RED

        return Panel(
            Align.left(content),
            title="Result",
            border_style=border,
            box=box.HEAVY,
            padding=(1, 2),
        )

    def __rich__(self) -> Panel:
        return self.render()


class TopicProgressTable:
    """A styled table of per-topic mastery."""

    def __init__(self, progress: list[TopicProgress]):
        self.progress = progress

    def render(self) -> Panel:
        table = Table(
            show_header=True,
            header_style=Style(color=PRIMARY_INDIGO, bold=True),
            border_style=MUTED_GRAY,
            row_styles=[Style(), Style(dim=True)],
            box=box.HEAVY,
        )

        table.add_column("Topic", style=Style(color=TEXT_WHITE, bold=True))
        table.add_column("Mastery", justify="right")
        table.add_column("Next Difficulty", justify="center")
        table.add_column("Accuracy", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Last Practiced", style=Style(color=MUTED_GRAY))

        for item in self.progress:
            table.add_row(
                item.topic,
                Text(f"{item.mastery:.1f}", style=get_mastery_style(item.mastery)),
                str(item.recommended_difficulty),
                f"{item.accuracy * 100:.0f}%",
                str(item.attempts),
                _format_time(item.last_practiced),
            )

        return Panel(
            Align.center(table),
            title="Topic Mastery",
            border_style=ACCENT_GOLD,
            box=box.HEAVY,
            padding=(1, 1),
        )

    def __rich__(self) -> Panel:
        return self.render()


class ReviewTable:
    """Due reviews with their estimated recall probability."""

    def __init__(self, reviews: list[ReviewItem], retrievability: dict[str, float]):
        self.reviews = reviews
        self.retrievability = retrievability

    def render(self) -> Panel:
        table = Table(
            show_header=True,
            header_style=Style(color=PRIMARY_INDIGO, bold=True),
            border_style=MUTED_GRAY,
            box=box.HEAVY,
        )

        table.add_column("Topic", style=Style(color=TEXT_WHITE, bold=True))
        table.add_column("Due", style=Style(color=INFO_BLUE))
        table.add_column("Interval", justify="right")
        table.add_column("Lapses", justify="right")
        table.add_column("Retrievability", justify="center")

        for item in self.reviews:
            retrievability = self.retrievability.get(item.id)
            if retrievability is None:
                ret_text = Text("N/A", style=Style(color=MUTED_GRAY))
            else:
                ret_text = Text(
                    f"{retrievability * 100:.0f}%",
                    style=get_retrievability_style(retrievability),
                )
            table.add_row(
                item.topic,
                _format_time(item.due_at),
                f"{item.interval_days:g}d",
                str(item.lapse_count),
                ret_text,
            )

        return Panel(
            Align.center(table),
            title="Due Reviews",
            border_style=INFO_BLUE,
            box=box.HEAVY,
            padding=(1, 1),
        )

    def __rich__(self) -> Panel:
        return self.render()


class StreakPanel:
    """Current streak, longest streak and grace tokens."""

    STATUS_STYLES = {
        StreakStatus.ACTIVE: Style(color=SUCCESS_GREEN, bold=True),
        StreakStatus.GRACE: Style(color=ACCENT_GOLD, bold=True),
        StreakStatus.INACTIVE: Style(color=MUTED_GRAY),
    }

    def __init__(self, streak: StreakState, status: StreakStatus, stats: StudentStats):
        self.streak = streak
        self.status = status
        self.stats = stats

    def render(self) -> Panel:
        stats = Table(show_header=False, border_style=MUTED_GRAY, box=box.SIMPLE)
        stats.add_column("Label", style=Style(color=MUTED_GRAY))
        stats.add_column("Value", justify="right")

        stats.add_row(
            "Streak",
            Text(
                f"{self.streak.current} days ({self.status.value})",
                style=self.STATUS_STYLES[self.status],
            ),
        )
        stats.add_row("Longest", str(self.streak.longest))
        stats.add_row("Grace tokens", str(self.streak.grace_tokens))
        stats.add_row(
            "Solved",
            f"{self.stats.problems_solved}/{self.stats.problems_attempted}",
        )
        stats.add_row(
            "Points",
            Text(str(self.stats.total_points), style=Style(color=ACCENT_GOLD, bold=True)),
        )
        stats.add_row("Level", str(self.stats.level))

        return Panel(
            Align.center(stats),
            title="Progress",
            border_style=PRIMARY_INDIGO,
            box=box.HEAVY,
            padding=(1, 2),
        )

    def __rich__(self) -> Panel:
        return self.render()


class AchievementTable:
    """Achievements a student has earned."""

    def __init__(
        self, earned: list[StudentAchievement], definitions: dict[str, Achievement]
    ):
        self.earned = earned
        self.definitions = definitions

    def render(self) -> Panel:
        table = Table(
            show_header=True,
            header_style=Style(color=PRIMARY_INDIGO, bold=True),
            border_style=MUTED_GRAY,
            box=box.HEAVY,
        )
        table.add_column("Achievement")
        table.add_column("Description", style=Style(color=MUTED_GRAY))
        table.add_column("Points", justify="right")
        table.add_column("Earned", style=Style(color=MUTED_GRAY))

        for earned in self.earned:
            achievement = self.definitions.get(earned.achievement_id)
            if achievement is None:
                table.add_row(earned.achievement_id, "", "", _format_time(earned.earned_at))
                continue
            table.add_row(
                Text(achievement.name, style=get_rarity_style(achievement.rarity.value)),
                achievement.description,
                str(achievement.points),
                _format_time(earned.earned_at),
            )

        return Panel(
            Align.center(table),
            title="Achievements",
            border_style=ACCENT_GOLD,
            box=box.HEAVY,
            padding=(1, 1),
        )

    def __rich__(self) -> Panel:
        return self.render()
