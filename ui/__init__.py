"""Terminal rendering for the progression CLI."""

from ui.components import (
    AchievementTable,
    ReviewTable,
    StreakPanel,
    SubmissionPanel,
    TopicProgressTable,
)
from ui.styles import (
    CONSOLE,
    PRIMARY_INDIGO,
    ACCENT_GOLD,
    SUCCESS_GREEN,
    ERROR_RED,
    INFO_BLUE,
    MUTED_GRAY,
)

__all__ = [
    "AchievementTable",
    "ReviewTable",
    "StreakPanel",
    "SubmissionPanel",
    "TopicProgressTable",
    "CONSOLE",
    "PRIMARY_INDIGO",
    "ACCENT_GOLD",
    "SUCCESS_GREEN",
    "ERROR_RED",
    "INFO_BLUE",
    "MUTED_GRAY",
]
