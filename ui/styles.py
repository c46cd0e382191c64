from rich.theme import Theme
from rich.console import Console
from rich.style import Style
from rich.text import Text

PRIMARY_INDIGO = "#5B5FC7"
ACCENT_GOLD = "#F1C40F"
SUCCESS_GREEN = "#27AE60"
ERROR_RED = "#C0392B"
INFO_BLUE = "#3498DB"
MUTED_GRAY = "#7F8C8D"
TEXT_WHITE = "#FFFFFF"

RARITY_COLORS = {
    "common": TEXT_WHITE,
    "rare": INFO_BLUE,
    "epic": "#9B59B6",
    "legendary": ACCENT_GOLD,
}

DEFAULT_THEME = Theme(
    {
        "primary": Style(color=PRIMARY_INDIGO, bold=True),
        "secondary": Style(color=ACCENT_GOLD, bold=True),
        "success": Style(color=SUCCESS_GREEN),
        "error": Style(color=ERROR_RED, bold=True),
        "info": Style(color=INFO_BLUE),
        "muted": Style(color=MUTED_GRAY),
        "title": Style(color=PRIMARY_INDIGO, bold=True),
        "subtitle": Style(color=MUTED_GRAY),
    }
)

CONSOLE = Console(theme=DEFAULT_THEME)


def get_mastery_style(mastery: float) -> Style:
    """Get color style for a 0-100 mastery score."""
    if mastery >= 80:
        return Style(color=SUCCESS_GREEN, bold=True)
    elif mastery >= 50:
        return Style(color=ACCENT_GOLD)
    else:
        return Style(color=ERROR_RED)


def get_retrievability_style(retrievability: float) -> Style:
    """Get color style based on retrievability percentage."""
    if retrievability >= 0.8:
        return Style(color=SUCCESS_GREEN, bold=True)
    elif retrievability >= 0.5:
        return Style(color=ACCENT_GOLD)
    else:
        return Style(color=ERROR_RED)


def get_rarity_style(rarity: str) -> Style:
    return Style(color=RARITY_COLORS.get(rarity.lower(), TEXT_WHITE), bold=True)


def create_success_header() -> Text:
    """Create a success/correct answer header."""
    header = Text()
    header.append("✓ ", Style(color=SUCCESS_GREEN, bold=True))
    header.append("Correct!", Style(color=SUCCESS_GREEN, bold=True))
    return header


def create_error_header() -> Text:
    """Create an error/incorrect answer header."""
    header = Text()
    header.append("✗ ", Style(color=ERROR_RED, bold=True))
    header.append("Not quite!", Style(color=ERROR_RED, bold=True))
    return header
