"""Terminal output helpers shared by the API launcher and the CLI client."""

from enum import Enum
from typing import Any

RESET = "\033[0m"


class AnsiColors(Enum):
    """ANSI colour codes used for CLI output."""

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colorize(text: str, color: AnsiColors) -> str:
    """Wrap *text* in *color* and a trailing reset."""
    return f"{color.value}{text}{RESET}"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """``print`` *text* in *color*; extra arguments go straight to ``print``."""
    print(colorize(text, color), *args, **kwargs)


def outcome_color(succeeded: bool) -> AnsiColors:
    """Green for a successful tool, red for a failed one."""
    return AnsiColors.GREEN if succeeded else AnsiColors.RED
