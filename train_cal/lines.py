"""Subway lines served by the calendar endpoint."""

from typing import Dict, FrozenSet, Tuple

VALID_LINES: Tuple[str, ...] = (
    "A", "C", "E", "B", "D", "F", "M", "G", "J", "Z", "L", "N", "Q", "R", "W",
    "1", "2", "3", "4", "5", "6", "7", "S", "SI",
)
_VALID_LINE_SET: FrozenSet[str] = frozenset(VALID_LINES)

CALENDAR_SUFFIX = ".ics"

# MTA trunk colors as (background, text).
LINE_COLORS: Dict[str, Tuple[str, str]] = {
    **dict.fromkeys(("1", "2", "3"), ("#ee352e", "white")),
    **dict.fromkeys(("4", "5", "6"), ("#00933c", "white")),
    "7": ("#b933ad", "white"),
    **dict.fromkeys(("A", "C", "E"), ("#0039a6", "white")),
    **dict.fromkeys(("B", "D", "F", "M"), ("#ff6319", "white")),
    "G": ("#6cbe45", "white"),
    **dict.fromkeys(("J", "Z"), ("#996633", "white")),
    "L": ("#a7a9ac", "white"),
    **dict.fromkeys(("N", "Q", "R", "W"), ("#fccc0a", "black")),
    **dict.fromkeys(("S", "SI"), ("#808183", "white")),
}


def strip_format_suffix(token: str) -> str:
    """Drop a single trailing ``.ics``; anything else is left alone."""
    if token.endswith(CALENDAR_SUFFIX):
        return token[: -len(CALENDAR_SUFFIX)]
    return token


def is_valid_line(token: str) -> bool:
    # Exact match only: "q" and "Si" are not lines.
    return token in _VALID_LINE_SET


def invalid_line_message(token: str) -> str:
    return f"Invalid train line: {token}. Train lines are case-sensitive."
