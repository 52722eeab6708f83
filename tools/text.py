"""Line-number helpers shared by the navigation and edit tools.

Lines are 0-based internally and 1-based in everything shown to the model.
"""

import re
from typing import Tuple

from backend import split_lines

# "12:    return x" -> ("12", "    return x")
LINE_NUM_TEXT_RE = re.compile(r"^\s*(\d+):(.*)$")

PREVIEW_OFFSET = 5


def to_user_line(num: int) -> int:
    return num + 1


def to_internal_line(num: int) -> int:
    return num - 1


def parse_line_number(value) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"Line number {value} could not be parsed as an int.")


def prepend_line_numbers(text: str, start_line: int) -> str:
    """Prefix each line with ``N:`` starting at start_line (1-based)."""
    return "\n".join(f"{i + start_line}:{line}" for i, line in enumerate(text.split("\n")))


def get_text_from_lines(text: str, path: str, start_line: int, end_line: int) -> str:
    """Lines start..end (0-based, inclusive) joined without a trailing newline."""
    lines = split_lines(text)
    last = to_user_line(len(lines) - 1)
    if start_line < 0 or start_line >= len(lines):
        raise ValueError(
            f"Start line number {to_user_line(start_line)} is out of the line range for '{path}:1-{last}'."
        )
    if end_line < 0 or end_line >= len(lines):
        raise ValueError(
            f"End line number {to_user_line(end_line)} is out of the line range for '{path}:1-{last}'."
        )
    return "\n".join(lines[start_line:end_line + 1])


def count_newlines(text: str) -> int:
    return text.count("\n")


def strip_line_numbers(text: str) -> str:
    """Drop any ``N:`` prefix the model copied into replacement text."""
    cleaned = []
    for line in text.split("\n"):
        match = LINE_NUM_TEXT_RE.match(line)
        cleaned.append(match.group(2) if match else line)
    return "\n".join(cleaned)


def preview_window(start_line: int, line_count_before: int, line_count_after: int,
                   new_line_count: int, offset: int = PREVIEW_OFFSET) -> Tuple[int, int]:
    """0-based inclusive window of lines around an applied edit."""
    edit_start = min(start_line, line_count_before - 1)
    preview_start = max(edit_start - offset, 0)
    edit_end = edit_start + new_line_count
    preview_end = min(edit_end + offset, line_count_after - 1)
    # the file may have shrunk below the edit start
    preview_start = min(preview_start, max(line_count_after - 1, 0))
    return preview_start, max(preview_end, preview_start)
