from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence


ANSI_RESET = "\x1b[0m"

# Foreground codes for the palette used by diagnostic banners and --fmt.
COLORS = {
    "black": 30,
    "red": 31,
    "green": 32,
    "yellow": 33,
    "blue": 34,
    "magenta": 35,
    "cyan": 36,
    "white": 37,
    "bright_black": 90,
    "bright_red": 91,
    "bright_green": 92,
    "bright_yellow": 93,
    "bright_blue": 94,
    "bright_magenta": 95,
    "bright_cyan": 96,
    "bright_white": 97,
}


def colorize(text: str, color: str, *, enabled: bool = True) -> str:
    if not enabled:
        return text
    return f"\x1b[{COLORS[color]}m{text}{ANSI_RESET}"


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int  # 1-based
    column: int  # 1-based
    length: int
    statement: str


def split_lines(text: str) -> List[str]:
    """Split on newline only, dropping a trailing carriage return per line.

    Line numbers produced by the lexer count ``\\n`` alone, so the other
    separators ``str.splitlines`` honours must stay inside their line.
    """
    return [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]


def locate(source_lines: Sequence[str], filename: str, line: int, column: int, length: int) -> SourceLocation:
    """Build a SourceLocation from a 0-based (line, column) position."""
    statement = ""
    if 0 <= line < len(source_lines):
        statement = source_lines[line]
    return SourceLocation(
        file=filename,
        line=line + 1,
        column=column + 1,
        length=max(1, length),
        statement=statement,
    )


def render_banner(title: str, message: str, location: Optional[SourceLocation], *, color: bool = True) -> str:
    """Render the framed error banner shared by compile and runtime failures.

    The layout is::

        CompileError: Unknown operation!
           |
         3 | foo a 1
           | ^^^ Unknown operation!
    """
    head = f"{colorize(title, 'bright_red', enabled=color)}: {colorize(message, 'bright_white', enabled=color)}"
    if location is None:
        return head
    number = str(location.line)
    pad = " " * len(number)
    bar = colorize("|", "bright_blue", enabled=color)
    carets = " " * (location.column - 1) + "^" * location.length
    lines = [
        head,
        f" {pad} {bar}",
        f"{colorize(f' {number} |', 'bright_blue', enabled=color)} {location.statement}",
        f" {pad} {bar} {colorize(carets, 'bright_red', enabled=color)} {colorize(message, 'bright_red', enabled=color)}",
    ]
    return "\n".join(lines)
