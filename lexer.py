from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from diagnostics import SourceLocation, locate, split_lines


class ASKError(Exception):
    """Base class for compiler and interpreter errors."""

    def __init__(self, message: str, *, location: Optional[SourceLocation] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location


class CompileErrorKind(Enum):
    UNEXPECTED_CHAR = "UnexpectedChar"
    UNKNOWN_OP = "UnknownOp"
    INVALID_LOCATION = "InvalidLocation"
    EXPECTED_ARGUMENT = "ExpectedArgument"
    INVALID_LITERAL = "InvalidLiteral"


class ASKCompileError(ASKError):
    """Raised when lexing or parsing fails."""

    def __init__(
        self,
        kind: CompileErrorKind,
        message: str,
        *,
        detail: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(message, location=location)
        self.kind = kind
        self.detail = detail


SYMBOL = "SYMBOL"
NUMBER = "NUMBER"
LINE_BREAK = "LINE_BREAK"
LABEL_MARKER = "LABEL_MARKER"
COMMENT_MARKER = "COMMENT_MARKER"

LABEL_CHAR = ":"
COMMENT_CHAR = '"'
DIGITS = "0123456789"


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int  # 0-based
    column: int  # 0-based

    @property
    def position(self) -> Tuple[int, int]:
        return (self.line, self.column)

    @property
    def length(self) -> int:
        if self.type in (SYMBOL, NUMBER):
            return len(self.value)
        return 1


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.source_lines = split_lines(text)
        self.line = 0
        self.column = 0
        self.tokens: List[Token] = []
        # Pending buffers: (chars, start line, start column)
        self._symbol: List[str] = []
        self._symbol_start: Tuple[int, int] = (0, 0)
        self._number: List[str] = []
        self._number_start: Tuple[int, int] = (0, 0)

    def tokenize(self) -> List[Token]:
        tokens_append = self.tokens.append
        for ch in self.text:
            if ch.isalpha() or ch == "_":
                if not self._symbol:
                    self._symbol_start = (self.line, self.column)
                self._symbol.append(ch)
            elif ch in DIGITS:
                if not self._number:
                    self._number_start = (self.line, self.column)
                self._number.append(ch)
            elif ch in " \t\r":
                self._flush()
            elif ch == "\n":
                self._flush()
                tokens_append(Token(LINE_BREAK, "\n", self.line, self.column))
                self.line += 1
                self.column = 0
                continue
            elif ch == LABEL_CHAR:
                self._flush()
                tokens_append(Token(LABEL_MARKER, ch, self.line, self.column))
            elif ch == COMMENT_CHAR:
                self._flush()
                tokens_append(Token(COMMENT_MARKER, ch, self.line, self.column))
            else:
                raise ASKCompileError(
                    CompileErrorKind.UNEXPECTED_CHAR,
                    f"Unexpected character '{ch}'!",
                    detail=ch,
                    location=locate(self.source_lines, self.filename, self.line, self.column, 1),
                )
            self.column += 1
        self._flush()
        tokens_append(Token(LINE_BREAK, "\n", self.line, self.column))
        return self.tokens

    def _flush(self) -> None:
        pending = []
        if self._symbol:
            pending.append((self._symbol_start, Token(SYMBOL, "".join(self._symbol), *self._symbol_start)))
            self._symbol = []
        if self._number:
            pending.append((self._number_start, Token(NUMBER, "".join(self._number), *self._number_start)))
            self._number = []
        # Emit in the order the buffers were started.
        pending.sort(key=lambda item: item[0])
        self.tokens.extend(token for _, token in pending)


def tokenize(text: str, filename: str = "<string>") -> List[Token]:
    return Lexer(text, filename).tokenize()
