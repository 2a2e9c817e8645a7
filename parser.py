from __future__ import annotations
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Tuple, Type, Union

import numpy as np

from diagnostics import SourceLocation, locate, split_lines
from lexer import (
    COMMENT_MARKER,
    LABEL_MARKER,
    LINE_BREAK,
    NUMBER,
    SYMBOL,
    ASKCompileError,
    CompileErrorKind,
    Lexer,
    Token,
)


# Values are unsigned machine words.
WORD_MAX = int(np.iinfo(np.uint64).max)


@dataclass(frozen=True)
class Immediate:
    value: int
    token: Token


@dataclass(frozen=True)
class Slot:
    name: str
    token: Token


Reference = Union[Immediate, Slot]


@dataclass(frozen=True)
class Operation:
    tokens: Tuple[Token, ...]

    mnemonic: ClassVar[str] = ""
    operands: ClassVar[Tuple[str, ...]] = ()
    # Label declarations are applied in the pre-init pass, everything else in the run pass.
    pre_init: ClassVar[bool] = False

    @property
    def leading(self) -> Token:
        return self.tokens[0]


@dataclass(frozen=True)
class Label(Operation):
    name: str
    name_token: Token

    pre_init: ClassVar[bool] = True


@dataclass(frozen=True)
class SlotOperation(Operation):
    slot: str
    slot_token: Token
    ref: Reference

    operands: ClassVar[Tuple[str, ...]] = ("slot", "ref")


@dataclass(frozen=True)
class Mov(SlotOperation):
    mnemonic: ClassVar[str] = "mov"


@dataclass(frozen=True)
class Add(SlotOperation):
    mnemonic: ClassVar[str] = "add"


@dataclass(frozen=True)
class Sub(SlotOperation):
    mnemonic: ClassVar[str] = "sub"


@dataclass(frozen=True)
class Cmp(SlotOperation):
    mnemonic: ClassVar[str] = "cmp"


@dataclass(frozen=True)
class LabelJump(Operation):
    label: str
    label_token: Token

    operands: ClassVar[Tuple[str, ...]] = ("label",)


@dataclass(frozen=True)
class JumpIfTrue(LabelJump):
    mnemonic: ClassVar[str] = "jif"


@dataclass(frozen=True)
class JumpIfFalse(LabelJump):
    mnemonic: ClassVar[str] = "jel"


@dataclass(frozen=True)
class Jump(LabelJump):
    mnemonic: ClassVar[str] = "jmp"


@dataclass(frozen=True)
class RefOperation(Operation):
    ref: Reference

    operands: ClassVar[Tuple[str, ...]] = ("ref",)


@dataclass(frozen=True)
class Output(RefOperation):
    mnemonic: ClassVar[str] = "out"


@dataclass(frozen=True)
class OutputByte(RefOperation):
    mnemonic: ClassVar[str] = "utf"


@dataclass(frozen=True)
class Return(Operation):
    mnemonic: ClassVar[str] = "ret"


@dataclass(frozen=True)
class Halt(Operation):
    mnemonic: ClassVar[str] = "end"


MNEMONICS: Dict[str, Type[Operation]] = {
    cls.mnemonic: cls
    for cls in (Mov, Add, Sub, Cmp, JumpIfTrue, JumpIfFalse, Jump, Output, OutputByte, Return, Halt)
}


@dataclass(frozen=True)
class Executable:
    operations: Tuple[Operation, ...]
    source: str
    filename: str = "<string>"
    source_lines: Tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Split once; every executed step looks its line up here.
        object.__setattr__(self, "source_lines", tuple(split_lines(self.source)))

    def locate(self, token: Token) -> SourceLocation:
        return locate(self.source_lines, self.filename, token.line, token.column, token.length)


# Per-line parser states.
START = "START"
IN_LABEL = "IN_LABEL"
IN_MNEMONIC = "IN_MNEMONIC"
IN_ARGS = "IN_ARGS"
IN_COMMENT = "IN_COMMENT"


class Parser:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self._reset_line()

    def parse(self) -> List[Operation]:
        operations: List[Operation] = []
        for token in self.tokens:
            if token.type == LINE_BREAK:
                operation = self._finish_line()
                if operation is not None:
                    operations.append(operation)
                self._reset_line()
                continue
            if self.state == IN_COMMENT:
                continue
            if token.type == COMMENT_MARKER:
                self.state = IN_COMMENT
                continue
            self.line_tokens.append(token)
            self._advance(token)
        return operations

    def _reset_line(self) -> None:
        self.state = START
        self.line_tokens: List[Token] = []
        self.label_marker: Optional[Token] = None
        self.label_name: Optional[Token] = None
        self.mnemonic: Optional[Token] = None
        self.args: List[Token] = []

    def _advance(self, token: Token) -> None:
        if token.type == LABEL_MARKER:
            if self.state != START:
                raise self._error(CompileErrorKind.INVALID_LOCATION, "Invalid location!", token)
            self.label_marker = token
            self.state = IN_LABEL
            return
        if self.state == IN_LABEL:
            if self.label_name is not None or token.type != SYMBOL:
                raise self._error(CompileErrorKind.INVALID_LOCATION, "Invalid location!", token)
            self.label_name = token
            return
        if self.state == START:
            if token.type != SYMBOL or token.value not in MNEMONICS:
                raise self._error(CompileErrorKind.UNKNOWN_OP, "Unknown operation!", token, detail=token.value)
            self.mnemonic = token
            self.state = IN_MNEMONIC
            return
        self.args.append(token)
        self.state = IN_ARGS

    def _finish_line(self) -> Optional[Operation]:
        if self.label_marker is not None:
            if self.label_name is None:
                raise self._error(CompileErrorKind.EXPECTED_ARGUMENT, "Expected argument!", self.label_marker)
            return Label(tokens=tuple(self.line_tokens), name=self.label_name.value, name_token=self.label_name)
        if self.mnemonic is None:
            return None

        cls = MNEMONICS[self.mnemonic.value]
        arity = len(cls.operands)
        if len(self.args) < arity:
            raise self._error(CompileErrorKind.EXPECTED_ARGUMENT, "Expected argument!", self.mnemonic)
        if len(self.args) > arity:
            raise self._error(CompileErrorKind.INVALID_LOCATION, "Invalid location!", self.args[arity])

        values: Dict[str, object] = {}
        for role, token in zip(cls.operands, self.args):
            if role == "ref":
                values["ref"] = self._resolve_reference(token)
                continue
            # Slot and label operands are names, never literals.
            if token.type != SYMBOL:
                raise self._error(CompileErrorKind.INVALID_LOCATION, "Invalid location!", token)
            values[role] = token.value
            values[f"{role}_token"] = token
        return cls(tokens=tuple(self.line_tokens), **values)

    def _resolve_reference(self, token: Token) -> Reference:
        if token.type == NUMBER:
            value = int(token.value)
            if value > WORD_MAX:
                raise self._error(
                    CompileErrorKind.INVALID_LITERAL,
                    f"Invalid literal '{token.value}'!",
                    token,
                    detail=token.value,
                )
            return Immediate(value=value, token=token)
        return Slot(name=token.value, token=token)

    def _error(
        self,
        kind: CompileErrorKind,
        message: str,
        token: Token,
        *,
        detail: Optional[str] = None,
    ) -> ASKCompileError:
        location = locate(self.source_lines, self.filename, token.line, token.column, token.length)
        return ASKCompileError(kind, message, detail=detail, location=location)


def compile_source(source: str, filename: str = "<string>") -> Executable:
    lexer = Lexer(source, filename)
    tokens = lexer.tokenize()
    parser = Parser(tokens, filename, lexer.source_lines)
    return Executable(operations=tuple(parser.parse()), source=source, filename=filename)
