"""Source pretty printer used by ``ask --fmt``."""

from __future__ import annotations
from typing import List

from diagnostics import colorize
from lexer import COMMENT_MARKER, LABEL_MARKER, LINE_BREAK, Lexer, Token
from parser import Jump, JumpIfFalse, JumpIfTrue

JUMP_MNEMONICS = {Jump.mnemonic, JumpIfTrue.mnemonic, JumpIfFalse.mnemonic}


def _format_line(tokens: List[Token], color: bool) -> str:
    parts: List[str] = []
    is_label = bool(tokens) and tokens[0].type == LABEL_MARKER
    mnemonic = None
    in_comment = False
    glue = False
    for token in tokens:
        if token.type == COMMENT_MARKER:
            in_comment = True
            text = colorize('"', "bright_green", enabled=color)
        elif in_comment:
            text = colorize(token.value, "bright_green", enabled=color)
        elif token.type == LABEL_MARKER:
            text = colorize(":", "bright_blue", enabled=color)
        elif is_label:
            text = colorize(token.value, "bright_blue", enabled=color)
        elif mnemonic is None:
            mnemonic = token.value
            text = colorize(token.value, "bright_red", enabled=color)
        elif mnemonic in JUMP_MNEMONICS:
            text = colorize(token.value, "bright_blue", enabled=color)
        else:
            text = colorize(token.value, "white", enabled=color)
        if parts and not glue:
            parts.append(" ")
        parts.append(text)
        # Label names attach directly to their marker.
        glue = token.type == LABEL_MARKER and not in_comment
    return "".join(parts)


def format_tokens(tokens: List[Token], *, color: bool = True) -> str:
    lines: List[str] = []
    current: List[Token] = []
    for token in tokens:
        if token.type == LINE_BREAK:
            lines.append(_format_line(current, color))
            current = []
            continue
        current.append(token)
    if lines and lines[-1] == "":
        lines.pop()
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def format_source(source: str, filename: str = "<string>", *, color: bool = True) -> str:
    return format_tokens(Lexer(source, filename).tokenize(), color=color)
