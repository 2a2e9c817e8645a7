from __future__ import annotations
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from diagnostics import SourceLocation, render_banner
from extensions import HookFailure, HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import ASKCompileError, ASKError, Token
from parser import (
    WORD_MAX,
    Add,
    Cmp,
    Executable,
    Halt,
    Immediate,
    Jump,
    JumpIfFalse,
    JumpIfTrue,
    Label,
    Mov,
    Operation,
    Output,
    OutputByte,
    Reference,
    Return,
    Sub,
    compile_source,
)


# Reserved slot holding the most recent comparison result.
FLAG_SLOT = "#"


class RuntimeErrorKind(Enum):
    UNDEFINED = "Undefined"
    NO_COMPARE = "NoCompare"
    NO_PIN = "NoPin"
    DUPLICATE_PIN = "DuplicatePin"
    NO_RETURN = "NoReturn"
    OVERFLOW = "Overflow"
    UNDERFLOW = "Underflow"
    EXTENSION = "Extension"


class ASKRuntimeError(ASKError):
    """Raised for runtime faults."""

    def __init__(
        self,
        kind: RuntimeErrorKind,
        message: str,
        *,
        detail: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(message, location=location)
        self.kind = kind
        self.detail = detail
        self.step_index: Optional[int] = None


@dataclass
class RuntimeState:
    memory: Dict[str, int] = field(default_factory=dict)
    labels: Dict[str, int] = field(default_factory=dict)
    call_stack: List[int] = field(default_factory=list)
    program_counter: int = 0
    halted: bool = False


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    program_counter: int
    rule: str
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    call_depth: int
    memory_snapshot: Optional[Dict[str, int]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        program_counter: int,
        rule: str,
        location: Optional[SourceLocation],
        call_depth: int,
        memory_snapshot: Optional[Dict[str, int]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            program_counter=program_counter,
            rule=rule,
            source_location=location,
            statement=location.statement.strip() if location else None,
            call_depth=call_depth,
            memory_snapshot=memory_snapshot,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    def last_entries(self, count: int) -> List[StateEntry]:
        return self.entries[-count:] if count > 0 else []


def _stdout_sink(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self.filename = filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or _stdout_sink
        self.logger = StateLogger(verbose=verbose)
        self.executable: Optional[Executable] = None
        self.state: Optional[RuntimeState] = None

    def parse(self) -> Executable:
        return compile_source(self.source, self.filename)

    def run(self) -> RuntimeState:
        return self.execute(self.parse())

    def execute(self, executable: Executable) -> RuntimeState:
        # Every execution starts from a fresh state and log.
        self.executable = executable
        self.logger = StateLogger(verbose=self.verbose)
        state = RuntimeState()
        self.state = state
        self._emit_event("program_start", executable)
        try:
            self._register_labels(executable, state)
            self._run_pass(executable, state)
        except ASKRuntimeError as error:
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            self._emit_event("on_error", error)
            raise
        self._emit_event("program_end", state)
        return state

    def _register_labels(self, executable: Executable, state: RuntimeState) -> None:
        for index, operation in enumerate(executable.operations):
            if not operation.pre_init:
                continue
            assert isinstance(operation, Label)
            if operation.name in state.labels:
                raise self._error(
                    RuntimeErrorKind.DUPLICATE_PIN,
                    f"Pin with name '{operation.name}' already in use!",
                    operation.name_token,
                    detail=operation.name,
                )
            state.labels[operation.name] = index

    def _run_pass(self, executable: Executable, state: RuntimeState) -> None:
        operations = executable.operations
        count = len(operations)
        state.program_counter = 0
        while state.program_counter < count and not state.halted:
            operation = operations[state.program_counter]
            if not operation.pre_init:
                self._log_step(operation, state)
                self._execute_operation(operation, state)
            state.program_counter += 1

    def _execute_operation(self, operation: Operation, state: RuntimeState) -> None:
        if isinstance(operation, Mov):
            state.memory[operation.slot] = self._resolve(operation.ref, state)
            return
        if isinstance(operation, (Add, Sub)):
            current = self._read(operation.slot, operation.slot_token, state)
            operand = self._resolve(operation.ref, state)
            if isinstance(operation, Add):
                result = current + operand
                if result > WORD_MAX:
                    raise self._error(RuntimeErrorKind.OVERFLOW, "Arithmetic overflow!", operation.leading, detail=operation.slot)
            else:
                result = current - operand
                if result < 0:
                    raise self._error(RuntimeErrorKind.UNDERFLOW, "Arithmetic underflow!", operation.leading, detail=operation.slot)
            state.memory[operation.slot] = result
            return
        if isinstance(operation, Cmp):
            current = self._read(operation.slot, operation.slot_token, state)
            operand = self._resolve(operation.ref, state)
            state.memory[FLAG_SLOT] = 1 if current == operand else 0
            return
        if isinstance(operation, (JumpIfTrue, JumpIfFalse)):
            flag = state.memory.pop(FLAG_SLOT, None)
            if flag is None:
                raise self._error(RuntimeErrorKind.NO_COMPARE, "'cmp' operation before expected!", operation.leading)
            expected = 1 if isinstance(operation, JumpIfTrue) else 0
            if flag == expected:
                self._jump(operation.label, operation.label_token, state)
            return
        if isinstance(operation, Jump):
            self._jump(operation.label, operation.label_token, state)
            return
        if isinstance(operation, Return):
            if not state.call_stack:
                raise self._error(RuntimeErrorKind.NO_RETURN, "No pin to jump back to!", operation.leading)
            # Resumes on the operation after the jump that pushed this address.
            state.program_counter = state.call_stack.pop()
            return
        if isinstance(operation, Output):
            self._write_output(str(self._resolve(operation.ref, state)))
            return
        if isinstance(operation, OutputByte):
            value = self._resolve(operation.ref, state)
            self._write_output(bytes([value & 0xFF]).decode("utf-8", errors="replace"))
            return
        if isinstance(operation, Halt):
            state.halted = True
            return
        raise TypeError(f"Unsupported operation {operation.__class__.__name__}")

    def _jump(self, label: str, token: Token, state: RuntimeState) -> None:
        target = state.labels.get(label)
        if target is None:
            raise self._error(RuntimeErrorKind.NO_PIN, f"No pin with name '{label}' found!", token, detail=label)
        state.call_stack.append(state.program_counter)
        state.program_counter = target

    def _read(self, name: str, token: Token, state: RuntimeState) -> int:
        try:
            return state.memory[name]
        except KeyError:
            raise self._error(RuntimeErrorKind.UNDEFINED, f"'{name}' is not defined!", token, detail=name)

    def _resolve(self, ref: Reference, state: RuntimeState) -> int:
        if isinstance(ref, Immediate):
            return ref.value
        return self._read(ref.name, ref.token, state)

    def _write_output(self, text: str) -> None:
        self.output_sink(text)
        self._emit_event("on_output", text)

    def _error(
        self,
        kind: RuntimeErrorKind,
        message: str,
        token: Token,
        *,
        detail: Optional[str] = None,
    ) -> ASKRuntimeError:
        location = self.executable.locate(token) if self.executable else None
        return ASKRuntimeError(kind, message, detail=detail, location=location)

    def _emit_event(self, event: str, payload: Any) -> None:
        try:
            self.hook_registry.emit(event, self, payload)
        except HookFailure as failure:
            loc = None
            if self.logger.entries:
                loc = self.logger.entries[-1].source_location
            raise self._hook_error(failure, loc) from failure.cause

    def _hook_error(self, failure: HookFailure, location: Optional[SourceLocation]) -> ASKRuntimeError:
        return ASKRuntimeError(RuntimeErrorKind.EXTENSION, str(failure), detail=failure.owner, location=location)

    def _log_step(self, operation: Operation, state: RuntimeState) -> None:
        location = self.executable.locate(operation.leading) if self.executable else None
        snapshot = dict(state.memory) if self.verbose else None
        entry = self.logger.record(
            program_counter=state.program_counter,
            rule=operation.mnemonic,
            location=location,
            call_depth=len(state.call_stack),
            memory_snapshot=snapshot,
        )
        if not self.hook_registry.step_rules:
            return
        ctx = StepContext(step_index=entry.step_index, operation=operation, state=state, location=location)
        try:
            self.hook_registry.after_step(self, ctx)
        except HookFailure as failure:
            raise self._hook_error(failure, location) from failure.cause


class TracebackFormatter:
    # Number of trailing state log entries shown in verbose mode.
    history = 5

    def __init__(self, interpreter: Optional[Interpreter] = None) -> None:
        self.interpreter = interpreter

    def format_text(self, error: ASKError, *, verbose: bool = False, color: bool = True) -> str:
        title = "CompileError" if isinstance(error, ASKCompileError) else "RuntimeError"
        lines = [render_banner(title, error.message, error.location, color=color)]
        if not isinstance(error, ASKRuntimeError) or self.interpreter is None:
            return "\n".join(lines)
        entries = self.interpreter.logger.entries
        if error.step_index is not None:
            lines.append(f"State log index: {error.step_index}  State id: s_{error.step_index:06d}")
        if verbose and entries:
            lines.append("Last steps (most recent call last):")
            for entry in self.interpreter.logger.last_entries(self.history):
                where = entry.source_location.line if entry.source_location else "?"
                lines.append(f"  {entry.state_id} line {where} pc {entry.program_counter}: {entry.statement}")
            snapshot = entries[-1].memory_snapshot
            if snapshot is not None:
                rendered = ", ".join(f"{k}={v}" for k, v in snapshot.items())
                lines.append(f"Memory snapshot: {rendered}")
        return "\n".join(lines)

    def to_json(self, error: ASKError) -> str:
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind.value if hasattr(error, "kind") else None,
                "message": error.message,
                "detail": getattr(error, "detail", None),
                "failing_step_index": getattr(error, "step_index", None),
            },
        }
        if error.location is not None:
            data["error"]["source_location"] = {
                "file": error.location.file,
                "line": error.location.line,
                "column": error.location.column,
                "length": error.location.length,
                "statement": error.location.statement,
            }
        steps: List[Dict[str, Any]] = []
        if self.interpreter is not None:
            for entry in self.interpreter.logger.last_entries(self.history):
                item: Dict[str, Any] = {
                    "state_id": entry.state_id,
                    "step_index": entry.step_index,
                    "program_counter": entry.program_counter,
                    "rule": entry.rule,
                    "statement": entry.statement,
                    "call_depth": entry.call_depth,
                }
                if entry.memory_snapshot is not None:
                    item["memory_snapshot"] = entry.memory_snapshot
                steps.append(item)
        data["traceback"] = steps
        return json.dumps(data, indent=2)
