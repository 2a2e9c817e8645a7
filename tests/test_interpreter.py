import pytest

from extensions import RuntimeServices
from interpreter import FLAG_SLOT, ASKRuntimeError, Interpreter, RuntimeErrorKind
from parser import WORD_MAX, Label, compile_source


def make_interpreter(**kwargs):
    output = []
    interpreter = Interpreter(output_sink=output.append, **kwargs)
    return interpreter, output


def run(source):
    interpreter, output = make_interpreter()
    state = interpreter.execute(compile_source(source))
    return "".join(output), state


def run_error(source):
    interpreter, output = make_interpreter()
    with pytest.raises(ASKRuntimeError) as info:
        interpreter.execute(compile_source(source))
    return info.value, "".join(output), interpreter


def test_mov_out_end():
    output, state = run("mov a 5\nout a\nend")
    assert output == "5"
    assert state.halted
    assert state.memory == {"a": 5}


def test_cmp_on_undefined_slot():
    error, _, _ = run_error("cmp a 5\nout 1\nend")
    assert error.kind is RuntimeErrorKind.UNDEFINED
    assert error.detail == "a"
    assert error.message == "'a' is not defined!"
    assert (error.location.column, error.location.length) == (5, 1)


def test_duplicate_label_fails_before_any_instruction():
    error, output, _ = run_error("out 1\n: a\nout 2\n:a\nend")
    assert error.kind is RuntimeErrorKind.DUPLICATE_PIN
    assert error.detail == "a"
    assert (error.location.line, error.location.column) == (4, 2)
    assert output == ""
    assert error.step_index is None


def test_jump_to_missing_label():
    error, _, _ = run_error("jmp X")
    assert error.kind is RuntimeErrorKind.NO_PIN
    assert error.detail == "X"
    assert error.message == "No pin with name 'X' found!"
    assert (error.location.column, error.location.length) == (5, 1)


def test_return_with_empty_call_stack():
    error, _, _ = run_error("ret\nend")
    assert error.kind is RuntimeErrorKind.NO_RETURN
    assert error.location.column == 1
    assert error.location.length == 3


def test_conditional_jump_without_compare():
    error, _, _ = run_error("mov a 5\njif L\n: L\nend")
    assert error.kind is RuntimeErrorKind.NO_COMPARE
    assert (error.location.line, error.location.column, error.location.length) == (2, 1, 3)


def test_conditional_jump_round_trip():
    output, _ = run("mov a 5\ncmp a 5\njif L\nout 1\n: L\nout 2\nend")
    assert output == "2"


def test_jif_not_taken_falls_through():
    output, state = run("mov a 4\ncmp a 5\njif L\nout 1\n: L\nout 2\nend")
    assert output == "12"
    assert state.call_stack == []


def test_jel_taken_on_false_flag():
    output, _ = run("mov a 4\ncmp a 5\njel L\nout 1\n: L\nout 2\nend")
    assert output == "2"


def test_compare_against_slot_reference():
    output, _ = run("mov a 3\nmov b 3\ncmp a b\njif same\nout 0\nend\n:same\nout 1\nend")
    assert output == "1"


def test_flag_is_consumed_by_conditional_jump():
    error, _, interpreter = run_error("mov a 1\ncmp a 1\njif L\n: L\njif L")
    assert error.kind is RuntimeErrorKind.NO_COMPARE
    assert error.location.line == 5
    assert FLAG_SLOT not in interpreter.state.memory


def test_forward_jump_and_return_resumes_after_jump():
    output, state = run("jmp sub\nout 2\nend\n:sub\nout 1\nret")
    assert output == "12"
    assert state.call_stack == []


def test_every_taken_jump_pushes_a_return_address():
    source = "mov i 0\n:loop\nadd i 1\ncmp i 3\njel loop\nend"
    _, state = run(source)
    assert state.memory == {"i": 3}
    assert state.call_stack == [4, 4]


def test_ret_is_valid_after_conditional_jump():
    output, _ = run("mov a 1\ncmp a 1\njif twice\nout 9\nend\n:twice\nout 7\nret")
    assert output == "79"


def test_label_registry_has_one_entry_per_label():
    source = ":a\nout 1\n:b\n:c\nend"
    executable = compile_source(source)
    _, state = run(source)
    assert state.labels == {"a": 0, "b": 2, "c": 3}
    assert len(state.labels) == sum(isinstance(op, Label) for op in executable.operations)


def test_execution_is_repeatable():
    executable = compile_source("mov a 2\n:top\nout a\nsub a 1\ncmp a 0\njel top\nutf 10\nend")
    interpreter, output = make_interpreter()
    interpreter.execute(executable)
    first = "".join(output)
    output.clear()
    interpreter.execute(executable)
    assert "".join(output) == first == "21\n"


def test_arithmetic_with_slot_references():
    output, _ = run("mov a 7\nmov b 2\nsub a b\nout a\nutf 32\nadd a b\nout a")
    assert output == "5 7"


def test_sub_to_zero_is_allowed():
    _, state = run("mov a 2\nsub a 2")
    assert state.memory["a"] == 0


def test_sub_underflow_is_fatal():
    error, _, interpreter = run_error("mov a 1\nsub a 2")
    assert error.kind is RuntimeErrorKind.UNDERFLOW
    assert error.detail == "a"
    assert error.location.line == 2
    assert interpreter.state.memory["a"] == 1


def test_add_overflow_is_fatal():
    error, _, _ = run_error(f"mov a {WORD_MAX}\nadd a 1")
    assert error.kind is RuntimeErrorKind.OVERFLOW


def test_add_reads_target_slot_first():
    error, _, _ = run_error("mov b 1\nadd a b")
    assert error.kind is RuntimeErrorKind.UNDEFINED
    assert error.detail == "a"
    assert error.location.column == 5


def test_mov_from_undefined_reference():
    error, _, _ = run_error("mov a b")
    assert error.detail == "b"
    assert error.location.column == 7


def test_out_undefined_slot():
    error, _, _ = run_error("out missing")
    assert error.kind is RuntimeErrorKind.UNDEFINED
    assert error.location.length == 7


def test_utf_writes_low_byte():
    output, _ = run("utf 72\nmov i 105\nutf i\nutf 289")
    assert output == "Hi!"


def test_utf_non_ascii_byte_is_replaced():
    output, _ = run("utf 200")
    assert output == "\ufffd"


def test_end_halts_execution():
    output, state = run("out 1\nend\nout 2")
    assert output == "1"
    assert state.halted


def test_running_off_the_end_is_normal():
    output, state = run("out 3")
    assert output == "3"
    assert not state.halted
    assert state.program_counter == 1


def test_partial_output_survives_failure():
    error, output, _ = run_error("out 1\nout 2\nret")
    assert output == "12"
    assert error.step_index == 2


def test_run_compiles_own_source():
    output = []
    interpreter = Interpreter(source="mov x 9\nout x", output_sink=output.append)
    interpreter.run()
    assert output == ["9"]


def test_state_log_records_each_executed_operation():
    interpreter, _ = make_interpreter(verbose=True)
    interpreter.execute(compile_source("mov a 1\n:skip\nout a\nend"))
    entries = interpreter.logger.entries
    assert [e.rule for e in entries] == ["mov", "out", "end"]
    assert [e.program_counter for e in entries] == [0, 2, 3]
    assert entries[1].memory_snapshot == {"a": 1}
    assert entries[1].statement == "out a"
    assert entries[0].state_id == "s_000000"


def test_state_log_skips_snapshots_when_not_verbose():
    interpreter, _ = make_interpreter()
    interpreter.execute(compile_source("mov a 1"))
    assert interpreter.logger.entries[0].memory_snapshot is None


def test_hooks_observe_execution():
    services = RuntimeServices()
    events = []
    registry = services.hook_registry
    registry.on_event("program_start", lambda interp, exe: events.append("start"), priority=0, ext_name="t")
    registry.on_event("on_output", lambda interp, text: events.append(f"out:{text}"), priority=0, ext_name="t")
    registry.on_event("program_end", lambda interp, state: events.append("end"), priority=0, ext_name="t")
    registry.add_step_rule(name="every2", every_n=2, handler=lambda interp, ctx: events.append(ctx.rule), ext_name="t")
    interpreter, _ = make_interpreter(services=services)
    interpreter.execute(compile_source("out 1\nout 2\nend"))
    assert events == ["start", "out", "out:1", "out:2", "end", "end"]


def test_error_hook_receives_runtime_error():
    services = RuntimeServices()
    seen = []
    services.hook_registry.on_event("on_error", lambda interp, err: seen.append(err.kind), priority=0, ext_name="t")
    interpreter, _ = make_interpreter(services=services)
    with pytest.raises(ASKRuntimeError):
        interpreter.execute(compile_source("ret"))
    assert seen == [RuntimeErrorKind.NO_RETURN]


def test_failing_hook_becomes_runtime_error():
    services = RuntimeServices()

    def explode(interp, text):
        raise ValueError("boom")

    services.hook_registry.on_event("on_output", explode, priority=0, ext_name="t")
    interpreter, _ = make_interpreter(services=services)
    with pytest.raises(ASKRuntimeError) as info:
        interpreter.execute(compile_source("out 1"))
    assert info.value.kind is RuntimeErrorKind.EXTENSION
    assert "boom" in info.value.message
    assert info.value.detail == "t"
    assert info.value.message == "Extension 't' failed in 'on_output': boom"
