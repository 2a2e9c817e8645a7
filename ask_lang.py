"""ASK entry point: compile, run or format a program."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional, TextIO

from extensions import ASKExtensionError, load_runtime_services
from formatter import format_source
from interpreter import ASKRuntimeError, Interpreter, TracebackFormatter
from lexer import ASKCompileError


def _use_color(disabled: bool, stream: Optional[TextIO] = None) -> bool:
    if disabled:
        return False
    isatty = getattr(stream or sys.stderr, "isatty", None)
    return bool(isatty and isatty())


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ASK register-machine interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--fmt", action="store_true", help="Pretty-print the program instead of running it")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record memory snapshots and show recent steps on failure")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--no-color", dest="no_color", action="store_true", help="Disable ANSI colors")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    args = parser.parse_args(argv)

    color = _use_color(args.no_color)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    if args.fmt:
        try:
            sys.stdout.write(format_source(source_text, filename, color=_use_color(args.no_color, sys.stdout)))
        except ASKCompileError as error:
            print(TracebackFormatter().format_text(error, color=color), file=sys.stderr)
            return 1
        return 0

    try:
        services = load_runtime_services(args.extensions)
    except ASKExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    formatter = TracebackFormatter(interpreter)
    try:
        interpreter.run()
    except ASKCompileError as error:
        print(formatter.format_text(error, color=color), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    except ASKRuntimeError as error:
        sys.stdout.flush()
        print(file=sys.stderr)
        print(formatter.format_text(error, verbose=args.verbose, color=color), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
