"""vurl entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional

from interpreter import Interpreter, TracebackFormatter, VurlRuntimeError, display
from lexer import VurlParseError
from parser import BLOCK_CLOSER, BLOCK_OPENERS, parse_line

PROMPT = "\x1b[38;2;153;221;255m>>>\033[0m "  # light blue

# Each vurl call nests a handful of Python frames.
RECURSION_LIMIT = 10000


def _rewrite_bare_variable(line: str) -> str:
    stripped = line.strip()
    if stripped.startswith("[") and stripped.endswith("]") and " " not in stripped:
        return "print " + stripped
    return line


def run_repl(verbose: bool, read_line: Callable[[str], str] = input) -> int:
    print("\x1b[38;2;153;221;255mvurl\033[0m REPL. Do `quit` to quit. Blocks are not supported interactively.")
    interpreter = Interpreter(source="", filename="<repl>", verbose=verbose)
    lineno = 0

    while True:
        try:
            line = read_line(PROMPT)
        except EOFError:
            print()
            break
        lineno += 1

        try:
            command = parse_line(_rewrite_bare_variable(line), filename="<repl>", lineno=lineno)
        except VurlParseError as error:
            print(f"ParseError: {error}", file=sys.stderr)
            continue
        if command is None:
            continue
        if command.name == "quit":
            print("bye")
            break
        if command.name in BLOCK_OPENERS or command.name == BLOCK_CLOSER:
            print(f"`{command.name}` blocks cannot be used in the REPL", file=sys.stderr)
            continue

        try:
            value = interpreter.evaluate_line(command)
        except VurlRuntimeError as error:
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
            continue
        text = display(value)
        if text != "":
            print(text)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="vurl reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose)

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

    sys.setrecursionlimit(max(sys.getrecursionlimit(), RECURSION_LIMIT))
    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose)
    try:
        interpreter.run()
    except VurlParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1
    except VurlRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
