from __future__ import annotations
import json
import math
import os
import random
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Union

from lexer import VurlError, parse_number
from parser import (
    BLOCK_CLOSER,
    FUNCTION_OPENERS,
    Command,
    Expression,
    LinePointer,
    Literal,
    Number,
    Program,
    SourceLocation,
    Variable,
    parse_source,
)


TYPE_STR = "STR"
TYPE_NUM = "NUM"
TYPE_LST = "LST"
TYPE_PTR = "PTR"

LOCAL_SIGIL = "."
ARGS_NAME = ".args"
VARIADIC_MARKER = "..."
# `define` blocks live in the function table under a tuple key no name can spell.
DEFINE_NAMESPACE = "define"

CONTROL_COMMANDS = frozenset({"if", "while", "end", "_func", "define", "return"})

# Error kinds carried by VurlRuntimeError.kind
KIND_ARITY = "arity"
KIND_TYPE = "type"
KIND_NAME = "name"
KIND_NOT_DEFINED = "not_defined"
KIND_REDEFINED = "redefined"
KIND_ZERO_INDEX = "zero_index"
KIND_INDEX = "index"
KIND_POP = "pop"
KIND_ORD = "ord"
KIND_CHR = "chr"
KIND_IO = "io"
KIND_USER = "user"
KIND_TOP_LEVEL = "top_level"
KIND_RETURN = "return"
KIND_CALL = "call"
KIND_INTERNAL = "internal"

# Bound on the number of state entries kept for tracebacks.
STATE_LOG_WINDOW = 4096


@dataclass
class Value:
    type: str
    value: Any


def default_value() -> Value:
    return Value(TYPE_STR, "")


def number_value(number: float) -> Value:
    return Value(TYPE_NUM, float(number))


def bool_value(flag: bool) -> Value:
    return Value(TYPE_NUM, 1.0 if flag else 0.0)


def format_number(number: float) -> str:
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "inf" if number > 0 else "-inf"
    if number.is_integer() and abs(number) < 1e16:
        return str(int(number))
    return repr(number)


def display(value: Value, _active: Optional[Set[int]] = None) -> str:
    vtype = value.type
    if vtype == TYPE_STR:
        return value.value
    if vtype == TYPE_NUM:
        return format_number(value.value)
    if vtype == TYPE_LST:
        # A list that contains itself renders the inner reference as `(...)`.
        active = set() if _active is None else _active
        key = id(value.value)
        if key in active:
            return "(...)"
        active.add(key)
        try:
            return "(" + ",".join(display(item, active) for item in value.value) + ")"
        finally:
            active.discard(key)
    return f"(line {value.value.line})"


def clone_value(value: Value) -> Value:
    if value.type == TYPE_LST:
        return Value(TYPE_LST, [clone_value(item) for item in value.value])
    return Value(value.type, value.value)


def values_equal(left: Value, right: Value) -> bool:
    """Structural equality: same tag and equal contents, lists compared deeply."""
    if left.type != right.type:
        return False
    if left.type == TYPE_LST:
        if len(left.value) != len(right.value):
            return False
        return all(values_equal(a, b) for a, b in zip(left.value, right.value))
    if left.type == TYPE_PTR:
        return left.value.line == right.value.line
    return left.value == right.value


class VurlRuntimeError(VurlError):
    """Raised for runtime faults.

    Builtins raise these without a location; the evaluator stamps the line and
    command name on the way out. A failing function call wraps the error that
    escaped its body, so a chain of ``wrapped`` errors forms the backtrace.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        location: Optional[SourceLocation] = None,
        command: Optional[str] = None,
        wrapped: Optional["VurlRuntimeError"] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        self.command = command
        self.wrapped = wrapped
        self.step_index: Optional[int] = None

    @property
    def detail(self) -> str:
        if self.wrapped is not None:
            return str(self.wrapped)
        return self.message

    @property
    def root(self) -> "VurlRuntimeError":
        error = self
        while error.wrapped is not None:
            error = error.wrapped
        return error

    def chain(self) -> List["VurlRuntimeError"]:
        errors: List[VurlRuntimeError] = []
        error: Optional[VurlRuntimeError] = self
        while error is not None:
            errors.append(error)
            error = error.wrapped
        return errors

    def __str__(self) -> str:
        if self.location is None:
            return self.detail
        return f"error (line {self.location.line}, command {self.command}):\n{self.detail}"


def arity_error(expected: int, *, bound: str = "") -> VurlRuntimeError:
    noun = "argument" if expected == 1 else "arguments"
    prefix = f"{bound} " if bound else ""
    return VurlRuntimeError(f"expected {prefix}{expected} {noun}", kind=KIND_ARITY)


@dataclass
class Environment:
    values: Dict[str, Value] = field(default_factory=dict)

    def set(self, name: str, value: Value) -> None:
        self.values[name] = value

    def get(self, name: str) -> Value:
        try:
            return self.values[name]
        except KeyError:
            raise VurlRuntimeError(f"variable [{name}] is undefined", kind=KIND_NAME) from None

    def has(self, name: str) -> bool:
        return name in self.values

    def names(self) -> List[str]:
        return list(self.values.keys())

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = display(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{val.type}:{rendered}"

        return {k: _render(v) for k, v in self.values.items()}


@dataclass
class Function:
    name: str
    entry: int
    # None means variadic: arguments are only reachable through `.args`.
    params: Optional[List[str]]


# A bare name for `_func`, or (DEFINE_NAMESPACE, name) for `define`.
FunctionKey = Union[str, Tuple[str, str]]


@dataclass
class Frame:
    name: str
    locals: Environment
    pc: int
    frame_id: str


@dataclass(frozen=True)
class Completed:
    value: Value


@dataclass(frozen=True)
class Returned:
    value: Value


Outcome = Union[Completed, Returned]


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    command: Optional[str]
    env_snapshot: Optional[Dict[str, str]]


class StateLogger:
    def __init__(self, verbose: bool, window: int = STATE_LOG_WINDOW) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=window)
        self.next_state_index = 0

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        command: Optional[str],
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            command=command,
            env_snapshot=env_snapshot,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def entry_for_step(self, step_index: Optional[int]) -> Optional[StateEntry]:
        if step_index is None:
            return None
        for entry in reversed(self.entries):
            if entry.step_index == step_index:
                return entry
        return None


BuiltinImpl = Callable[["Interpreter", List[Value], Frame], Value]


@dataclass
class BuiltinFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: BuiltinImpl

    def validate(self, supplied: int) -> None:
        if self.min_args == self.max_args:
            if supplied != self.min_args:
                raise arity_error(self.min_args)
            return
        if supplied < self.min_args:
            raise arity_error(self.min_args, bound="at least")
        if self.max_args is not None and supplied > self.max_args:
            raise arity_error(self.max_args, bound="at most")


def _ieee_div(a: float, b: float) -> float:
    if b == 0.0:
        if a == 0.0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _ieee_pow(a: float, b: float) -> float:
    if a == 0.0 and b < 0.0:
        odd = b.is_integer() and int(b) % 2 == 1
        return math.copysign(math.inf, a) if odd else math.inf
    return math.pow(a, b)


def _round_half_away(x: float) -> float:
    if not math.isfinite(x):
        return x
    whole = float(math.trunc(x))
    # x - whole is exact, so the half-way test never rounds.
    if abs(x - whole) >= 0.5:
        whole += math.copysign(1.0, x)
    return whole


def _finite_only(func: Callable[[float], float]) -> Callable[[float], float]:
    def wrapper(x: float) -> float:
        return float(func(x)) if math.isfinite(x) else x

    return wrapper


def _ln(x: float) -> float:
    if x == 0.0:
        return -math.inf
    return math.log(x)


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # Arithmetic
        self._register_custom("add", 0, None, self._add)
        self._register_custom("mul", 0, None, self._mul)
        self._register_numeric("sub", 2, lambda a, b: a - b)
        self._register_numeric("div", 2, _ieee_div)
        self._register_numeric("mod", 2, math.fmod)
        self._register_numeric("pow", 2, _ieee_pow)
        self._register_numeric("sqrt", 1, math.sqrt)
        self._register_numeric("floor", 1, _finite_only(math.floor))
        self._register_numeric("ceil", 1, _finite_only(math.ceil))
        self._register_numeric("round", 1, _round_half_away)
        self._register_numeric("abs", 1, abs)
        self._register_numeric("sin", 1, math.sin)
        self._register_numeric("cos", 1, math.cos)
        self._register_numeric("tan", 1, math.tan)
        self._register_numeric("ln", 1, _ln)
        self._register_numeric("exp", 1, math.exp)
        # Comparisons and logic
        self._register_custom("eq", 2, 2, self._eq)
        self._register_predicate("lt", 2, lambda a, b: a < b)
        self._register_predicate("gt", 2, lambda a, b: a > b)
        self._register_predicate("lte", 2, lambda a, b: a <= b)
        self._register_predicate("gte", 2, lambda a, b: a >= b)
        self._register_predicate("not", 1, lambda a: a == 0.0)
        self._register_predicate("and", 2, lambda a, b: a != 0.0 and b != 0.0)
        self._register_predicate("or", 2, lambda a, b: a != 0.0 or b != 0.0)
        # Strings and lists
        self._register_custom("join", 0, None, self._join)
        self._register_custom("substr", 3, 3, self._substr)
        self._register_custom("len", 1, 1, self._len)
        self._register_custom("list", 0, None, self._list)
        self._register_custom("index", 2, 2, self._index)
        self._register_custom("push", 2, 2, self._push)
        self._register_custom("pop", 1, 1, self._pop)
        self._register_custom("insert", 3, 3, self._insert)
        self._register_custom("remove", 2, 2, self._remove)
        self._register_custom("replace", 3, 3, self._replace)
        self._register_custom("_ord", 1, 1, self._ord)
        self._register_custom("_chr", 1, 1, self._chr)
        self._register_custom("_clone", 1, 1, self._clone)
        self._register_custom("_islist", 1, 1, self._islist)
        # Variables
        self._register_custom("set", 2, 2, self._set)
        self._register_custom("_getvar", 1, 1, self._getvar)
        self._register_custom("_globals", 0, 0, self._globals)
        self._register_custom("_locals", 0, 0, self._locals)
        # Calls
        self._register_custom("call", 1, None, self._call)
        self._register_custom("_apply", 1, None, self._apply)
        # I/O
        self._register_custom("print", 0, None, self._print)
        self._register_custom("_rawprint", 0, None, self._rawprint)
        self._register_custom("_eprint", 0, None, self._eprint)
        self._register_custom("input", 0, 1, self._input)
        # Misc
        self._register_custom("_error", 1, None, self._error)
        self._register_custom("_time", 0, 0, self._time)
        self._register_custom("_rand", 0, 0, self._rand)

    def _register_numeric(self, name: str, arity: int, func: Callable[..., float]) -> None:
        def impl(interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
            numbers = [interpreter._to_number(arg) for arg in args]
            try:
                return number_value(func(*numbers))
            except ValueError:
                return number_value(math.nan)
            except (OverflowError, ZeroDivisionError):
                return number_value(math.inf)

        self.table[name] = BuiltinFunction(name=name, min_args=arity, max_args=arity, impl=impl)

    def _register_predicate(self, name: str, arity: int, func: Callable[..., bool]) -> None:
        def impl(interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
            numbers = [interpreter._to_number(arg) for arg in args]
            return bool_value(func(*numbers))

        self.table[name] = BuiltinFunction(name=name, min_args=arity, max_args=arity, impl=impl)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(self, interpreter: "Interpreter", name: str, args: List[Value], frame: Frame) -> Value:
        builtin = self.table[name]
        builtin.validate(len(args))
        return builtin.impl(interpreter, args, frame)

    # Helpers
    def _expect_list(self, value: Value) -> List[Value]:
        if value.type != TYPE_LST:
            raise VurlRuntimeError(f"{display(value)} is not a list", kind=KIND_TYPE)
        return value.value

    def _position(self, interpreter: "Interpreter", value: Value) -> int:
        number = interpreter._to_number(value)
        if math.isnan(number) or number < 1.0:
            raise VurlRuntimeError("vurl is one-indexed", kind=KIND_ZERO_INDEX)
        if math.isinf(number):
            return sys.maxsize
        return int(number)

    def _check_bounds(self, position: int, length: int, *, slack: int = 0) -> None:
        if position > length + slack:
            raise VurlRuntimeError(
                f"tried to use index {position} of a list of {length} items", kind=KIND_INDEX
            )

    # Arithmetic
    def _add(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        total = 0.0
        for arg in args:
            total += interpreter._to_number(arg)
        return number_value(total)

    def _mul(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        product = 1.0
        for arg in args:
            product *= interpreter._to_number(arg)
        return number_value(product)

    def _eq(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        a, b = args
        if a.type == TYPE_LST and b.type == TYPE_LST:
            return bool_value(values_equal(a, b))
        if a.type == TYPE_NUM and b.type == TYPE_NUM:
            return bool_value(a.value == b.value)
        return bool_value(display(a) == display(b))

    # Strings and lists
    def _join(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        return Value(TYPE_STR, "".join(display(arg) for arg in args))

    def _substr(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        text = display(args[0])
        start = self._position(interpreter, args[1])
        stop_number = interpreter._to_number(args[2])
        if math.isnan(stop_number) or stop_number < 0.0:
            stop = 0
        elif math.isinf(stop_number):
            stop = sys.maxsize
        else:
            stop = int(stop_number)
        if stop < start:
            return Value(TYPE_STR, "")
        return Value(TYPE_STR, text[start - 1 : stop])

    def _len(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        value = args[0]
        if value.type == TYPE_LST:
            return number_value(len(value.value))
        return number_value(len(display(value)))

    def _list(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        return Value(TYPE_LST, list(args))

    def _index(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        items = self._expect_list(args[0])
        position = self._position(interpreter, args[1])
        self._check_bounds(position, len(items))
        return items[position - 1]

    def _push(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        self._expect_list(args[0]).append(args[1])
        return default_value()

    def _pop(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        items = self._expect_list(args[0])
        if not items:
            raise VurlRuntimeError("cannot pop from an empty list", kind=KIND_POP)
        return items.pop()

    def _insert(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        items = self._expect_list(args[0])
        position = self._position(interpreter, args[1])
        # Inserting at len+1 appends.
        self._check_bounds(position, len(items), slack=1)
        items.insert(position - 1, args[2])
        return default_value()

    def _remove(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        items = self._expect_list(args[0])
        position = self._position(interpreter, args[1])
        self._check_bounds(position, len(items))
        return items.pop(position - 1)

    def _replace(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        items = self._expect_list(args[0])
        position = self._position(interpreter, args[1])
        self._check_bounds(position, len(items))
        old = items[position - 1]
        items[position - 1] = args[2]
        return old

    def _ord(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        text = display(args[0])
        if len(text) != 1:
            raise VurlRuntimeError(f'string "{text}" must be one character long', kind=KIND_ORD)
        return number_value(ord(text))

    def _chr(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        number = interpreter._to_number(args[0])
        invalid = VurlRuntimeError(f"{format_number(number)} is not a valid unicode codepoint", kind=KIND_CHR)
        if not math.isfinite(number):
            raise invalid
        codepoint = int(number)
        if codepoint < 0 or codepoint > 0x10FFFF or 0xD800 <= codepoint <= 0xDFFF:
            raise invalid
        return Value(TYPE_STR, chr(codepoint))

    def _clone(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        return clone_value(args[0])

    def _islist(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        return bool_value(args[0].type == TYPE_LST)

    # Variables
    def _set(self, interpreter: "Interpreter", args: List[Value], frame: Frame) -> Value:
        name = display(args[0])
        interpreter._scope_for(name, frame).set(name, args[1])
        return default_value()

    def _getvar(self, interpreter: "Interpreter", args: List[Value], frame: Frame) -> Value:
        name = display(args[0])
        return interpreter._scope_for(name, frame).get(name)

    def _globals(self, interpreter: "Interpreter", _: List[Value], __: Frame) -> Value:
        return Value(TYPE_LST, [Value(TYPE_STR, name) for name in interpreter.globals.names()])

    def _locals(self, _: "Interpreter", __: List[Value], frame: Frame) -> Value:
        return Value(TYPE_LST, [Value(TYPE_STR, name) for name in frame.locals.names()])

    # Calls
    def _call(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        name = display(args[0])
        function = interpreter.functions.get((DEFINE_NAMESPACE, name))
        if function is None:
            raise VurlRuntimeError(f"block {name} is not defined", kind=KIND_NOT_DEFINED)
        return interpreter._call_function(function, args[1:])

    def _apply(self, interpreter: "Interpreter", args: List[Value], frame: Frame) -> Value:
        name = display(args[0])
        if name in CONTROL_COMMANDS:
            raise VurlRuntimeError("command must be used in top level", kind=KIND_TOP_LEVEL)
        return interpreter._dispatch(name, args[1:], frame)

    # I/O
    def _emit(self, interpreter: "Interpreter", text: str, *, stream: str) -> None:
        sink = interpreter.error_sink if stream == "stderr" else interpreter.output_sink
        try:
            sink(text)
        except OSError as exc:
            raise VurlRuntimeError(f"io error: {exc}", kind=KIND_IO) from exc
        interpreter.io_log.append({"event": "PRINT", "stream": stream, "text": text})

    def _print(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        self._emit(interpreter, "".join(display(arg) for arg in args) + "\n", stream="stdout")
        return default_value()

    def _rawprint(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        self._emit(interpreter, "".join(display(arg) for arg in args), stream="stdout")
        return default_value()

    def _eprint(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        self._emit(interpreter, "".join(display(arg) for arg in args) + "\n", stream="stderr")
        return default_value()

    def _input(self, interpreter: "Interpreter", args: List[Value], _: Frame) -> Value:
        prompt: Optional[str] = None
        if args:
            prompt = display(args[0])
            self._emit(interpreter, prompt, stream="stdout")
        try:
            text = interpreter.input_provider()
        except OSError as exc:
            raise VurlRuntimeError(f"io error: {exc}", kind=KIND_IO) from exc
        if text.endswith("\n"):
            text = text[:-1]
            if text.endswith("\r"):
                text = text[:-1]
        record: Dict[str, Any] = {"event": "INPUT", "text": text}
        if prompt is not None:
            record["prompt"] = prompt
        interpreter.io_log.append(record)
        return Value(TYPE_STR, text)

    # Misc
    def _error(self, _: "Interpreter", args: List[Value], __: Frame) -> Value:
        raise VurlRuntimeError("".join(display(arg) for arg in args), kind=KIND_USER)

    def _time(self, _: "Interpreter", __: List[Value], ___: Frame) -> Value:
        return number_value(time.time())

    def _rand(self, interpreter: "Interpreter", _: List[Value], __: Frame) -> Value:
        return number_value(interpreter.random.random())


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _write_stderr(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        error_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        normalized_filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.filename = normalized_filename
        self.verbose = verbose
        self.input_provider = input_provider or sys.stdin.readline
        self.output_sink = output_sink or _write_stdout
        self.error_sink = error_sink or _write_stderr
        self.builtins = Builtins()
        self.random = random.Random()

        self.lines: List[Optional[Command]] = []
        self.globals = Environment()
        self.functions: Dict[FunctionKey, Function] = {}
        self.logger = StateLogger(verbose=verbose)
        self.io_log: List[Dict[str, Any]] = []
        self.frame_counter = 0
        self.top_frame: Optional[Frame] = None

    def parse(self) -> Program:
        return parse_source(self.source, self.filename)

    def run(self) -> None:
        program = self.parse()
        self.lines = program.lines
        frame = self._ensure_top_frame()
        try:
            self._execute_top_level(frame)
        except VurlRuntimeError as error:
            self._stamp(error)
            raise
        except RecursionError as exc:
            raise self._internal_error(exc) from None
        except Exception as exc:
            raise self._internal_error(exc) from exc

    def evaluate_line(self, command: Command) -> Value:
        """Run one parsed line against the persistent top-level frame (REPL entry point)."""
        frame = self._ensure_top_frame()
        self._log_step(frame, command)
        try:
            outcome = self._execute_line(command, frame)
            if isinstance(outcome, Returned):
                raise self._returned_outside(command, outcome.value)
        except VurlRuntimeError as error:
            self._stamp(error)
            raise
        except RecursionError as exc:
            raise self._internal_error(exc) from None
        except Exception as exc:
            raise self._internal_error(exc) from exc
        return outcome.value

    def _internal_error(self, exc: Exception) -> VurlRuntimeError:
        # Convert unexpected Python-level exceptions so callers can format
        # them with vurl tracebacks.
        if isinstance(exc, RecursionError):
            error = VurlRuntimeError("maximum call depth exceeded", kind=KIND_INTERNAL)
        else:
            error = VurlRuntimeError(f"Internal interpreter error: {exc}", kind=KIND_INTERNAL)
        self._stamp(error, locate=True)
        return error

    def _ensure_top_frame(self) -> Frame:
        if self.top_frame is None:
            self.top_frame = self._new_frame("<top-level>", Environment(), pc=0)
        return self.top_frame

    def _stamp(self, error: VurlRuntimeError, *, locate: bool = False) -> None:
        last = self.logger.last_entry()
        if last is None:
            return
        error.step_index = last.step_index
        if locate and error.location is None:
            error.location = last.source_location
            error.command = last.command

    def _execute_top_level(self, frame: Frame) -> None:
        lines = self.lines
        while frame.pc < len(lines):
            command = lines[frame.pc]
            if command is not None:
                self._log_step(frame, command)
                outcome = self._execute_line(command, frame)
                if isinstance(outcome, Returned):
                    raise self._returned_outside(command, outcome.value)
            frame.pc += 1

    def _run_frame(self, frame: Frame) -> Value:
        lines = self.lines
        while frame.pc < len(lines):
            command = lines[frame.pc]
            if command is not None:
                self._log_step(frame, command)
                outcome = self._execute_line(command, frame)
                if isinstance(outcome, Returned):
                    return outcome.value
            frame.pc += 1
        return default_value()

    def _returned_outside(self, command: Command, value: Value) -> VurlRuntimeError:
        return VurlRuntimeError(
            f"value {display(value)} returned outside function",
            kind=KIND_RETURN,
            location=command.location,
            command=command.name,
        )

    def _execute_line(self, command: Command, frame: Frame) -> Outcome:
        evaluate = self._evaluate_expression
        args = [evaluate(arg, frame) for arg in command.args]
        try:
            if command.name in CONTROL_COMMANDS:
                return self._execute_control(command.name, args, frame)
            return Completed(self._dispatch(command.name, args, frame))
        except VurlRuntimeError as error:
            self._locate(error, command)
            raise

    def _evaluate_expression(self, expression: Expression, frame: Frame) -> Value:
        if isinstance(expression, Command):
            evaluate = self._evaluate_expression
            args = [evaluate(arg, frame) for arg in expression.args]
            try:
                if expression.name in CONTROL_COMMANDS:
                    raise VurlRuntimeError("command must be used in top level", kind=KIND_TOP_LEVEL)
                return self._dispatch(expression.name, args, frame)
            except VurlRuntimeError as error:
                self._locate(error, expression)
                raise
        if isinstance(expression, Literal):
            return Value(TYPE_STR, expression.value)
        if isinstance(expression, Number):
            return Value(TYPE_NUM, expression.value)
        if isinstance(expression, Variable):
            try:
                return self._scope_for(expression.name, frame).get(expression.name)
            except VurlRuntimeError as error:
                error.location = expression.location
                error.command = "[]"
                raise
        if isinstance(expression, LinePointer):
            return Value(TYPE_PTR, expression)
        raise VurlRuntimeError(f"Unsupported expression {type(expression).__name__}", kind=KIND_INTERNAL)

    def _locate(self, error: VurlRuntimeError, command: Command) -> None:
        if error.location is None:
            error.location = command.location
            error.command = command.name

    def _scope_for(self, name: str, frame: Frame) -> Environment:
        return frame.locals if name.startswith(LOCAL_SIGIL) else self.globals

    def _to_number(self, value: Value) -> float:
        if value.type == TYPE_NUM:
            return value.value
        if value.type == TYPE_STR:
            number = parse_number(value.value)
            if number is not None:
                return number
        raise VurlRuntimeError(f"{display(value)} is not a number", kind=KIND_TYPE)

    def _dispatch(self, name: str, args: List[Value], frame: Frame) -> Value:
        if self.builtins.has(name):
            return self.builtins.invoke(self, name, args, frame)
        function = self.functions.get(name)
        if function is None:
            raise VurlRuntimeError("command not defined", kind=KIND_NOT_DEFINED)
        return self._call_function(function, args)

    def _split_pointer(self, args: List[Value]) -> Tuple[LinePointer, List[Value]]:
        if not args or args[-1].type != TYPE_PTR:
            raise VurlRuntimeError("block is missing its resolved line pointer", kind=KIND_INTERNAL)
        return args[-1].value, args[:-1]

    def _execute_control(self, name: str, args: List[Value], frame: Frame) -> Outcome:
        if name == "return":
            if len(args) > 1:
                raise arity_error(1, bound="at most")
            return Returned(args[0] if args else default_value())

        pointer, values = self._split_pointer(args)
        if name in ("if", "while"):
            if len(values) != 1:
                raise arity_error(1)
            if self._to_number(values[0]) == 0.0:
                frame.pc = pointer.line
            return Completed(default_value())

        if name == BLOCK_CLOSER:
            if pointer.kind in FUNCTION_OPENERS:
                if len(values) > 1:
                    raise arity_error(1, bound="at most")
                return Returned(values[0] if values else default_value())
            if values:
                raise arity_error(0)
            if pointer.kind == "while":
                # The driving loop increments past this, landing on the `while`.
                frame.pc = pointer.line - 1
            return Completed(default_value())

        self._define_function(name, values, frame)
        frame.pc = pointer.line
        return Completed(default_value())

    def _define_function(self, kind: str, values: List[Value], frame: Frame) -> None:
        if kind == "define":
            if len(values) != 1:
                raise arity_error(1)
            name = display(values[0])
            key: FunctionKey = (DEFINE_NAMESPACE, name)
            params: Optional[List[str]] = None
        else:
            if not values:
                raise arity_error(1, bound="at least")
            name = display(values[0])
            key = name
            declared = [display(value) for value in values[1:]]
            if not declared or declared == [VARIADIC_MARKER]:
                params = None
            else:
                params = [p if p.startswith(LOCAL_SIGIL) else LOCAL_SIGIL + p for p in declared]
        if key in self.functions or (kind == "_func" and self.builtins.has(name)):
            raise VurlRuntimeError(f"function {name} is already defined", kind=KIND_REDEFINED)
        self.functions[key] = Function(name=name, entry=frame.pc + 1, params=params)

    def _call_function(self, function: Function, args: List[Value]) -> Value:
        scope = Environment()
        scope.set(ARGS_NAME, Value(TYPE_LST, list(args)))
        if function.params is not None:
            if len(args) != len(function.params):
                raise arity_error(len(function.params))
            for param, arg in zip(function.params, args):
                scope.set(param, arg)

        frame = self._new_frame(function.name, scope, pc=function.entry)
        try:
            return self._run_frame(frame)
        except VurlRuntimeError as error:
            raise VurlRuntimeError(f"in function {function.name}", kind=KIND_CALL, wrapped=error) from error

    def _new_frame(self, name: str, scope: Environment, *, pc: int) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, locals=scope, pc=pc, frame_id=frame_id)

    def _log_step(self, frame: Frame, command: Command) -> None:
        env_snapshot: Optional[Dict[str, str]] = None
        if self.verbose:
            env_snapshot = self.globals.snapshot()
            env_snapshot.update(frame.locals.snapshot())
        self.logger.record(frame=frame, location=command.location, command=command.name, env_snapshot=env_snapshot)


@dataclass
class TracebackFrame:
    name: Optional[str]
    location: Optional[SourceLocation]
    statement: Optional[str]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: VurlRuntimeError) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for link in error.chain():
            location = link.location
            frames.append(
                TracebackFrame(
                    name=link.command,
                    location=location,
                    statement=location.statement if location else None,
                )
            )
        return frames

    def format_text(self, error: VurlRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
        entry = self.interpreter.logger.entry_for_step(error.step_index)
        if entry is not None:
            lines.append(f"  State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.env_snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
                lines.append(f"  Env snapshot: {snapshot}")
        root = error.root
        lines.append(f"{root.__class__.__name__}: {root.message} (kind: {root.kind})")
        return "\n".join(lines)

    def to_json(self, error: VurlRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            frames_json.append(entry)
        root = error.root
        data: Dict[str, Any] = {
            "error": {
                "type": root.__class__.__name__,
                "kind": root.kind,
                "message": root.message,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        state = self.interpreter.logger.entry_for_step(error.step_index)
        if state is not None and state.env_snapshot is not None:
            data["env_snapshot"] = state.env_snapshot
        return json.dumps(data, indent=2)
