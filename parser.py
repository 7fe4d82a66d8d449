from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

from lexer import Lexer, Token, VurlParseError, parse_number


BLOCK_OPENERS = frozenset({"if", "while", "_func", "define"})
FUNCTION_OPENERS = frozenset({"_func", "define"})
BLOCK_CLOSER = "end"


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Expression(Node):
    pass


@dataclass
class Literal(Expression):
    value: str


@dataclass
class Number(Expression):
    value: float


@dataclass
class Variable(Expression):
    name: str


@dataclass
class LinePointer(Expression):
    # Zero-based index of the target line. On an `end`, `kind` names the opener.
    line: int
    kind: Optional[str] = None


@dataclass
class Command(Expression):
    name: str
    args: List[Expression] = field(default_factory=list)


@dataclass
class Program:
    # One entry per source line; None marks a blank or comment line.
    lines: List[Optional[Command]]


class Parser:
    """Recursive-descent parser for a single source line."""

    def __init__(self, tokens: List[Token], location: SourceLocation) -> None:
        self.tokens = tokens
        self.location = location
        self.index = 0

    def parse(self) -> Command:
        return self._parse_command(top_level=True)

    def _parse_command(self, *, top_level: bool) -> Command:
        args: List[Expression] = []
        while True:
            token = self._advance()
            if token.type == "LPAREN":
                args.append(self._parse_command(top_level=False))
            elif token.type == "STRING":
                args.append(Literal(location=self._at(token), value=token.value))
            elif token.type == "WORD":
                args.append(self._parse_word(token))
            elif token.type == "RPAREN":
                if top_level:
                    raise VurlParseError("unexpected parenthesis", line=token.line)
                break
            else:
                if not top_level:
                    raise VurlParseError("unclosed parenthesis", line=token.line)
                break
        if not args:
            raise VurlParseError("empty command", line=self.location.line)
        head = args[0]
        if not isinstance(head, Literal):
            raise VurlParseError(
                "the name of a command must be a string, try using _apply", line=self.location.line
            )
        return Command(location=head.location, name=head.value, args=args[1:])

    def _parse_word(self, token: Token) -> Expression:
        text = token.value
        location = self._at(token)
        if len(text) >= 2 and text.startswith("[") and text.endswith("]"):
            return Variable(location=location, name=text[1:-1])
        number = parse_number(text)
        if number is not None:
            return Number(location=location, value=number)
        return Literal(location=location, value=text)

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _at(self, token: Token) -> SourceLocation:
        loc = self.location
        return SourceLocation(file=loc.file, line=loc.line, column=token.column, statement=loc.statement)


class BlockResolver:
    """Pairs every block opener with its `end` by appending line pointers.

    The opener gains a pointer to its `end`; the `end` gains a pointer back to
    the opener tagged with the opener's command name.
    """

    def __init__(self, lines: List[Optional[Command]]) -> None:
        self.lines = lines

    def resolve(self) -> List[Optional[Command]]:
        stack: List[int] = []
        for lineno, command in enumerate(self.lines):
            if command is None:
                continue
            if command.name in BLOCK_OPENERS:
                stack.append(lineno)
            elif command.name == BLOCK_CLOSER:
                if not stack:
                    raise VurlParseError("unexpected `end`", line=lineno + 1)
                start = stack.pop()
                opener = self.lines[start]
                assert opener is not None
                opener.args.append(LinePointer(location=opener.location, line=lineno))
                command.args.append(LinePointer(location=command.location, line=start, kind=opener.name))
        if stack:
            raise VurlParseError("unclosed block", line=stack[-1] + 1)
        return self.lines


def is_blank(line: str) -> bool:
    return line == "" or line.startswith("#")


def parse_line(text: str, *, filename: str = "<string>", lineno: int = 1) -> Optional[Command]:
    """Parse one line without block resolution. Blank and comment lines give None."""
    stripped = text.strip()
    if is_blank(stripped):
        return None
    location = SourceLocation(file=filename, line=lineno, column=1, statement=stripped)
    tokens = Lexer(stripped, lineno).tokenize()
    return Parser(tokens, location).parse()


def parse_source(source: str, filename: str = "<string>") -> Program:
    source_lines = source.split("\n")
    lines: List[Optional[Command]] = [
        parse_line(raw, filename=filename, lineno=index + 1) for index, raw in enumerate(source_lines)
    ]
    BlockResolver(lines).resolve()
    return Program(lines=lines)
