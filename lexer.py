from __future__ import annotations
import re
from dataclasses import dataclass
from typing import List, Optional


class VurlError(Exception):
    """Base class for interpreter errors."""


class VurlParseError(VurlError):
    """Raised when parsing or block resolution fails."""

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        super().__init__(message if line is None else f"error at line {line}: {message}")
        self.message = message
        self.line = line


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


SEPARATORS = " \t"

NUMBER_RE = re.compile(
    r"[+-]?(?:inf|infinity|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)",
    re.IGNORECASE,
)


def parse_number(text: str) -> Optional[float]:
    """Return the float spelled by ``text`` or None when it is not a number."""
    if NUMBER_RE.fullmatch(text) is None:
        return None
    return float(text)


class Lexer:
    """Splits one source line into LPAREN, RPAREN, STRING and WORD tokens."""

    def __init__(self, text: str, line: int) -> None:
        self.text = text
        self.line = line
        self.index = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        text = self.text
        n = len(text)

        while self.index < n:
            ch = text[self.index]
            if ch in SEPARATORS:
                self.index += 1
                continue
            if ch == "(":
                tokens_append(Token("LPAREN", ch, self.line, self.index + 1))
                self.index += 1
                continue
            if ch == ")":
                tokens_append(Token("RPAREN", ch, self.line, self.index + 1))
                self.index += 1
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            tokens_append(self._consume_word())
        tokens_append(Token("EOF", "", self.line, self.index + 1))
        return tokens

    def _consume_string(self) -> Token:
        col = self.index + 1
        self.index += 1  # consume opening quote
        text = self.text
        n = len(text)
        chars: List[str] = []
        while self.index < n:
            ch = text[self.index]
            if ch == "\\" and self.index + 1 < n and text[self.index + 1] == '"':
                chars.append('"')
                self.index += 2
                continue
            if ch == '"':
                nxt = text[self.index + 1] if self.index + 1 < n else None
                if nxt is None or nxt == ")" or nxt in SEPARATORS:
                    self.index += 1
                    return Token("STRING", "".join(chars), self.line, col)
            chars.append(ch)
            self.index += 1
        raise VurlParseError("quoted strings cannot span multiple lines", line=self.line)

    def _consume_word(self) -> Token:
        col = self.index + 1
        text = self.text
        n = len(text)
        start = self.index
        depth = 0
        while self.index < n:
            ch = text[self.index]
            if ch in SEPARATORS:
                break
            if ch == "(":
                depth += 1
            elif ch == ")":
                if depth == 0:
                    break
                depth -= 1
            self.index += 1
        return Token("WORD", text[start:self.index], self.line, col)
