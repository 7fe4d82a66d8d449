from __future__ import annotations

import math

import pytest

from lexer import Lexer, VurlParseError, parse_number


def _tokens(text: str):
    return [(token.type, token.value) for token in Lexer(text, 1).tokenize()]


def test_token_stream_shape() -> None:
    assert _tokens('print (add 1 "x y")') == [
        ("WORD", "print"),
        ("LPAREN", "("),
        ("WORD", "add"),
        ("WORD", "1"),
        ("STRING", "x y"),
        ("RPAREN", ")"),
        ("EOF", ""),
    ]


def test_tabs_separate_words() -> None:
    assert _tokens("set\ta\t1")[:3] == [("WORD", "set"), ("WORD", "a"), ("WORD", "1")]


def test_escaped_quote_inside_string() -> None:
    assert _tokens('say "\\"hi\\""')[1] == ("STRING", '"hi"')


def test_quote_not_followed_by_separator_stays_in_string() -> None:
    assert _tokens('print "a"b"')[1] == ("STRING", 'a"b')


def test_string_closed_by_parenthesis() -> None:
    assert _tokens('(print "a")')[2:4] == [("STRING", "a"), ("RPAREN", ")")]


def test_unterminated_string_is_rejected() -> None:
    with pytest.raises(VurlParseError) as excinfo:
        Lexer('print "oops', 3).tokenize()
    assert excinfo.value.message == "quoted strings cannot span multiple lines"
    assert excinfo.value.line == 3
    assert str(excinfo.value) == "error at line 3: quoted strings cannot span multiple lines"


def test_balanced_parentheses_inside_a_word() -> None:
    assert _tokens("foo(bar) baz")[:2] == [("WORD", "foo(bar)"), ("WORD", "baz")]


def test_columns_are_one_based() -> None:
    tokens = Lexer("set a 1", 1).tokenize()
    assert [token.column for token in tokens[:3]] == [1, 5, 7]


@pytest.mark.parametrize(
    "text, expected",
    [("1", 1.0), ("-3", -3.0), ("+2.5", 2.5), (".5", 0.5), ("5.", 5.0), ("1e3", 1000.0), ("2E-1", 0.2)],
)
def test_parse_number_accepts_decimal_forms(text: str, expected: float) -> None:
    assert parse_number(text) == expected


def test_parse_number_special_values() -> None:
    assert parse_number("inf") == math.inf
    assert parse_number("-Infinity") == -math.inf
    assert math.isnan(parse_number("nan"))


@pytest.mark.parametrize("text", ["", "abc", "1_000", "e5", "+", "0x10", "1 2", "1.2.3"])
def test_parse_number_rejects_non_numbers(text: str) -> None:
    assert parse_number(text) is None
