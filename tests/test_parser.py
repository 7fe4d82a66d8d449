from __future__ import annotations

import pytest

from lexer import VurlParseError
from parser import Command, LinePointer, Literal, Number, Variable, parse_line, parse_source


def test_nested_command_tree() -> None:
    command = parse_line('print (add [x] 2) "two"')
    assert command.name == "print"
    inner, text = command.args
    assert isinstance(inner, Command)
    assert inner.name == "add"
    assert isinstance(inner.args[0], Variable) and inner.args[0].name == "x"
    assert isinstance(inner.args[1], Number) and inner.args[1].value == 2.0
    assert isinstance(text, Literal) and text.value == "two"


def test_quoted_number_stays_a_string() -> None:
    command = parse_line('print "12"')
    assert isinstance(command.args[0], Literal)
    assert command.args[0].value == "12"


def test_quoted_command_name_is_allowed() -> None:
    assert parse_line('"print" hi').name == "print"


def test_locations_carry_line_and_statement() -> None:
    command = parse_line("  set a 1  ", filename="demo.vurl", lineno=7)
    assert command.location.file == "demo.vurl"
    assert command.location.line == 7
    assert command.location.statement == "set a 1"


@pytest.mark.parametrize(
    "text, message",
    [
        ("print )", "unexpected parenthesis"),
        ("print (add 1 2", "unclosed parenthesis"),
        ("print ()", "empty command"),
        ("(add) 1", "the name of a command must be a string, try using _apply"),
        ("[x] 1", "the name of a command must be a string, try using _apply"),
    ],
)
def test_line_level_parse_errors(text: str, message: str) -> None:
    with pytest.raises(VurlParseError) as excinfo:
        parse_line(text, lineno=4)
    assert excinfo.value.message == message
    assert excinfo.value.line == 4


def test_parse_errors_report_the_failing_line() -> None:
    with pytest.raises(VurlParseError) as excinfo:
        parse_source("print 1\nprint (add 1\nprint 2")
    assert str(excinfo.value) == "error at line 2: unclosed parenthesis"


def test_blank_and_comment_lines_become_none() -> None:
    program = parse_source("print a\n\n# note\n   \nprint b")
    assert [line is None for line in program.lines] == [False, True, True, True, False]
    assert program.lines[4].name == "print"


def test_blocks_are_paired_with_pointers() -> None:
    program = parse_source("while 1\nif 0\nprint x\nend\nend")
    lines = program.lines

    def pointer(index: int) -> LinePointer:
        last = lines[index].args[-1]
        assert isinstance(last, LinePointer)
        return last

    assert (pointer(0).line, pointer(0).kind) == (4, None)
    assert (pointer(4).line, pointer(4).kind) == (0, "while")
    assert (pointer(1).line, pointer(1).kind) == (3, None)
    assert (pointer(3).line, pointer(3).kind) == (1, "if")
    assert not any(isinstance(arg, LinePointer) for arg in lines[2].args)


def test_function_end_pointer_names_its_opener() -> None:
    program = parse_source("_func f x\nend [.x]\ndefine g\nend")
    assert program.lines[1].args[-1].kind == "_func"
    assert program.lines[3].args[-1].kind == "define"


def test_unexpected_end() -> None:
    with pytest.raises(VurlParseError) as excinfo:
        parse_source("print 1\nend")
    assert str(excinfo.value) == "error at line 2: unexpected `end`"


def test_unclosed_block() -> None:
    with pytest.raises(VurlParseError) as excinfo:
        parse_source("if 1\nprint 2")
    assert str(excinfo.value) == "error at line 1: unclosed block"


def test_nested_block_words_do_not_open_blocks() -> None:
    # Only the command at the head of a line opens a block.
    program = parse_source("print (if 1)")
    assert not any(isinstance(arg, LinePointer) for arg in program.lines[0].args)
