from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parents[1]
SCRIPT = ROOT / "vurl.py"
FIXTURES = Path(__file__).parent / "fixtures"


def _run(args: List[str], stdin: str = "") -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(SCRIPT), *args],
        check=False,
        capture_output=True,
        text=True,
        input=stdin,
    )


def test_runs_kitchen_sink_script() -> None:
    proc = _run([str(FIXTURES / "kitchen_sink.vurl")])
    assert proc.returncode == 0, proc.stderr
    assert proc.stderr == ""
    assert proc.stdout.splitlines() == [
        "total 15",
        "fib 55",
        "hey!",
        "(a,b,c) 3",
        "(a,b,c) (a,b,c,d)",
        "kitcb",
    ]


def test_source_mode() -> None:
    proc = _run(["-source", "print (add 1 2)"])
    assert proc.returncode == 0, proc.stderr
    assert proc.stdout == "3\n"


def test_runtime_error_exit_code(tmp_path: Path) -> None:
    script = tmp_path / "fail.vurl"
    script.write_text('print "before"\n_error "bad thing"\n')
    proc = _run([str(script)])
    assert proc.returncode == 1
    assert proc.stdout == "before\n"
    assert "Traceback (most recent call last):" in proc.stderr
    assert "line 2, in _error" in proc.stderr
    assert "VurlRuntimeError: bad thing (kind: user)" in proc.stderr


def test_parse_error_exit_code() -> None:
    proc = _run(["-source", "print 1\nprint (add 1"])
    assert proc.returncode == 1
    assert proc.stdout == ""
    assert "ParseError: error at line 2: unclosed parenthesis" in proc.stderr


def test_missing_file() -> None:
    proc = _run([str(FIXTURES / "does_not_exist.vurl")])
    assert proc.returncode == 1
    assert "Failed to read" in proc.stderr


def test_traceback_json_flag() -> None:
    proc = _run(["--traceback-json", "-source", "_error oops"])
    assert proc.returncode == 1
    payload = proc.stderr[proc.stderr.index("{") :]
    data = json.loads(payload)
    assert data["error"]["kind"] == "user"
    assert data["error"]["message"] == "oops"


def test_repl_session() -> None:
    proc = _run([], stdin="set x 3\n[x]\nadd [x] 1\nif 1\nquit\n")
    assert proc.returncode == 0, proc.stderr
    lines = proc.stdout.splitlines()
    assert any(line.endswith("3") for line in lines)
    assert any(line.endswith("4") for line in lines)
    assert lines[-1].endswith("bye")
    assert "`if` blocks cannot be used in the REPL" in proc.stderr


def test_repl_reports_errors_and_continues() -> None:
    proc = _run([], stdin="add x 1\nprint ok\n")
    assert proc.returncode == 0
    assert "x is not a number" in proc.stderr
    assert any(line.endswith("ok") for line in proc.stdout.splitlines())


def test_repl_survives_self_referential_list() -> None:
    proc = _run([], stdin="set l (list)\npush [l] [l]\n[l]\n_clone [l]\nprint after\n")
    assert proc.returncode == 0, proc.stderr
    lines = proc.stdout.splitlines()
    assert any(line.endswith("((...))") for line in lines)
    assert any(line.endswith("after") for line in lines)
    assert "maximum call depth exceeded (kind: internal)" in proc.stderr
