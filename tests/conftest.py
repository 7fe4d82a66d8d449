from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

# Allow importing the modules when running plain `pytest` without an install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from interpreter import Interpreter


@dataclass
class RunResult:
    interpreter: Interpreter
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return "".join(self.stdout)

    @property
    def errors(self) -> str:
        return "".join(self.stderr)


def make_run(source: str, *, inputs: Optional[Iterable[str]] = None, verbose: bool = False) -> RunResult:
    feed = iter(inputs or [])
    stdout: List[str] = []
    stderr: List[str] = []
    interpreter = Interpreter(
        source=source,
        filename="<test>",
        verbose=verbose,
        input_provider=lambda: next(feed, ""),
        output_sink=stdout.append,
        error_sink=stderr.append,
    )
    return RunResult(interpreter=interpreter, stdout=stdout, stderr=stderr)


@pytest.fixture
def run_vurl():
    def _run(source: str, *, inputs: Optional[Iterable[str]] = None) -> RunResult:
        result = make_run(source, inputs=inputs)
        result.interpreter.run()
        return result

    return _run


@pytest.fixture
def prepare_vurl():
    """Build a run without starting it, for tests that expect a failure."""
    return make_run
