"""Per-case program construction and output comparison."""

from __future__ import annotations

import re

from codejudge.models import TestCase
from codejudge.registry import RuntimeProfile

_CALL_RE = re.compile(r"^([A-Za-z_$][\w$]*)\s*\(.*\)\s*;?$", re.DOTALL)


def build_case_program(
    source_code: str,
    test_case: TestCase,
    profile: RuntimeProfile,
) -> tuple[str | None, str]:
    """Decide how one test case is fed to the submission.

    Returns ``(replacement_source, stdin)``. Challenges may state a case as a
    call of a function the learner wrote, e.g. ``sum(2, 3)`` expecting
    ``5``. For interpreted runtimes that know how to print an expression the
    call is appended to the source and stdin is left empty. Everything else
    runs in stdin/stdout mode with the source untouched (``None``).
    """
    if profile.expression_template and not profile.requires_compile:
        expression = call_expression(test_case.input, source_code)
        if expression is not None:
            appended = profile.expression_template.replace("{expression}", expression)
            return source_code + appended, ""
    return None, test_case.input


def call_expression(test_input: str, source_code: str) -> str | None:
    """Return the call in *test_input* if it invokes a function *source_code* defines."""
    text = test_input.strip()
    if not text or "\n" in text:
        return None
    match = _CALL_RE.match(text)
    if match is None or not defines_function(source_code, match.group(1)):
        return None
    return text.rstrip(";").rstrip()


def defines_function(source_code: str, name: str) -> bool:
    n = re.escape(name)
    pattern = (
        rf"(?:\bfunction\s+{n}\s*\("  # function sum(a, b)
        rf"|\bdef\s+{n}\s*\("  # def sum(a, b):
        rf"|\b(?:const|let|var)\s+{n}\s*="  # const sum = (a, b) => ...
        rf"|^\s*{n}\s*=\s*(?:lambda\b|function\b|\())"  # sum = lambda a, b: ...
    )
    return re.search(pattern, source_code, re.MULTILINE) is not None


def normalize_output(text: str) -> str:
    """Drop trailing whitespace on every line and trailing blank lines."""
    lines = [line.rstrip() for line in text.split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def outputs_match(expected: str, actual: str) -> bool:
    """Compare outputs; only trailing whitespace and trailing newlines are ignored."""
    return normalize_output(expected) == normalize_output(actual)
