from __future__ import annotations

import math

import pytest

from chat_orchestrator.errors import SandboxViolation, ToolError
from chat_orchestrator.sandbox import evaluate_expression, run_code


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("2 + 2", 4),
        ("(1 + 2) * 3 - 4 / 2", 7.0),
        ("2 ** 10", 1024),
        ("-5 // 2", -3),
        ("7 % 3", 1),
        ("sqrt(16) + abs(-2)", 6.0),
        ("max(1, 9, 3)", 9),
    ],
)
def test_evaluate_expression(expr: str, expected: float) -> None:
    assert evaluate_expression(expr) == expected


def test_evaluate_expression_constants() -> None:
    assert evaluate_expression("pi") == pytest.approx(math.pi)
    assert evaluate_expression("sin(pi / 2)") == pytest.approx(1.0)


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os')",
        "open('x')",
        "'a' * 3",
        "(1).real",
        "[1, 2]",
        "lambda: 1",
        "unknown_name + 1",
        "sqrt(x=4)",
    ],
)
def test_evaluate_expression_rejects_non_arithmetic(expr: str) -> None:
    with pytest.raises(SandboxViolation):
        evaluate_expression(expr)


def test_evaluate_expression_guards_exponent() -> None:
    with pytest.raises(SandboxViolation):
        evaluate_expression("9 ** 999999999")


@pytest.mark.parametrize(
    "expr",
    ["(9 ** 9999) ** 999", "((2 ** 5000) ** 5000) ** 5000", "2 ** 99999 * 2 ** 99999"],
)
def test_evaluate_expression_bounds_result_size(expr: str) -> None:
    with pytest.raises(SandboxViolation):
        evaluate_expression(expr)


def test_evaluate_expression_allows_large_but_bounded_ints() -> None:
    assert evaluate_expression("2 ** 1000") == 1 << 1000
    assert evaluate_expression("(-1) ** 999999999") == -1


def test_evaluate_expression_runtime_errors() -> None:
    with pytest.raises(ToolError):
        evaluate_expression("1 / 0")
    with pytest.raises(ToolError):
        evaluate_expression("2 +")


def test_run_code_captures_stdout_and_result() -> None:
    out = run_code("nums = [n * n for n in range(5)]\nprint('sum', sum(nums))\nnums[-1]")

    assert out == {"stdout": "sum 30\n", "result": "16"}


def test_run_code_without_trailing_expression() -> None:
    out = run_code("def fib(n):\n    return n if n < 2 else fib(n - 1) + fib(n - 2)\nx = fib(10)")

    assert out == {"stdout": "", "result": None}


@pytest.mark.parametrize(
    "code",
    [
        "import os",
        "from os import path",
        "while True:\n    pass",
        "open('/etc/passwd')",
        "x = ().__class__",
        "getattr(1, 'real')",
        "class A:\n    pass",
        "try:\n    pass\nexcept Exception:\n    pass",
        "'{0.__class__}'.format(1)",
        "_hidden = 1",
        "with x:\n    pass",
    ],
)
def test_run_code_rejects_escapes(code: str) -> None:
    with pytest.raises(SandboxViolation):
        run_code(code)


def test_run_code_bounds_allocation() -> None:
    with pytest.raises(SandboxViolation):
        run_code("x = 'a' * 10000000")
    with pytest.raises(SandboxViolation):
        run_code("x = list(range(10 ** 9))")
    with pytest.raises(SandboxViolation):
        run_code("x = 1\nx <<= 100000")


def test_run_code_bounds_repeated_squaring() -> None:
    with pytest.raises(SandboxViolation):
        run_code("x = 3\nfor i in range(40):\n    x = x * x")
    with pytest.raises(SandboxViolation):
        run_code("x = 3\nfor i in range(40):\n    x *= x")
    with pytest.raises(SandboxViolation):
        run_code("x = 7\nfor i in range(40):\n    x = pow(x, 2)")


def test_run_code_enforces_step_budget() -> None:
    with pytest.raises(SandboxViolation):
        run_code("total = 0\nfor i in range(1000):\n    total += i", budget=100)


def test_run_code_limits_output() -> None:
    with pytest.raises(SandboxViolation):
        run_code("for i in range(5000):\n    print('line', i)")


def test_run_code_reports_runtime_errors() -> None:
    with pytest.raises(ToolError) as exc:
        run_code("x = [1][5]")
    assert "IndexError" in exc.value.message

    with pytest.raises(ToolError):
        run_code("def f(:\n    pass")
