"""
Restricted evaluation for the calculate and execute_code tools.

Source is parsed, every node is checked against an allow-list, then the tree is
rewritten so that size-amplifying operators go through guard functions before it is
compiled and run with a whitelisted builtins table. Anything the allow-list does not
name is rejected with SandboxViolation before a single line runs.
"""
from __future__ import annotations
import ast
import io
import math
import sys
from typing import Any, Callable, Dict, Optional

from .errors import SandboxViolation, ToolError

MAX_SEQUENCE_LEN = 100_000
MAX_RESULT_BITS = 100_000
MAX_LINE_EVENTS = 200_000
MAX_OUTPUT_CHARS = 8_000

_FILENAME = "<sandbox>"

_OPERATORS = {
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.USub, ast.UAdd,
}

_CALC_NODES = {
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.Constant, ast.Load, ast.Name, ast.Call,
} | _OPERATORS

_CODE_NODES = _CALC_NODES | {
    ast.Module, ast.Expr, ast.Assign, ast.AugAssign, ast.Store, ast.Del,
    ast.If, ast.For, ast.Break, ast.Continue, ast.Pass, ast.Return,
    ast.FunctionDef, ast.Lambda, ast.arguments, ast.arg, ast.keyword, ast.Starred,
    ast.BoolOp, ast.And, ast.Or, ast.Not, ast.Invert,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.Is, ast.IsNot, ast.In, ast.NotIn,
    ast.LShift, ast.RShift, ast.BitOr, ast.BitXor, ast.BitAnd,
    ast.IfExp, ast.List, ast.Tuple, ast.Dict, ast.Set, ast.Subscript, ast.Slice,
    ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp, ast.comprehension,
    ast.JoinedStr, ast.FormattedValue, ast.Attribute,
}

_FORBIDDEN_ATTRS = {
    "format", "format_map", "mro", "gi_frame", "gi_code", "cr_frame", "ag_frame",
    "tb_frame", "f_back", "f_globals", "f_locals", "f_builtins",
    "ljust", "rjust", "center", "zfill", "expandtabs",
}

_MATH_FUNCS: Dict[str, Callable[..., Any]] = {
    "sqrt": math.sqrt, "sin": math.sin, "cos": math.cos, "tan": math.tan,
    "asin": math.asin, "acos": math.acos, "atan": math.atan,
    "log": math.log, "log10": math.log10, "log2": math.log2, "exp": math.exp,
    "floor": math.floor, "ceil": math.ceil, "abs": abs, "round": round,
    "min": min, "max": max,
}

_MATH_CONSTS = {"pi": math.pi, "e": math.e, "tau": math.tau}


def _result_bits_of_pow(a: int, b: int) -> float:
    if b <= 1 or abs(a) <= 1:
        return float(a.bit_length())
    return b * math.log2(abs(a))


def _guard_pow(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int):
        bits = _result_bits_of_pow(a, b)
        if bits > MAX_RESULT_BITS:
            raise SandboxViolation(f"result too large: about {int(bits)} bits")
    return a ** b


def _guard_mult(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int):
        if a.bit_length() + b.bit_length() > MAX_RESULT_BITS:
            raise SandboxViolation("result too large: integer product")
        return a * b
    for seq, n in ((a, b), (b, a)):
        if isinstance(seq, (str, bytes, list, tuple)) and isinstance(n, int):
            if len(seq) * n > MAX_SEQUENCE_LEN:
                raise SandboxViolation("sequence repetition too large")
    return a * b


def _guard_lshift(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int) and b > 0:
        if a.bit_length() + b > MAX_RESULT_BITS:
            raise SandboxViolation(f"shift too large: {b}")
    return a << b


def _bounded_range(*args: int) -> range:
    r = range(*args)
    if len(r) > MAX_SEQUENCE_LEN:
        raise SandboxViolation(f"range too large: {len(r)}")
    return r


_GUARDS = {
    ast.Pow: "__guard_pow",
    ast.Mult: "__guard_mult",
    ast.LShift: "__guard_lshift",
}

_GUARD_FUNCS = {
    "__guard_pow": _guard_pow,
    "__guard_mult": _guard_mult,
    "__guard_lshift": _guard_lshift,
}


class _GuardRewriter(ast.NodeTransformer):
    def visit_BinOp(self, node: ast.BinOp) -> ast.AST:
        self.generic_visit(node)
        guard = _GUARDS.get(type(node.op))
        if guard is None:
            return node
        call = ast.Call(func=ast.Name(id=guard, ctx=ast.Load()), args=[node.left, node.right], keywords=[])
        return ast.copy_location(call, node)

    def visit_AugAssign(self, node: ast.AugAssign) -> ast.AST:
        self.generic_visit(node)
        guard = _GUARDS.get(type(node.op))
        if guard is None:
            return node
        # validation only lets guarded ops through on plain names
        target = node.target
        call = ast.Call(
            func=ast.Name(id=guard, ctx=ast.Load()),
            args=[ast.Name(id=target.id, ctx=ast.Load()), node.value],
            keywords=[],
        )
        return ast.copy_location(ast.Assign(targets=[ast.Name(id=target.id, ctx=ast.Store())], value=call), node)


def _check_name(name: str) -> None:
    if name.startswith("_"):
        raise SandboxViolation(f"access to private name not allowed: {name}")


def _validate_expr(tree: ast.AST) -> None:
    for n in ast.walk(tree):
        if type(n) not in _CALC_NODES:
            raise SandboxViolation(f"calc: disallowed syntax: {type(n).__name__}")
        if isinstance(n, ast.Constant) and not isinstance(n.value, (int, float)):
            raise SandboxViolation("calc: only numeric literals are allowed")
        if isinstance(n, ast.Name) and n.id not in _MATH_FUNCS and n.id not in _MATH_CONSTS:
            raise SandboxViolation(f"calc: unknown name: {n.id}")
        if isinstance(n, ast.Call):
            if not isinstance(n.func, ast.Name) or n.func.id not in _MATH_FUNCS or n.keywords:
                raise SandboxViolation("calc: only plain math function calls are allowed")


def _validate_code(tree: ast.AST) -> None:
    for n in ast.walk(tree):
        if type(n) not in _CODE_NODES:
            raise SandboxViolation(f"disallowed syntax: {type(n).__name__}")
        if isinstance(n, ast.Name):
            _check_name(n.id)
            if n.id in _FORBIDDEN_NAMES:
                raise SandboxViolation(f"access to {n.id} not allowed")
        elif isinstance(n, ast.Attribute):
            _check_name(n.attr)
            if n.attr in _FORBIDDEN_ATTRS:
                raise SandboxViolation(f"attribute not allowed: {n.attr}")
        elif isinstance(n, ast.FunctionDef):
            _check_name(n.name)
        elif isinstance(n, ast.arg):
            _check_name(n.arg)
        elif isinstance(n, ast.keyword) and n.arg is not None:
            _check_name(n.arg)
        elif isinstance(n, ast.AugAssign) and type(n.op) in _GUARDS and not isinstance(n.target, ast.Name):
            raise SandboxViolation("augmented assignment with this operator needs a plain name target")


_FORBIDDEN_NAMES = {
    "open", "exec", "eval", "compile", "globals", "locals", "vars", "dir",
    "getattr", "setattr", "delattr", "hasattr", "input", "breakpoint", "help",
    "memoryview", "type", "object", "super", "classmethod", "staticmethod",
    "property", "exit", "quit", "copyright", "credits", "license", "id",
}


def evaluate_expression(expr: str) -> Any:
    try:
        parsed = ast.parse(expr, mode="eval")
    except SyntaxError as e:
        raise ToolError(f"calc: invalid expression: {e.msg}") from e
    _validate_expr(parsed)
    tree = ast.fix_missing_locations(_GuardRewriter().visit(parsed))
    scope: Dict[str, Any] = {"__builtins__": {}, **_GUARD_FUNCS}
    try:
        val = eval(compile(tree, _FILENAME, "eval"), scope, dict(_MATH_FUNCS, **_MATH_CONSTS))
    except SandboxViolation:
        raise
    except Exception as e:
        raise ToolError(f"calc failed: {e}") from e
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise ToolError("calc: expression did not produce a number")
    return val


class _OutputBuffer(io.StringIO):
    def write(self, s: str) -> int:
        if self.tell() + len(s) > MAX_OUTPUT_CHARS:
            raise SandboxViolation("output limit exceeded")
        return super().write(s)


def _safe_builtins(out: io.StringIO) -> Dict[str, Any]:
    def _print(*args: Any, sep: str = " ", end: str = "\n") -> None:
        out.write(sep.join(str(a) for a in args) + end)

    return {
        "abs": abs, "all": all, "any": any, "bool": bool, "dict": dict,
        "divmod": divmod, "enumerate": enumerate, "filter": filter, "float": float,
        "frozenset": frozenset, "int": int, "isinstance": isinstance, "len": len,
        "list": list, "map": map, "max": max, "min": min, "pow": _guard_pow,
        "print": _print, "range": _bounded_range, "repr": repr, "reversed": reversed,
        "round": round, "set": set, "sorted": sorted, "str": str, "sum": sum,
        "tuple": tuple, "zip": zip,
        **_MATH_FUNCS, **_MATH_CONSTS,
    }


def _run_with_budget(fn: Callable[[], Any], budget: int) -> Any:
    count = 0

    def tracer(frame: Any, event: str, arg: Any) -> Optional[Callable[..., Any]]:
        nonlocal count
        if frame.f_code.co_filename != _FILENAME:
            return None
        count += 1
        if count > budget:
            raise SandboxViolation("execution step budget exceeded")
        return tracer

    previous = sys.gettrace()
    sys.settrace(tracer)
    try:
        return fn()
    finally:
        sys.settrace(previous)


def run_code(code: str, *, budget: int = MAX_LINE_EVENTS) -> Dict[str, Any]:
    """Run a restricted Python snippet; the value of a trailing expression is returned as `result`."""
    try:
        module = ast.parse(code, mode="exec")
    except SyntaxError as e:
        raise ToolError(f"syntax error at line {e.lineno}: {e.msg}") from e
    _validate_code(module)

    tail: Optional[ast.Expression] = None
    if module.body and isinstance(module.body[-1], ast.Expr):
        tail = ast.Expression(body=module.body.pop().value)

    rewriter = _GuardRewriter()
    body = compile(ast.fix_missing_locations(rewriter.visit(module)), _FILENAME, "exec")
    tail_code = None
    if tail is not None:
        tail_code = compile(ast.fix_missing_locations(rewriter.visit(tail)), _FILENAME, "eval")

    out = _OutputBuffer()
    scope: Dict[str, Any] = {"__builtins__": _safe_builtins(out), **_GUARD_FUNCS}

    def _execute() -> Any:
        exec(body, scope)
        return eval(tail_code, scope) if tail_code is not None else None

    try:
        value = _run_with_budget(_execute, budget)
    except SandboxViolation:
        raise
    except RecursionError as e:
        raise ToolError("recursion limit reached") from e
    except Exception as e:
        raise ToolError(f"{type(e).__name__}: {e}") from e

    try:
        result = None if value is None else repr(value)
    except ValueError as e:
        # int -> str conversion limit
        raise ToolError(f"result cannot be rendered: {e}") from e
    return {"stdout": out.getvalue(), "result": result}
