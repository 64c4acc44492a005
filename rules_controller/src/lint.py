from __future__ import annotations

from collections.abc import Callable

from rules_controller.src.errors import LintError
from rules_controller.src.rules import RuleNamespace

ExpressionLinter = Callable[[RuleNamespace], None]
"""A pure function that raises :class:`LintError` for rejected expressions."""

_CLOSERS = {")": "(", "]": "[", "}": "{"}
_QUOTES = {'"', "'", "`"}


def check_expression(expr: str) -> str | None:
    """Return a description of the first syntax problem in *expr*, or None.

    This is a lexical check only: brackets must balance and string literals
    must be terminated. It does not type-check PromQL.
    """
    stack: list[tuple[str, int]] = []
    quote: str | None = None
    escaped = False
    position = -1
    while position + 1 < len(expr):
        position += 1
        char = expr[position]
        if quote is not None:
            if escaped:
                escaped = False
            elif char == "\\" and quote != "`":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char == "#":
            # PromQL line comment
            newline = expr.find("\n", position)
            if newline == -1:
                break
            position = newline
        elif char in "([{":
            stack.append((char, position))
        elif char in _CLOSERS:
            if not stack or stack[-1][0] != _CLOSERS[char]:
                return f"unexpected {char!r} at position {position}"
            stack.pop()
    if quote is not None:
        return "unterminated string literal"
    if stack:
        char, position = stack[-1]
        return f"unclosed {char!r} opened at position {position}"
    return None


def lint_rule_namespace(rule_namespace: RuleNamespace) -> None:
    """Default expression linter used by the reconciler."""
    problems: list[str] = []
    for group in rule_namespace.groups:
        for rule in group.rules:
            if not rule.expr.strip():
                continue
            problem = check_expression(rule.expr)
            if problem is not None:
                problems.append(f"group {group.name!r}, rule {rule.name!r}: {problem}")
    if problems:
        raise LintError("; ".join(problems))
