"""
Safe boolean expression evaluation for branch and loop conditions.

Conditions are written the way workflow authors write them in the builder,
e.g. ``{{count}} > 5 && {{status}} === 'done'``. They are parsed by a small
recursive-descent parser; nothing is ever passed to eval.

Grammar (lowest precedence first):
    or         := and ("||" and)*
    and        := equality ("&&" equality)*
    equality   := relational (("===" | "!==" | "==" | "!=") relational)*
    relational := unary ((">=" | "<=" | ">" | "<") unary)*
    unary      := "!" unary | primary
    primary    := NUMBER | STRING | {{path}} | true | false | null | undefined
                | "(" or ")"
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

from automation_engine.core.errors import ConditionError
from automation_engine.template.resolver import get_path, resolve

logger = logging.getLogger(__name__)

OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", "&&", "||", ">", "<", "!", "(", ")")
KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}


class _ParseError(Exception):
    pass


@dataclass
class _Token:
    kind: str   # "op", "value", "end"
    value: Any = None


def _tokenize(expression: str, variables: dict[str, Any]) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    n = len(expression)

    while i < n:
        ch = expression[i]

        if ch.isspace():
            i += 1
            continue

        if expression.startswith("{{", i):
            end = expression.find("}}", i + 2)
            if end == -1:
                raise _ParseError(f"Unterminated variable reference at position {i}")
            path = expression[i + 2:end].strip()
            tokens.append(_Token("value", get_path(variables, path)))
            i = end + 2
            continue

        if ch in "'\"":
            buf = []
            j = i + 1
            while j < n and expression[j] != ch:
                if expression[j] == "\\" and j + 1 < n:
                    j += 1
                buf.append(expression[j])
                j += 1
            if j >= n:
                raise _ParseError(f"Unterminated string literal at position {i}")
            # Quoted tokens ('{{name}}') interpolate as text
            tokens.append(_Token("value", resolve("".join(buf), variables)))
            i = j + 1
            continue

        if ch.isdigit() or (ch == "." and i + 1 < n and expression[i + 1].isdigit()) or (
            ch == "-"
            and i + 1 < n
            and (expression[i + 1].isdigit() or expression[i + 1] == ".")
            and (not tokens or tokens[-1].kind == "op" and tokens[-1].value != ")")
        ):
            j = i + 1
            while j < n and (expression[j].isdigit() or expression[j] in ".eE"):
                j += 1
            text = expression[i:j]
            try:
                number = float(text)
            except ValueError:
                raise _ParseError(f"Invalid number '{text}'")
            tokens.append(_Token("value", int(number) if number.is_integer() and "." not in text else number))
            i = j
            continue

        if ch.isalpha() or ch == "_":
            j = i
            while j < n and (expression[j].isalnum() or expression[j] == "_"):
                j += 1
            word = expression[i:j]
            if word not in KEYWORDS:
                raise _ParseError(f"Unexpected identifier '{word}'")
            tokens.append(_Token("value", KEYWORDS[word]))
            i = j
            continue

        for op in OPERATORS:
            if expression.startswith(op, i):
                tokens.append(_Token("op", op))
                i += len(op)
                break
        else:
            raise _ParseError(f"Unexpected character '{ch}' at position {i}")

    tokens.append(_Token("end"))
    return tokens


def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: empty lists and dicts are truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if strict_equals(left, right):
        return True
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    return _to_number(left) == _to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a = _to_number(left)
        b = _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == ">":
        return a > b
    if op == "<":
        return a < b
    if op == ">=":
        return a >= b
    return a <= b


class _Parser:
    def __init__(self, tokens: list[_Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> _Token:
        return self.tokens[self.pos]

    def accept(self, *ops: str) -> str | None:
        token = self.peek()
        if token.kind == "op" and token.value in ops:
            self.pos += 1
            return token.value
        return None

    def parse(self) -> Any:
        if self.peek().kind == "end":
            raise _ParseError("Empty expression")
        value = self.parse_or()
        if self.peek().kind != "end":
            raise _ParseError(f"Unexpected token '{self.peek().value}'")
        return value

    def parse_or(self) -> Any:
        left = self.parse_and()
        while self.accept("||"):
            right = self.parse_and()
            left = left if is_truthy(left) else right
        return left

    def parse_and(self) -> Any:
        left = self.parse_equality()
        while self.accept("&&"):
            right = self.parse_equality()
            left = right if is_truthy(left) else left
        return left

    def parse_equality(self) -> Any:
        left = self.parse_relational()
        while True:
            op = self.accept("===", "!==", "==", "!=")
            if op is None:
                return left
            right = self.parse_relational()
            if op == "===":
                left = strict_equals(left, right)
            elif op == "!==":
                left = not strict_equals(left, right)
            elif op == "==":
                left = loose_equals(left, right)
            else:
                left = not loose_equals(left, right)

    def parse_relational(self) -> Any:
        left = self.parse_unary()
        while True:
            op = self.accept(">=", "<=", ">", "<")
            if op is None:
                return left
            left = _compare(op, left, self.parse_unary())

    def parse_unary(self) -> Any:
        if self.accept("!"):
            return not is_truthy(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Any:
        token = self.peek()
        if token.kind == "value":
            self.pos += 1
            return token.value
        if self.accept("("):
            value = self.parse_or()
            if not self.accept(")"):
                raise _ParseError("Missing closing parenthesis")
            return value
        if token.kind == "end":
            raise _ParseError("Unexpected end of expression")
        raise _ParseError(f"Unexpected token '{token.value}'")


def evaluate_condition(expression: str, variables: dict[str, Any]) -> bool:
    """
    Evaluate a condition expression against the variables.

    Raises:
        ConditionError: If the expression cannot be parsed
    """
    try:
        result = _Parser(_tokenize(expression, variables)).parse()
    except _ParseError as e:
        logger.error(f"Failed to evaluate condition {expression!r}: {e}")
        raise ConditionError(expression, str(e)) from e

    logger.debug(f"Condition {expression!r} evaluated to {result!r}")
    return is_truthy(result)
