# /app/workflows/template.py

"""
Variable placeholders and skip-condition expressions used in flow steps.

Messages reference run variables as `{{name}}`, `{{user.profile.name}}` or
`{{items[0]}}`. Skip conditions are small boolean expressions such as
`status == 'vip' AND (country == 'US' OR score >= 80)`.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
INDEX_RE = re.compile(r"\[(\d+)\]")

TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<and>AND\b|&&)
      | (?P<or>OR\b|\|\|)
      | (?P<string>'[^']*'|"[^"]*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<name>[A-Za-z_][\w.\[\]]*)
    )""",
    re.VERBOSE,
)

_MISSING = object()


class ExpressionError(ValueError):
    """Raised for malformed skip-condition expressions."""


def split_path(path: str) -> List[str]:
    """'data.items[2].value' -> ['data', 'items[2]', 'value']"""
    if not path:
        return []
    return [part for part in path.split(".") if part]


def get_nested_value(data: Any, path: str) -> Any:
    """
    Resolve a dot/bracket path against nested dicts and lists.
    Returns None for a missing key, an out-of-range index or an empty path.
    """
    if data is None or not path:
        return None

    current = data
    for part in split_path(path):
        match = SEGMENT_RE.match(part)
        if not match:
            return None
        key, indexes = match.group(1), match.group(2)
        if key:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        for raw_index in INDEX_RE.findall(indexes):
            index = int(raw_index)
            if not isinstance(current, (list, tuple)) or index >= len(current):
                return None
            current = current[index]
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def replace_variables(text: str, variables: Optional[Dict[str, Any]]) -> str:
    """Substitute `{{path}}` placeholders. Unresolved placeholders are left as written."""
    if not text or not variables:
        return text or ""

    def substitute(match: re.Match) -> str:
        value = get_nested_value(variables, match.group(1))
        if value is None:
            return match.group(0)
        return _stringify(value)

    return PLACEHOLDER_RE.sub(substitute, text)


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value not in ("", "false", "0")
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING or right is _MISSING or left is None or right is None:
        return False

    left_num, right_num = _to_number(left), _to_number(right)
    if op in ("==", "!="):
        if left_num is not None and right_num is not None:
            equal = left_num == right_num
        else:
            equal = _stringify(left) == _stringify(right)
        return equal if op == "==" else not equal

    if left_num is None or right_num is None:
        return False
    if op == ">":
        return left_num > right_num
    if op == "<":
        return left_num < right_num
    if op == ">=":
        return left_num >= right_num
    return left_num <= right_num


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    stripped_length = len(expression.rstrip())
    while position < stripped_length:
        match = TOKEN_RE.match(expression, position)
        if not match or match.end() == position:
            raise ExpressionError(f"Unexpected input at position {position}: {expression[position:]!r}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    """Recursive descent: or_expr := and_expr (OR and_expr)*; and_expr := term (AND term)*."""

    def __init__(self, tokens: List[Tuple[str, str]], variables: Dict[str, Any]):
        self.tokens = tokens
        self.pos = 0
        self.variables = variables

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def take(self, kind: str) -> str:
        if self.peek() != kind:
            raise ExpressionError(f"Expected {kind} at token {self.pos}")
        value = self.tokens[self.pos][1]
        self.pos += 1
        return value

    def parse(self) -> bool:
        result = self.or_expr()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Trailing tokens from position {self.pos}")
        return result

    def or_expr(self) -> bool:
        result = self.and_expr()
        while self.peek() == "or":
            self.take("or")
            right = self.and_expr()
            result = result or right
        return result

    def and_expr(self) -> bool:
        result = self.term()
        while self.peek() == "and":
            self.take("and")
            right = self.term()
            result = result and right
        return result

    def term(self) -> bool:
        if self.peek() == "lparen":
            self.take("lparen")
            result = self.or_expr()
            self.take("rparen")
            return result
        left = self.operand()
        if self.peek() == "op":
            op = self.take("op")
            return _compare(left, op, self.operand())
        return left is not _MISSING and is_truthy(left)

    def operand(self) -> Any:
        kind = self.peek()
        if kind == "string":
            return self.take("string")[1:-1]
        if kind == "number":
            return float(self.take("number"))
        if kind == "name":
            name = self.take("name")
            if name in ("true", "false"):
                return name == "true"
            value = get_nested_value(self.variables, name)
            return _MISSING if value is None else value
        raise ExpressionError(f"Expected a value at token {self.pos}")


def evaluate_expression(expression: str, variables: Optional[Dict[str, Any]]) -> bool:
    """Evaluate a skip condition. Empty or malformed expressions are False."""
    if not expression or not expression.strip():
        return False
    try:
        return _Parser(_tokenize(expression), variables or {}).parse()
    except ExpressionError as e:
        logger.warning(f"Could not evaluate expression {expression!r}: {e}")
        return False
