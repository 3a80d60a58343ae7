"""条件表达式求值器

最小的布尔表达式语言，针对执行上下文（dict）求值：

    expr  := or
    or    := and (("or" | "||") and)*
    and   := not (("and" | "&&") not)*
    not   := ("not" | "!") not | cmp
    cmp   := value (("==" | "!=" | "<" | "<=" | ">" | ">=" | "in" | "not in") value)?
    value := NUMBER | STRING | true | false | null | NAME("." NAME)* | "(" expr ")"

名称按点号逐级在上下文中查找，不存在时为 None。
有序比较遇到 None 或类型不兼容时结果为 False。
evaluate_condition 从不抛异常：语法错误按 False 处理并记录告警。
"""

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import structlog

log = structlog.get_logger()

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
      (?P<number>-?\d+(?:\.\d+)?)
    | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<op>==|!=|<=|>=|&&|\|\||[<>!()])
    | (?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)
    )
    """,
    re.VERBOSE,
)

_LITERALS = {"true": True, "false": False, "null": None, "none": None}
_COMPARATORS = {"==", "!=", "<", "<=", ">", ">=", "in", "not in"}
_MISSING = object()


class ConditionSyntaxError(ValueError):
    """条件表达式无法解析"""


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise ConditionSyntaxError(f"unexpected character at {pos}: {text[pos:]!r}")
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "name" and value.lower() in ("and", "or", "not", "in"):
            kind, value = "op", value.lower()
        tokens.append((kind, value))
        pos = match.end()
    return tokens


class _Parser:
    """递归下降解析，产出嵌套 tuple 形式的 AST"""

    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def parse(self) -> tuple:
        if not self._tokens:
            raise ConditionSyntaxError("empty condition")
        node = self._or()
        if self._pos != len(self._tokens):
            raise ConditionSyntaxError(f"unexpected token {self._tokens[self._pos][1]!r}")
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, *ops: str) -> str | None:
        token = self._peek()
        if token is not None and token[0] == "op" and token[1] in ops:
            self._pos += 1
            return token[1]
        return None

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("or", "||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._not()
        while self._accept("and", "&&"):
            node = ("and", node, self._not())
        return node

    def _not(self) -> tuple:
        if self._accept("not", "!"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self) -> tuple:
        left = self._value()
        op = self._accept("==", "!=", "<", "<=", ">", ">=", "in")
        if op is None and self._peek() == ("op", "not"):
            nxt = self._tokens[self._pos + 1] if self._pos + 1 < len(self._tokens) else None
            if nxt == ("op", "in"):
                self._pos += 2
                op = "not in"
        if op is None:
            return left
        return ("cmp", op, left, self._value())

    def _value(self) -> tuple:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError("unexpected end of condition")
        kind, value = token
        self._pos += 1
        if kind == "number":
            return ("lit", float(value) if "." in value else int(value))
        if kind == "string":
            body = value[1:-1]
            return ("lit", re.sub(r"\\(.)", r"\1", body))
        if kind == "name":
            if value.lower() in _LITERALS:
                return ("lit", _LITERALS[value.lower()])
            return ("name", tuple(value.split(".")))
        if value == "(":
            node = self._or()
            if not self._accept(")"):
                raise ConditionSyntaxError("missing closing parenthesis")
            return node
        raise ConditionSyntaxError(f"unexpected token {value!r}")


@lru_cache(maxsize=512)
def parse_condition(text: str) -> tuple:
    """解析条件表达式

    Raises:
        ConditionSyntaxError: 表达式不合法
    """
    return _Parser(_tokenize(text)).parse()


def _lookup(context: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = context
    for part in path:
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _compare(op: str, left: Any, right: Any) -> bool:
    try:
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op in ("in", "not in"):
            if right is None:
                return op == "not in"
            found = left in right
            return found if op == "in" else not found
        if left is None or right is None:
            return False
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise ConditionSyntaxError(f"unknown operator {op!r}")


def _eval(node: tuple, context: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "name":
        return _lookup(context, node[1])
    if kind == "not":
        return not _eval(node[1], context)
    if kind == "and":
        return bool(_eval(node[1], context)) and bool(_eval(node[2], context))
    if kind == "or":
        return bool(_eval(node[1], context)) or bool(_eval(node[2], context))
    if kind == "cmp":
        return _compare(node[1], _eval(node[2], context), _eval(node[3], context))
    raise ConditionSyntaxError(f"unknown node {kind!r}")


def validate_condition(text: str) -> str | None:
    """返回语法错误描述；合法时返回 None"""
    try:
        parse_condition(text)
    except ConditionSyntaxError as e:
        return str(e)
    return None


def evaluate_condition(text: str, context: Mapping[str, Any]) -> bool:
    """对单个条件求值，不抛异常"""
    try:
        return bool(_eval(parse_condition(text), context))
    except ConditionSyntaxError as e:
        log.warning("condition_unparseable", condition=text, error=str(e))
        return False


def evaluate_conditions(conditions: list[str], context: Mapping[str, Any]) -> bool:
    """全部条件满足时返回 True（空列表视为满足）"""
    return all(evaluate_condition(condition, context) for condition in conditions)
