"""
_filter Expressions
===================

A small evaluator for the FHIR ``_filter`` search parameter, used to filter
exported resources one by one (the backing store knows nothing about
resource contents).

Supported syntax::

    name eq "Peter" and (birthDate ge 2000-01-01 or active eq true)
    not(maritalStatus.text eq "Never Married")
    deceasedBoolean pr false

Paths are dotted element names; every step walks into lists, so a path can
resolve to many values and a comparison holds if any of them matches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import parse_qsl


OPERATORS = ("eq", "ne", "co", "sw", "ew", "gt", "lt", "ge", "le", "pr")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | "(?P<string>(?:[^"\\]|\\.)*)"
      | (?P<word>[^\s()"]+)
    )
    """,
    re.VERBOSE,
)

_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")


class FilterSyntaxError(ValueError):
    """Raised for malformed ``_filter`` expressions."""


Resource = Dict[str, Any]
Predicate = Callable[[Resource], bool]


# -----------------------------------------------------------------------------
# Tokenizer
# -----------------------------------------------------------------------------

def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise FilterSyntaxError(f'Invalid _filter expression near "{text[pos:]}"')
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "string":
            value = re.sub(r"\\(.)", r"\1", value)
        tokens.append((kind, value))
        pos = match.end()
    return tokens


# -----------------------------------------------------------------------------
# Syntax tree
# -----------------------------------------------------------------------------

def resolve_path(resource: Any, path: str) -> List[Any]:
    """All the values found at ``path``, walking into lists at every step."""
    values = [resource]
    for step in path.split("."):
        found: List[Any] = []
        for value in values:
            if isinstance(value, dict) and step in value:
                item = value[step]
                if isinstance(item, list):
                    found.extend(item)
                else:
                    found.append(item)
        values = found
    out: List[Any] = []
    for value in values:
        if isinstance(value, list):
            out.extend(value)
        elif value is not None:
            out.append(value)
    return out


def _coerce(actual: Any, expected: str) -> Tuple[Any, Any]:
    if isinstance(actual, bool):
        return actual, expected.lower() == "true"
    if isinstance(actual, (int, float)) and _NUMBER_RE.match(expected):
        return actual, float(expected)
    return str(actual).lower(), expected.lower()


def _compare(op: str, actual: Any, expected: str) -> bool:
    if isinstance(actual, (dict, list)):
        return False
    left, right = _coerce(actual, expected)
    if op == "eq":
        return left == right
    if op == "ne":
        return left != right
    if op == "co":
        return str(right) in str(left)
    if op == "sw":
        return str(left).startswith(str(right))
    if op == "ew":
        return str(left).endswith(str(right))
    try:
        if op == "gt":
            return left > right
        if op == "lt":
            return left < right
        if op == "ge":
            return left >= right
        if op == "le":
            return left <= right
    except TypeError:
        return False
    return False


@dataclass
class Comparison:
    path: str
    op: str
    value: str

    def evaluate(self, resource: Resource) -> bool:
        values = resolve_path(resource, self.path)
        if self.op == "pr":
            return bool(values) == (self.value.lower() == "true")
        if self.op == "ne":
            return all(_compare("ne", v, self.value) for v in values)
        return any(_compare(self.op, v, self.value) for v in values)


@dataclass
class Not:
    operand: Any

    def evaluate(self, resource: Resource) -> bool:
        return not self.operand.evaluate(resource)


@dataclass
class And:
    operands: List[Any]

    def evaluate(self, resource: Resource) -> bool:
        return all(operand.evaluate(resource) for operand in self.operands)


@dataclass
class Or:
    operands: List[Any]

    def evaluate(self, resource: Resource) -> bool:
        return any(operand.evaluate(resource) for operand in self.operands)


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------

class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def next(self) -> Tuple[str, str]:
        token = self.peek()
        if token is None:
            raise FilterSyntaxError("Unexpected end of _filter expression")
        self.pos += 1
        return token

    def is_keyword(self, word: str) -> bool:
        token = self.peek()
        return token is not None and token[0] == "word" and token[1].lower() == word

    def expect(self, kind: str) -> str:
        token_kind, value = self.next()
        if token_kind != kind:
            raise FilterSyntaxError(f'Unexpected "{value}" in _filter expression')
        return value

    def parse(self):
        node = self.parse_or()
        if self.peek() is not None:
            raise FilterSyntaxError(f'Unexpected "{self.peek()[1]}" in _filter expression')
        return node

    def parse_or(self):
        operands = [self.parse_and()]
        while self.is_keyword("or"):
            self.next()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Or(operands)

    def parse_and(self):
        operands = [self.parse_factor()]
        while self.is_keyword("and"):
            self.next()
            operands.append(self.parse_factor())
        return operands[0] if len(operands) == 1 else And(operands)

    def parse_factor(self):
        token = self.peek()
        if token is None:
            raise FilterSyntaxError("Unexpected end of _filter expression")

        if token[0] == "lparen":
            self.next()
            node = self.parse_or()
            self.expect("rparen")
            return node

        if self.is_keyword("not"):
            self.next()
            self.expect("lparen")
            node = self.parse_or()
            self.expect("rparen")
            return Not(node)

        return self.parse_comparison()

    def parse_comparison(self) -> Comparison:
        path = self.expect("word")
        if not _PATH_RE.match(path):
            raise FilterSyntaxError(f'Invalid _filter path "{path}"')

        op = self.expect("word").lower()
        if op not in OPERATORS:
            raise FilterSyntaxError(f'Unsupported _filter operator "{op}"')

        kind, value = self.next()
        if kind not in ("word", "string"):
            raise FilterSyntaxError(f'Missing value for "{path} {op}" in _filter expression')

        return Comparison(path=path, op=op, value=value)


def parse_filter(expression: str):
    """Parse an expression into its syntax tree."""
    tokens = _tokenize(str(expression or ""))
    if not tokens:
        raise FilterSyntaxError("Empty _filter expression")
    return _Parser(tokens).parse()


def compile_filter(expression: str) -> Predicate:
    """
    Compile an expression into a predicate over parsed resources.

    Raises:
        FilterSyntaxError: If the expression cannot be parsed
    """
    return parse_filter(expression).evaluate


def iter_filter_expressions(type_filter: str) -> Iterator[str]:
    """The ``_filter`` entries of a ``_typeFilter`` query string."""
    for key, value in parse_qsl(type_filter or "", keep_blank_values=True):
        if key == "_filter":
            yield value
