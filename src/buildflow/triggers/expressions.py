"""CI rule expression parser.

Compiles ``rules: - if:`` strings into an evaluable tree.

Grammar:
    expr       := or_expr
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := unary ("&&" unary)*
    unary      := "!" unary | primary
    primary    := "(" expr ")" | comparison
    comparison := operand (("==" | "!=" | "=~" | "!~") operand)?
    operand    := $VAR | ${VAR} | "string" | 'string' | /regex/[i] | null

Semantics:
    - A bare ``$VAR`` is true when the variable is defined and non-empty.
    - An undefined variable compares equal to ``null`` and to nothing else.
    - ``=~`` / ``!~`` take a regex literal, or a variable holding ``/regex/``.
      An undefined left side never matches. A variable holding an invalid
      regex never matches either; it is logged as a warning.

Example:
    >>> expr = compile_expression('$CI_PIPELINE_SOURCE == "merge_request_event" && $IS_UPSTREAM_CI == "true"')
    >>> expr.evaluate({"CI_PIPELINE_SOURCE": "merge_request_event", "IS_UPSTREAM_CI": "true"})
    True
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional, Union

from ..types.exceptions import RuleSyntaxError

logger = logging.getLogger(__name__)

# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("VAR", r"\$\{[A-Za-z_][A-Za-z0-9_]*\}|\$[A-Za-z_][A-Za-z0-9_]*"),
    ("STRING", r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''),
    ("REGEX", r"/(?:[^/\\]|\\.)*/[a-z]*"),
    ("NULL", r"null\b"),
    ("OP", r"==|!=|=~|!~"),
    ("AND", r"&&"),
    ("OR", r"\|\|"),
    ("NOT", r"!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
]

_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(source: str) -> list[Token]:
    """Split an expression into tokens.

    Raises:
        RuleSyntaxError: On characters that start no token
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise RuleSyntaxError(source, pos, f"unexpected character {source[pos]!r}")
        kind = match.lastgroup or ""
        if kind != "WS":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


# =============================================================================
# AST
# =============================================================================


class Node(ABC):
    """Expression tree node."""

    @abstractmethod
    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        """Operand value; None when undefined."""

    def truth(self, variables: Mapping[str, str]) -> bool:
        value = self.value(variables)
        return value is not None and value != ""


@dataclass(frozen=True)
class Variable(Node):
    name: str

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return variables.get(self.name)

    def __str__(self) -> str:
        return f"${self.name}"


@dataclass(frozen=True)
class Literal(Node):
    text: str

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return self.text

    def __str__(self) -> str:
        return '"' + self.text.replace('"', '\\"') + '"'


@dataclass(frozen=True)
class Null(Node):
    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return None

    def __str__(self) -> str:
        return "null"


@dataclass(frozen=True)
class Pattern(Node):
    pattern: str
    flags: str = ""

    def compiled(self) -> "re.Pattern[str]":
        return _compile_regex(self.pattern, self.flags)

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return f"/{self.pattern}/{self.flags}"

    def __str__(self) -> str:
        return f"/{self.pattern}/{self.flags}"


@dataclass(frozen=True)
class Compare(Node):
    op: str
    left: Node
    right: Node

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return "true" if self.truth(variables) else None

    def truth(self, variables: Mapping[str, str]) -> bool:
        if self.op in ("==", "!="):
            equal = self.left.value(variables) == self.right.value(variables)
            return equal if self.op == "==" else not equal

        matched = self._match(variables)
        return matched if self.op == "=~" else not matched

    def _match(self, variables: Mapping[str, str]) -> bool:
        subject = self.left.value(variables)
        if subject is None:
            return False
        if isinstance(self.right, Pattern):
            regex = self.right.compiled()
        else:
            raw = self.right.value(variables)
            if raw is None:
                return False
            try:
                regex = _regex_from_string(raw)
            except re.error as e:
                logger.warning(f"{self.right} holds an invalid regex {raw!r} ({e}); treating as no match")
                return False
        return regex.search(subject) is not None

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return "true" if self.truth(variables) else None

    def truth(self, variables: Mapping[str, str]) -> bool:
        return self.left.truth(variables) and self.right.truth(variables)

    def __str__(self) -> str:
        return f"{_wrap(self.left, Or)} && {_wrap(self.right, Or)}"


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return "true" if self.truth(variables) else None

    def truth(self, variables: Mapping[str, str]) -> bool:
        return self.left.truth(variables) or self.right.truth(variables)

    def __str__(self) -> str:
        return f"{self.left} || {self.right}"


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def value(self, variables: Mapping[str, str]) -> Optional[str]:
        return "true" if self.truth(variables) else None

    def truth(self, variables: Mapping[str, str]) -> bool:
        return not self.operand.truth(variables)

    def __str__(self) -> str:
        if isinstance(self.operand, (Variable, Not)):
            return f"!{self.operand}"
        return f"!({self.operand})"


def _wrap(node: Node, kind: type) -> str:
    return f"({node})" if isinstance(node, kind) else str(node)


@lru_cache(maxsize=256)
def _compile_regex(pattern: str, flags: str) -> "re.Pattern[str]":
    re_flags = re.IGNORECASE if "i" in flags else 0
    return re.compile(pattern, re_flags)


def _regex_from_string(raw: str) -> "re.Pattern[str]":
    match = re.fullmatch(r"/(.*)/([a-z]*)", raw, re.DOTALL)
    if match:
        return _compile_regex(match.group(1), match.group(2))
    return _compile_regex(re.escape(raw), "")


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive descent parser over a token list."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise RuleSyntaxError(self.source, 0, "empty expression")
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise RuleSyntaxError(self.source, token.pos, f"unexpected {token.text!r}")
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self, kind: str) -> Optional[Token]:
        token = self._peek()
        if token is not None and token.kind == kind:
            self.index += 1
            return token
        return None

    def _or(self) -> Node:
        node = self._and()
        while self._take("OR"):
            node = Or(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._unary()
        while self._take("AND"):
            node = And(node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._take("NOT"):
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Node:
        if self._take("LPAREN"):
            node = self._or()
            if not self._take("RPAREN"):
                raise RuleSyntaxError(self.source, self._position(), "missing ')'")
            return node

        left = self._operand()
        op = self._take("OP")
        if op is None:
            return left

        right = self._operand()
        if op.text in ("=~", "!~") and not isinstance(right, (Pattern, Variable)):
            raise RuleSyntaxError(self.source, op.pos, f"{op.text} needs a regex on the right")
        if op.text in ("==", "!=") and isinstance(right, Pattern):
            raise RuleSyntaxError(self.source, op.pos, f"{op.text} cannot compare to a regex")
        return Compare(op.text, left, right)

    def _operand(self) -> Node:
        token = self._peek()
        if token is None:
            raise RuleSyntaxError(self.source, len(self.source), "unexpected end of expression")
        self.index += 1

        if token.kind == "VAR":
            name = token.text[2:-1] if token.text.startswith("${") else token.text[1:]
            return Variable(name)
        if token.kind == "STRING":
            return Literal(_unquote(token.text))
        if token.kind == "NULL":
            return Null()
        if token.kind == "REGEX":
            body, _, flags = token.text[1:].rpartition("/")
            try:
                _compile_regex(body, flags)
            except re.error as e:
                raise RuleSyntaxError(self.source, token.pos, f"bad regex: {e}") from e
            return Pattern(body, flags)
        raise RuleSyntaxError(self.source, token.pos, f"unexpected {token.text!r}")

    def _position(self) -> int:
        token = self._peek()
        return token.pos if token is not None else len(self.source)


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@dataclass(frozen=True)
class Expression:
    """A compiled rule expression.

    Attributes:
        source: Original expression text
        root: Parsed tree
    """

    source: str
    root: Node

    def evaluate(self, variables: Mapping[str, str]) -> bool:
        return self.root.truth(variables)

    def __str__(self) -> str:
        return self.source


def compile_expression(source: Union[str, Expression]) -> Expression:
    """Parse an expression string.

    Raises:
        RuleSyntaxError: If the expression is malformed
    """
    if isinstance(source, Expression):
        return source
    text = str(source).strip()
    return Expression(source=text, root=_Parser(text).parse())


__all__ = [
    "Token",
    "tokenize",
    "Node",
    "Variable",
    "Literal",
    "Null",
    "Pattern",
    "Compare",
    "And",
    "Or",
    "Not",
    "Expression",
    "compile_expression",
]
