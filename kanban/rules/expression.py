"""
Boolean condition language for rules.

A small, sandboxed expression grammar evaluated against a flat mapping of
named variables:

    or_expr    := and_expr (("||" | "or") and_expr)*
    and_expr   := equality (("&&" | "and") equality)*
    equality   := comparison (("==" | "!=") comparison)*
    comparison := additive (("<" | "<=" | ">" | ">=") additive)?
    additive   := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("!" | "not" | "-") unary | primary
    primary    := NUMBER | STRING | "true" | "false" | "null"
                | IDENTIFIER | "(" or_expr ")"

There is no attribute access and no function call; identifiers resolve only
through the variable mapping.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Mapping, Union


class ExpressionError(Exception):
    """Base class for expression failures."""

    pass


class ExpressionSyntaxError(ExpressionError):
    """Raised when an expression cannot be parsed."""

    def __init__(self, message: str, position: int):
        super().__init__(f"{message} at position {position}")
        self.position = position


class ExpressionEvaluationError(ExpressionError):
    """Raised when a parsed expression cannot be evaluated."""

    pass


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, STRING, IDENT, OP, EOF
    value: Any
    position: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>&&|\|\||==|!=|>=|<=|[<>!+\-*/%()])
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


def tokenize(text: str) -> list[Token]:
    """Split an expression into tokens."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ExpressionSyntaxError(f"Unexpected character {text[pos]!r}", pos)
        kind = match.lastgroup
        raw = match.group()
        if kind == "number":
            value = float(raw) if any(c in raw for c in ".eE") else int(raw)
            tokens.append(Token("NUMBER", value, pos))
        elif kind == "string":
            body = raw[1:-1]
            tokens.append(Token("STRING", re.sub(r"\\(.)", r"\1", body), pos))
        elif kind == "ident":
            lowered = raw.lower()
            if lowered in _KEYWORD_OPS:
                tokens.append(Token("OP", _KEYWORD_OPS[lowered], pos))
            elif lowered in _KEYWORD_LITERALS:
                tokens.append(Token("LITERAL", _KEYWORD_LITERALS[lowered], pos))
            else:
                tokens.append(Token("IDENT", raw, pos))
        elif kind == "op":
            tokens.append(Token("OP", raw, pos))
        pos = match.end()
    tokens.append(Token("EOF", None, len(text)))
    return tokens


# AST

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    op: str  # "&&" or "||"
    left: "Node"
    right: "Node"


Node = Union[Literal, Variable, Unary, Binary, Logical]


MAX_NESTING_DEPTH = 64


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    def _nested(self, position: int, parse: Callable[[], Node]) -> Node:
        if self.depth >= MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError(
                f"Expression nested deeper than {MAX_NESTING_DEPTH} levels", position
            )
        self.depth += 1
        try:
            return parse()
        finally:
            self.depth -= 1

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _match(self, *ops: str) -> bool:
        token = self.current
        return token.kind == "OP" and token.value in ops

    def parse(self) -> Node:
        if self.current.kind == "EOF":
            raise ExpressionSyntaxError("Empty expression", 0)
        node = self._or()
        if self.current.kind != "EOF":
            raise ExpressionSyntaxError(
                f"Unexpected token {self.current.value!r}", self.current.position
            )
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._match("||"):
            self._advance()
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._match("&&"):
            self._advance()
            node = Logical("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while self._match("==", "!="):
            op = self._advance().value
            node = Binary(op, node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._additive()
        if self._match("<", "<=", ">", ">="):
            op = self._advance().value
            node = Binary(op, node, self._additive())
            if self._match("<", "<=", ">", ">="):
                raise ExpressionSyntaxError(
                    "Chained comparison is not supported", self.current.position
                )
        return node

    def _additive(self) -> Node:
        node = self._term()
        while self._match("+", "-"):
            op = self._advance().value
            node = Binary(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self._match("*", "/", "%"):
            op = self._advance().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._match("!", "-"):
            token = self._advance()
            return Unary(token.value, self._nested(token.position, self._unary))
        return self._primary()

    def _primary(self) -> Node:
        token = self.current
        if token.kind in ("NUMBER", "STRING", "LITERAL"):
            self._advance()
            return Literal(token.value)
        if token.kind == "IDENT":
            self._advance()
            return Variable(token.value)
        if self._match("("):
            self._advance()
            node = self._nested(token.position, self._or)
            if not self._match(")"):
                raise ExpressionSyntaxError("Expected ')'", self.current.position)
            self._advance()
            return node
        if token.kind == "EOF":
            raise ExpressionSyntaxError("Unexpected end of expression", token.position)
        raise ExpressionSyntaxError(f"Unexpected token {token.value!r}", token.position)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Expression:
    """A parsed condition, reusable across evaluations."""

    def __init__(self, source: str, root: Node):
        self.source = source
        self.root = root

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def variable_names(self) -> set[str]:
        """Names of all variables the expression references."""
        names: set[str] = set()
        stack = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, Variable):
                names.add(node.name)
            elif isinstance(node, Unary):
                stack.append(node.operand)
            elif isinstance(node, (Binary, Logical)):
                stack.extend((node.left, node.right))
        return names

    def evaluate(self, variables: Mapping[str, Any]) -> bool:
        """
        Evaluate to a boolean.

        Raises:
            ExpressionEvaluationError: On unknown or unset variables, type
                mismatches, division by zero, a non-boolean result or a
                tree too deep to walk.
        """
        try:
            result = self._eval(self.root, variables)
        except RecursionError:
            raise ExpressionEvaluationError("Expression is too deeply nested to evaluate")
        if not isinstance(result, bool):
            raise ExpressionEvaluationError(
                f"Expression evaluated to {type(result).__name__}, expected boolean"
            )
        return result

    def _eval(self, node: Node, variables: Mapping[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Variable):
            if node.name not in variables:
                raise ExpressionEvaluationError(f"Unknown variable '{node.name}'")
            return variables[node.name]

        if isinstance(node, Logical):
            left = self._require_bool(self._eval(node.left, variables), node.op)
            if node.op == "&&" and not left:
                return False
            if node.op == "||" and left:
                return True
            return self._require_bool(self._eval(node.right, variables), node.op)

        if isinstance(node, Unary):
            operand = self._eval(node.operand, variables)
            if node.op == "!":
                return not self._require_bool(operand, "!")
            self._require_number(operand, node.operand, "-")
            return -operand

        left = self._eval(node.left, variables)
        right = self._eval(node.right, variables)

        if node.op == "==":
            return left == right
        if node.op == "!=":
            return left != right

        if node.op in ("<", "<=", ">", ">="):
            both_strings = isinstance(left, str) and isinstance(right, str)
            if not both_strings:
                self._require_number(left, node.left, node.op)
                self._require_number(right, node.right, node.op)
            if node.op == "<":
                return left < right
            if node.op == "<=":
                return left <= right
            if node.op == ">":
                return left > right
            return left >= right

        self._require_number(left, node.left, node.op)
        self._require_number(right, node.right, node.op)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if right == 0:
            raise ExpressionEvaluationError("Division by zero")
        if node.op == "/":
            return left / right
        return left % right

    @staticmethod
    def _require_bool(value: Any, op: str) -> bool:
        if not isinstance(value, bool):
            raise ExpressionEvaluationError(
                f"Operator '{op}' needs boolean operands, got {_describe(value)}"
            )
        return value

    @staticmethod
    def _require_number(value: Any, node: Node, op: str) -> None:
        if _is_number(value):
            return
        if value is None and isinstance(node, Variable):
            raise ExpressionEvaluationError(f"Variable '{node.name}' has no value")
        raise ExpressionEvaluationError(
            f"Operator '{op}' needs numeric operands, got {_describe(value)}"
        )


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    return type(value).__name__


@lru_cache(maxsize=512)
def parse_expression(text: str) -> Expression:
    """
    Parse an expression string.

    Raises:
        ExpressionSyntaxError: If the text is not a valid expression
    """
    if text is None:
        raise ExpressionSyntaxError("Empty expression", 0)
    return Expression(text, _Parser(tokenize(text)).parse())
