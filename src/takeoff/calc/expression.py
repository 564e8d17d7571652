"""Restricted arithmetic expression language.

Formula text is tokenized, parsed into a small expression tree, and
evaluated by walking that tree. There is no path from formula text to a
host-language evaluation primitive: only the tokens, operators, functions
and constants defined in this module exist.

Grammar (lowest to highest precedence):

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("-" | "+") unary | power
    power      := primary ("**" unary)?          # right-associative
    primary    := NUMBER | NAME | NAME "(" args ")" | "(" expression ")"
    args       := expression ("," expression)*

All arithmetic uses Decimal under a local context that traps invalid
operations, division by zero and overflow.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from functools import lru_cache

from takeoff.errors import CalculationError, LexError, ParseError, UnknownIdentifierError

MAX_EXPRESSION_LENGTH = 4096
MAX_NESTING_DEPTH = 64
MAX_TREE_DEPTH = 256
DECIMAL_PRECISION = 28

_NUMBER_RE = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_PUNCTUATION = "(),"
_DISALLOWED_RE = re.compile(r"[^0-9A-Za-z_ \t\r\n.+\-*/%(),]")

CONSTANTS: dict[str, Decimal] = {
    "pi": Decimal("3.141592653589793238462643383"),
    "e": Decimal("2.718281828459045235360287471"),
}


@dataclass(frozen=True)
class Token:
    """A lexical token. kind is NUMBER, NAME, OP or PUNCT."""

    kind: str
    text: str
    position: int


def tokenize(expression: str) -> list[Token]:
    """Split formula text into tokens.

    Raises:
        LexError: On the first character outside the permitted set.
        ParseError: If the text exceeds MAX_EXPRESSION_LENGTH.
    """
    disallowed = _DISALLOWED_RE.search(expression)
    if disallowed is not None:
        raise LexError(expression, disallowed.start(), disallowed.group(0))
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ParseError(
            f"Expression exceeds {MAX_EXPRESSION_LENGTH} characters", expression[:64] + "..."
        )

    tokens: list[Token] = []
    i = 0
    length = len(expression)
    while i < length:
        char = expression[i]
        if char in " \t\r\n":
            i += 1
            continue
        if char.isascii() and (char.isdigit() or char == "."):
            match = _NUMBER_RE.match(expression, i)
            if match is None:
                raise LexError(expression, i, char)
            tokens.append(Token("NUMBER", match.group(0), i))
            i = match.end()
            continue
        if char.isascii() and (char.isalpha() or char == "_"):
            match = _NAME_RE.match(expression, i)
            assert match is not None
            tokens.append(Token("NAME", match.group(0), i))
            i = match.end()
            continue
        if expression.startswith("**", i):
            tokens.append(Token("OP", "**", i))
            i += 2
            continue
        if char in "+-*/%":
            tokens.append(Token("OP", char, i))
            i += 1
            continue
        if char in _PUNCTUATION:
            tokens.append(Token("PUNCT", char, i))
            i += 1
            continue
        raise LexError(expression, i, char)
    return tokens


# Expression tree


@dataclass(frozen=True)
class Number:
    value: Decimal


@dataclass(frozen=True)
class Name:
    identifier: str


@dataclass(frozen=True)
class UnaryOp:
    operator: str
    operand: Node


@dataclass(frozen=True)
class BinaryOp:
    operator: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Call:
    function: str
    args: tuple[Node, ...]


Node = Number | Name | UnaryOp | BinaryOp | Call


# Allow-listed functions


def _to_float(value: Decimal) -> float:
    return float(value)


def _from_float(value: float) -> Decimal:
    if not math.isfinite(value):
        raise InvalidOperation(f"non-finite intermediate {value!r}")
    return Decimal(repr(value))


def _sqrt(x: Decimal) -> Decimal:
    return x.sqrt()


def _pow(x: Decimal, y: Decimal) -> Decimal:
    return x**y


def _round(x: Decimal, places: Decimal = Decimal("0")) -> Decimal:
    if places != places.to_integral_value():
        raise InvalidOperation("round() places must be an integer")
    exponent = Decimal(1).scaleb(-int(places))
    return x.quantize(exponent, rounding=ROUND_HALF_UP)


def _ceil(x: Decimal) -> Decimal:
    return x.to_integral_value(rounding=ROUND_CEILING)


def _floor(x: Decimal) -> Decimal:
    return x.to_integral_value(rounding=ROUND_FLOOR)


def _sin(x: Decimal) -> Decimal:
    return _from_float(math.sin(_to_float(x)))


def _cos(x: Decimal) -> Decimal:
    return _from_float(math.cos(_to_float(x)))


def _tan(x: Decimal) -> Decimal:
    return _from_float(math.tan(_to_float(x)))


@dataclass(frozen=True)
class FunctionSpec:
    fn: Callable[..., Decimal]
    min_args: int
    max_args: int | None


FUNCTIONS: dict[str, FunctionSpec] = {
    "sqrt": FunctionSpec(_sqrt, 1, 1),
    "pow": FunctionSpec(_pow, 2, 2),
    "abs": FunctionSpec(abs, 1, 1),
    "min": FunctionSpec(min, 1, None),
    "max": FunctionSpec(max, 1, None),
    "round": FunctionSpec(_round, 1, 2),
    "ceil": FunctionSpec(_ceil, 1, 1),
    "floor": FunctionSpec(_floor, 1, 1),
    "sin": FunctionSpec(_sin, 1, 1),
    "cos": FunctionSpec(_cos, 1, 1),
    "tan": FunctionSpec(_tan, 1, 1),
}

RESERVED_NAMES = frozenset(CONSTANTS) | frozenset(FUNCTIONS)


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, expression: str, tokens: list[Token]) -> None:
        self.expression = expression
        self.tokens = tokens
        self.position = 0
        self.depth = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ParseError("Empty expression", self.expression, 0)
        node = self._expression()
        if not self._is_at_end():
            token = self._peek()
            raise ParseError(
                f"Unexpected token {token.text!r}", self.expression, token.position
            )
        return node

    def _expression(self) -> Node:
        self._enter()
        node = self._term()
        while self._match("OP", "+", "-"):
            operator = self._previous().text
            node = BinaryOp(operator, node, self._term())
        self._leave()
        return node

    def _term(self) -> Node:
        node = self._unary()
        while self._match("OP", "*", "/", "%"):
            operator = self._previous().text
            node = BinaryOp(operator, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._match("OP", "-", "+"):
            operator = self._previous().text
            self._enter()
            operand = self._unary()
            self._leave()
            return UnaryOp(operator, operand)
        return self._power()

    def _power(self) -> Node:
        base = self._primary()
        if self._match("OP", "**"):
            self._enter()
            exponent = self._unary()
            self._leave()
            return BinaryOp("**", base, exponent)
        return base

    def _primary(self) -> Node:
        if self._match("NUMBER"):
            return Number(Decimal(self._previous().text))
        if self._match("NAME"):
            name = self._previous()
            if self._match("PUNCT", "("):
                return self._call(name)
            return Name(name.text)
        if self._match("PUNCT", "("):
            node = self._expression()
            self._consume(")")
            return node
        if self._is_at_end():
            raise ParseError("Unexpected end of expression", self.expression, len(self.expression))
        token = self._peek()
        raise ParseError(f"Unexpected token {token.text!r}", self.expression, token.position)

    def _call(self, name: Token) -> Node:
        spec = FUNCTIONS.get(name.text)
        if spec is None:
            raise UnknownIdentifierError([name.text], self.expression)
        args: list[Node] = []
        if not self._match("PUNCT", ")"):
            args.append(self._expression())
            while self._match("PUNCT", ","):
                args.append(self._expression())
            self._consume(")")
        if len(args) < spec.min_args or (spec.max_args is not None and len(args) > spec.max_args):
            raise ParseError(
                f"{name.text}() takes {_arity_text(spec)} argument(s), got {len(args)}",
                self.expression,
                name.position,
            )
        return Call(name.text, tuple(args))

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            position = self._peek().position if not self._is_at_end() else len(self.expression)
            raise ParseError(
                f"Expression nesting exceeds {MAX_NESTING_DEPTH} levels",
                self.expression,
                position,
            )

    def _leave(self) -> None:
        self.depth -= 1

    def _match(self, kind: str, *texts: str) -> bool:
        if self._is_at_end():
            return False
        token = self._peek()
        if token.kind != kind or (texts and token.text not in texts):
            return False
        self.position += 1
        return True

    def _consume(self, text: str) -> None:
        if self._match("PUNCT", text):
            return
        if self._is_at_end():
            raise ParseError(
                f"Expected {text!r}, got end of expression", self.expression, len(self.expression)
            )
        token = self._peek()
        raise ParseError(f"Expected {text!r}, got {token.text!r}", self.expression, token.position)

    def _previous(self) -> Token:
        return self.tokens[self.position - 1]

    def _peek(self) -> Token:
        return self.tokens[self.position]

    def _is_at_end(self) -> bool:
        return self.position >= len(self.tokens)


def _arity_text(spec: FunctionSpec) -> str:
    if spec.max_args is None:
        return f"at least {spec.min_args}"
    if spec.min_args == spec.max_args:
        return str(spec.min_args)
    return f"{spec.min_args}-{spec.max_args}"


def _analyze(tree: Node) -> tuple[set[str], int]:
    """Collect referenced names and the tree depth without recursion."""
    names: set[str] = set()
    max_depth = 0
    stack: list[tuple[Node, int]] = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        max_depth = max(max_depth, depth)
        if isinstance(node, Name):
            names.add(node.identifier)
        elif isinstance(node, UnaryOp):
            stack.append((node.operand, depth + 1))
        elif isinstance(node, BinaryOp):
            stack.append((node.left, depth + 1))
            stack.append((node.right, depth + 1))
        elif isinstance(node, Call):
            stack.extend((arg, depth + 1) for arg in node.args)
    return names, max_depth


@dataclass(frozen=True)
class CompiledExpression:
    """A parsed formula.

    Attributes:
        source: Original formula text.
        tree: Root of the expression tree.
        variables: Names used as values that are not constants, sorted.
    """

    source: str
    tree: Node
    variables: tuple[str, ...]

    def bind(self, variables: Mapping[str, Decimal]) -> dict[str, Decimal]:
        """Resolve every name in the tree before any arithmetic happens.

        Raises:
            UnknownIdentifierError: Listing every unresolved name.
        """
        unknown = [name for name in self.variables if name not in variables]
        if unknown:
            raise UnknownIdentifierError(unknown, self.source)
        return {name: variables[name] for name in self.variables}

    def evaluate(self, variables: Mapping[str, Decimal]) -> Decimal:
        """Evaluate against a variable table.

        Returns:
            Finite, non-negative Decimal result.

        Raises:
            UnknownIdentifierError: If a name cannot be resolved.
            CalculationError: On undefined arithmetic or a non-finite or
                negative result.
        """
        bound = self.bind(variables)
        try:
            with localcontext() as ctx:
                ctx.prec = DECIMAL_PRECISION
                ctx.traps[InvalidOperation] = True
                ctx.traps[DivisionByZero] = True
                ctx.traps[Overflow] = True
                result = _evaluate_node(self.tree, bound)
        except (ArithmeticError, ValueError) as e:
            raise CalculationError(
                f"Evaluation failed: {e.__class__.__name__}",
                context=_diagnostics(self.source, bound, reason=str(e) or e.__class__.__name__),
            ) from e

        if not result.is_finite():
            raise CalculationError(
                "Result is not finite",
                context=_diagnostics(self.source, bound, result=str(result)),
            )
        if result < 0:
            raise CalculationError(
                "Result is negative",
                context=_diagnostics(self.source, bound, result=str(result)),
            )
        if result.is_zero():
            # -0 compares equal to 0 but would serialize as "-0"
            return result.copy_abs()
        return result


def _diagnostics(source: str, bound: Mapping[str, Decimal], **extra: str) -> dict[str, object]:
    context: dict[str, object] = {
        "expression": source,
        "variables": {k: str(v) for k, v in sorted(bound.items())},
    }
    context.update(extra)
    return context


def _evaluate_node(node: Node, variables: Mapping[str, Decimal]) -> Decimal:
    if isinstance(node, Number):
        return +node.value
    if isinstance(node, Name):
        if node.identifier in variables:
            return variables[node.identifier]
        return CONSTANTS[node.identifier]
    if isinstance(node, UnaryOp):
        operand = _evaluate_node(node.operand, variables)
        return -operand if node.operator == "-" else +operand
    if isinstance(node, BinaryOp):
        left = _evaluate_node(node.left, variables)
        right = _evaluate_node(node.right, variables)
        if node.operator == "+":
            return left + right
        if node.operator == "-":
            return left - right
        if node.operator == "*":
            return left * right
        if node.operator == "/":
            return left / right
        if node.operator == "%":
            return left % right
        return left**right
    args = [_evaluate_node(arg, variables) for arg in node.args]
    return FUNCTIONS[node.function].fn(*args)


@lru_cache(maxsize=1024)
def compile_expression(expression: str) -> CompiledExpression:
    """Tokenize and parse formula text.

    Lexing covers the whole string before parsing starts, so a disallowed
    character is always reported as LexError ahead of any identifier check.

    Raises:
        LexError: Character outside the permitted set.
        ParseError: Malformed structure, wrong arity, or limits exceeded.
        UnknownIdentifierError: Call to a function outside the allow-list.
    """
    tokens = tokenize(expression)
    tree = _Parser(expression, tokens).parse()
    names, depth = _analyze(tree)
    if depth > MAX_TREE_DEPTH:
        raise ParseError(f"Expression tree exceeds {MAX_TREE_DEPTH} levels", expression, 0)
    variables = tuple(sorted(name for name in names if name not in CONSTANTS))
    return CompiledExpression(source=expression, tree=tree, variables=variables)


def evaluate(expression: str, variables: Mapping[str, Decimal]) -> Decimal:
    """Compile and evaluate in one call."""
    return compile_expression(expression).evaluate(variables)
