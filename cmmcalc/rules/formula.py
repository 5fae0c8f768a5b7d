"""Arithmetic formula evaluator for conversion rules.

Formulas are a small expression language over ``Decimal``::

    expr    := term (('+' | '-') term)*
    term    := unary (('*' | '/') unary)*
    unary   := ('+' | '-') unary | primary
    primary := NUMBER | NAME | NAME '(' args ')' | '(' expr ')'
    args    := expr (',' expr)*

Supported functions are ``min``, ``max`` and ``round(x[, digits])`` (half-up).
Formulas are parsed once into an AST and cached by text. Nothing is ever
passed to ``eval``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, DecimalException, InvalidOperation
from functools import lru_cache

from cmmcalc.errors import FormulaEvaluationError, FormulaFailure

MAX_NESTING = 64

_TOKEN_RE = re.compile(
    r"""
    (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>[-+*/(),])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # number, name, op, end
    text: str
    pos: int


def tokenize(formula: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    length = len(formula)
    while pos < length:
        if formula[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(formula, pos)
        if match is None:
            raise FormulaEvaluationError(
                FormulaFailure.SYNTAX_ERROR,
                f"Unexpected character {formula[pos]!r} at position {pos}",
                formula,
            )
        kind = match.lastgroup or "op"
        tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(Token("end", "", length))
    return tokens


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


class Node:
    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Number(Node):
    value: Decimal

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        return self.value


@dataclass(frozen=True, slots=True)
class Name(Node):
    name: str

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        try:
            return env[self.name]
        except KeyError:
            raise FormulaEvaluationError(
                FormulaFailure.UNKNOWN_VARIABLE, f"Unbound variable '{self.name}'"
            ) from None


@dataclass(frozen=True, slots=True)
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        value = self.operand.evaluate(env)
        return -value if self.op == "-" else value


@dataclass(frozen=True, slots=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        left = self.left.evaluate(env)
        right = self.right.evaluate(env)
        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        if right == 0:
            raise FormulaEvaluationError(FormulaFailure.DIVISION_BY_ZERO, "Division by zero")
        return left / right


def _round(value: Decimal, digits: Decimal = Decimal("0")) -> Decimal:
    if digits != digits.to_integral_value() or not 0 <= digits <= 12:
        raise FormulaEvaluationError(
            FormulaFailure.SYNTAX_ERROR, "round() digits must be a whole number from 0 to 12"
        )
    return value.quantize(Decimal(1).scaleb(-int(digits)), rounding=ROUND_HALF_UP)


# name -> (implementation, min args, max args or None for variadic)
_FUNCTIONS: dict[str, tuple[Callable[..., Decimal], int, int | None]] = {
    "min": (min, 1, None),
    "max": (max, 1, None),
    "round": (_round, 1, 2),
}


@dataclass(frozen=True, slots=True)
class Call(Node):
    func: str
    args: tuple[Node, ...]

    def evaluate(self, env: Mapping[str, Decimal]) -> Decimal:
        impl = _FUNCTIONS[self.func][0]
        return impl(*(arg.evaluate(env) for arg in self.args))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser producing a Node tree."""

    def __init__(self, formula: str) -> None:
        self.formula = formula
        self.tokens = tokenize(formula)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _error(self, message: str) -> FormulaEvaluationError:
        return FormulaEvaluationError(FormulaFailure.SYNTAX_ERROR, message, self.formula)

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _expect(self, text: str) -> None:
        token = self.current
        if token.kind != "op" or token.text != text:
            found = token.text or "end of formula"
            raise self._error(f"Expected '{text}' at position {token.pos}, found {found!r}")
        self._advance()

    def parse(self) -> Node:
        if self.current.kind == "end":
            raise self._error("Empty formula")
        node = self.expr()
        if self.current.kind != "end":
            raise self._error(
                f"Unexpected {self.current.text!r} at position {self.current.pos}"
            )
        return node

    def expr(self) -> Node:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise self._error("Formula nested too deeply")
        node = self.term()
        while self.current.kind == "op" and self.current.text in "+-":
            op = self._advance().text
            node = Binary(op, node, self.term())
        self.depth -= 1
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.current.kind == "op" and self.current.text in "*/":
            op = self._advance().text
            node = Binary(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self.current.kind == "op" and self.current.text in "+-":
            op = self._advance().text
            self.depth += 1
            if self.depth > MAX_NESTING:
                raise self._error("Formula nested too deeply")
            operand = self.unary()
            self.depth -= 1
            return Unary(op, operand)
        return self.primary()

    def primary(self) -> Node:
        token = self.current
        if token.kind == "number":
            self._advance()
            try:
                return Number(Decimal(token.text))
            except InvalidOperation:
                raise self._error(f"Invalid number {token.text!r}") from None

        if token.kind == "name":
            self._advance()
            if self.current.kind == "op" and self.current.text == "(":
                return self._call(token)
            return Name(token.text)

        if token.kind == "op" and token.text == "(":
            self._advance()
            node = self.expr()
            self._expect(")")
            return node

        found = token.text or "end of formula"
        raise self._error(f"Unexpected {found!r} at position {token.pos}")

    def _call(self, name: Token) -> Node:
        if name.text not in _FUNCTIONS:
            raise self._error(f"Unknown function '{name.text}'")
        self._expect("(")
        args: list[Node] = []
        if not (self.current.kind == "op" and self.current.text == ")"):
            args.append(self.expr())
            while self.current.kind == "op" and self.current.text == ",":
                self._advance()
                args.append(self.expr())
        self._expect(")")

        _, min_args, max_args = _FUNCTIONS[name.text]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise self._error(f"Wrong number of arguments for {name.text}()")
        return Call(name.text, tuple(args))


def _collect_names(node: Node, names: set[str]) -> None:
    if isinstance(node, Name):
        names.add(node.name)
    elif isinstance(node, Unary):
        _collect_names(node.operand, names)
    elif isinstance(node, Binary):
        _collect_names(node.left, names)
        _collect_names(node.right, names)
    elif isinstance(node, Call):
        for arg in node.args:
            _collect_names(arg, names)


@dataclass(frozen=True)
class CompiledFormula:
    text: str
    root: Node
    variables: frozenset[str]

    def evaluate(self, bindings: Mapping[str, Decimal]) -> Decimal:
        missing = sorted(self.variables - bindings.keys())
        if missing:
            raise FormulaEvaluationError(
                FormulaFailure.UNKNOWN_VARIABLE,
                f"Unbound variable(s): {', '.join(missing)}",
                self.text,
            )
        try:
            result = self.root.evaluate(bindings)
        except FormulaEvaluationError as exc:
            if exc.formula is None:
                raise FormulaEvaluationError(exc.kind, str(exc), self.text) from None
            raise
        except DecimalException as exc:
            raise FormulaEvaluationError(
                FormulaFailure.INVALID_RESULT, f"Arithmetic error: {exc!r}", self.text
            ) from exc

        if not result.is_finite():
            raise FormulaEvaluationError(
                FormulaFailure.INVALID_RESULT, f"Non-finite result {result}", self.text
            )
        return result


@lru_cache(maxsize=2048)
def compile_formula(formula: str) -> CompiledFormula:
    """Parse ``formula`` into a reusable AST (cached by text)."""
    root = _Parser(formula).parse()
    names: set[str] = set()
    _collect_names(root, names)
    return CompiledFormula(text=formula, root=root, variables=frozenset(names))


def variables_of(formula: str) -> frozenset[str]:
    """Names referenced by ``formula``."""
    return compile_formula(formula).variables


class FormulaEvaluator:
    """Length-bounded front end over the compiled-formula cache."""

    def __init__(self, max_length: int = 500) -> None:
        self.max_length = max_length

    def compile(self, formula: str) -> CompiledFormula:
        formula = formula.strip()
        if len(formula) > self.max_length:
            raise FormulaEvaluationError(
                FormulaFailure.SYNTAX_ERROR,
                f"Formula longer than {self.max_length} characters",
            )
        return compile_formula(formula)

    def evaluate(self, formula: str, bindings: Mapping[str, Decimal]) -> Decimal:
        return self.compile(formula).evaluate(bindings)
