"""FormulaEngine: sandboxed arithmetic evaluation for calculated fields.

A formula is tokenized against the form's field ids, every field reference is
replaced by the coerced number of its current value, and the remaining token
stream (numbers, ``+ - * /``, parentheses, aggregate calls) is reduced by a
small recursive descent parser.  Nothing is ever handed to ``eval``; any
character or name outside that alphabet rejects the formula.

Evaluation never raises: failures come back as an :class:`EvaluationResult`
carrying a :class:`FormulaError` and the value 0, so a broken formula can
never make a form unfillable.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from formcalc._fields import CalculationType
from formcalc.calc._functions import FunctionRegistry, coerce_number
from formcalc.calc._graph import DependencyGraph
from formcalc.calc._parser import (
    COMMA,
    FIELD,
    FUNC,
    IDENT,
    LPAREN,
    NUMBER,
    OP,
    RPAREN,
    UNSAFE,
    Token,
    tokenize,
)
from formcalc.calc._protocol import (
    EvaluationResult,
    FormulaError,
    FormulaEvalError,
    ValidationResult,
)

if TYPE_CHECKING:
    from formcalc._fields import FieldDescriptor

logger = logging.getLogger(__name__)

# Value every referenced field takes during authoring-time validation
_DUMMY_VALUE = 1


# ---------------------------------------------------------------------------
# Recursive descent over the token stream
# ---------------------------------------------------------------------------


class _ExpressionParser:
    """Single-pass evaluator.

    Grammar::

        expr    := term (('+' | '-') term)*
        term    := unary (('*' | '/') unary)*
        unary   := ('+' | '-') unary | primary
        primary := NUMBER | FIELD | FUNC '(' expr (',' expr)* ')' | '(' expr ')'
    """

    def __init__(
        self,
        tokens: list[Token],
        resolve: dict[str, float],
        functions: FunctionRegistry,
        end: int,
    ) -> None:
        self._tokens = tokens
        self._resolve = resolve
        self._functions = functions
        self._pos = 0
        self._end = end  # formula length, for end-of-input positions

    def parse(self) -> float:
        if not self._tokens:
            raise FormulaEvalError(FormulaError.MALFORMED, "Formula is empty")
        value = self._expr()
        if self._pos < len(self._tokens):
            tok = self._tokens[self._pos]
            raise FormulaEvalError(
                FormulaError.MALFORMED, f"Unexpected {tok.text!r}", tok.position,
            )
        return value

    def _peek(self) -> Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, kind: str, texts: str | None = None) -> Token | None:
        """Consume and return the next token if it matches, else None."""
        tok = self._peek()
        if tok is None or tok.kind != kind or (texts is not None and tok.text not in texts):
            return None
        self._pos += 1
        return tok

    def _next(self, expected: str) -> Token:
        tok = self._peek()
        if tok is None:
            raise FormulaEvalError(
                FormulaError.MALFORMED, f"Unexpected end of formula, expected {expected}", self._end,
            )
        self._pos += 1
        return tok

    def _expect(self, kind: str, text: str) -> None:
        tok = self._next(repr(text))
        if tok.kind != kind:
            raise FormulaEvalError(
                FormulaError.MALFORMED, f"Expected {text!r}, got {tok.text!r}", tok.position,
            )

    def _expr(self) -> float:
        value = self._term()
        while True:
            tok = self._accept(OP, "+-")
            if tok is None:
                break
            right = self._term()
            value = value + right if tok.text == "+" else value - right
        return value

    def _term(self) -> float:
        value = self._unary()
        while True:
            tok = self._accept(OP, "*/")
            if tok is None:
                break
            right = self._unary()
            if tok.text == "*":
                value = value * right
            elif right == 0:
                logger.debug("Division by zero at position %d; quotient taken as 0", tok.position)
                value = 0.0
            else:
                value = value / right
        return value

    def _unary(self) -> float:
        tok = self._peek()
        if tok is not None and tok.kind == OP and tok.text in "+-":
            self._pos += 1
            operand = self._unary()
            return -operand if tok.text == "-" else operand
        return self._primary()

    def _primary(self) -> float:
        tok = self._next("a number, field or '('")

        if tok.kind == NUMBER:
            return float(tok.text)

        if tok.kind == FIELD:
            return self._resolve[tok.text]

        if tok.kind == LPAREN:
            value = self._expr()
            self._expect(RPAREN, ")")
            return value

        if tok.kind == FUNC:
            return self._call(tok)

        if tok.kind == IDENT and self._functions.has(tok.text):
            raise FormulaEvalError(
                FormulaError.MALFORMED, f"{tok.text.upper()} requires an argument list", tok.position,
            )

        raise FormulaEvalError(FormulaError.MALFORMED, f"Unexpected {tok.text!r}", tok.position)

    def _call(self, name_tok: Token) -> float:
        """Reduce ``NAME(arg, ...)`` to a number; nested calls resolve first."""
        self._expect(LPAREN, "(")
        nxt = self._peek()
        if nxt is not None and nxt.kind == RPAREN:
            raise FormulaEvalError(
                FormulaError.MALFORMED, f"{name_tok.text} needs at least one argument", nxt.position,
            )
        args = [self._expr()]
        while self._accept(COMMA) is not None:
            args.append(self._expr())
        self._expect(RPAREN, ")")

        func = self._functions.get(name_tok.text)
        if func is None:
            raise FormulaEvalError(
                FormulaError.UNSAFE_TOKEN, f"Unknown function {name_tok.text}", name_tok.position,
            )
        try:
            return float(func(args))
        except (ArithmeticError, ValueError, TypeError) as e:
            raise FormulaEvalError(
                FormulaError.NUMERIC_FAULT, f"{name_tok.text} failed: {e}", name_tok.position,
            ) from e


def _reject_unsafe(tokens: list[Token]) -> None:
    """Sanitization barrier: only the arithmetic alphabet may remain."""
    for tok in tokens:
        if tok.kind == UNSAFE:
            raise FormulaEvalError(
                FormulaError.UNSAFE_TOKEN, f"Unsafe character {tok.text!r}", tok.position,
            )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class FormulaEngine:
    """Evaluates and validates calculated-field formulas.

    Stateless apart from its function registry, so one engine can serve any
    number of form sessions.

    Usage::

        engine = FormulaEngine()
        engine.evaluate("SUM(a, b) * 0.2", {"a": 10, "b": "5"}, fields).value  # 3.0
        engine.validate_formula("a + typo", fields).reason
    """

    def __init__(self, functions: FunctionRegistry | None = None) -> None:
        self._functions = functions or FunctionRegistry()

    @property
    def functions(self) -> FunctionRegistry:
        return self._functions

    def _tokenize(self, formula: str, field_ids: Iterable[str]) -> list[Token]:
        return tokenize(formula, field_ids, self._functions.supported_functions)

    def _reduce(self, formula: str, tokens: list[Token], resolve: dict[str, float]) -> float:
        _reject_unsafe(tokens)
        for tok in tokens:
            if tok.kind == IDENT and not self._functions.has(tok.text):
                raise FormulaEvalError(
                    FormulaError.UNSAFE_TOKEN, f"Unknown name {tok.text!r}", tok.position,
                )
        try:
            value = _ExpressionParser(tokens, resolve, self._functions, len(formula)).parse()
        except RecursionError:
            raise FormulaEvalError(FormulaError.MALFORMED, "Formula is nested too deeply") from None
        if not math.isfinite(value):
            raise FormulaEvalError(FormulaError.NUMERIC_FAULT, "Result is not a finite number")
        return value

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        formula: str,
        values: dict[str, Any],
        fields: Iterable[FieldDescriptor],
    ) -> EvaluationResult:
        """Evaluate *formula* against the value table.  Never raises."""
        if not formula or not formula.strip():
            return EvaluationResult.failure(FormulaError.MALFORMED, "Formula is empty")

        field_ids = [f.id for f in fields]
        tokens = self._tokenize(formula, field_ids)
        resolve = {
            tok.text: coerce_number(values.get(tok.text))
            for tok in tokens
            if tok.kind == FIELD
        }
        try:
            return EvaluationResult(value=self._reduce(formula, tokens, resolve))
        except FormulaEvalError as e:
            logger.debug("Cannot evaluate formula %r: %s", formula, e)
            return EvaluationResult.failure(e.error, str(e))

    def calculate_field(
        self,
        field: FieldDescriptor,
        values: dict[str, Any],
        fields: Iterable[FieldDescriptor],
    ) -> EvaluationResult:
        """Compute a calculated field: its formula, else its calculation type."""
        if not field.is_calculated:
            return EvaluationResult()
        if field.formula and field.formula.strip():
            return self.evaluate(field.formula, values, fields)

        kind = field.calculation_type
        nums = [coerce_number(values.get(dep)) for dep in field.depends_on]
        if kind is None or not nums:
            return EvaluationResult()
        if kind is CalculationType.SUM:
            value = math.fsum(nums)
        elif kind is CalculationType.AVERAGE:
            value = math.fsum(nums) / len(nums)
        elif kind is CalculationType.MULTIPLY:
            value = math.prod(nums)
        elif kind is CalculationType.PERCENTAGE:
            if not field.constant_value:
                return EvaluationResult()
            value = nums[0] * field.constant_value / 100
        else:
            # simple / custom carry their logic in the formula
            return EvaluationResult()
        if not math.isfinite(value):
            return EvaluationResult.failure(FormulaError.NUMERIC_FAULT, "Result is not a finite number")
        return EvaluationResult(value=value)

    # ------------------------------------------------------------------
    # Authoring-time validation
    # ------------------------------------------------------------------

    def validate_formula(
        self,
        formula: str,
        fields: Iterable[FieldDescriptor],
        field_id: str | None = None,
    ) -> ValidationResult:
        """Check a formula before it is saved.

        When *field_id* names the calculated field that will own the formula,
        self-references and dependency cycles through it are rejected too.
        """
        if not formula or not formula.strip():
            return ValidationResult(False, "Formula is empty", FormulaError.MALFORMED)

        fields = list(fields)
        field_ids = [f.id for f in fields]
        tokens = self._tokenize(formula, field_ids)

        try:
            _reject_unsafe(tokens)
        except FormulaEvalError as e:
            return ValidationResult(False, str(e), e.error)

        unresolved: list[str] = []
        for tok in tokens:
            if tok.kind == IDENT and not self._functions.has(tok.text) and tok.text not in unresolved:
                unresolved.append(tok.text)
        if unresolved:
            return ValidationResult(
                False,
                f"Unknown field reference(s): {', '.join(unresolved)}",
                FormulaError.INVALID_REFERENCE,
                unresolved=tuple(unresolved),
            )

        references: list[str] = []
        for tok in tokens:
            if tok.kind == FIELD and tok.text not in references:
                references.append(tok.text)

        try:
            self._reduce(formula, tokens, {ref: float(_DUMMY_VALUE) for ref in references})
        except FormulaEvalError as e:
            return ValidationResult(False, str(e), e.error, references=tuple(references))

        if field_id is not None:
            cycle = self._find_cycle(formula, fields, field_id)
            if cycle:
                if len(cycle) == 2:
                    reason = f"Formula references its own field {field_id!r}"
                else:
                    reason = f"Circular reference: {' -> '.join(cycle)}"
                return ValidationResult(
                    False, reason, FormulaError.INVALID_REFERENCE, references=tuple(references),
                )

        return ValidationResult(True, references=tuple(references))

    @staticmethod
    def _find_cycle(formula: str, fields: list[FieldDescriptor], field_id: str) -> list[str] | None:
        """Cycle the candidate formula would close through *field_id*."""
        graph = DependencyGraph.from_fields(fields)
        owner = next((f for f in fields if f.id == field_id), None)
        depends_on = owner.depends_on if owner is not None else ()
        graph.add_field(field_id, formula, depends_on, [f.id for f in fields])
        return graph.find_cycle(field_id)
