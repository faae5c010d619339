"""Form-builder conveniences: reference lists, formula templates, label formulas.

Authors may type formulas with field *labels* ("prix * quantite + frais");
these helpers translate them to id-based formulas and back, using the same
tokenizer the engine evaluates with.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from formcalc._fields import CalculationType, FieldType
from formcalc.calc._evaluator import FormulaEngine
from formcalc.calc._parser import FIELD, FUNC, IDENT, OP, UNSAFE, tokenize

if TYPE_CHECKING:
    from formcalc._fields import FieldDescriptor

_REFERENCEABLE = (FieldType.NUMBER, FieldType.CALCULATED)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class FieldReference:
    id: str
    label: str
    type: FieldType


@dataclass(frozen=True)
class FieldSuggestion:
    id: str
    label: str
    normalized_name: str
    type: FieldType


@dataclass(frozen=True)
class FormulaSuggestion:
    label: str
    formula: str
    description: str


@dataclass(frozen=True)
class UserFormulaResult:
    """Outcome of translating a label-based formula to field ids."""

    valid: bool
    user_formula: str
    formula_with_ids: str = ""
    field_ids: tuple[str, ...] = ()
    error: str | None = None


# ---------------------------------------------------------------------------
# Id-based helpers
# ---------------------------------------------------------------------------


def get_field_references(fields: Iterable[FieldDescriptor]) -> list[FieldReference]:
    """Fields a formula may read: numeric inputs and other calculated fields."""
    return [
        FieldReference(id=f.id, label=f.label, type=f.type)
        for f in fields
        if f.type in _REFERENCEABLE
    ]


def _ref_id(ref: FieldReference | FieldSuggestion | str) -> str:
    return ref if isinstance(ref, str) else ref.id


def suggest_formula(
    calculation_type: CalculationType | str,
    refs: Sequence[FieldReference | FieldSuggestion | str],
) -> str:
    """Template formula for a calculation kind over the given references."""
    if not refs:
        return ""
    ids = [_ref_id(r) for r in refs]
    try:
        kind = CalculationType(calculation_type)
    except ValueError:
        return ids[0]

    if kind is CalculationType.SUM:
        return " + ".join(ids)
    if kind is CalculationType.AVERAGE:
        return f"AVG({', '.join(ids)})"
    if kind is CalculationType.MULTIPLY:
        return " * ".join(ids)
    if kind is CalculationType.PERCENTAGE:
        return f"{ids[0]} * 0.1"
    if kind is CalculationType.CUSTOM:
        return f"{ids[0]} + {ids[1]} * 0.2" if len(ids) >= 2 else ids[0]
    return ids[0]


# ---------------------------------------------------------------------------
# Label-based formulas
# ---------------------------------------------------------------------------


def normalize_field_name(label: str) -> str:
    """Lower-case a label and drop everything but ASCII letters and digits."""
    return _NON_ALNUM_RE.sub("", label.lower())


def _splice(text: str, replacements: list[tuple[int, int, str]]) -> str:
    for start, end, new in sorted(replacements, reverse=True):
        text = text[:start] + new + text[end:]
    return text


def get_field_suggestions(
    fields: Iterable[FieldDescriptor],
    current_field_id: str | None = None,
) -> list[FieldSuggestion]:
    """Referenceable fields other than the one being edited, with their formula names."""
    return [
        FieldSuggestion(
            id=f.id,
            label=f.label,
            normalized_name=normalize_field_name(f.label),
            type=f.type,
        )
        for f in fields
        if f.id != current_field_id and f.type in _REFERENCEABLE
    ]


def get_formula_suggestions(suggestions: Sequence[FieldSuggestion]) -> list[FormulaSuggestion]:
    """Common formula patterns over the first one or two suggested fields."""
    if not suggestions:
        return []
    first = suggestions[0].normalized_name
    second = suggestions[1].normalized_name if len(suggestions) >= 2 else None

    out: list[FormulaSuggestion] = []
    if second:
        out.append(FormulaSuggestion("Simple addition", f"{first} + {second}", "Add two fields"))
        out.append(FormulaSuggestion("Multiplication", f"{first} * {second}", "Multiply two fields"))
    out.append(FormulaSuggestion("Percentage (10%)", f"{first} * 0.1", "10% of a field"))
    out.append(FormulaSuggestion("Add a constant", f"{first} + 100", "Add a fixed amount"))
    out.append(FormulaSuggestion("Multiply by a constant", f"{first} * 1.2", "Scale by a fixed factor"))
    if second:
        out.append(FormulaSuggestion("Average", f"({first} + {second}) / 2", "Average of two fields"))
    return out


def parse_user_formula(
    user_formula: str,
    fields: Sequence[FieldDescriptor],
    current_field_id: str | None = None,
    engine: FormulaEngine | None = None,
) -> UserFormulaResult:
    """Translate a label-based formula into an id-based one and validate it."""
    if not user_formula or not user_formula.strip():
        return UserFormulaResult(False, "", error="Formula cannot be empty")

    user_formula = user_formula.strip()
    engine = engine or FormulaEngine()
    by_name: dict[str, FieldDescriptor] = {}
    for s in get_field_suggestions(fields, current_field_id):
        if s.normalized_name:
            by_name.setdefault(s.normalized_name, next(f for f in fields if f.id == s.id))

    tokens = tokenize(user_formula, (), engine.functions.supported_functions)
    replacements: list[tuple[int, int, str]] = []
    field_ids: list[str] = []
    unknown: list[str] = []
    has_operation = False

    for tok in tokens:
        end = tok.position + len(tok.text)
        if tok.kind == UNSAFE:
            return UserFormulaResult(
                False, user_formula, error=f"Unsafe character {tok.text!r} at position {tok.position}",
            )
        if tok.kind in (OP, FUNC):
            has_operation = True
            if tok.kind == FUNC:
                replacements.append((tok.position, end, tok.text))
            continue
        if tok.kind != IDENT:
            continue
        target = by_name.get(normalize_field_name(tok.text))
        if target is not None:
            replacements.append((tok.position, end, target.id))
            if target.id not in field_ids:
                field_ids.append(target.id)
        elif not engine.functions.has(tok.text) and tok.text not in unknown:
            unknown.append(tok.text)

    if unknown:
        return UserFormulaResult(
            False, user_formula, error=f"Unknown field(s): {', '.join(unknown)}",
        )
    if not has_operation:
        return UserFormulaResult(
            False, user_formula,
            error="Formula must contain at least one operation (+, -, *, /) or function",
        )

    formula_with_ids = _splice(user_formula, replacements)
    check = engine.validate_formula(formula_with_ids, fields, current_field_id)
    if not check.valid:
        return UserFormulaResult(False, user_formula, error=check.reason)

    return UserFormulaResult(
        True, user_formula, formula_with_ids=formula_with_ids, field_ids=tuple(field_ids),
    )


def convert_to_user_formula(formula_with_ids: str, fields: Iterable[FieldDescriptor]) -> str:
    """Replace field ids with their normalized labels for display."""
    if not formula_with_ids:
        return ""
    fields = list(fields)
    names = {f.id: normalize_field_name(f.label) for f in fields}
    replacements = [
        (tok.position, tok.position + len(tok.text), names[tok.text])
        for tok in tokenize(formula_with_ids, names)
        if tok.kind == FIELD and names[tok.text]
    ]
    return _splice(formula_with_ids, replacements)
