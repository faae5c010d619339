"""formcalc.calc - Formula evaluation and recalculation for calculated form fields."""

from formcalc.calc._authoring import (
    FieldReference,
    FieldSuggestion,
    FormulaSuggestion,
    UserFormulaResult,
    convert_to_user_formula,
    get_field_references,
    get_field_suggestions,
    get_formula_suggestions,
    normalize_field_name,
    parse_user_formula,
    suggest_formula,
)
from formcalc.calc._evaluator import FormulaEngine
from formcalc.calc._functions import AGGREGATE_FUNCTIONS, FunctionRegistry, coerce_number, is_supported
from formcalc.calc._graph import DependencyGraph
from formcalc.calc._orchestrator import RecalculationOrchestrator, on_field_changed
from formcalc.calc._parser import parse_functions, parse_references, tokenize
from formcalc.calc._protocol import (
    CircularReferenceError,
    EvaluationResult,
    FieldDelta,
    FormulaError,
    FormulaEvaluator,
    RecalcResult,
    ValidationResult,
)

__all__ = [
    "AGGREGATE_FUNCTIONS",
    "CircularReferenceError",
    "DependencyGraph",
    "EvaluationResult",
    "FieldDelta",
    "FieldReference",
    "FieldSuggestion",
    "FormulaEngine",
    "FormulaError",
    "FormulaEvaluator",
    "FormulaSuggestion",
    "FunctionRegistry",
    "RecalcResult",
    "RecalculationOrchestrator",
    "UserFormulaResult",
    "ValidationResult",
    "coerce_number",
    "convert_to_user_formula",
    "get_field_references",
    "get_field_suggestions",
    "get_formula_suggestions",
    "is_supported",
    "normalize_field_name",
    "on_field_changed",
    "parse_functions",
    "parse_references",
    "parse_user_formula",
    "suggest_formula",
    "tokenize",
]
