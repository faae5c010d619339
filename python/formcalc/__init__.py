"""formcalc: calculated-field formulas for dynamic forms.

Usage::

    from formcalc import FieldDescriptor, FormulaEngine, RecalculationOrchestrator

    fields = [
        FieldDescriptor("price"),
        FieldDescriptor("qty"),
        FieldDescriptor("total", type="calculated", formula="price * qty"),
    ]
    table = {"price": 12.5, "qty": 0}

    orch = RecalculationOrchestrator(fields)
    orch.recalculate_all(table)
    orch.on_field_changed("qty", 4, table)
    print(table["total"])  # 50.0

    FormulaEngine().validate_formula("price * qtty", fields).reason
"""

from formcalc._fields import CalculationType, FieldDescriptor, FieldType, ValueTable, load_fields
from formcalc.calc import (
    EvaluationResult,
    FormulaEngine,
    FormulaError,
    RecalcResult,
    RecalculationOrchestrator,
    ValidationResult,
    on_field_changed,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CalculationType",
    "EvaluationResult",
    "FieldDescriptor",
    "FieldType",
    "FormulaEngine",
    "FormulaError",
    "RecalcResult",
    "RecalculationOrchestrator",
    "ValidationResult",
    "ValueTable",
    "load_fields",
    "on_field_changed",
]
