"""Field descriptors: the read-only form schema consumed by the calc engine.

Descriptors are loaded once per form render from persisted form definitions
(``FieldDescriptor.from_dict`` accepts both the stored camelCase keys and
snake_case).  The value table is a plain ``dict`` owned by one form session.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# field id -> current answer (number, str, bool, None, or a file-answer record)
ValueTable = dict[str, Any]


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    TEXTAREA = "textarea"
    SELECT = "select"
    CHECKBOX = "checkbox"
    DATE = "date"
    FILE = "file"
    CALCULATED = "calculated"


class CalculationType(str, Enum):
    SIMPLE = "simple"
    PERCENTAGE = "percentage"
    AVERAGE = "average"
    SUM = "sum"
    MULTIPLY = "multiply"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FieldDescriptor:
    """One form field.  Only calculated fields carry formula metadata."""

    id: str
    type: FieldType = FieldType.NUMBER
    label: str = ""
    formula: str | None = None
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    calculation_type: CalculationType | None = None
    constant_value: float | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Field id must be a non-empty string")
        # Coerce plain strings / lists coming from persisted definitions
        object.__setattr__(self, "type", FieldType(self.type))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if self.calculation_type is not None:
            object.__setattr__(
                self, "calculation_type", CalculationType(self.calculation_type),
            )
        if self.is_calculated and self.id in self.depends_on:
            raise ValueError(f"Calculated field {self.id!r} cannot depend on itself")

    @property
    def is_calculated(self) -> bool:
        return self.type is FieldType.CALCULATED

    @property
    def kind(self) -> str:
        return "calculated" if self.is_calculated else "plain-input"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldDescriptor:
        """Build a descriptor from a stored form-definition entry."""
        formula = _first(data, "formula", "calculationFormula", "calculation_formula")
        depends_on = _first(data, "depends_on", "dependsOn") or ()
        calc_type = _first(data, "calculation_type", "calculationType")
        constant = _first(data, "constant_value", "constantValue")
        return cls(
            id=str(data["id"]),
            type=FieldType(data.get("type", FieldType.NUMBER)),
            label=str(data.get("label") or ""),
            formula=formula or None,
            depends_on=tuple(str(d) for d in depends_on),
            calculation_type=CalculationType(calc_type) if calc_type else None,
            constant_value=float(constant) if constant is not None else None,
        )


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def load_fields(entries: Iterable[FieldDescriptor | Mapping[str, Any]]) -> list[FieldDescriptor]:
    """Normalize a form schema into descriptors, rejecting duplicate ids."""
    fields: list[FieldDescriptor] = []
    seen: set[str] = set()
    for entry in entries:
        fd = entry if isinstance(entry, FieldDescriptor) else FieldDescriptor.from_dict(entry)
        if fd.id in seen:
            raise ValueError(f"Duplicate field id: {fd.id!r}")
        seen.add(fd.id)
        fields.append(fd)
    return fields
