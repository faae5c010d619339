"""Formula tokenizer: boundary-aware field-id matching + reference extraction.

The same token stream drives evaluation, validation and dependency discovery,
so a field id is "referenced" by a formula exactly when evaluation would read
it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

from formcalc.calc._functions import AGGREGATE_FUNCTIONS

# Token kinds
NUMBER = "NUMBER"
FIELD = "FIELD"
FUNC = "FUNC"
IDENT = "IDENT"  # identifier that is neither a known field nor a function
OP = "OP"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
COMMA = "COMMA"
UNSAFE = "UNSAFE"  # any character outside the grammar alphabet

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_IDENT_RE = re.compile(r"[^\W\d]\w*")
_CALL_OPEN_RE = re.compile(r"\s*\(")
_SINGLE_CHAR = {
    "+": OP,
    "-": OP,
    "*": OP,
    "/": OP,
    "(": LPAREN,
    ")": RPAREN,
    ",": COMMA,
}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@lru_cache(maxsize=256)
def _field_id_pattern(field_ids: tuple[str, ...]) -> re.Pattern[str] | None:
    """Alternation of known ids, longest first, anchored on a trailing boundary.

    Longest-first keeps ``qty`` from claiming the head of ``qty2``; the
    ``(?!\\w)`` lookahead keeps ``qty`` from matching inside ``qtyx``.
    """
    if not field_ids:
        return None
    ordered = sorted(set(field_ids), key=lambda s: (-len(s), s))
    alternation = "|".join(re.escape(fid) for fid in ordered)
    return re.compile(rf"(?:{alternation})(?!\w)")


def tokenize(
    formula: str,
    field_ids: Iterable[str] = (),
    function_names: Iterable[str] = AGGREGATE_FUNCTIONS,
) -> list[Token]:
    """Split *formula* into tokens.  Never raises.

    A name immediately followed by ``(`` that is a known function becomes a
    ``FUNC`` token, even if a field shares the name.  Otherwise a known field
    id becomes ``FIELD``; any other name is ``IDENT``.  Characters outside the
    alphabet are emitted as ``UNSAFE`` tokens so callers can reject them.
    """
    funcs = {name.upper() for name in function_names}
    field_re = _field_id_pattern(tuple(field_ids))
    tokens: list[Token] = []
    pos = 0
    length = len(formula)

    while pos < length:
        ch = formula[pos]
        if ch.isspace():
            pos += 1
            continue

        kind = _SINGLE_CHAR.get(ch)
        if kind is not None:
            tokens.append(Token(kind, ch, pos))
            pos += 1
            continue

        m = _NUMBER_RE.match(formula, pos)
        if m:
            tokens.append(Token(NUMBER, m.group(0), pos))
            pos = m.end()
            continue

        name = _IDENT_RE.match(formula, pos)
        if name and name.group(0).upper() in funcs and _CALL_OPEN_RE.match(formula, name.end()):
            tokens.append(Token(FUNC, name.group(0).upper(), pos))
            pos = name.end()
            continue

        if field_re is not None:
            fm = field_re.match(formula, pos)
            if fm:
                tokens.append(Token(FIELD, fm.group(0), pos))
                pos = fm.end()
                continue

        if name:
            tokens.append(Token(IDENT, name.group(0), pos))
            pos = name.end()
            continue

        tokens.append(Token(UNSAFE, ch, pos))
        pos += 1

    return tokens


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


def parse_references(formula: str, field_ids: Iterable[str]) -> list[str]:
    """Field ids read by *formula*, in first-occurrence order, no duplicates."""
    refs: list[str] = []
    seen: set[str] = set()
    for tok in tokenize(formula or "", field_ids):
        if tok.kind == FIELD and tok.text not in seen:
            refs.append(tok.text)
            seen.add(tok.text)
    return refs


def parse_functions(formula: str) -> list[str]:
    """Aggregate function names called by *formula* (upper-case, no duplicates)."""
    funcs: list[str] = []
    seen: set[str] = set()
    for tok in tokenize(formula or ""):
        if tok.kind == FUNC and tok.text not in seen:
            funcs.append(tok.text)
            seen.add(tok.text)
    return funcs


def unresolved_names(
    formula: str,
    field_ids: Iterable[str],
    function_names: Iterable[str] = AGGREGATE_FUNCTIONS,
) -> list[str]:
    """Names that are neither a known field id nor a recognised function."""
    funcs = {name.upper() for name in function_names}
    names: list[str] = []
    seen: set[str] = set()
    for tok in tokenize(formula or "", field_ids, funcs):
        if tok.kind == IDENT and tok.text.upper() not in funcs and tok.text not in seen:
            names.append(tok.text)
            seen.add(tok.text)
    return names
