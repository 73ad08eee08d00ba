"""Calculated-field resolution for quality documents.

Header calculated fields get one pass in declaration order. Each row then gets
ROW_RESOLUTION_PASSES passes over its calculated fields, so a field can use a
calculated field declared after it. Rows never see each other's values.

The pass count is a fixed bound, not a fixed point: a dependency chain deeper
than the pass budget (declared against evaluation order) leaves its tail
unresolved. That is the accepted terminal state, as is any cyclic formula.
"""

from __future__ import annotations

import logging
import math
from typing import Collection, Dict, Iterable, List, Optional, Tuple

from plantlog.formula import FormulaContext, evaluate_formula
from plantlog.models import FieldValue, QualityDocument, QualityTemplate, TemplateField

logger = logging.getLogger(__name__)

ROW_RESOLUTION_PASSES = 3

UNRESOLVED_DISPLAY = "—"


def build_lookup(values: Iterable[FieldValue], skip: Collection[str] = ()) -> Dict[str, float]:
    """fieldId -> number from numeric values, then already-computed calculated ones.

    Ids in *skip* are left out entirely.
    """
    lookup: Dict[str, float] = {}
    for val in values:
        if val.field_id in skip:
            continue
        for number in (val.numeric_value, val.calculated_value):
            if number is not None and math.isfinite(number):
                lookup[val.field_id] = number
    return lookup


def _resolve_pass(fields: List[TemplateField], values: Dict[str, FieldValue],
                  header_lookup: Dict[str, float], row_lookup: Dict[str, float],
                  target: Dict[str, float]) -> None:
    """One sweep in declaration order. Successes land in *target* immediately."""
    context = FormulaContext(header_lookup, row_lookup)
    for field in fields:
        if not field.is_calculated:
            continue
        val = values.get(field.id)
        if val is None:
            continue
        result = evaluate_formula(field.formula, context)
        val.calculated_value = result
        if result is not None:
            target[field.id] = result


def resolve_calculated_fields(template: QualityTemplate, document: QualityDocument) -> QualityDocument:
    """Return a copy of *document* with every calculated slot recomputed.

    Precondition: the document's values were built from *template*. Values with
    no matching field definition are left as they are.
    """
    doc = document.model_copy(deep=True)
    # Calculated slots only feed the lookup once this call has computed them
    header_calc = {f.id for f in template.header_fields if f.is_calculated}
    row_calc = {f.id for f in template.row_fields if f.is_calculated}

    header_lookup = build_lookup(doc.header_values, skip=header_calc)
    header_by_id = {v.field_id: v for v in doc.header_values}
    _resolve_pass(template.header_fields, header_by_id, header_lookup, {}, header_lookup)

    for row in doc.rows:
        row_lookup = build_lookup(row.values, skip=row_calc)
        row_by_id = {v.field_id: v for v in row.values}
        for _ in range(ROW_RESOLUTION_PASSES):
            _resolve_pass(template.row_fields, row_by_id, header_lookup, row_lookup, row_lookup)

    if logger.isEnabledFor(logging.DEBUG):
        missing = unresolved_fields(template, doc)
        logger.debug("Resolved document %r: %d calculated field(s) unresolved",
                     doc.doc_id or doc.id, len(missing))
    return doc


def unresolved_fields(template: QualityTemplate, document: QualityDocument) -> List[Tuple[Optional[int], str]]:
    """(row index or None for header, field id) for each calculated slot still empty."""
    missing: List[Tuple[Optional[int], str]] = []
    header_calc = {f.id for f in template.header_fields if f.is_calculated}
    row_calc = {f.id for f in template.row_fields if f.is_calculated}
    for val in document.header_values:
        if val.field_id in header_calc and val.calculated_value is None:
            missing.append((None, val.field_id))
    for index, row in enumerate(document.rows):
        for val in row.values:
            if val.field_id in row_calc and val.calculated_value is None:
                missing.append((index, val.field_id))
    return missing


def format_calculated(value: Optional[float], decimal_places: Optional[int] = None) -> str:
    """Display text for a calculated slot: fixed-point, or an em dash when unresolved."""
    if value is None:
        return UNRESOLVED_DISPLAY
    places = 2 if decimal_places is None else decimal_places
    return f"{value:.{places}f}"
