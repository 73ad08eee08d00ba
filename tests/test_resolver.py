"""Tests for calculated-field resolution across header and row scope."""

from __future__ import annotations

import pytest

from plantlog.models import FieldValue, QualityTemplate
from plantlog.resolver import (
    ROW_RESOLUTION_PASSES,
    UNRESOLVED_DISPLAY,
    build_lookup,
    format_calculated,
    resolve_calculated_fields,
    unresolved_fields,
)


def _calc(doc, field_id, row=None):
    values = doc.header_values if row is None else doc.rows[row].values
    return next(v.calculated_value for v in values if v.field_id == field_id)


class TestBuildLookup:
    def test_calculated_overrides_numeric_and_skips_blanks(self) -> None:
        lookup = build_lookup([
            FieldValue(field_id="a", numeric_value=1.0),
            FieldValue(field_id="b", numeric_value=1.0, calculated_value=7.0),
            FieldValue(field_id="c", text_value="x"),
            FieldValue(field_id="d", numeric_value=float("nan")),
        ])
        assert lookup == {"a": 1.0, "b": 7.0}

    def test_skipped_ids_are_left_out(self) -> None:
        lookup = build_lookup([
            FieldValue(field_id="a", numeric_value=1.0),
            FieldValue(field_id="b", calculated_value=7.0),
        ], skip={"b"})
        assert lookup == {"a": 1.0}


class TestResolveCalculatedFields:
    """Header single pass, row multi-pass, failure isolation."""

    def test_resolves_header_and_rows(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0},
                            rows=[{"gross": 12.0}, {"gross": 22.0}])
        out = resolve_calculated_fields(density_template, doc)

        assert _calc(out, "tare_x2") == 4.0
        assert _calc(out, "net", row=0) == 10.0
        assert _calc(out, "net", row=1) == 20.0
        # net_pct is declared before net and picks it up on the second pass
        assert _calc(out, "net_pct", row=0) == pytest.approx(10.0 / 12.0 * 100)

    def test_input_document_not_mutated(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{"gross": 12.0}])
        resolve_calculated_fields(density_template, doc)
        assert _calc(doc, "net", row=0) is None
        assert _calc(doc, "tare_x2") is None

    def test_idempotent(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{"gross": 12.0}])
        once = resolve_calculated_fields(density_template, doc)
        twice = resolve_calculated_fields(density_template, once)
        assert once.model_dump_json() == twice.model_dump_json()

    def test_deterministic_across_copies(self, density_template, make_document) -> None:
        first = resolve_calculated_fields(
            density_template, make_document(density_template, {"tare": 1.5}, [{"gross": 3.3}]))
        second = resolve_calculated_fields(
            density_template, make_document(density_template, {"tare": 1.5}, [{"gross": 3.3}]))
        assert first.model_dump_json() == second.model_dump_json()

    def test_rows_are_independent(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{"gross": 12.0}, {}])
        out = resolve_calculated_fields(density_template, doc)
        assert _calc(out, "net", row=0) == 10.0
        assert _calc(out, "net", row=1) is None
        assert _calc(out, "net_pct", row=1) is None

    def test_missing_header_dependency_leaves_rows_unresolved(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={}, rows=[{"gross": 12.0}])
        out = resolve_calculated_fields(density_template, doc)
        assert _calc(out, "tare_x2") is None
        assert _calc(out, "net", row=0) is None

    def test_header_is_single_pass_in_declaration_order(self, field, make_document) -> None:
        template = QualityTemplate(
            id="t", title="Header order",
            header_fields=[
                field("later", "calculated", formula="{header.first} + 1"),
                field("base", "numeric"),
                field("first", "calculated", formula="{header.base} * 2"),
                field("after", "calculated", formula="{header.first} + 1"),
            ],
        )
        out = resolve_calculated_fields(template, make_document(template, {"base": 5.0}, []))
        assert _calc(out, "first") == 10.0
        assert _calc(out, "after") == 11.0
        assert _calc(out, "later") is None

        again = resolve_calculated_fields(template, out)
        assert _calc(again, "later") is None
        assert again.model_dump_json() == out.model_dump_json()

    def test_header_formula_cannot_see_row_values(self, field, make_document) -> None:
        template = QualityTemplate(
            id="t", title="Scopes",
            header_fields=[field("h", "calculated", formula="{r} + 1")],
            row_fields=[field("r", "numeric")],
        )
        out = resolve_calculated_fields(template, make_document(template, {}, [{"r": 1.0}]))
        assert _calc(out, "h") is None

    def test_chain_within_pass_budget(self, field, make_document) -> None:
        """c2 <- c1 <- base, declared against evaluation order."""
        template = QualityTemplate(
            id="t", title="Two levels",
            row_fields=[
                field("c2", "calculated", formula="{c1} * 10"),
                field("c1", "calculated", formula="{base} + 1"),
                field("base", "numeric"),
            ],
        )
        out = resolve_calculated_fields(template, make_document(template, {}, [{"base": 1.0}]))
        assert _calc(out, "c1", row=0) == 2.0
        assert _calc(out, "c2", row=0) == 20.0

    def test_four_level_chain_leaves_deepest_unresolved(self, field, make_document) -> None:
        """Accepted limitation of the fixed pass budget, not a bug."""
        assert ROW_RESOLUTION_PASSES == 3
        template = QualityTemplate(
            id="t", title="Four levels",
            row_fields=[
                field("c4", "calculated", formula="{c3} + 1"),
                field("c3", "calculated", formula="{c2} + 1"),
                field("c2", "calculated", formula="{c1} + 1"),
                field("c1", "calculated", formula="{base} + 1"),
                field("base", "numeric"),
            ],
        )
        out = resolve_calculated_fields(template, make_document(template, {}, [{"base": 1.0}]))
        assert _calc(out, "c1", row=0) == 2.0
        assert _calc(out, "c2", row=0) == 3.0
        assert _calc(out, "c3", row=0) == 4.0
        assert _calc(out, "c4", row=0) is None

        # Earlier results do not seed the next run, so the tail stays unresolved
        again = resolve_calculated_fields(template, out)
        assert _calc(again, "c4", row=0) is None
        assert again.model_dump_json() == out.model_dump_json()

    def test_stale_calculated_values_do_not_feed_formulas(self, field, make_document) -> None:
        template = QualityTemplate(
            id="t", title="Stale",
            row_fields=[
                field("b", "calculated", formula="{a} * 2"),
                field("a", "calculated", formula="{missing} + 1"),
            ],
        )
        doc = make_document(template, {}, [{}])
        doc.rows[0].values[1].calculated_value = 5.0
        out = resolve_calculated_fields(template, doc)
        assert _calc(out, "a", row=0) is None
        assert _calc(out, "b", row=0) is None

    def test_cycle_terminates_unresolved(self, field, make_document) -> None:
        template = QualityTemplate(
            id="t", title="Cycle",
            row_fields=[
                field("a", "calculated", formula="{b} + 1"),
                field("b", "calculated", formula="{a} + 1"),
            ],
        )
        out = resolve_calculated_fields(template, make_document(template, {}, [{}]))
        assert _calc(out, "a", row=0) is None
        assert _calc(out, "b", row=0) is None

    def test_failed_evaluation_clears_stale_value(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{}])
        doc.rows[0].values[2].calculated_value = 99.0  # net, left over from an earlier save
        doc.rows[0].values[1].calculated_value = 50.0  # net_pct
        out = resolve_calculated_fields(density_template, doc)
        assert _calc(out, "net", row=0) is None
        assert _calc(out, "net_pct", row=0) is None

    def test_division_by_zero_only_affects_its_field(self, field, make_document) -> None:
        template = QualityTemplate(
            id="t", title="Div",
            row_fields=[
                field("x", "numeric"),
                field("ratio", "calculated", formula="10 / {x}"),
                field("double", "calculated", formula="{x} * 2"),
            ],
        )
        out = resolve_calculated_fields(template, make_document(template, {}, [{"x": 0.0}]))
        assert _calc(out, "ratio", row=0) is None
        assert _calc(out, "double", row=0) == 0.0

    def test_values_without_definitions_are_untouched(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{"gross": 5.0}])
        doc.rows[0].values.append(FieldValue(field_id="legacy", calculated_value=1.25))
        out = resolve_calculated_fields(density_template, doc)
        assert _calc(out, "legacy", row=0) == 1.25


class TestUnresolvedAndFormatting:
    def test_unresolved_fields_lists_header_and_rows(self, density_template, make_document) -> None:
        doc = make_document(density_template, header={"tare": 2.0}, rows=[{"gross": 4.0}, {}])
        out = resolve_calculated_fields(density_template, doc)
        assert unresolved_fields(density_template, out) == [(1, "net_pct"), (1, "net")]

    @pytest.mark.parametrize(
        "value,places,expected",
        [
            (None, 2, UNRESOLVED_DISPLAY),
            (3.14159, 3, "3.142"),
            (2.0, None, "2.00"),
            (2.6, 0, "3"),
        ],
    )
    def test_format_calculated(self, value, places, expected) -> None:
        assert format_calculated(value, places) == expected
