"""Shared fixtures: a bulk-density style template and document builders."""

from __future__ import annotations

from typing import Any

import pytest

from plantlog.models import (
    DocumentRow,
    FieldValue,
    QualityDocument,
    QualityTemplate,
    TemplateCreate,
    TemplateField,
)
from plantlog.storage import (
    SCHEMA_PATH,
    DatabaseManager,
    QualityDocumentRepository,
    TemplateRepository,
)


def _field(field_id: str, kind: str, **extra: Any) -> TemplateField:
    return TemplateField(id=field_id, label=field_id.replace("_", " ").title(), type=kind, **extra)


@pytest.fixture
def field():
    return _field


@pytest.fixture
def density_template() -> QualityTemplate:
    """Header tare weight; per-row gross -> net -> percentage of gross.

    `net_pct` is declared before `net`, so it only resolves on a later pass.
    """
    return QualityTemplate(
        id="tpl-1",
        title="Bulk Density",
        header_fields=[
            _field("lot", "text"),
            _field("tare", "numeric", default_value=2.0),
            _field("tare_x2", "calculated", formula="{header.tare} * 2"),
        ],
        row_fields=[
            _field("gross", "numeric", unit="lbs"),
            _field("net_pct", "calculated", formula="{net} / {gross} * 100", decimal_places=1),
            _field("net", "calculated", formula="{gross} - {header.tare}", decimal_places=2),
        ],
    )


@pytest.fixture
def make_document():
    """Build a QualityDocument from a template plus plain numeric inputs."""

    def _make(template: QualityTemplate, header: dict | None = None,
              rows: list[dict] | None = None) -> QualityDocument:
        header = header or {}
        rows = rows if rows is not None else [{}]
        return QualityDocument(
            id="doc-1",
            doc_id="QD-TEST-0001",
            template_id=template.id,
            header_values=[
                FieldValue(field_id=f.id, field_type=f.type, numeric_value=header.get(f.id))
                for f in template.header_fields
            ],
            rows=[
                DocumentRow(
                    serial_number=i + 1,
                    values=[
                        FieldValue(field_id=f.id, field_type=f.type, numeric_value=row.get(f.id))
                        for f in template.row_fields
                    ],
                )
                for i, row in enumerate(rows)
            ],
            row_count=len(rows),
        )

    return _make


@pytest.fixture
def db(tmp_path) -> DatabaseManager:
    manager = DatabaseManager(str(tmp_path / "plantlog.db"))
    manager.initialize_schema(SCHEMA_PATH)
    return manager


@pytest.fixture
def template_repo(db) -> TemplateRepository:
    return TemplateRepository(db)


@pytest.fixture
def document_repo(db) -> QualityDocumentRepository:
    return QualityDocumentRepository(db)


@pytest.fixture
def density_create(density_template) -> TemplateCreate:
    """Request body equivalent of density_template."""
    return TemplateCreate(
        title=density_template.title,
        header_fields=density_template.header_fields,
        row_fields=density_template.row_fields,
        default_row_count=2,
        min_row_count=1,
        max_row_count=5,
    )
