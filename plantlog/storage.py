import os
import sqlite3
import json
import logging
import random
import string
import uuid
from datetime import datetime, timezone
from typing import List, Optional
from plantlog.formula import validate_formula
from plantlog.models import (
    DocumentCreate, DocumentRow, DocumentStatus, FieldContext, FieldKind, FieldValue,
    QualityDocument, QualityTemplate, TemplateCreate, TemplateField,
)
from plantlog.resolver import resolve_calculated_fields

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")


class TemplateValidationError(ValueError):
    pass

class DocumentValidationError(ValueError):
    pass

class InvalidStatusTransition(DocumentValidationError):
    pass


# Forward-only workflow; staying put is always allowed.
STATUS_TRANSITIONS = {
    DocumentStatus.DRAFT: {DocumentStatus.DRAFT, DocumentStatus.WORKER_FILLED},
    DocumentStatus.WORKER_FILLED: {DocumentStatus.WORKER_FILLED, DocumentStatus.COMPLETE},
    DocumentStatus.COMPLETE: {DocumentStatus.COMPLETE},
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _generate_code(prefix: str) -> str:
    """Human-facing id like QT-250114-7K2Q."""
    date = datetime.now(timezone.utc).strftime("%y%m%d")
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"{prefix}-{date}-{suffix}"

def _dump(items) -> str:
    return json.dumps([i.model_dump(mode="json", by_alias=True, exclude_none=True) for i in items])


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def initialize_schema(self, schema_path: str):
        with open(schema_path, 'r') as f:
            schema_script = f.read()
        with self.get_connection() as conn:
            conn.executescript(schema_script)


# ── Templates ─────────────────────────────────────────────────────

def validate_template(header_fields: List[TemplateField], row_fields: List[TemplateField],
                      title: str) -> None:
    """Authoring-time checks. Raises TemplateValidationError on the first problem."""
    if not title or len(title) < 3:
        raise TemplateValidationError("Title must be at least 3 characters")
    all_fields = [*header_fields, *row_fields]
    if not all_fields:
        raise TemplateValidationError("At least one header or row field is required")

    ids = [f.id for f in all_fields]
    if len(set(ids)) != len(ids):
        raise TemplateValidationError("Field IDs must be unique")
    if any(not f.label for f in all_fields):
        raise TemplateValidationError("All fields must have a label")

    header_ids = [f.id for f in header_fields]
    row_ids = [f.id for f in row_fields]
    for field in all_fields:
        if field.type != FieldKind.CALCULATED:
            continue
        if not (field.formula or "").strip():
            raise TemplateValidationError(f'Calculated field "{field.label}" needs a formula')
        # Header fields resolve with no row context, so row refs cannot appear there
        in_row = field.context != FieldContext.HEADER
        result = validate_formula(field.formula, row_ids if in_row else [], header_ids)
        if not result.valid:
            raise TemplateValidationError(f'Formula error in "{field.label}": {result.error}')


def _with_context(fields: List[TemplateField], context: FieldContext) -> List[TemplateField]:
    return [
        f.model_copy(update={"id": f.id or f"f_{uuid.uuid4().hex[:8]}", "context": context})
        for f in fields
    ]


class TemplateRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_template(self, row) -> QualityTemplate:
        d = dict(row)
        d["header_fields"] = json.loads(d.pop("header_fields_json", "[]"))
        d["row_fields"] = json.loads(d.pop("row_fields_json", "[]"))
        return QualityTemplate.model_validate(d)

    def create(self, req: TemplateCreate) -> QualityTemplate:
        header_fields = _with_context(req.header_fields, FieldContext.HEADER)
        row_fields = _with_context(req.row_fields, FieldContext.ROW)
        try:
            validate_template(header_fields, row_fields, req.title)
        except TemplateValidationError as e:
            logger.info("Rejected template %r: %s", req.title, e)
            raise
        if req.min_row_count and req.max_row_count and req.min_row_count > req.max_row_count:
            raise TemplateValidationError("Minimum row count exceeds maximum")

        template_id = str(uuid.uuid4())
        with self.db.get_connection() as conn:
            conn.execute(
                """INSERT INTO quality_templates
                   (id, template_id, title, description, header_fields_json, row_fields_json,
                    active, default_row_count, min_row_count, max_row_count)
                   VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)""",
                (template_id, _generate_code("QT"), req.title, req.description or None,
                 _dump(header_fields), _dump(row_fields),
                 req.default_row_count or 1, req.min_row_count or None, req.max_row_count or None),
            )
            conn.commit()
        logger.info("Created quality template %r (%s)", req.title, template_id)
        return self.get_by_id(template_id)

    def get_by_id(self, template_id: str) -> Optional[QualityTemplate]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM quality_templates WHERE id = ?", (template_id,)).fetchone()
            return self._row_to_template(row) if row else None

    def get_all(self, active: Optional[bool] = None) -> List[QualityTemplate]:
        sql = "SELECT * FROM quality_templates"
        params: tuple = ()
        if active is not None:
            sql += " WHERE active = ?"
            params = (1 if active else 0,)
        sql += " ORDER BY created_at DESC, rowid DESC"
        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_template(r) for r in rows]

    def update(self, template_id: str, active: Optional[bool] = None,
               title: Optional[str] = None) -> Optional[QualityTemplate]:
        if title is not None and len(title) < 3:
            raise TemplateValidationError("Title must be at least 3 characters")
        with self.db.get_connection() as conn:
            existing = conn.execute("SELECT id FROM quality_templates WHERE id = ?", (template_id,)).fetchone()
            if not existing:
                return None
            if active is not None:
                conn.execute("UPDATE quality_templates SET active = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                             (1 if active else 0, template_id))
            if title is not None:
                conn.execute("UPDATE quality_templates SET title = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                             (title, template_id))
            conn.commit()
        return self.get_by_id(template_id)

    def delete(self, template_id: str) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM quality_templates WHERE id = ?", (template_id,))
            conn.commit()
            return cursor.rowcount > 0


# ── Documents ─────────────────────────────────────────────────────

def _seed_value(field: TemplateField, provided: Optional[FieldValue] = None) -> FieldValue:
    """Blank value for *field*, filled from *provided* then the field default."""
    val = FieldValue(field_id=field.id, field_label=field.label, field_type=field.type, unit=field.unit)
    if field.type == FieldKind.CALCULATED:
        return val
    if provided is not None:
        val.text_value = provided.text_value
        val.numeric_value = provided.numeric_value
        val.boolean_value = provided.boolean_value
    default = field.default_value
    if isinstance(default, bool):
        if val.boolean_value is None:
            val.boolean_value = default
    elif isinstance(default, (int, float)):
        if val.numeric_value is None:
            val.numeric_value = float(default)
    elif isinstance(default, str):
        if val.text_value is None:
            val.text_value = default
    return val


def _clear_calculated(values: List[FieldValue], fields: List[TemplateField]) -> None:
    """Drop client-supplied data in calculated slots; only the resolver fills them.

    A slot counts as calculated when its field definition says so, or, with no
    definition to go on, when the value itself is tagged calculated.
    """
    calculated = {f.id for f in fields if f.type == FieldKind.CALCULATED}
    for val in values:
        if val.field_id in calculated or val.field_type == FieldKind.CALCULATED:
            val.calculated_value = None
            val.numeric_value = None


class QualityDocumentRepository:
    def __init__(self, db: DatabaseManager):
        self.db = db

    def _row_to_document(self, row) -> QualityDocument:
        d = dict(row)
        d["header_values"] = json.loads(d.pop("header_values_json", "[]"))
        d["rows"] = json.loads(d.pop("rows_json", "[]"))
        return QualityDocument.model_validate(d)

    def create(self, template: QualityTemplate, req: DocumentCreate) -> QualityDocument:
        if not template.active:
            raise DocumentValidationError("Template is inactive")
        count = template.default_row_count if req.row_count is None else req.row_count
        if count < 0:
            raise DocumentValidationError("Row count cannot be negative")
        if template.min_row_count and count < template.min_row_count:
            raise DocumentValidationError(f"Minimum {template.min_row_count} rows required")
        if template.max_row_count and count > template.max_row_count:
            raise DocumentValidationError(f"Maximum {template.max_row_count} rows allowed")

        provided = {v.field_id: v for v in req.header_values}
        doc = QualityDocument(
            id=str(uuid.uuid4()),
            doc_id=_generate_code("QD"),
            template_id=template.id,
            template_title=template.title,
            header_values=[_seed_value(f, provided.get(f.id)) for f in template.header_fields],
            rows=[
                DocumentRow(serial_number=i + 1, values=[_seed_value(f) for f in template.row_fields])
                for i in range(count)
            ],
            row_count=count,
            status=DocumentStatus.DRAFT,
        )
        doc = resolve_calculated_fields(template, doc)

        with self.db.get_connection() as conn:
            conn.execute(
                """INSERT INTO quality_documents
                   (id, doc_id, template_id, template_title, header_values_json, rows_json, row_count, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (doc.id, doc.doc_id, doc.template_id, doc.template_title,
                 _dump(doc.header_values), _dump(doc.rows), doc.row_count, doc.status.value),
            )
            conn.commit()
        logger.info("Created quality document %s from template %s (%d rows)", doc.doc_id, template.id, count)
        return self.get_by_id(doc.id)

    def get_by_id(self, doc_id: str) -> Optional[QualityDocument]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM quality_documents WHERE id = ?", (doc_id,)).fetchone()
            return self._row_to_document(row) if row else None

    def get_all(self, status: Optional[str] = None, template_id: Optional[str] = None) -> List[QualityDocument]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if template_id:
            clauses.append("template_id = ?")
            params.append(template_id)
        sql = "SELECT * FROM quality_documents"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        with self.db.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_document(r) for r in rows]

    def _save(self, conn, doc: QualityDocument):
        conn.execute(
            "UPDATE quality_documents SET header_values_json = ?, rows_json = ?, row_count = ?, status = ?, "
            "worker_name = ?, worker_filled_at = ?, quality_tech_name = ?, completed_at = ?, "
            "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (_dump(doc.header_values), _dump(doc.rows), doc.row_count, doc.status.value,
             doc.worker_name, doc.worker_filled_at, doc.quality_tech_name, doc.completed_at, doc.id),
        )
        conn.commit()

    def update(self, doc_id: str, template: Optional[QualityTemplate],
               header_values: Optional[List[FieldValue]] = None,
               rows: Optional[List[DocumentRow]] = None,
               status: Optional[DocumentStatus] = None,
               actor_name: Optional[str] = None) -> Optional[QualityDocument]:
        """Apply edits, recompute calculated fields, persist.

        *template* may be None when it has since been deleted; values are then
        stored without resolution and calculated slots are left empty.
        """
        doc = self.get_by_id(doc_id)
        if not doc:
            return None

        if status is not None and status not in STATUS_TRANSITIONS[doc.status]:
            raise InvalidStatusTransition(
                f"Invalid status transition: {doc.status.value} -> {status.value}")
        if rows is not None and len(rows) != doc.row_count:
            raise DocumentValidationError(f"Document has {doc.row_count} rows; got {len(rows)}")

        # Copies, so clearing calculated slots never touches the caller's objects
        if header_values is not None:
            doc.header_values = [v.model_copy() for v in header_values]
        if rows is not None:
            doc.rows = [r.model_copy(deep=True) for r in rows]

        header_fields = template.header_fields if template is not None else []
        row_fields = template.row_fields if template is not None else []
        _clear_calculated(doc.header_values, header_fields)
        for row in doc.rows:
            _clear_calculated(row.values, row_fields)
        if template is not None:
            doc = resolve_calculated_fields(template, doc)

        if status is not None and status != doc.status:
            if status == DocumentStatus.WORKER_FILLED:
                doc.worker_name = actor_name or "Unknown"
                doc.worker_filled_at = _now()
            elif status == DocumentStatus.COMPLETE:
                doc.quality_tech_name = actor_name or "Unknown"
                doc.completed_at = _now()
            logger.info("Document %s: %s -> %s", doc.doc_id, doc.status.value, status.value)
            doc.status = status

        with self.db.get_connection() as conn:
            self._save(conn, doc)
        return self.get_by_id(doc_id)

    def delete(self, doc_id: str) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM quality_documents WHERE id = ?", (doc_id,))
            conn.commit()
            return cursor.rowcount > 0
