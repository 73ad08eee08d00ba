import sys
import os
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from dotenv import load_dotenv

from plantlog.formula import extract_field_dependencies, validate_formula
from plantlog.models import (
    DocumentCreate, DocumentStatus, DocumentUpdate, FormulaValidateRequest,
    QualityDocument, QualityTemplate, TemplateCreate, TemplateUpdate,
)
from plantlog.resolver import format_calculated, unresolved_fields
from plantlog.storage import (
    SCHEMA_PATH, DatabaseManager, DocumentValidationError, QualityDocumentRepository,
    TemplateRepository, TemplateValidationError,
)

logger = logging.getLogger(__name__)


def get_app_data_dir() -> str:
    """Return a user-writable data directory for plantlog (created if absent)."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    app_dir = os.path.join(base, "plantlog")
    os.makedirs(app_dir, exist_ok=True)
    return app_dir

# Load .env from the user config dir first, then fall back to CWD (dev)
load_dotenv(os.path.join(os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config"), "plantlog", ".env"))
load_dotenv()

LOG_LEVEL = os.getenv("PLANTLOG_LOG_LEVEL", "INFO").upper()
HOST = os.getenv("PLANTLOG_HOST", "127.0.0.1")
PORT = int(os.getenv("PLANTLOG_PORT", "8000"))


def create_app(db_path: Optional[str] = None) -> FastAPI:
    """Build the API around one sqlite database. No module-level state."""
    db_path = db_path or os.getenv("PLANTLOG_DB_PATH") or os.path.join(get_app_data_dir(), "plantlog.db")
    db = DatabaseManager(db_path)
    db.initialize_schema(SCHEMA_PATH)

    app = FastAPI(title="plantlog")
    app.state.template_repo = TemplateRepository(db)
    app.state.document_repo = QualityDocumentRepository(db)
    app.include_router(router)
    logger.info("plantlog API ready (db=%s)", db_path)
    return app


def get_template_repo(request: Request) -> TemplateRepository:
    return request.app.state.template_repo

def get_document_repo(request: Request) -> QualityDocumentRepository:
    return request.app.state.document_repo


router = APIRouter()


# ── Quality templates ────────────────────────────────────────────────

@router.post("/quality-templates/validate-formula")
async def check_formula(req: FormulaValidateRequest):
    """Authoring-time check for a single formula, used by the template builder."""
    result = validate_formula(req.formula, req.row_field_ids, req.header_field_ids)
    deps = extract_field_dependencies(req.formula)
    return {**result.to_dict(), "rowFields": deps.row_fields, "headerFields": deps.header_fields}

@router.post("/quality-templates", response_model=QualityTemplate, status_code=201)
async def create_template(req: TemplateCreate, templates: TemplateRepository = Depends(get_template_repo)):
    try:
        return templates.create(req)
    except TemplateValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/quality-templates", response_model=List[QualityTemplate])
async def list_templates(active: Optional[bool] = None, templates: TemplateRepository = Depends(get_template_repo)):
    return templates.get_all(active=active)

@router.get("/quality-templates/{template_id}", response_model=QualityTemplate)
async def get_template(template_id: str, templates: TemplateRepository = Depends(get_template_repo)):
    template = templates.get_by_id(template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template

@router.patch("/quality-templates/{template_id}", response_model=QualityTemplate)
async def update_template(template_id: str, req: TemplateUpdate,
                          templates: TemplateRepository = Depends(get_template_repo)):
    if req.active is None and not req.title:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    try:
        template = templates.update(template_id, active=req.active, title=req.title)
    except TemplateValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template

@router.delete("/quality-templates/{template_id}")
async def delete_template(template_id: str, templates: TemplateRepository = Depends(get_template_repo)):
    if not templates.delete(template_id):
        raise HTTPException(status_code=404, detail="Template not found")
    return {"ok": True}


# ── Quality documents ────────────────────────────────────────────────

@router.post("/quality-docs", response_model=QualityDocument, status_code=201)
async def create_document(req: DocumentCreate,
                          templates: TemplateRepository = Depends(get_template_repo),
                          documents: QualityDocumentRepository = Depends(get_document_repo)):
    template = templates.get_by_id(req.template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    try:
        return documents.create(template, req)
    except DocumentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("/quality-docs", response_model=List[QualityDocument])
async def list_documents(status: Optional[DocumentStatus] = None, templateId: Optional[str] = None,
                         documents: QualityDocumentRepository = Depends(get_document_repo)):
    return documents.get_all(status=status.value if status else None, template_id=templateId)

@router.get("/quality-docs/{doc_id}")
async def get_document(doc_id: str,
                       templates: TemplateRepository = Depends(get_template_repo),
                       documents: QualityDocumentRepository = Depends(get_document_repo)):
    doc = documents.get_by_id(doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return {"doc": doc, "template": templates.get_by_id(doc.template_id)}

@router.get("/quality-docs/{doc_id}/calculated")
async def get_calculated_display(doc_id: str,
                                 templates: TemplateRepository = Depends(get_template_repo),
                                 documents: QualityDocumentRepository = Depends(get_document_repo)):
    """Rendered calculated values ("—" when unresolved) plus the unresolved slots."""
    doc = documents.get_by_id(doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    template = templates.get_by_id(doc.template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")

    def _render(fields, values):
        by_id = {v.field_id: v for v in values}
        return {
            f.id: format_calculated(by_id[f.id].calculated_value, f.decimal_places)
            for f in fields if f.is_calculated and f.id in by_id
        }

    return {
        "docId": doc.doc_id,
        "status": doc.status.value,
        "header": _render(template.header_fields, doc.header_values),
        "rows": [_render(template.row_fields, row.values) for row in doc.rows],
        "unresolved": [{"row": index, "fieldId": field_id}
                       for index, field_id in unresolved_fields(template, doc)],
    }

@router.patch("/quality-docs/{doc_id}", response_model=QualityDocument)
async def update_document(doc_id: str, req: DocumentUpdate,
                          templates: TemplateRepository = Depends(get_template_repo),
                          documents: QualityDocumentRepository = Depends(get_document_repo)):
    existing = documents.get_by_id(doc_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Document not found")
    template = templates.get_by_id(existing.template_id)
    try:
        doc = documents.update(
            doc_id, template,
            header_values=req.header_values, rows=req.rows,
            status=req.status, actor_name=req.actor_name,
        )
    except DocumentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc

@router.delete("/quality-docs/{doc_id}")
async def delete_document(doc_id: str, documents: QualityDocumentRepository = Depends(get_document_repo)):
    if not documents.delete(doc_id):
        raise HTTPException(status_code=404, detail="Document not found")
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(create_app(), host=HOST, port=PORT)
