from enum import Enum
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Model(BaseModel):
    # camelCase on the wire (fieldId, calculatedValue, ...), snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldKind(str, Enum):
    TEXT = "text"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    PASS_FAIL = "pass_fail"
    CALCULATED = "calculated"
    PHOTO = "photo"

class FieldContext(str, Enum):
    HEADER = "header"
    ROW = "row"

class FieldStage(str, Enum):
    WORKER = "worker"
    QUALITY_TECH = "quality_tech"

class DocumentStatus(str, Enum):
    DRAFT = "draft"
    WORKER_FILLED = "worker_filled"
    COMPLETE = "complete"


class TemplateField(_Model):
    id: str
    label: str = ""
    type: FieldKind = FieldKind.TEXT
    context: Optional[FieldContext] = None
    stage: FieldStage = FieldStage.WORKER
    required: bool = False
    unit: Optional[str] = None
    decimal_places: Optional[int] = Field(default=None, ge=0, le=12)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    formula: Optional[str] = None
    default_value: Optional[Union[bool, float, str]] = None
    options: List[str] = Field(default_factory=list)

    @property
    def is_calculated(self) -> bool:
        return self.type == FieldKind.CALCULATED and bool(self.formula)

class QualityTemplate(_Model):
    id: Optional[str] = Field(default=None)
    template_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    header_fields: List[TemplateField] = Field(default_factory=list)
    row_fields: List[TemplateField] = Field(default_factory=list)
    active: bool = True
    default_row_count: int = 1
    min_row_count: Optional[int] = None
    max_row_count: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def header_field_ids(self) -> List[str]:
        return [f.id for f in self.header_fields]

    def row_field_ids(self) -> List[str]:
        return [f.id for f in self.row_fields]

    def all_fields(self) -> List[TemplateField]:
        return [*self.header_fields, *self.row_fields]

class TemplateCreate(_Model):
    title: str = ""
    description: Optional[str] = None
    header_fields: List[TemplateField] = Field(default_factory=list)
    row_fields: List[TemplateField] = Field(default_factory=list)
    default_row_count: Optional[int] = None
    min_row_count: Optional[int] = None
    max_row_count: Optional[int] = None

class TemplateUpdate(_Model):
    title: Optional[str] = None
    active: Optional[bool] = None


class FieldValue(_Model):
    field_id: str
    field_label: Optional[str] = None
    field_type: Optional[FieldKind] = None
    text_value: Optional[str] = None
    numeric_value: Optional[float] = None
    boolean_value: Optional[bool] = None
    calculated_value: Optional[float] = None  # written only by the resolver
    unit: Optional[str] = None

class DocumentRow(_Model):
    serial_number: int
    values: List[FieldValue] = Field(default_factory=list)

class QualityDocument(_Model):
    id: Optional[str] = Field(default=None)
    doc_id: Optional[str] = None
    template_id: str
    template_title: Optional[str] = None
    header_values: List[FieldValue] = Field(default_factory=list)
    rows: List[DocumentRow] = Field(default_factory=list)
    row_count: int = 0
    status: DocumentStatus = Field(default=DocumentStatus.DRAFT)
    worker_name: Optional[str] = None
    worker_filled_at: Optional[str] = None
    quality_tech_name: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class DocumentCreate(_Model):
    template_id: str
    row_count: Optional[int] = None
    header_values: List[FieldValue] = Field(default_factory=list)

class DocumentUpdate(_Model):
    header_values: Optional[List[FieldValue]] = None
    rows: Optional[List[DocumentRow]] = None
    status: Optional[DocumentStatus] = None
    actor_name: Optional[str] = None


class FormulaValidateRequest(_Model):
    formula: str
    row_field_ids: List[str] = Field(default_factory=list)
    header_field_ids: List[str] = Field(default_factory=list)
