"""
Pydantic schemas for request/response validation and for the field records
stored on templates.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import re
import uuid

from formgen.models.database_models import (
    ArtifactStatus,
    CHOICE_FIELD_TYPES,
    FieldType,
    OverrideStatus,
    OverrideType,
    ServiceStatus,
    TemplateStatus,
)

FIELD_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPTIONS_REQUIRED = (FieldType.SELECT, FieldType.RADIO)


def _check_field_key(value: str) -> str:
    if not FIELD_KEY_RE.match(value):
        raise ValueError(f"field name {value!r} must be an identifier without spaces")
    return value


def _check_options(field_type: FieldType, options: Optional[List[str]]) -> Optional[List[str]]:
    if field_type in _OPTIONS_REQUIRED and not options:
        raise ValueError(f"{field_type.value} fields need a non-empty options list")
    if field_type not in CHOICE_FIELD_TYPES:
        return None
    return options


# Field records
class PlaceholderLocation(BaseModel):
    """Where a field appears in the source document."""

    page: Optional[int] = Field(None, ge=1)
    section: Optional[str] = None
    xpath: Optional[str] = None
    anchor: Optional[str] = None  # literal text to replace in addition to the tokens


class Placeholder(BaseModel):
    """One named, typed slot in a template."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: FieldType
    required: bool = False
    description: Optional[str] = None
    options: Optional[List[str]] = None
    locations: List[PlaceholderLocation] = Field(default_factory=list)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    placeholder: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _check_field_key(value)

    @model_validator(mode="after")
    def _options_match_type(self) -> "Placeholder":
        self.options = _check_options(self.type, self.options)
        return self


class AIFieldSpec(BaseModel):
    """One field as returned by the completion model.  Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    type: FieldType
    label: str = Field(..., min_length=1)
    required: bool
    description: Optional[str] = None
    options: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _check_field_key(value)

    @model_validator(mode="after")
    def _options_match_type(self) -> "AIFieldSpec":
        self.options = _check_options(self.type, self.options)
        return self


class AIFieldsResponse(BaseModel):
    """The ``{"fields": [...]}`` object the completion model must return."""

    fields: List[AIFieldSpec]

    @field_validator("fields")
    @classmethod
    def _unique_names(cls, fields: List[AIFieldSpec]) -> List[AIFieldSpec]:
        seen = set()
        for spec in fields:
            if spec.name in seen:
                raise ValueError(f"duplicate field name {spec.name!r}")
            seen.add(spec.name)
        return fields


# Override payloads
class AddFieldPayload(BaseModel):
    """New field requested by the customer."""

    name: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: Optional[str] = None
    options: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _check_field_key(value)

    @model_validator(mode="after")
    def _options_match_type(self) -> "AddFieldPayload":
        self.options = _check_options(self.type, self.options)
        return self


class RemoveFieldPayload(BaseModel):
    name: str = Field(..., min_length=1)


class ModifyFieldPayload(BaseModel):
    """Presentation changes for an existing field.  The key never changes."""

    name: str = Field(..., min_length=1)
    label: Optional[str] = Field(None, min_length=1)
    type: Optional[FieldType] = None
    description: Optional[str] = None
    options: Optional[List[str]] = None

    @model_validator(mode="after")
    def _has_change(self) -> "ModifyFieldPayload":
        if self.label is None and self.type is None and self.description is None and self.options is None:
            raise ValueError("modify_field needs at least one of label, type, description, options")
        return self


class CustomClausePayload(BaseModel):
    """Free text inserted into the output document."""

    text: str = Field(..., min_length=1)
    title: Optional[str] = None
    position: str = "end"  # start | end | after:<anchor text>

    @field_validator("position")
    @classmethod
    def _check_position(cls, value: str) -> str:
        value = value.strip()
        if value in ("start", "end"):
            return value
        if value.startswith("after:") and value[len("after:"):].strip():
            return value
        raise ValueError("position must be 'start', 'end' or 'after:<anchor text>'")


OVERRIDE_PAYLOAD_MODELS = {
    OverrideType.ADD_FIELD: AddFieldPayload,
    OverrideType.REMOVE_FIELD: RemoveFieldPayload,
    OverrideType.MODIFY_FIELD: ModifyFieldPayload,
    OverrideType.CUSTOM_CLAUSE: CustomClausePayload,
}


# Template Schemas
class UploadRegistrationRequest(BaseModel):
    """Upload registration input.  Missing values are reported by the manager as 400."""

    file_name: Optional[str] = None
    file_type: Optional[str] = None
    template_name: Optional[str] = None


class UploadRegistrationResponse(BaseModel):
    template_id: str
    upload_url: str
    storage_path: str
    expires_at: datetime


class TemplateResponse(BaseModel):
    """Schema for template responses."""

    id: str
    name: str
    original_file_name: str
    file_type: str
    status: TemplateStatus
    extracted_fields: List[Placeholder] = Field(default_factory=list)
    error_message: Optional[str] = None
    version: int = 0
    etag: Optional[str] = None
    lock_holder_id: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    parsed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ParseOutcomeResponse(BaseModel):
    outcome: str  # ignored | skipped | parsed | error
    template_id: Optional[str] = None
    status: Optional[TemplateStatus] = None
    message: Optional[str] = None
    field_count: int = 0


class FieldsUpdateRequest(BaseModel):
    """Administrative replacement of a template's field set."""

    fields: List[Placeholder]
    etag: str = Field(..., min_length=1)
    reason: Optional[str] = None


class RollbackRequest(BaseModel):
    etag: str = Field(..., min_length=1)
    reason: Optional[str] = None


class LockResponse(BaseModel):
    template_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime


class TemplateVersionResponse(BaseModel):
    """Schema for template version history entries."""

    version: int
    fields: List[Placeholder]
    etag: str
    created_by: Optional[str] = None
    reason: Optional[str] = None
    is_rollback: bool = False
    rolled_back_to: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Storage Schemas
class StorageEvent(BaseModel):
    """Object-finalize notification from the storage layer."""

    name: str = Field(..., min_length=1)
    bucket: Optional[str] = None


# Service Schemas
class ServiceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    template_ids: List[str] = Field(..., min_length=1)


class IntakeSubmitRequest(BaseModel):
    client_data: Dict[str, Any]


class ServiceGenerateRequest(BaseModel):
    override_ids: Optional[List[str]] = None


class ServiceResponse(BaseModel):
    """Schema for service responses."""

    id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    template_ids: List[str]
    client_data: Optional[Dict[str, Any]] = None
    status: ServiceStatus
    created_at: datetime
    updated_at: datetime
    intake_submitted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Override Schemas
class OverrideCreateRequest(BaseModel):
    override_type: OverrideType
    payload: Dict[str, Any]
    template_id: Optional[str] = None
    reason: Optional[str] = None


class OverrideReviewRequest(BaseModel):
    notes: Optional[str] = None


class OverrideResponse(BaseModel):
    """Schema for customer override responses."""

    id: str
    service_id: str
    template_id: Optional[str] = None
    override_type: OverrideType
    payload: Dict[str, Any]
    status: OverrideStatus
    collisions: Optional[List[str]] = None
    reason: Optional[str] = None
    created_by: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Document Schemas
class GenerateDocumentsRequest(BaseModel):
    template_ids: List[str] = Field(..., min_length=1)
    client_data: Dict[str, Any] = Field(default_factory=dict)
    override_ids: Optional[List[str]] = None
    service_id: Optional[str] = None


class GeneratedDocumentResult(BaseModel):
    """Per-template outcome of a generation request."""

    template_id: str
    artifact_id: Optional[str] = None
    file_url: Optional[str] = None
    unmatched_fields: List[str] = Field(default_factory=list)
    status: str  # generated | error
    error: Optional[str] = None
    error_type: Optional[str] = None


class ArtifactResponse(BaseModel):
    """Schema for document artifact responses."""

    id: str
    template_id: str
    service_id: Optional[str] = None
    file_name: str
    content_type: str
    status: ArtifactStatus
    error_message: Optional[str] = None
    unmatched_fields: List[str] = Field(default_factory=list)
    override_ids: List[str] = Field(default_factory=list)
    generated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Audit Schemas
class AuditEventResponse(BaseModel):
    id: str
    event_type: str
    resource_type: str
    resource_id: str
    actor_id: str
    diff: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Health Check
class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    database: str
    ollama: str
    timestamp: datetime
