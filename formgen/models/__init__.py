"""Database and schema models for FormGen."""
from formgen.models.database_models import (
    Template,
    TemplateVersion,
    Service,
    CustomerOverride,
    DocumentArtifact,
    TemplateStatus,
    FieldType,
    ServiceStatus,
    OverrideType,
    OverrideStatus,
    ArtifactStatus,
    AuditEvent,
)
from formgen.models.schemas import (
    Placeholder,
    PlaceholderLocation,
    AIFieldSpec,
    TemplateResponse,
    ServiceResponse,
    OverrideResponse,
    ArtifactResponse,
    HealthCheckResponse,
    AuditEventResponse,
)

__all__ = [
    # Database models
    "Template",
    "TemplateVersion",
    "Service",
    "CustomerOverride",
    "DocumentArtifact",
    "TemplateStatus",
    "FieldType",
    "ServiceStatus",
    "OverrideType",
    "OverrideStatus",
    "ArtifactStatus",
    "AuditEvent",
    # Pydantic schemas
    "Placeholder",
    "PlaceholderLocation",
    "AIFieldSpec",
    "TemplateResponse",
    "ServiceResponse",
    "OverrideResponse",
    "ArtifactResponse",
    "HealthCheckResponse",
    "AuditEventResponse",
]
