"""
SQLAlchemy ORM models for the FormGen database.

Logical collections: templates (+ version history), services,
customer_overrides, document_artifacts.  All primary keys are opaque UUID
strings except the version history rows.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Boolean,
    Enum as SQLEnum,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from formgen.database import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enums
class TemplateStatus(str, enum.Enum):
    """Template lifecycle: uploaded -> parsing -> (parsed | error)."""

    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    ERROR = "error"

    @classmethod
    def can_transition(
        cls, old: "TemplateStatus", new: "TemplateStatus", reparse: bool = False
    ) -> bool:
        """Return True if *old* -> *new* is a legal move.

        ``parsed``/``error`` may only go back to ``parsing`` through an
        explicit re-parse request.
        """
        if (old, new) in _FORWARD_TRANSITIONS:
            return True
        return reparse and (old, new) in _REPARSE_TRANSITIONS


_FORWARD_TRANSITIONS = frozenset({
    (TemplateStatus.UPLOADED, TemplateStatus.PARSING),
    (TemplateStatus.PARSING, TemplateStatus.PARSED),
    (TemplateStatus.PARSING, TemplateStatus.ERROR),
})
_REPARSE_TRANSITIONS = frozenset({
    (TemplateStatus.PARSED, TemplateStatus.PARSING),
    (TemplateStatus.ERROR, TemplateStatus.PARSING),
})


class FieldType(str, enum.Enum):
    """Semantic type of an intake field."""

    TEXT = "text"
    EMAIL = "email"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    TEXTAREA = "textarea"
    CHECKBOX = "checkbox"
    RADIO = "radio"


CHOICE_FIELD_TYPES = frozenset({FieldType.SELECT, FieldType.RADIO, FieldType.CHECKBOX})


class ServiceStatus(str, enum.Enum):
    """Service lifecycle as seen by the professional."""

    DRAFT = "draft"
    INTAKE_SENT = "intake_sent"
    INTAKE_SUBMITTED = "intake_submitted"
    DOCUMENTS_READY = "documents_ready"
    COMPLETED = "completed"


class OverrideType(str, enum.Enum):
    """Kinds of customer-requested deviation."""

    ADD_FIELD = "add_field"
    REMOVE_FIELD = "remove_field"
    MODIFY_FIELD = "modify_field"
    CUSTOM_CLAUSE = "custom_clause"


class OverrideStatus(str, enum.Enum):
    """Review state of a customer override."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ArtifactStatus(str, enum.Enum):
    """Generation state of a document artifact."""

    GENERATING = "generating"
    GENERATED = "generated"
    ERROR = "error"


# Models
class Template(Base):
    """Uploaded source document plus its AI-extracted field definitions."""

    __tablename__ = "templates"
    __mapper_args__ = {"eager_defaults": True}  # load server-side timestamps on flush

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    original_file_name = Column(String(255), nullable=False)
    file_type = Column(String(10), nullable=False)  # pdf | docx
    storage_path = Column(String(512), nullable=False, unique=True)
    status = Column(
        SQLEnum(TemplateStatus, name="templatestatus", values_callable=_enum_values),
        nullable=False,
        default=TemplateStatus.UPLOADED,
        index=True,
    )
    extracted_fields = Column(JSON, nullable=False, default=list)  # List[Placeholder]
    error_message = Column(Text, nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=0)
    etag = Column(String(64), nullable=True)

    # Editor lock
    lock_holder_id = Column(String(255), nullable=True)
    lock_acquired_at = Column(DateTime(timezone=True), nullable=True)
    lock_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    parsed_at = Column(DateTime(timezone=True), nullable=True)
    parsing_started_at = Column(DateTime(timezone=True), nullable=True)  # current parse claim

    # Relationships
    versions = relationship(
        "TemplateVersion", back_populates="template", cascade="all, delete-orphan"
    )


class TemplateVersion(Base):
    """Immutable snapshot of a template's field set."""

    __tablename__ = "template_versions"
    __table_args__ = (UniqueConstraint("template_id", "version", name="uq_template_version"),)
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(
        String(36), ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version = Column(Integer, nullable=False)
    fields = Column(JSON, nullable=False)
    etag = Column(String(64), nullable=False)
    created_by = Column(String(255), nullable=True)  # None for the extraction pipeline
    reason = Column(Text, nullable=True)
    rolled_back_to = Column(Integer, nullable=True)
    is_rollback = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # Relationships
    template = relationship("Template", back_populates="versions")


class Service(Base):
    """A bundle of templates offered to one client, with the client's intake."""

    __tablename__ = "services"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String(255), nullable=False, index=True)
    template_ids = Column(JSON, nullable=False, default=list)
    client_data = Column(JSON, nullable=True)  # flat field key -> value map
    status = Column(
        SQLEnum(ServiceStatus, name="servicestatus", values_callable=_enum_values),
        nullable=False,
        default=ServiceStatus.DRAFT,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    intake_submitted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    overrides = relationship(
        "CustomerOverride", back_populates="service", cascade="all, delete-orphan"
    )


class CustomerOverride(Base):
    """Customer-requested customization awaiting (or past) admin review."""

    __tablename__ = "customer_overrides"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True)
    service_id = Column(
        String(36), ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True
    )
    template_id = Column(String(36), nullable=True)  # None = applies to every template
    override_type = Column(
        SQLEnum(OverrideType, name="overridetype", values_callable=_enum_values),
        nullable=False,
    )
    payload = Column(JSON, nullable=False)
    status = Column(
        SQLEnum(OverrideStatus, name="overridestatus", values_callable=_enum_values),
        nullable=False,
        default=OverrideStatus.PENDING,
        index=True,
    )
    collisions = Column(JSON, nullable=True)  # field keys already defined by a template
    reason = Column(Text, nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)

    # Relationships
    service = relationship("Service", back_populates="overrides")


class DocumentArtifact(Base):
    """One generated output document.  Never rewritten after generation."""

    __tablename__ = "document_artifacts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True)
    template_id = Column(
        String(36), ForeignKey("templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id = Column(
        String(36), ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True
    )
    file_name = Column(String(255), nullable=False)
    storage_path = Column(String(512), nullable=False)
    content_type = Column(String(255), nullable=False)
    status = Column(
        SQLEnum(ArtifactStatus, name="artifactstatus", values_callable=_enum_values),
        nullable=False,
        default=ArtifactStatus.GENERATING,
    )
    error_message = Column(Text, nullable=True)
    unmatched_fields = Column(JSON, nullable=False, default=list)
    override_ids = Column(JSON, nullable=False, default=list)
    generated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AuditEvent(Base):
    """Append-only record of an administrative or customer action."""

    __tablename__ = "audit_events"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)  # e.g. template.fields_updated
    resource_type = Column(String(32), nullable=False)  # template | service
    resource_id = Column(String(36), nullable=False, index=True)
    actor_id = Column(String(255), nullable=False)
    diff = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
