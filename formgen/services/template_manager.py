"""
Template lifecycle: upload registration, the parse pipeline, and editing guards.

Status moves are single-statement conditional updates
(``UPDATE templates SET status=:new WHERE id=:id AND status=:old``), so a
redelivered storage event or a concurrent request that loses the race sees
rowcount 0 and backs off instead of parsing twice.

Public API
----------
TemplateManager.register_upload(file_name, file_type, template_name) -> UploadRegistration
TemplateManager.check_upload_target(storage_path)                    -> Template
TemplateManager.on_upload_completed(storage_path)                    -> ParseOutcome
TemplateManager.request_reparse(template_id)                         -> ParseOutcome
TemplateManager.acquire_lock / refresh_lock / release_lock
TemplateManager.update_fields(template_id, fields, expected_etag, user_id, reason)
TemplateManager.list_versions(template_id) / rollback(...) / audit_trail(template_id)
"""
from __future__ import annotations

import dataclasses
import enum
import hashlib
import json
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.config import settings
from formgen.exceptions import (
    ConcurrencyConflictError,
    FormGenError,
    InvalidStateError,
    LockConflictError,
    NotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from formgen.models.database_models import AuditEvent, Template, TemplateStatus, TemplateVersion
from formgen.models.schemas import Placeholder
from formgen.services.audit_log import FIELDS_UPDATED, VERSION_ROLLED_BACK, AuditLog, field_diff
from formgen.services.field_extractor import FieldExtractor, placeholder_text
from formgen.services.storage import StorageBackend
from formgen.services.text_extractor import DocumentTextExtractor, normalize_file_type

logger = logging.getLogger(__name__)

_STORAGE_PATH_RE = re.compile(r"^templates/([^/]+)/([^/]+)$")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class UploadRegistration:
    """Returned by register_upload."""

    template_id: str
    upload_url: str
    storage_path: str
    expires_at: datetime


class ParseOutcomeKind(str, enum.Enum):
    IGNORED = "ignored"   # path is not a template upload, or the template is unknown
    SKIPPED = "skipped"   # another invocation already claimed the template
    PARSED = "parsed"
    ERROR = "error"


@dataclasses.dataclass
class ParseOutcome:
    """Result of one storage-event or re-parse invocation."""

    outcome: ParseOutcomeKind
    template_id: Optional[str] = None
    status: Optional[TemplateStatus] = None
    message: Optional[str] = None
    field_count: int = 0


@dataclasses.dataclass
class EditorLock:
    template_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def compute_etag(fields: Sequence[Dict[str, Any]]) -> str:
    """SHA-256 of the canonical JSON encoding of a field list."""
    canonical = json.dumps(list(fields), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_field_set(fields: Sequence[Union[Placeholder, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Validate an administrator-supplied field list and return it as JSON-ready dicts.

    Keys must be unique and types valid; blank example text is synthesised.
    """
    result: List[Dict[str, Any]] = []
    seen = set()
    for raw in fields:
        try:
            field = raw if isinstance(raw, Placeholder) else Placeholder.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid field definition: {exc.errors()[0].get('msg')}", original_error=exc) from exc
        if field.name in seen:
            raise ValidationError(f"Duplicate field name {field.name!r}")
        seen.add(field.name)
        if not field.placeholder:
            field = field.model_copy(update={"placeholder": placeholder_text(field.type, field.label)})
        result.append(field.model_dump(mode="json"))
    return result


def _lock_is_free_for(user_id: str, now: datetime):
    """SQL condition: no live lock, or the live lock belongs to *user_id*."""
    return or_(
        Template.lock_holder_id.is_(None),
        Template.lock_holder_id == user_id,
        Template.lock_expires_at.is_(None),
        Template.lock_expires_at <= now,
    )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TemplateManager:
    """Owns Template records.  Collaborators are injected at construction."""

    def __init__(
        self,
        db: AsyncSession,
        storage: StorageBackend,
        text_extractor: Optional[DocumentTextExtractor] = None,
        field_extractor: Optional[FieldExtractor] = None,
        lock_ttl_seconds: Optional[int] = None,
        upload_url_ttl_seconds: Optional[int] = None,
        parse_claim_timeout_seconds: Optional[int] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.db = db
        self.storage = storage
        self.text_extractor = text_extractor
        self.field_extractor = field_extractor
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds or settings.EDITOR_LOCK_TTL_SECONDS)
        self.upload_url_ttl = timedelta(seconds=upload_url_ttl_seconds or settings.UPLOAD_URL_TTL_SECONDS)
        self.parse_claim_timeout = timedelta(
            seconds=parse_claim_timeout_seconds or settings.PARSE_CLAIM_TIMEOUT_SECONDS
        )
        self.audit = audit_log or AuditLog(db)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _find(self, template_id: str) -> Optional[Template]:
        result = await self.db.execute(
            select(Template)
            .where(Template.id == template_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_template(self, template_id: str) -> Template:
        template = await self._find(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    async def list_templates(self, status: Optional[TemplateStatus] = None) -> List[Template]:
        query = select(Template).order_by(Template.created_at.desc(), Template.id)
        if status is not None:
            query = query.where(Template.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Upload registration
    # ------------------------------------------------------------------

    async def register_upload(
        self,
        file_name: Optional[str],
        file_type: Optional[str],
        template_name: Optional[str],
    ) -> UploadRegistration:
        """
        Create a Template in ``uploaded`` state and a signed upload URL for its bytes.

        Raises:
            ValidationError:        A value is missing or the file name is a path.
            UnsupportedFormatError: file_type is not pdf/docx.
        """
        file_name = (file_name or "").strip()
        template_name = (template_name or "").strip()
        missing = [
            label
            for label, value in (
                ("file_name", file_name),
                ("file_type", (file_type or "").strip()),
                ("template_name", template_name),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required value(s): {', '.join(missing)}")

        if "/" in file_name or "\\" in file_name or file_name in (".", ".."):
            raise ValidationError(f"Invalid file name {file_name!r}")

        ft = normalize_file_type(file_type)
        if ft not in settings.SUPPORTED_FILE_TYPES:
            raise UnsupportedFormatError(
                f"Unsupported file type '{file_type}'. "
                f"Accepted: {', '.join(settings.SUPPORTED_FILE_TYPES)}"
            )

        template_id = str(uuid.uuid4())
        storage_path = f"templates/{template_id}/{file_name}"
        expires_at = utcnow() + self.upload_url_ttl
        upload_url = self.storage.create_upload_url(storage_path, expires_at)

        template = Template(
            id=template_id,
            name=template_name,
            original_file_name=file_name,
            file_type=ft,
            storage_path=storage_path,
            status=TemplateStatus.UPLOADED,
            extracted_fields=[],
            version=0,
        )
        self.db.add(template)
        await self.db.flush()

        logger.info("Registered upload for template %s (%s, %s)", template_id, file_name, ft)
        return UploadRegistration(
            template_id=template_id,
            upload_url=upload_url,
            storage_path=storage_path,
            expires_at=expires_at,
        )

    async def check_upload_target(self, storage_path: str) -> Template:
        """
        Confirm *storage_path* still awaits its one upload.

        Raises:
            NotFoundError:     No template owns the path.
            InvalidStateError: Bytes already landed, or the template left ``uploaded``.
        """
        match = _STORAGE_PATH_RE.match(storage_path or "")
        template = await self._find(match.group(1)) if match else None
        if template is None or template.storage_path != storage_path:
            raise NotFoundError(f"No template expects an upload at {storage_path!r}")
        if template.status != TemplateStatus.UPLOADED or await self.storage.exists(storage_path):
            raise InvalidStateError(
                f"Template {template.id} already received its file; register a new upload instead"
            )
        return template

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        template_id: str,
        old: TemplateStatus,
        new: TemplateStatus,
        reparse: bool = False,
        claimed_at: Optional[datetime] = None,
        **values: Any,
    ) -> bool:
        """
        Atomically move *template_id* from *old* to *new*.  False if the row was not in *old*.

        With *claimed_at*, the move also requires that the parse claim was not
        taken over by another worker in the meantime.
        """
        if not TemplateStatus.can_transition(old, new, reparse=reparse):
            raise InvalidStateError(f"Illegal template transition {old.value} -> {new.value}")

        conditions = [Template.id == template_id, Template.status == old]
        if claimed_at is not None:
            conditions.append(Template.parsing_started_at == claimed_at)
        result = await self.db.execute(
            update(Template)
            .where(*conditions)
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        moved = result.rowcount == 1
        if moved:
            logger.info("Template %s: %s -> %s", template_id, old.value, new.value)
        return moved

    # ------------------------------------------------------------------
    # Parse pipeline
    # ------------------------------------------------------------------

    async def on_upload_completed(self, storage_path: str) -> ParseOutcome:
        """
        Storage-finalize handler.  Safe to re-invoke for the same path.

        Only the invocation that wins the ``uploaded -> parsing`` claim runs
        the pipeline; every other one returns ``skipped``, unless the claim it
        lost to has been abandoned for longer than the parse claim timeout.
        """
        match = _STORAGE_PATH_RE.match(storage_path or "")
        if not match:
            logger.info("Ignoring storage event for non-template path %r", storage_path)
            return ParseOutcome(ParseOutcomeKind.IGNORED, message="Not a template upload path")

        template_id = match.group(1)
        template = await self._find(template_id)
        if template is None or template.storage_path != storage_path:
            logger.info("Ignoring storage event for unknown template path %r", storage_path)
            return ParseOutcome(
                ParseOutcomeKind.IGNORED, template_id=template_id, message="Unknown template"
            )

        claimed_at = utcnow()
        claimed = await self._transition(
            template_id,
            TemplateStatus.UPLOADED,
            TemplateStatus.PARSING,
            parsing_started_at=claimed_at,
        )
        if not claimed:
            current = await self._find(template_id)
            reclaimed_at = None
            if current.status == TemplateStatus.PARSING:
                reclaimed_at = await self._reclaim_stale_parse(template_id)
            if reclaimed_at is None:
                logger.info(
                    "Template %s already %s; skipping redelivered event",
                    template_id,
                    current.status.value,
                )
                return ParseOutcome(
                    ParseOutcomeKind.SKIPPED,
                    template_id=template_id,
                    status=current.status,
                    message=f"Template is already {current.status.value}",
                )
            claimed_at = reclaimed_at
        await self.db.commit()

        return await self._run_pipeline(template, claimed_at)

    async def request_reparse(self, template_id: str) -> ParseOutcome:
        """
        Explicit restart of a ``parsed`` or ``error`` template, or of a
        ``parsing`` one whose claim has gone stale.

        Raises:
            NotFoundError:     Unknown template.
            InvalidStateError: The template is ``uploaded`` or is being parsed right now.
        """
        template = await self.get_template(template_id)
        reset = {"extracted_fields": [], "etag": None, "error_message": None}

        if template.status == TemplateStatus.PARSING:
            claimed_at = await self._reclaim_stale_parse(template_id, **reset)
            if claimed_at is None:
                raise InvalidStateError(
                    f"Template {template_id} is being parsed; retry after the current parse finishes"
                )
        elif template.status in (TemplateStatus.PARSED, TemplateStatus.ERROR):
            claimed_at = utcnow()
            claimed = await self._transition(
                template_id,
                template.status,
                TemplateStatus.PARSING,
                reparse=True,
                parsing_started_at=claimed_at,
                **reset,
            )
            if not claimed:
                raise InvalidStateError(f"Template {template_id} changed state; re-parse not started")
        else:
            raise InvalidStateError(
                f"Template {template_id} is {template.status.value}; only parsed or error templates can be re-parsed"
            )
        await self.db.commit()

        return await self._run_pipeline(template, claimed_at)

    async def _reclaim_stale_parse(self, template_id: str, **values: Any) -> Optional[datetime]:
        """
        Take over a ``parsing`` claim older than the parse claim timeout.

        Returns the new claim time, or None if the current claim is still live.
        """
        now = utcnow()
        cutoff = now - self.parse_claim_timeout
        result = await self.db.execute(
            update(Template)
            .where(
                Template.id == template_id,
                Template.status == TemplateStatus.PARSING,
                or_(Template.parsing_started_at.is_(None), Template.parsing_started_at <= cutoff),
            )
            .values(parsing_started_at=now, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        logger.warning("Template %s: parse claim abandoned; restarting the pipeline", template_id)
        return now

    async def _run_pipeline(self, template: Template, claimed_at: datetime) -> ParseOutcome:
        """Load bytes, extract text, extract fields, then record parsed or error."""
        template_id = template.id
        try:
            file_bytes = await self.storage.load(template.storage_path)
            text = await self.text_extractor.extract_text(file_bytes, template.file_type)
            fields = await self.field_extractor.extract_fields(text)
        except FormGenError as exc:
            return await self._record_failure(template_id, claimed_at, exc.message)
        except Exception as exc:
            logger.error("Unexpected error parsing template %s", template_id, exc_info=True)
            return await self._record_failure(template_id, claimed_at, f"Unexpected error: {exc}")

        field_dicts = [f.model_dump(mode="json") for f in fields]
        etag = compute_etag(field_dicts)
        current = await self._find(template_id)
        new_version = (current.version or 0) + 1

        stored = await self._transition(
            template_id,
            TemplateStatus.PARSING,
            TemplateStatus.PARSED,
            claimed_at=claimed_at,
            extracted_fields=field_dicts,
            etag=etag,
            version=new_version,
            error_message=None,
            parsed_at=utcnow(),
        )
        if not stored:
            await self.db.rollback()
            return self._claim_lost(template_id)

        self.db.add(
            TemplateVersion(
                template_id=template_id,
                version=new_version,
                fields=field_dicts,
                etag=etag,
                created_by=None,
                reason="extraction",
            )
        )
        await self.db.commit()

        logger.info("Template %s parsed with %d field(s)", template_id, len(field_dicts))
        return ParseOutcome(
            ParseOutcomeKind.PARSED,
            template_id=template_id,
            status=TemplateStatus.PARSED,
            field_count=len(field_dicts),
        )

    async def _record_failure(self, template_id: str, claimed_at: datetime, message: str) -> ParseOutcome:
        logger.info("Template %s failed to parse: %s", template_id, message)
        stored = await self._transition(
            template_id,
            TemplateStatus.PARSING,
            TemplateStatus.ERROR,
            claimed_at=claimed_at,
            error_message=message,
        )
        if not stored:
            await self.db.rollback()
            return self._claim_lost(template_id)
        await self.db.commit()
        return ParseOutcome(
            ParseOutcomeKind.ERROR,
            template_id=template_id,
            status=TemplateStatus.ERROR,
            message=message,
        )

    @staticmethod
    def _claim_lost(template_id: str) -> ParseOutcome:
        logger.warning("Template %s: parse claim taken over; result discarded", template_id)
        return ParseOutcome(
            ParseOutcomeKind.SKIPPED,
            template_id=template_id,
            message="Template left this parse claim before results were stored",
        )

    # ------------------------------------------------------------------
    # Editor lock
    # ------------------------------------------------------------------

    async def acquire_lock(self, template_id: str, user_id: str) -> EditorLock:
        """Take (or extend) the editor lock.  Another user's live lock raises LockConflictError."""
        await self.get_template(template_id)
        now = utcnow()
        expires_at = now + self.lock_ttl

        result = await self.db.execute(
            update(Template)
            .where(Template.id == template_id, _lock_is_free_for(user_id, now))
            .values(lock_holder_id=user_id, lock_acquired_at=now, lock_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise self._lock_conflict(await self.get_template(template_id))

        logger.info("Template %s locked by %s until %s", template_id, user_id, expires_at.isoformat())
        return EditorLock(template_id, user_id, now, expires_at)

    async def refresh_lock(self, template_id: str, user_id: str) -> EditorLock:
        """Extend a live lock held by *user_id*."""
        template = await self.get_template(template_id)
        now = utcnow()
        expires_at = now + self.lock_ttl

        result = await self.db.execute(
            update(Template)
            .where(
                Template.id == template_id,
                Template.lock_holder_id == user_id,
                Template.lock_expires_at > now,
            )
            .values(lock_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise LockConflictError(
                f"User {user_id} does not hold a live lock on template {template_id}",
                holder_id=self._live_holder(template, now),
            )
        return EditorLock(template_id, user_id, as_utc(template.lock_acquired_at) or now, expires_at)

    async def release_lock(self, template_id: str, user_id: str) -> bool:
        """Release *user_id*'s lock.  Returns False if there was nothing to release."""
        template = await self.get_template(template_id)
        result = await self.db.execute(
            update(Template)
            .where(Template.id == template_id, Template.lock_holder_id == user_id)
            .values(lock_holder_id=None, lock_acquired_at=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Template %s unlocked by %s", template_id, user_id)
            return True
        if self._live_holder(template, utcnow()) is not None:
            raise self._lock_conflict(template)
        return False

    @staticmethod
    def _live_holder(template: Template, now: datetime) -> Optional[str]:
        expires_at = as_utc(template.lock_expires_at)
        if template.lock_holder_id and expires_at and expires_at > now:
            return template.lock_holder_id
        return None

    def _lock_conflict(self, template: Template) -> LockConflictError:
        expires_at = as_utc(template.lock_expires_at)
        until = expires_at.isoformat() if expires_at else "unknown"
        return LockConflictError(
            f"Template {template.id} is being edited by {template.lock_holder_id} (lock expires {until})",
            holder_id=template.lock_holder_id,
        )

    # ------------------------------------------------------------------
    # Field edits and version history
    # ------------------------------------------------------------------

    async def update_fields(
        self,
        template_id: str,
        fields: Sequence[Union[Placeholder, Dict[str, Any]]],
        expected_etag: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Template:
        """
        Replace the field set of a parsed template.

        Raises:
            ValidationError:          Bad field list or missing etag.
            InvalidStateError:        Template is not ``parsed``.
            LockConflictError:        Someone else holds a live editor lock.
            ConcurrencyConflictError: *expected_etag* is stale.
        """
        return await self._write_fields(template_id, fields, expected_etag, user_id, reason)

    async def _write_fields(
        self,
        template_id: str,
        fields: Sequence[Union[Placeholder, Dict[str, Any]]],
        expected_etag: str,
        user_id: str,
        reason: Optional[str],
        rolled_back_to: Optional[int] = None,
    ) -> Template:
        if not expected_etag:
            raise ValidationError("An etag is required to edit template fields")

        template = await self.get_template(template_id)
        if template.status != TemplateStatus.PARSED:
            raise InvalidStateError(
                f"Template {template_id} is {template.status.value}; only parsed templates can be edited"
            )
        now = utcnow()
        holder = self._live_holder(template, now)
        if holder is not None and holder != user_id:
            raise self._lock_conflict(template)

        previous_fields = list(template.extracted_fields or [])
        field_dicts = validate_field_set(fields)
        new_etag = compute_etag(field_dicts)
        new_version = template.version + 1

        result = await self.db.execute(
            update(Template)
            .where(
                Template.id == template_id,
                Template.status == TemplateStatus.PARSED,
                Template.etag == expected_etag,
                Template.version == template.version,
                _lock_is_free_for(user_id, now),
            )
            .values(
                extracted_fields=field_dicts,
                etag=new_etag,
                version=new_version,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            latest = await self.get_template(template_id)
            live = self._live_holder(latest, utcnow())
            if live is not None and live != user_id:
                raise self._lock_conflict(latest)
            if latest.status != TemplateStatus.PARSED:
                raise InvalidStateError(f"Template {template_id} is {latest.status.value}")
            raise ConcurrencyConflictError(
                f"Template {template_id} was modified by another editor (current etag {latest.etag})"
            )

        self.db.add(
            TemplateVersion(
                template_id=template_id,
                version=new_version,
                fields=field_dicts,
                etag=new_etag,
                created_by=user_id,
                reason=reason,
                is_rollback=rolled_back_to is not None,
                rolled_back_to=rolled_back_to,
            )
        )
        await self.db.flush()
        await self.audit.record(
            VERSION_ROLLED_BACK if rolled_back_to is not None else FIELDS_UPDATED,
            "template",
            template_id,
            user_id,
            diff=field_diff(previous_fields, field_dicts),
            reason=reason,
            details={
                "from_version": template.version,
                "to_version": new_version,
                "rolled_back_to": rolled_back_to,
            },
        )

        logger.info(
            "Template %s fields updated by %s (version %d, %d field(s))",
            template_id,
            user_id,
            new_version,
            len(field_dicts),
        )
        return await self.get_template(template_id)

    async def list_versions(self, template_id: str) -> List[TemplateVersion]:
        """Version history, newest first."""
        await self.get_template(template_id)
        result = await self.db.execute(
            select(TemplateVersion)
            .where(TemplateVersion.template_id == template_id)
            .order_by(TemplateVersion.version.desc())
        )
        return list(result.scalars().all())

    async def rollback(
        self,
        template_id: str,
        version: int,
        user_id: str,
        expected_etag: str,
        reason: Optional[str] = None,
    ) -> Template:
        """Restore the fields of *version* as a new version.  History is never rewritten."""
        result = await self.db.execute(
            select(TemplateVersion).where(
                TemplateVersion.template_id == template_id,
                TemplateVersion.version == version,
            )
        )
        snapshot = result.scalar_one_or_none()
        if snapshot is None:
            await self.get_template(template_id)
            raise NotFoundError(f"Template {template_id} has no version {version}")

        return await self._write_fields(
            template_id,
            snapshot.fields,
            expected_etag,
            user_id,
            reason=reason or f"Rollback to version {version}",
            rolled_back_to=version,
        )

    async def audit_trail(self, template_id: str) -> List[AuditEvent]:
        """Field edit and rollback events, oldest first."""
        await self.get_template(template_id)
        return await self.audit.list_events("template", template_id)
