"""
Document assembly: fill a template's placeholders with client answers.

Each field is substituted wherever one of its tokens appears: ``{{key}}``,
``[key]`` or ``${key}`` for the key and its snake/camel variants (case
insensitive), plus any literal anchor text recorded in the field's source
locations.  Fields without a client value are filled with their example text
and reported back in ``unmatched_fields``; generation itself only fails on I/O
or parse errors.

Approved overrides are applied to the field set first (add/remove/modify), and
custom clauses are inserted into the output after substitution.

Public API
----------
build_effective_fields(fields, overrides)                       -> EffectiveFieldSet
DocumentAssembler.generate_document(template, client_data, ...) -> GenerationResult
DocumentAssembler.generate_batch(template_ids, client_data, ...) -> List[BatchItemResult]
DocumentAssembler.download_artifact(artifact_id)                -> (bytes, content_type, file_name)
"""
from __future__ import annotations

import dataclasses
import io
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from docx import Document as DocxDocument
from docx.oxml import OxmlElement
from docx.text.paragraph import Paragraph
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from formgen.config import settings
from formgen.exceptions import FormGenError, InvalidStateError, NotFoundError, ValidationError
from formgen.models.database_models import (
    ArtifactStatus,
    CustomerOverride,
    DocumentArtifact,
    OverrideStatus,
    OverrideType,
    Template,
    TemplateStatus,
)
from formgen.models.schemas import (
    AddFieldPayload,
    CustomClausePayload,
    ModifyFieldPayload,
    Placeholder,
    RemoveFieldPayload,
)
from formgen.services.field_extractor import placeholder_text
from formgen.services.override_manager import OverrideManager
from formgen.services.storage import StorageBackend
from formgen.utils.field_names import key_variants, normalize_key, resolve_value

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class ClauseInsertion:
    """Free text from an approved ``custom_clause`` override."""

    text: str
    title: Optional[str] = None
    position: str = "end"  # start | end | after:<anchor text>

    @property
    def anchor(self) -> Optional[str]:
        if self.position.startswith("after:"):
            return self.position[len("after:"):].strip() or None
        return None


@dataclasses.dataclass
class EffectiveFieldSet:
    """Template fields after overrides, plus the clauses to insert."""

    fields: List[Placeholder]
    clauses: List[ClauseInsertion] = dataclasses.field(default_factory=list)
    removed_keys: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class Substitution:
    """Replacement text for one field and the regex alternatives that locate it."""

    key: str
    text: str
    matched: bool
    pattern: str
    pages: Tuple[int, ...] = ()  # 1-based; empty means every page


@dataclasses.dataclass
class GenerationResult:
    """Returned by generate_document."""

    artifact: DocumentArtifact
    unmatched_fields: List[str]


@dataclasses.dataclass
class BatchItemResult:
    """Per-template outcome of generate_batch."""

    template_id: str
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


# ---------------------------------------------------------------------------
# Overrides -> effective field set
# ---------------------------------------------------------------------------

def _find_field(fields: List[Placeholder], name: str) -> Optional[int]:
    wanted = normalize_key(name)
    for index, field in enumerate(fields):
        if normalize_key(field.name) == wanted:
            return index
    return None


def build_effective_fields(
    fields: Sequence[Placeholder],
    overrides: Iterable[CustomerOverride] = (),
) -> EffectiveFieldSet:
    """
    Apply approved overrides, in the order given, to a template's field set.

    Overrides in any other status are skipped.
    """
    effective = EffectiveFieldSet(fields=list(fields))

    for override in overrides:
        if override.status != OverrideStatus.APPROVED:
            logger.warning("Skipping override %s with status %s", override.id, override.status.value)
            continue
        kind = OverrideType(override.override_type)

        if kind == OverrideType.ADD_FIELD:
            payload = AddFieldPayload.model_validate(override.payload)
            if _find_field(effective.fields, payload.name) is not None:
                logger.warning(
                    "Override %s adds field %r that already exists; ignored", override.id, payload.name
                )
                continue
            effective.fields.append(
                Placeholder(
                    name=payload.name,
                    label=payload.label,
                    type=payload.type,
                    required=payload.required,
                    description=payload.description,
                    options=payload.options,
                    placeholder=placeholder_text(payload.type, payload.label),
                )
            )

        elif kind == OverrideType.REMOVE_FIELD:
            payload = RemoveFieldPayload.model_validate(override.payload)
            index = _find_field(effective.fields, payload.name)
            if index is None:
                logger.warning("Override %s removes unknown field %r", override.id, payload.name)
                continue
            effective.removed_keys.append(effective.fields.pop(index).name)

        elif kind == OverrideType.MODIFY_FIELD:
            payload = ModifyFieldPayload.model_validate(override.payload)
            index = _find_field(effective.fields, payload.name)
            if index is None:
                logger.warning("Override %s modifies unknown field %r", override.id, payload.name)
                continue
            current = effective.fields[index]
            changes = payload.model_dump(exclude_none=True, exclude={"name"})
            merged = {**current.model_dump(), **changes}
            try:
                updated = Placeholder.model_validate(merged)
            except PydanticValidationError as exc:
                logger.warning("Override %s produces an invalid field; ignored: %s", override.id, exc)
                continue
            effective.fields[index] = updated.model_copy(
                update={"placeholder": placeholder_text(updated.type, updated.label)}
            )

        elif kind == OverrideType.CUSTOM_CLAUSE:
            payload = CustomClausePayload.model_validate(override.payload)
            effective.clauses.append(
                ClauseInsertion(text=payload.text, title=payload.title, position=payload.position)
            )

    return effective


# ---------------------------------------------------------------------------
# Substitution planning
# ---------------------------------------------------------------------------

def format_value(value: Any) -> str:
    """Render a client value as document text."""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(item) for item in value)
    return str(value)


def token_pattern(field: Placeholder) -> str:
    """Regex alternatives (no capture groups) matching every token of *field*."""
    alternatives: List[str] = []
    for variant in key_variants(field.name):
        escaped = re.escape(variant)
        alternatives.append(r"\{\{\s*" + escaped + r"\s*\}\}")
        alternatives.append(r"\$\{\s*" + escaped + r"\s*\}")
        alternatives.append(r"\[\s*" + escaped + r"\s*\]")
    for location in field.locations:
        if location.anchor and location.anchor.strip():
            alternatives.append(re.escape(location.anchor))
    return "|".join(alternatives)


def plan_substitutions(
    fields: Sequence[Placeholder], client_data: Dict[str, Any]
) -> Tuple[List[Substitution], List[str]]:
    """Resolve every field against *client_data*.  Returns the plan and the unmatched keys."""
    substitutions: List[Substitution] = []
    unmatched: List[str] = []
    for field in fields:
        value = resolve_value(field.name, client_data)
        if value is None:
            unmatched.append(field.name)
            text = field.placeholder or placeholder_text(field.type, field.label)
        else:
            text = format_value(value)
        pages = tuple(sorted({loc.page for loc in field.locations if loc.page}))
        substitutions.append(
            Substitution(
                key=field.name,
                text=text,
                matched=value is not None,
                pattern=token_pattern(field),
                pages=pages,
            )
        )
    return substitutions, unmatched


class TokenReplacer:
    """Single-pass replacement of every field token, so values are never re-substituted."""

    def __init__(self, substitutions: Sequence[Substitution]) -> None:
        self.substitutions = list(substitutions)
        parts = [f"(?P<f{i}>{s.pattern})" for i, s in enumerate(self.substitutions)]
        self._regex = re.compile("|".join(parts), re.IGNORECASE) if parts else None

    def substitution_for(self, match: "re.Match[str]") -> Substitution:
        return self.substitutions[int(match.lastgroup[1:])]

    def finditer(self, text: str) -> Iterator["re.Match[str]"]:
        if self._regex is None or not text:
            return iter(())
        return self._regex.finditer(text)

    def replace(self, text: str) -> str:
        if self._regex is None or not text:
            return text
        return self._regex.sub(lambda m: self.substitution_for(m).text, text)


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

def _iter_table_paragraphs(table) -> Iterator[Paragraph]:
    for row in table.rows:
        for cell in row.cells:
            yield from cell.paragraphs
            for nested in cell.tables:
                yield from _iter_table_paragraphs(nested)


def _iter_docx_paragraphs(document) -> Iterator[Paragraph]:
    """Body paragraphs, table cells (recursively) and unlinked headers/footers."""
    yield from document.paragraphs
    for table in document.tables:
        yield from _iter_table_paragraphs(table)
    for section in document.sections:
        for part in (
            section.header,
            section.footer,
            section.first_page_header,
            section.first_page_footer,
            section.even_page_header,
            section.even_page_footer,
        ):
            if part.is_linked_to_previous:
                continue
            yield from part.paragraphs
            for table in part.tables:
                yield from _iter_table_paragraphs(table)


def _replace_across_runs(runs: List, replacer: TokenReplacer) -> None:
    """Replace tokens split over several runs; the replacement takes the first run's formatting."""
    texts = [run.text for run in runs]
    lengths = [len(t) for t in texts]
    starts: List[int] = []
    offset = 0
    for length in lengths:
        starts.append(offset)
        offset += length

    def run_at(position: int) -> int:
        for index, start in enumerate(starts):
            if start <= position < start + lengths[index]:
                return index
        return len(runs) - 1

    matches = list(replacer.finditer("".join(texts)))
    if not matches:
        return
    for match in reversed(matches):
        m_start, m_end = match.span()
        first, last = run_at(m_start), run_at(m_end - 1)
        replacement = replacer.substitution_for(match).text
        for index in range(first, last + 1):
            lo = max(m_start - starts[index], 0)
            hi = min(m_end - starts[index], lengths[index])
            text = texts[index]
            if index == first:
                texts[index] = text[:lo] + replacement + text[hi:]
            else:
                texts[index] = text[:lo] + text[hi:]

    for run, text in zip(runs, texts):
        if run.text != text:
            run.text = text


def _replace_in_paragraph(paragraph: Paragraph, replacer: TokenReplacer) -> None:
    # One match pass over the original text; inserted values are never rescanned
    runs = list(paragraph.runs)
    if runs:
        _replace_across_runs(runs, replacer)


def _insert_paragraph_after(paragraph: Paragraph, text: str, bold: bool = False) -> Paragraph:
    new_p = OxmlElement("w:p")
    paragraph._p.addnext(new_p)
    inserted = Paragraph(new_p, paragraph._parent)
    run = inserted.add_run(text)
    run.bold = bold
    return inserted


def _clause_lines(clause: ClauseInsertion, replacer: TokenReplacer) -> List[Tuple[str, bool]]:
    lines: List[Tuple[str, bool]] = []
    if clause.title:
        lines.append((replacer.replace(clause.title), True))
    lines.append((replacer.replace(clause.text), False))
    return lines


def _insert_docx_clauses(document, clauses: Sequence[ClauseInsertion], replacer: TokenReplacer) -> None:
    body = list(document.paragraphs)
    first_paragraph = body[0] if body else None
    last_inserted: Dict[int, Paragraph] = {}

    for clause in clauses:
        lines = _clause_lines(clause, replacer)

        if clause.position == "start" and first_paragraph is not None:
            for text, bold in lines:
                inserted = first_paragraph.insert_paragraph_before()
                inserted.add_run(text).bold = bold
            continue

        anchor = clause.anchor
        target: Optional[Paragraph] = None
        if anchor:
            for paragraph in body:
                if anchor.lower() in paragraph.text.lower():
                    target = paragraph
                    break
            if target is None:
                logger.warning("Clause anchor %r not found; appending clause at the end", anchor)

        if target is not None:
            key = id(target._p)
            cursor = last_inserted.get(key, target)
            for text, bold in lines:
                cursor = _insert_paragraph_after(cursor, text, bold)
            last_inserted[key] = cursor
        else:
            for text, bold in lines:
                document.add_paragraph().add_run(text).bold = bold


def assemble_docx(
    template_bytes: bytes,
    replacer: TokenReplacer,
    clauses: Sequence[ClauseInsertion] = (),
) -> bytes:
    document = DocxDocument(io.BytesIO(template_bytes))
    for paragraph in _iter_docx_paragraphs(document):
        _replace_in_paragraph(paragraph, replacer)
    if clauses:
        _insert_docx_clauses(document, clauses, replacer)
    out = io.BytesIO()
    document.save(out)
    return out.getvalue()


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

_PDF_MARGIN = 72  # points
_PDF_CLAUSE_FONT_SIZE = 11


def _fit_font_size(rect: fitz.Rect) -> float:
    return max(6.0, min(rect.height * 0.8, 14.0))


def _render_clause_page(doc: fitz.Document, pno: int, lines: List[Tuple[str, bool]], size: fitz.Rect) -> None:
    page = doc.new_page(pno=pno, width=size.width, height=size.height)
    y = _PDF_MARGIN
    for text, bold in lines:
        box = fitz.Rect(_PDF_MARGIN, y, size.width - _PDF_MARGIN, size.height - _PDF_MARGIN)
        remaining = page.insert_textbox(
            box,
            text,
            fontsize=_PDF_CLAUSE_FONT_SIZE + (2 if bold else 0),
            fontname="hebo" if bold else "helv",
        )
        if remaining < 0:
            logger.warning("Clause text does not fit on one page and was truncated")
            return
        # insert_textbox returns the unused height of the box
        y = size.height - _PDF_MARGIN - remaining + _PDF_CLAUSE_FONT_SIZE


def _insert_pdf_clauses(doc: fitz.Document, clauses: Sequence[ClauseInsertion], replacer: TokenReplacer) -> None:
    size = doc[0].rect if doc.page_count else fitz.paper_rect("letter")
    start_index = 0
    for clause in clauses:
        lines = _clause_lines(clause, replacer)
        if clause.position == "start":
            _render_clause_page(doc, start_index, lines, size)
            start_index += 1
            continue

        target = None
        anchor = clause.anchor
        if anchor:
            for page in doc:
                if page.search_for(anchor):
                    target = page.number
                    break
            if target is None:
                logger.warning("Clause anchor %r not found; appending clause at the end", anchor)

        pno = target + 1 if target is not None else -1
        _render_clause_page(doc, pno, lines, size)


def assemble_pdf(
    template_bytes: bytes,
    replacer: TokenReplacer,
    clauses: Sequence[ClauseInsertion] = (),
) -> bytes:
    doc = fitz.open(stream=template_bytes, filetype="pdf")
    try:
        for page in doc:
            page_number = page.number + 1
            seen = set()
            writes: List[Tuple[fitz.Rect, str]] = []
            for match in replacer.finditer(page.get_text("text")):
                sub = replacer.substitution_for(match)
                if sub.pages and page_number not in sub.pages:
                    continue
                token = match.group(0)
                if token.lower() in seen:
                    continue
                seen.add(token.lower())
                for rect in page.search_for(token):
                    page.add_redact_annot(rect)
                    writes.append((rect, sub.text))

            if writes:
                page.apply_redactions()
                for rect, text in writes:
                    page.insert_text(
                        (rect.x0, rect.y1 - rect.height * 0.2),
                        text,
                        fontsize=_fit_font_size(rect),
                        fontname="helv",
                    )

        if clauses:
            _insert_pdf_clauses(doc, clauses, replacer)

        return doc.tobytes(garbage=3, deflate=True)
    finally:
        doc.close()


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class DocumentAssembler:
    """Generates DocumentArtifacts.  Never mutates the source Template."""

    def __init__(
        self,
        db: AsyncSession,
        storage: StorageBackend,
        override_manager: Optional[OverrideManager] = None,
    ) -> None:
        self.db = db
        self.storage = storage
        self.overrides = override_manager or OverrideManager(db)

    async def generate_document(
        self,
        template: Template,
        client_data: Dict[str, Any],
        overrides: Sequence[CustomerOverride] = (),
        service_id: Optional[str] = None,
    ) -> GenerationResult:
        """
        Fill *template* with *client_data* and store the result as a new artifact.

        Raises:
            InvalidStateError: Template is not ``parsed``.
            ValidationError:   No effective fields and no clauses.
            StorageError:      Template bytes unreadable or output not writable.
        """
        if template.status != TemplateStatus.PARSED:
            raise InvalidStateError(
                f"Template {template.id} is {template.status.value}; only parsed templates can be generated"
            )

        fields = [Placeholder.model_validate(f) for f in template.extracted_fields or []]
        effective = build_effective_fields(fields, overrides)
        if not effective.fields and not effective.clauses:
            raise ValidationError(f"Template {template.id} has no fields to fill and no clauses to insert")

        substitutions, unmatched = plan_substitutions(effective.fields, client_data or {})
        replacer = TokenReplacer(substitutions)

        artifact_id = str(uuid.uuid4())
        file_name = f"{Path(template.original_file_name).stem}-filled.{template.file_type}"
        artifact = DocumentArtifact(
            id=artifact_id,
            template_id=template.id,
            service_id=service_id,
            file_name=file_name,
            storage_path=f"generated/{artifact_id}/{file_name}",
            content_type=CONTENT_TYPES[template.file_type],
            status=ArtifactStatus.GENERATING,
            unmatched_fields=unmatched,
            override_ids=[o.id for o in overrides if o.status == OverrideStatus.APPROVED],
        )
        self.db.add(artifact)
        await self.db.flush()

        try:
            template_bytes = await self.storage.load(template.storage_path)
            if template.file_type == "pdf":
                output = assemble_pdf(template_bytes, replacer, effective.clauses)
            else:
                output = assemble_docx(template_bytes, replacer, effective.clauses)
            await self.storage.save(artifact.storage_path, output)
        except Exception as exc:
            artifact.status = ArtifactStatus.ERROR
            artifact.error_message = exc.message if isinstance(exc, FormGenError) else str(exc)
            await self.db.flush()
            logger.error("Generation of artifact %s failed: %s", artifact_id, artifact.error_message, exc_info=True)
            raise

        artifact.status = ArtifactStatus.GENERATED
        await self.db.flush()

        if unmatched:
            logger.info(
                "Artifact %s generated from template %s with %d unmatched field(s): %s",
                artifact_id,
                template.id,
                len(unmatched),
                unmatched,
            )
        else:
            logger.info("Artifact %s generated from template %s", artifact_id, template.id)
        return GenerationResult(artifact=artifact, unmatched_fields=unmatched)

    async def generate_batch(
        self,
        template_ids: Sequence[str],
        client_data: Dict[str, Any],
        override_ids: Optional[Sequence[str]] = None,
        service_id: Optional[str] = None,
    ) -> List[BatchItemResult]:
        """
        Generate one artifact per template.  Templates succeed or fail independently.

        Overrides are the explicitly listed ones (each must be approved) or,
        when none are listed, every approved override of *service_id*.

        Raises:
            NotFoundError:     A template id or override id is unknown.
            InvalidStateError: A listed override is not approved.
        """
        ids = list(dict.fromkeys(template_ids))
        if not ids:
            raise ValidationError("At least one template id is required")

        result = await self.db.execute(select(Template).where(Template.id.in_(ids)))
        templates = {t.id: t for t in result.scalars().all()}
        missing = [tid for tid in ids if tid not in templates]
        if missing:
            raise NotFoundError(f"Template(s) not found: {', '.join(missing)}")

        if override_ids:
            overrides = await self.overrides.approved_by_ids(override_ids, service_id)
        elif service_id:
            overrides = await self.overrides.approved_overrides_for(service_id)
        else:
            overrides = []

        results: List[BatchItemResult] = []
        for template_id in ids:
            applicable = [o for o in overrides if o.template_id in (None, template_id)]
            try:
                generated = await self.generate_document(
                    templates[template_id], client_data, applicable, service_id
                )
                results.append(BatchItemResult(template_id=template_id, result=generated))
            except FormGenError as exc:
                logger.warning("Generation failed for template %s: %s", template_id, exc.message)
                results.append(
                    BatchItemResult(template_id=template_id, error=exc.message, error_type=type(exc).__name__)
                )
            except Exception as exc:
                logger.error("Generation failed for template %s", template_id, exc_info=True)
                results.append(
                    BatchItemResult(template_id=template_id, error=str(exc), error_type=type(exc).__name__)
                )
        return results

    async def get_artifact(self, artifact_id: str) -> DocumentArtifact:
        result = await self.db.execute(select(DocumentArtifact).where(DocumentArtifact.id == artifact_id))
        artifact = result.scalar_one_or_none()
        if artifact is None:
            raise NotFoundError(f"Document {artifact_id} not found")
        return artifact

    async def download_artifact(self, artifact_id: str) -> Tuple[bytes, str, str]:
        """Return ``(content, content_type, file_name)`` for a generated artifact."""
        artifact = await self.get_artifact(artifact_id)
        if artifact.status != ArtifactStatus.GENERATED:
            raise InvalidStateError(f"Document {artifact_id} is {artifact.status.value}; nothing to download")
        content = await self.storage.load(artifact.storage_path)
        return content, artifact.content_type, artifact.file_name


def artifact_url(artifact_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/documents/{artifact_id}/download"
