"""
Document generation and download endpoints.

POST /generate        - fill one or more templates with client data
GET  /{id}            - artifact metadata
GET  /{id}/download   - artifact binary
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from fastapi import APIRouter, Depends, Response

from formgen.dependencies.services import get_document_assembler
from formgen.models.schemas import (
    ArtifactResponse,
    GenerateDocumentsRequest,
    GeneratedDocumentResult,
)
from formgen.services.document_assembler import BatchItemResult, DocumentAssembler, artifact_url

logger = logging.getLogger(__name__)

router = APIRouter()


def batch_response(results: Sequence[BatchItemResult]) -> List[GeneratedDocumentResult]:
    response: List[GeneratedDocumentResult] = []
    for item in results:
        if item.result is not None:
            artifact = item.result.artifact
            response.append(
                GeneratedDocumentResult(
                    template_id=item.template_id,
                    artifact_id=artifact.id,
                    file_url=artifact_url(artifact.id),
                    unmatched_fields=item.result.unmatched_fields,
                    status="generated",
                )
            )
        else:
            response.append(
                GeneratedDocumentResult(
                    template_id=item.template_id,
                    status="error",
                    error=item.error,
                    error_type=item.error_type,
                )
            )
    return response


@router.post("/generate", response_model=List[GeneratedDocumentResult])
async def generate_documents(
    body: GenerateDocumentsRequest,
    assembler: DocumentAssembler = Depends(get_document_assembler),
) -> List[GeneratedDocumentResult]:
    """
    Generate one document per template.

    Each entry reports its own ``unmatched_fields``; a failing template is
    reported with ``status="error"`` without affecting the others.
    """
    results = await assembler.generate_batch(
        body.template_ids,
        body.client_data,
        override_ids=body.override_ids,
        service_id=body.service_id,
    )
    return batch_response(results)


@router.get("/{artifact_id}", response_model=ArtifactResponse)
async def get_document(
    artifact_id: str,
    assembler: DocumentAssembler = Depends(get_document_assembler),
):
    return await assembler.get_artifact(artifact_id)


@router.get("/{artifact_id}/download")
async def download_document(
    artifact_id: str,
    assembler: DocumentAssembler = Depends(get_document_assembler),
) -> Response:
    content, content_type, file_name = await assembler.download_artifact(artifact_id)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
