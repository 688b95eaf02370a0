"""Routes for attaching and listing topic references."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from backend.app.auth.router import require_session
from backend.app.contracts import (
    BookReference,
    Citation,
    Reference,
    VerseRange,
    encode_reference,
    is_book,
)
from backend.app.dependencies import PageParams, get_database, raise_http
from backend.app.errors import ServiceError
from backend.app.graph.database import Database

router = APIRouter(prefix="/api/v1/refs", tags=["refs"])


class ReferenceCreatedResponse(BaseModel):
    """Identifier of the stored reference together with what was stored."""

    ref_id: str
    topic: str
    reference: Dict[str, Any]


async def _attach(database: Database, topic: str, reference: Reference) -> ReferenceCreatedResponse:
    try:
        ref_id = await database.add_reference_to_topic(topic, reference)
    except ServiceError as exc:
        raise_http(exc)
    return ReferenceCreatedResponse(
        ref_id=ref_id, topic=topic, reference=encode_reference(reference)
    )


@router.get("/{topic}", response_model=List[Dict[str, Any]])
async def list_references(
    topic: str, database: Database = Depends(get_database)
) -> List[Dict[str, Any]]:
    """Return the topic's verse and hadith references; books are not listed."""

    try:
        references = await database.list_references(topic)
    except ServiceError as exc:
        raise_http(exc)
    return [encode_reference(ref) for ref in references if not is_book(ref)]


@router.post(
    "/{topic}/qref",
    response_model=ReferenceCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_verse_reference(
    topic: str,
    payload: VerseRange,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> ReferenceCreatedResponse:
    return await _attach(database, topic, payload)


@router.post(
    "/{topic}/href",
    response_model=ReferenceCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_hadith_reference(
    topic: str,
    payload: Citation,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> ReferenceCreatedResponse:
    return await _attach(database, topic, payload)


@router.post(
    "/{topic}/bref",
    response_model=ReferenceCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_book_reference(
    topic: str,
    payload: BookReference,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> ReferenceCreatedResponse:
    return await _attach(database, topic, payload)


@router.get("/{topic}/qref", response_model=List[VerseRange])
async def list_verse_references(
    topic: str,
    pagination: PageParams = Depends(),
    database: Database = Depends(get_database),
) -> List[VerseRange]:
    """Return one page of the topic's verse ranges ordered by position."""

    try:
        return await database.list_verse_references(topic, pagination.page, pagination.size)
    except ServiceError as exc:
        raise_http(exc)


__all__ = ["router"]
