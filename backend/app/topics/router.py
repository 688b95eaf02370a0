"""Routes for creating, browsing and deleting topics."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from backend.app.auth.router import require_session
from backend.app.contracts import VerseRange
from backend.app.dependencies import PageParams, get_database, raise_http
from backend.app.errors import ServiceError, ValidationError
from backend.app.graph.database import Database

router = APIRouter(prefix="/api/v1/topics", tags=["topics"])


class TopicRequest(BaseModel):
    """Request payload naming a topic."""

    name: str = Field(..., min_length=1, max_length=200)


class TopicResponse(BaseModel):
    name: str


class TopicDeletedResponse(BaseModel):
    name: str
    references_deleted: int


@router.get("/", response_model=List[str])
async def list_topics(
    pagination: PageParams = Depends(),
    database: Database = Depends(get_database),
) -> List[str]:
    """Return one page of topic names ordered by name."""

    try:
        return await database.list_topics(pagination.page, pagination.size)
    except ServiceError as exc:
        raise_http(exc)


@router.post("/", response_model=TopicResponse, status_code=status.HTTP_201_CREATED)
async def add_topic(
    payload: TopicRequest,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> TopicResponse:
    try:
        name = await database.add_topic(payload.name)
    except ServiceError as exc:
        raise_http(exc)
    return TopicResponse(name=name)


@router.get("/by-verse", response_model=List[str])
async def topics_by_verse(
    chapter: int = Query(...),
    init_verse: int = Query(...),
    final_verse: int = Query(...),
    pagination: PageParams = Depends(),
    database: Database = Depends(get_database),
) -> List[str]:
    """Return topics owning a verse range that contains the requested one."""

    try:
        try:
            verse_range = VerseRange(
                chapter=chapter, init_verse=init_verse, final_verse=final_verse
            )
        except PydanticValidationError as exc:
            raise ValidationError("Invalid verse range") from exc
        return await database.find_topics_by_verse_overlap(
            verse_range, pagination.page, pagination.size
        )
    except ServiceError as exc:
        raise_http(exc)


@router.delete("/{name}", response_model=TopicDeletedResponse)
async def delete_topic(
    name: str,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> TopicDeletedResponse:
    """Delete a topic and every reference it owns."""

    try:
        removed = await database.delete_topic(name)
    except ServiceError as exc:
        raise_http(exc)
    return TopicDeletedResponse(name=name, references_deleted=removed)


@router.post(
    "/{name}/subtopics",
    response_model=TopicResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_subtopic(
    name: str,
    payload: TopicRequest,
    database: Database = Depends(get_database),
    _: str = Depends(require_session),
) -> TopicResponse:
    try:
        await database.add_subtopic(name, payload.name)
    except ServiceError as exc:
        raise_http(exc)
    return TopicResponse(name=payload.name.strip())


@router.get("/{name}/subtopics", response_model=List[str])
async def list_subtopics(name: str, database: Database = Depends(get_database)) -> List[str]:
    try:
        return await database.list_subtopics(name)
    except ServiceError as exc:
        raise_http(exc)


__all__ = ["router"]
