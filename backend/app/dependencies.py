"""Request-scoped dependencies shared by the resource routers."""
from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import HTTPException, Query, Request, status

from backend.app.config import APIConfig
from backend.app.contracts import DEFAULT_PAGE
from backend.app.errors import ServiceError, status_from_reason
from backend.app.graph.database import Database


def get_database(request: Request) -> Database:
    """Return the data access layer, or 503 when no graph store is connected."""

    database = getattr(request.app.state, "database", None)
    if database is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Graph store is unavailable",
        )
    return database


def get_api_config(request: Request) -> APIConfig:
    return request.app.state.app_config.api


class PageParams:
    """``page``/``size`` query parameters; non-positive values reach the DAL."""

    def __init__(
        self,
        request: Request,
        page: int = Query(DEFAULT_PAGE, description="One-based page number"),
        size: Optional[int] = Query(None, description="Page size"),
    ) -> None:
        config = get_api_config(request)
        resolved = config.default_page_size if size is None else size
        if resolved > config.max_page_size:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"size cannot exceed {config.max_page_size}",
            )
        self.page = page
        self.size = resolved


def raise_http(exc: ServiceError) -> NoReturn:
    """Translate a service error into an ``HTTPException``."""

    raise HTTPException(status_code=status_from_reason(exc.reason), detail=str(exc)) from exc


__all__ = ["PageParams", "get_api_config", "get_database", "raise_http"]
