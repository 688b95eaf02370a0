"""FastAPI application factory for the topic reference service."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from backend.app.auth.router import require_login_redirect, require_session
from backend.app.auth.router import router as auth_router
from backend.app.auth.service import AuthHandler
from backend.app.auth.utils import IdTokenVerifier, JWKSClient
from backend.app.config import AppConfig, load_config
from backend.app.errors import StoreError
from backend.app.graph.database import Database
from backend.app.graph.schema import ensure_schema
from backend.app.graph.store import GraphStore, create_graph_store
from backend.app.refs.router import router as refs_router
from backend.app.topics.router import router as topics_router

LOGGER = logging.getLogger(__name__)

HEALTHY_STATES = {"ok", "disabled"}


class ComponentStatus(BaseModel):
    component: str
    status: str


class HealthResponse(BaseModel):
    """Health envelope listing each component's state."""

    status: List[ComponentStatus]
    version: str


def _bypass_requested() -> bool:
    flag = os.getenv("IR_BYPASS_AUTH")
    return bool(flag and flag.strip().lower() in {"1", "true", "yes"})


def _bind_graph_store(
    app: FastAPI,
    config: AppConfig,
    store: GraphStore,
    http_client: Optional[httpx.AsyncClient],
) -> None:
    """Wire the data access layer and the auth handler onto ``store``."""

    database = Database(store)
    client = http_client or httpx.AsyncClient(timeout=config.auth.http_timeout_seconds)
    jwks_client = JWKSClient(
        config.auth.jwks_url,
        client,
        config.auth.jwks_cache_seconds,
        min_refresh_seconds=config.auth.jwks_min_refresh_seconds,
    )
    verifier = IdTokenVerifier(
        jwks_client,
        config.auth.client_id,
        issuer_prefix=config.auth.authority,
    )
    app.state.graph_store = store
    app.state.database = database
    app.state.auth_handler = AuthHandler(config.auth, database, verifier, http_client=client)


async def _reap_sessions(handler: AuthHandler, interval_seconds: int) -> None:
    """Periodically delete sessions older than the configured TTL."""

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await handler.purge_expired_sessions()
        except Exception:  # noqa: BLE001 - keep reaping after a failed pass
            LOGGER.exception("Session reaper pass failed")


def create_app(
    config: Optional[AppConfig] = None,
    *,
    graph_store: Optional[GraphStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Optional pre-loaded configuration. If omitted, the default
            configuration defined in config.yaml is used.
        graph_store: Optional graph store. When omitted the application
            connects to Neo4j on startup; if that fails, graph-dependent
            routes answer ``503``.
        http_client: Optional client used for identity provider calls.

    Returns:
        FastAPI: Configured FastAPI application.
    """

    resolved_config = config or load_config()
    app = FastAPI(title="Topic Reference API", version=resolved_config.service.version)
    app.state.app_config = resolved_config
    app.state.auth_config = resolved_config.auth
    app.state.graph_store = None
    app.state.database = None
    app.state.auth_handler = None
    app.state.session_reaper = None
    if graph_store is not None:
        _bind_graph_store(app, resolved_config, graph_store, http_client)

    if _bypass_requested() or not resolved_config.auth.enabled:
        LOGGER.warning("Authentication bypass enabled; session guards are disabled")

        async def _dev_session() -> str:
            return "dev-session"

        app.dependency_overrides[require_session] = _dev_session
        app.dependency_overrides[require_login_redirect] = _dev_session

    allowed_origins = resolved_config.api.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.graph_store is None:
            store = await create_graph_store(resolved_config)
            if store is None:
                return
            _bind_graph_store(app, resolved_config, store, http_client)
        if resolved_config.graph.apply_schema_on_startup:
            try:
                await ensure_schema(app.state.graph_store)
            except StoreError:
                LOGGER.exception("Failed to apply graph schema")
        if resolved_config.auth.session_ttl is not None:
            app.state.session_reaper = asyncio.create_task(
                _reap_sessions(
                    app.state.auth_handler,
                    resolved_config.auth.session_reap_interval_seconds,
                )
            )

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - network resource cleanup
        reaper = app.state.session_reaper
        if reaper is not None:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
        handler = app.state.auth_handler
        if handler is not None:
            await handler.aclose()
        store = app.state.graph_store
        if store is not None:
            await store.close()

    @app.get("/api/v1/", response_class=PlainTextResponse, tags=["system"])
    async def root() -> str:
        return "Nothing to see here!"

    @app.get(
        "/api/v1/healthz",
        response_model=HealthResponse,
        tags=["system"],
        summary="Service health check",
    )
    async def healthz() -> JSONResponse:
        """Report graph store and authentication health; 503 if either is down."""

        components: Dict[str, str] = {}
        database: Optional[Database] = app.state.database
        if database is None:
            components["graph"] = "unavailable"
        else:
            try:
                await database.health()
                components["graph"] = "ok"
            except StoreError:
                components["graph"] = "unavailable"
        if not resolved_config.auth.enabled:
            components["auth"] = "disabled"
        elif app.state.auth_handler is None:
            components["auth"] = "unavailable"
        else:
            components["auth"] = "ok"

        payload = HealthResponse(
            status=[ComponentStatus(component=name, status=state) for name, state in components.items()],
            version=resolved_config.service.version,
        )
        healthy = all(state in HEALTHY_STATES for state in components.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=payload.model_dump(),
        )

    app.include_router(auth_router)
    app.include_router(topics_router)
    app.include_router(refs_router)

    return app


__all__ = ["create_app"]
