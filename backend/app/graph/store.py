"""Graph store capability and its Neo4j implementation."""
from __future__ import annotations

import contextlib
import logging
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse, urlunparse

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncManagedTransaction
from neo4j.exceptions import ConstraintError, DriverError, Neo4jError
from typing_extensions import Protocol

from backend.app.config import AppConfig
from backend.app.errors import ConflictError, ServiceError, StoreError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class GraphTransaction(Protocol):
    """Unit of work handed to ``GraphStore.execute_write`` callbacks."""

    async def run(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        ...


class GraphStore(Protocol):
    """Minimal graph capability the data access layer is written against."""

    async def read(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        ...

    async def write(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        ...

    async def execute_write(self, work: Callable[[GraphTransaction], Awaitable[T]]) -> T:
        ...

    async def close(self) -> None:
        ...


class _Neo4jTransaction:
    """Adapt a managed Neo4j transaction to ``GraphTransaction``."""

    def __init__(self, tx: AsyncManagedTransaction) -> None:
        self._tx = tx

    async def run(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        result = await self._tx.run(query, params)
        return await result.data()


@contextlib.asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    """Map driver failures onto the service error taxonomy."""

    try:
        yield
    except ServiceError:
        raise
    except ConstraintError as exc:
        LOGGER.info("Graph constraint violated during %s", operation, extra={"operation": operation})
        raise ConflictError(f"Uniqueness constraint violated: {exc}") from exc
    except (Neo4jError, DriverError, OSError) as exc:
        LOGGER.error(
            "Graph store failure during %s",
            operation,
            extra={"operation": operation},
            exc_info=True,
        )
        raise StoreError(f"Graph store unavailable during {operation}") from exc


class Neo4jGraphStore:
    """``GraphStore`` backed by a shared async Neo4j driver."""

    def __init__(self, driver: AsyncDriver, database: Optional[str] = None) -> None:
        self._driver = driver
        self._database = database

    @staticmethod
    async def _collect(
        tx: AsyncManagedTransaction, query: str, params: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        result = await tx.run(query, params)
        return await result.data()

    async def read(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        async with _translate_errors("read"):
            async with self._driver.session(database=self._database) as session:
                return await session.execute_read(self._collect, query, params)

    async def write(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        async with _translate_errors("write"):
            async with self._driver.session(database=self._database) as session:
                return await session.execute_write(self._collect, query, params)

    async def execute_write(self, work: Callable[[GraphTransaction], Awaitable[T]]) -> T:
        """Run ``work`` inside one write transaction.

        Any exception raised by ``work`` aborts the transaction, so nothing
        it wrote is committed.
        """

        async def _unit(tx: AsyncManagedTransaction) -> T:
            return await work(_Neo4jTransaction(tx))

        async with _translate_errors("transaction"):
            async with self._driver.session(database=self._database) as session:
                return await session.execute_write(_unit)

    async def close(self) -> None:
        try:
            await self._driver.close()
        except (Neo4jError, DriverError, OSError):
            LOGGER.exception("Failed to close Neo4j driver")


def _fallback_to_direct_uri(uri: str, exc: Exception) -> Optional[str]:
    """Return a bolt URI when routing information is unavailable."""

    message = str(exc)
    if "Unable to retrieve routing information" not in message:
        return None
    parsed = urlparse(uri)
    scheme_map = {
        "neo4j": "bolt",
        "neo4j+s": "bolt+s",
        "neo4j+ssc": "bolt+ssc",
    }
    replacement = scheme_map.get(parsed.scheme)
    if replacement is None:
        return None
    return urlunparse(parsed._replace(scheme=replacement))


async def _open_driver(uri: str, user: str, password: str, timeout: float) -> AsyncDriver:
    """Instantiate an async driver and verify connectivity."""

    driver = AsyncGraphDatabase.driver(uri, auth=(user, password), connection_timeout=timeout)
    try:
        await driver.verify_connectivity()
    except BaseException:
        with contextlib.suppress(Exception):
            await driver.close()
        raise
    return driver


def resolve_connection(config: AppConfig) -> Optional[Tuple[str, str, str]]:
    """Return ``(uri, user, password)`` with environment overrides applied."""

    uri = os.getenv("NEO4J_URI") or config.graph.uri
    user = os.getenv("NEO4J_USER") or config.graph.username
    password = os.getenv("NEO4J_PASSWORD") or config.graph.password
    if not (uri and user and password):
        return None
    return uri, user, password


async def create_graph_store(config: AppConfig) -> Optional[Neo4jGraphStore]:
    """Connect to Neo4j using configured connection details.

    Returns ``None`` when credentials are missing or every connection attempt
    fails; graph-dependent routes then answer 503.
    """

    connection = resolve_connection(config)
    if connection is None:
        LOGGER.warning("Neo4j connection details missing; graph-dependent routes disabled")
        return None
    uri, user, password = connection
    timeout = config.graph.connection_timeout_seconds
    database = os.getenv("NEO4J_DATABASE") or config.graph.database

    try:
        driver = await _open_driver(uri, user, password, timeout)
    except (Neo4jError, DriverError, OSError) as exc:
        fallback_uri = _fallback_to_direct_uri(uri, exc)
        if fallback_uri is None:
            LOGGER.error("Failed to connect to Neo4j at %s", uri, exc_info=True)
            return None
        LOGGER.warning(
            "Routing Neo4j connection failed for %s (%s); retrying with %s",
            uri,
            exc,
            fallback_uri,
        )
        try:
            driver = await _open_driver(fallback_uri, user, password, timeout)
        except (Neo4jError, DriverError, OSError):
            LOGGER.exception("Failed to connect to Neo4j using fallback URI %s", fallback_uri)
            return None
    LOGGER.info("Connected to Neo4j", extra={"uri": uri, "database": database})
    return Neo4jGraphStore(driver, database=database)


__all__ = [
    "GraphStore",
    "GraphTransaction",
    "Neo4jGraphStore",
    "create_graph_store",
    "resolve_connection",
]
