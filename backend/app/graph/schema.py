"""Idempotent constraints and indexes for the topic graph."""
from __future__ import annotations

import logging
from typing import Tuple

from backend.app.graph.store import GraphStore

LOGGER = logging.getLogger(__name__)

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    "CREATE CONSTRAINT topic_name_unique IF NOT EXISTS "
    "FOR (topic:Topic) REQUIRE topic.name IS UNIQUE",
    "CREATE CONSTRAINT session_key_unique IF NOT EXISTS "
    "FOR (session:Session) REQUIRE session.key IS UNIQUE",
    "CREATE CONSTRAINT reference_id_unique IF NOT EXISTS "
    "FOR (ref:Reference) REQUIRE ref.ref_id IS UNIQUE",
    "CREATE INDEX qref_chapter IF NOT EXISTS FOR (ref:QRef) ON (ref.chapter)",
)


async def ensure_schema(store: GraphStore) -> int:
    """Apply every schema statement; safe to call on each startup.

    Returns:
        int: Number of statements executed.
    """

    for statement in SCHEMA_STATEMENTS:
        await store.write(statement)
    LOGGER.info("Graph schema ensured", extra={"statements": len(SCHEMA_STATEMENTS)})
    return len(SCHEMA_STATEMENTS)


__all__ = ["SCHEMA_STATEMENTS", "ensure_schema"]
