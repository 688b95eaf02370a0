"""Data access layer translating topic and session operations into Cypher."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from backend.app.auth.schemas import SessionRecord, Token
from backend.app.contracts import (
    Reference,
    ReferenceKind,
    Topic,
    VerseRange,
    decode_reference,
    encode_reference,
    reference_kind,
    validate_pagination,
    validate_reference,
    validate_verse_range,
)
from backend.app.errors import NotFoundError, ValidationError
from backend.app.graph.store import GraphStore, GraphTransaction

LOGGER = logging.getLogger(__name__)

REFERENCE_LABELS: Dict[ReferenceKind, str] = {
    ReferenceKind.VERSE: "QRef",
    ReferenceKind.HADITH: "HRef",
    ReferenceKind.BOOK: "BRef",
}

# Labels cannot be parameterised in Cypher, so each kind gets its own statement.
_CREATE_REFERENCE_QUERIES: Dict[ReferenceKind, str] = {
    kind: f"""
    CREATE (ref:Reference:{label})
    SET ref = $properties
    RETURN ref.ref_id AS ref_id
    """
    for kind, label in REFERENCE_LABELS.items()
}


def _timestamp(moment: Optional[datetime] = None) -> str:
    value = moment or datetime.now(timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _topic_name(name: str) -> str:
    try:
        return Topic(name=name).name
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid topic name: {name!r}") from exc


def _dedupe_consecutive(names: List[str]) -> List[str]:
    """Drop names equal to their immediate predecessor; others are kept."""

    deduped: List[str] = []
    for name in names:
        if deduped and deduped[-1] == name:
            continue
        deduped.append(name)
    return deduped


class Database:
    """Topic, reference and session persistence over a ``GraphStore``."""

    _HEALTH_QUERY = "RETURN 1 AS ok"

    _LIST_TOPICS_QUERY = """
    MATCH (topic:Topic)
    RETURN topic.name AS name
    ORDER BY topic.name
    SKIP $skip LIMIT $limit
    """

    _CREATE_TOPIC_QUERY = """
    CREATE (topic:Topic {name: $name, created_at: $created_at})
    RETURN topic.name AS name
    """

    _DELETE_TOPIC_QUERY = """
    MATCH (topic:Topic {name: $name})
    OPTIONAL MATCH (topic)-[:REF]->(ref:Reference)
    WITH topic, collect(ref) AS refs
    FOREACH (owned IN refs | DETACH DELETE owned)
    DETACH DELETE topic
    RETURN size(refs) AS references_deleted
    """

    _MATCH_TOPIC_QUERY = """
    MATCH (topic:Topic {name: $name})
    RETURN topic.name AS name
    """

    _LINK_REFERENCE_QUERY = """
    MATCH (topic:Topic {name: $name})
    MATCH (ref:Reference {ref_id: $ref_id})
    CREATE (topic)-[:REF]->(ref)
    RETURN ref.ref_id AS ref_id
    """

    _LIST_REFERENCES_QUERY = """
    MATCH (topic:Topic {name: $name})
    OPTIONAL MATCH (topic)-[:REF]->(ref:Reference)
    WITH topic, ref
    ORDER BY ref.created_at
    RETURN topic.name AS name, collect(properties(ref)) AS references
    """

    _LIST_VERSE_REFERENCES_QUERY = """
    MATCH (topic:Topic {name: $name})
    OPTIONAL MATCH (topic)-[:REF]->(ref:QRef)
    WITH topic, ref
    ORDER BY ref.chapter, ref.init_verse, ref.final_verse
    WITH topic, collect(properties(ref)) AS refs
    RETURN topic.name AS name, refs[$skip..$skip + $limit] AS references
    """

    _CONTAINING_VERSES_QUERY = """
    MATCH (ref:QRef {chapter: $chapter})
    WHERE ref.init_verse <= $init_verse AND ref.final_verse >= $final_verse
    RETURN ref.ref_id AS ref_id
    ORDER BY ref.init_verse, ref.final_verse, ref.ref_id
    """

    _OWNING_TOPICS_QUERY = """
    MATCH (topic:Topic)-[:REF]->(ref:Reference {ref_id: $ref_id})
    RETURN topic.name AS name
    ORDER BY topic.name
    """

    _ADD_SUBTOPIC_QUERY = """
    MATCH (parent:Topic {name: $parent})
    MATCH (child:Topic {name: $child})
    MERGE (parent)-[:SUBTOPIC]->(child)
    RETURN child.name AS name
    """

    _LIST_SUBTOPICS_QUERY = """
    MATCH (topic:Topic {name: $name})
    OPTIONAL MATCH (topic)-[:SUBTOPIC]->(child:Topic)
    WITH topic, child
    ORDER BY child.name
    RETURN topic.name AS name, collect(child.name) AS names
    """

    _CREATE_SESSION_QUERY = """
    CREATE (session:Session {
        key: $key,
        verifier: $verifier,
        nonce: $nonce,
        created_at: $created_at,
        token: $token
    })
    RETURN properties(session) AS session
    """

    _GET_SESSION_QUERY = """
    MATCH (session:Session {key: $key})
    RETURN properties(session) AS session
    """

    _UPDATE_SESSION_QUERY = """
    MATCH (session:Session {key: $key})
    SET session.token = $token
    RETURN properties(session) AS session
    """

    _DELETE_SESSION_QUERY = """
    MATCH (session:Session {key: $key})
    WITH session, session.key AS key
    DELETE session
    RETURN key
    """

    _PURGE_SESSIONS_QUERY = """
    MATCH (session:Session)
    WHERE session.created_at < $cutoff
    WITH collect(session) AS expired
    FOREACH (stale IN expired | DELETE stale)
    RETURN size(expired) AS purged
    """

    def __init__(self, store: GraphStore) -> None:
        self._store = store

    @property
    def store(self) -> GraphStore:
        return self._store

    async def health(self) -> bool:
        """Round-trip a trivial query; ``StoreError`` when unreachable."""

        await self._store.read(self._HEALTH_QUERY)
        return True

    # Topics

    async def list_topics(self, page: int, size: int) -> List[str]:
        """Return one page of topic names ordered by name.

        Raises:
            ValidationError: If page or size is not a positive integer.
        """

        pagination = validate_pagination(page, size)
        rows = await self._store.read(
            self._LIST_TOPICS_QUERY, skip=pagination.offset, limit=pagination.size
        )
        return [row["name"] for row in rows]

    async def add_topic(self, name: str) -> str:
        """Create a topic; ``ConflictError`` when the name is taken."""

        topic = _topic_name(name)
        await self._store.write(self._CREATE_TOPIC_QUERY, name=topic, created_at=_timestamp())
        LOGGER.info("Topic created", extra={"topic": topic})
        return topic

    async def delete_topic(self, name: str) -> int:
        """Delete a topic together with the references it owns.

        Sub-topic edges are detached; the child topics themselves survive.

        Args:
            name: Topic to delete.

        Returns:
            int: Number of reference nodes removed with the topic.

        Raises:
            NotFoundError: If no topic has that name.
        """

        topic = _topic_name(name)
        rows = await self._store.write(self._DELETE_TOPIC_QUERY, name=topic)
        if not rows:
            raise NotFoundError(f"Topic '{topic}' not found")
        removed = int(rows[0]["references_deleted"])
        LOGGER.info("Topic deleted", extra={"topic": topic, "references_deleted": removed})
        return removed

    async def add_subtopic(self, parent: str, child: str) -> None:
        parent_name = _topic_name(parent)
        child_name = _topic_name(child)
        if parent_name == child_name:
            raise ValidationError("A topic cannot be its own sub-topic")
        rows = await self._store.write(
            self._ADD_SUBTOPIC_QUERY, parent=parent_name, child=child_name
        )
        if not rows:
            raise NotFoundError(f"Topic '{parent_name}' or '{child_name}' not found")

    async def list_subtopics(self, name: str) -> List[str]:
        topic = _topic_name(name)
        rows = await self._store.read(self._LIST_SUBTOPICS_QUERY, name=topic)
        if not rows:
            raise NotFoundError(f"Topic '{topic}' not found")
        return list(rows[0]["names"])

    # References

    async def add_reference_to_topic(self, topic_name: str, reference: Reference) -> str:
        """Attach a new reference node to an existing topic atomically.

        The node, the topic lookup and the ``REF`` edge share one write
        transaction, so a missing topic leaves no orphan reference behind.

        Args:
            topic_name: Owning topic.
            reference: Reference variant to persist.

        Returns:
            str: Identifier of the created reference node.

        Raises:
            ValidationError: If the reference violates its domain rules.
            NotFoundError: If the topic does not exist.
        """

        topic = _topic_name(topic_name)
        validate_reference(reference)
        kind = reference_kind(reference)
        ref_id = uuid4().hex
        properties = encode_reference(reference)
        properties.update({"ref_id": ref_id, "created_at": _timestamp()})
        create_query = _CREATE_REFERENCE_QUERIES[kind]

        async def _attach(tx: GraphTransaction) -> str:
            await tx.run(create_query, properties=properties)
            if not await tx.run(self._MATCH_TOPIC_QUERY, name=topic):
                raise NotFoundError(f"Topic '{topic}' not found")
            await tx.run(self._LINK_REFERENCE_QUERY, name=topic, ref_id=ref_id)
            return ref_id

        created = await self._store.execute_write(_attach)
        LOGGER.info(
            "Reference attached",
            extra={"topic": topic, "kind": kind.value, "ref_id": created},
        )
        return created

    async def list_references(self, topic_name: str) -> List[Reference]:
        """Return every reference attached to the topic in creation order."""

        topic = _topic_name(topic_name)
        rows = await self._store.read(self._LIST_REFERENCES_QUERY, name=topic)
        if not rows:
            raise NotFoundError(f"Topic '{topic}' not found")
        return [decode_reference(properties) for properties in rows[0]["references"]]

    async def list_verse_references(self, topic_name: str, page: int, size: int) -> List[VerseRange]:
        topic = _topic_name(topic_name)
        pagination = validate_pagination(page, size)
        rows = await self._store.read(
            self._LIST_VERSE_REFERENCES_QUERY,
            name=topic,
            skip=pagination.offset,
            limit=pagination.size,
        )
        if not rows:
            raise NotFoundError(f"Topic '{topic}' not found")
        references = [decode_reference(properties) for properties in rows[0]["references"]]
        return [ref for ref in references if isinstance(ref, VerseRange)]

    async def find_topics_by_verse_overlap(
        self, verse_range: VerseRange, page: int, size: int
    ) -> List[str]:
        """Return names of topics owning a verse range that contains ``verse_range``.

        Matching verse nodes are resolved to their owning topics concurrently;
        the flattened names are paginated and then only *consecutive* repeats
        are collapsed, so a name may still appear more than once per page.
        """

        validate_verse_range(verse_range)
        pagination = validate_pagination(page, size)
        matches = await self._store.read(
            self._CONTAINING_VERSES_QUERY,
            chapter=verse_range.chapter,
            init_verse=verse_range.init_verse,
            final_verse=verse_range.final_verse,
        )
        owners = await asyncio.gather(
            *(self._store.read(self._OWNING_TOPICS_QUERY, ref_id=row["ref_id"]) for row in matches)
        )
        names = [row["name"] for rows in owners for row in rows]
        window = names[pagination.offset : pagination.offset + pagination.size]
        return _dedupe_consecutive(window)

    # Sessions

    @staticmethod
    def _encode_token(token: Optional[Token]) -> Optional[str]:
        if token is None:
            return None
        return token.model_dump_json()

    @staticmethod
    def _decode_session(properties: Mapping[str, Any]) -> SessionRecord:
        raw_token = properties.get("token")
        token = Token.model_validate(json.loads(raw_token)) if raw_token else None
        return SessionRecord(
            key=properties["key"],
            verifier=properties.get("verifier"),
            nonce=properties.get("nonce"),
            created_at=datetime.fromisoformat(properties["created_at"]),
            token=token,
        )

    async def create_session(self, key: str, record: SessionRecord) -> SessionRecord:
        """Persist a new session; ``ConflictError`` when the key already exists."""

        rows = await self._store.write(
            self._CREATE_SESSION_QUERY,
            key=key,
            verifier=record.verifier,
            nonce=record.nonce,
            created_at=_timestamp(record.created_at),
            token=self._encode_token(record.token),
        )
        return self._decode_session(rows[0]["session"])

    async def get_session(self, key: str) -> SessionRecord:
        rows = await self._store.read(self._GET_SESSION_QUERY, key=key)
        if not rows:
            raise NotFoundError("Session not found")
        return self._decode_session(rows[0]["session"])

    async def update_session(self, key: str, token: Token) -> SessionRecord:
        """Overwrite the session token and return the updated record."""

        rows = await self._store.write(
            self._UPDATE_SESSION_QUERY, key=key, token=self._encode_token(token)
        )
        if not rows:
            raise NotFoundError("Session not found")
        return self._decode_session(rows[0]["session"])

    async def delete_session(self, key: str) -> None:
        rows = await self._store.write(self._DELETE_SESSION_QUERY, key=key)
        if not rows:
            raise NotFoundError("Session not found")

    async def purge_sessions(self, created_before: datetime) -> int:
        """Delete sessions created before the cutoff and return how many went."""

        rows = await self._store.write(self._PURGE_SESSIONS_QUERY, cutoff=_timestamp(created_before))
        purged = int(rows[0]["purged"]) if rows else 0
        if purged:
            LOGGER.info("Expired sessions purged", extra={"purged": purged})
        return purged


__all__ = ["Database", "REFERENCE_LABELS"]
