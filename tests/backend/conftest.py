"""Shared fixtures: an in-memory graph store interpreting the DAL's Cypher."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

import pytest

from backend.app.config import APIConfig, AppConfig, AuthConfig, GraphConfig, ServiceConfig
from backend.app.errors import ConflictError
from backend.app.graph.database import REFERENCE_LABELS, Database, _CREATE_REFERENCE_QUERIES
from backend.app.graph.schema import SCHEMA_STATEMENTS

T = TypeVar("T")

Rows = List[Dict[str, Any]]


@dataclass
class _GraphState:
    topics: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    references: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    ref_edges: List[Tuple[str, str]] = field(default_factory=list)
    subtopic_edges: Set[Tuple[str, str]] = field(default_factory=set)
    sessions: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def _without_nulls(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in properties.items() if value is not None}


class _InMemoryTransaction:
    """Transaction stub applying statements to the shared state."""

    def __init__(self, store: "InMemoryGraphStore") -> None:
        self._store = store

    async def run(self, query: str, **params: Any) -> Rows:
        return self._store.execute(query, params)


class InMemoryGraphStore:
    """``GraphStore`` replicating the data access layer's statements.

    Setting ``failure`` makes every call raise it, simulating an outage.
    ``execute_write`` restores the previous state when the work raises.
    """

    def __init__(self) -> None:
        self.state = _GraphState()
        self.queries: List[str] = []
        self.failure: Optional[Exception] = None
        self.closed = False
        label_for_query = {
            _CREATE_REFERENCE_QUERIES[kind]: label for kind, label in REFERENCE_LABELS.items()
        }
        self._label_for_query = label_for_query
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Rows]] = {
            Database._HEALTH_QUERY: lambda params: [{"ok": 1}],
            Database._LIST_TOPICS_QUERY: self._list_topics,
            Database._CREATE_TOPIC_QUERY: self._create_topic,
            Database._DELETE_TOPIC_QUERY: self._delete_topic,
            Database._MATCH_TOPIC_QUERY: self._match_topic,
            Database._LINK_REFERENCE_QUERY: self._link_reference,
            Database._LIST_REFERENCES_QUERY: self._list_references,
            Database._LIST_VERSE_REFERENCES_QUERY: self._list_verse_references,
            Database._CONTAINING_VERSES_QUERY: self._containing_verses,
            Database._OWNING_TOPICS_QUERY: self._owning_topics,
            Database._ADD_SUBTOPIC_QUERY: self._add_subtopic,
            Database._LIST_SUBTOPICS_QUERY: self._list_subtopics,
            Database._CREATE_SESSION_QUERY: self._create_session,
            Database._GET_SESSION_QUERY: self._get_session,
            Database._UPDATE_SESSION_QUERY: self._update_session,
            Database._DELETE_SESSION_QUERY: self._delete_session,
            Database._PURGE_SESSIONS_QUERY: self._purge_sessions,
        }
        for statement in SCHEMA_STATEMENTS:
            self._handlers[statement] = lambda params: []

    # GraphStore protocol

    async def read(self, query: str, **params: Any) -> Rows:
        return self.execute(query, params)

    async def write(self, query: str, **params: Any) -> Rows:
        return self.execute(query, params)

    async def execute_write(self, work: Callable[[_InMemoryTransaction], Awaitable[T]]) -> T:
        snapshot = copy.deepcopy(self.state)
        try:
            return await work(_InMemoryTransaction(self))
        except BaseException:
            self.state = snapshot
            raise

    async def close(self) -> None:
        self.closed = True

    # Interpretation

    def execute(self, query: str, params: Dict[str, Any]) -> Rows:
        self.queries.append(query)
        if self.failure is not None:
            raise self.failure
        if query in self._label_for_query:
            return self._create_reference(self._label_for_query[query], params)
        handler = self._handlers.get(query)
        if handler is None:  # pragma: no cover - defensive guard
            raise NotImplementedError(query)
        return handler(params)

    def _refs_of(self, topic: str) -> List[Dict[str, Any]]:
        owned = [ref_id for name, ref_id in self.state.ref_edges if name == topic]
        return [self.state.references[ref_id] for ref_id in owned]

    def _list_topics(self, params: Dict[str, Any]) -> Rows:
        names = sorted(self.state.topics)
        window = names[params["skip"] : params["skip"] + params["limit"]]
        return [{"name": name} for name in window]

    def _create_topic(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        if name in self.state.topics:
            raise ConflictError(f"Uniqueness constraint violated: Topic.name={name}")
        self.state.topics[name] = {"name": name, "created_at": params["created_at"]}
        return [{"name": name}]

    def _delete_topic(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        if name not in self.state.topics:
            return []
        owned = [ref_id for topic, ref_id in self.state.ref_edges if topic == name]
        for ref_id in owned:
            self.state.references.pop(ref_id, None)
            self.state.labels.pop(ref_id, None)
        self.state.ref_edges = [
            (topic, ref_id) for topic, ref_id in self.state.ref_edges if ref_id not in owned
        ]
        self.state.subtopic_edges = {
            edge for edge in self.state.subtopic_edges if name not in edge
        }
        del self.state.topics[name]
        return [{"references_deleted": len(owned)}]

    def _create_reference(self, label: str, params: Dict[str, Any]) -> Rows:
        properties = _without_nulls(dict(params["properties"]))
        ref_id = properties["ref_id"]
        if ref_id in self.state.references:
            raise ConflictError(f"Uniqueness constraint violated: Reference.ref_id={ref_id}")
        self.state.references[ref_id] = properties
        self.state.labels[ref_id] = label
        return [{"ref_id": ref_id}]

    def _match_topic(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        return [{"name": name}] if name in self.state.topics else []

    def _link_reference(self, params: Dict[str, Any]) -> Rows:
        name, ref_id = params["name"], params["ref_id"]
        if name not in self.state.topics or ref_id not in self.state.references:
            return []
        self.state.ref_edges.append((name, ref_id))
        return [{"ref_id": ref_id}]

    def _list_references(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        if name not in self.state.topics:
            return []
        refs = sorted(self._refs_of(name), key=lambda props: props["created_at"])
        return [{"name": name, "references": [dict(props) for props in refs]}]

    def _list_verse_references(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        if name not in self.state.topics:
            return []
        verses = [
            props for props in self._refs_of(name) if self.state.labels[props["ref_id"]] == "QRef"
        ]
        verses.sort(key=lambda props: (props["chapter"], props["init_verse"], props["final_verse"]))
        window = verses[params["skip"] : params["skip"] + params["limit"]]
        return [{"name": name, "references": [dict(props) for props in window]}]

    def _containing_verses(self, params: Dict[str, Any]) -> Rows:
        matches = [
            props
            for ref_id, props in self.state.references.items()
            if self.state.labels[ref_id] == "QRef"
            and props["chapter"] == params["chapter"]
            and props["init_verse"] <= params["init_verse"]
            and props["final_verse"] >= params["final_verse"]
        ]
        matches.sort(key=lambda props: (props["init_verse"], props["final_verse"], props["ref_id"]))
        return [{"ref_id": props["ref_id"]} for props in matches]

    def _owning_topics(self, params: Dict[str, Any]) -> Rows:
        owners = sorted(topic for topic, ref_id in self.state.ref_edges if ref_id == params["ref_id"])
        return [{"name": name} for name in owners]

    def _add_subtopic(self, params: Dict[str, Any]) -> Rows:
        parent, child = params["parent"], params["child"]
        if parent not in self.state.topics or child not in self.state.topics:
            return []
        self.state.subtopic_edges.add((parent, child))
        return [{"name": child}]

    def _list_subtopics(self, params: Dict[str, Any]) -> Rows:
        name = params["name"]
        if name not in self.state.topics:
            return []
        children = sorted(child for parent, child in self.state.subtopic_edges if parent == name)
        return [{"name": name, "names": children}]

    def _create_session(self, params: Dict[str, Any]) -> Rows:
        key = params["key"]
        if key in self.state.sessions:
            raise ConflictError(f"Uniqueness constraint violated: Session.key={key}")
        self.state.sessions[key] = _without_nulls(dict(params))
        return [{"session": dict(self.state.sessions[key])}]

    def _get_session(self, params: Dict[str, Any]) -> Rows:
        session = self.state.sessions.get(params["key"])
        return [{"session": dict(session)}] if session is not None else []

    def _update_session(self, params: Dict[str, Any]) -> Rows:
        session = self.state.sessions.get(params["key"])
        if session is None:
            return []
        if params["token"] is None:
            session.pop("token", None)
        else:
            session["token"] = params["token"]
        return [{"session": dict(session)}]

    def _delete_session(self, params: Dict[str, Any]) -> Rows:
        key = params["key"]
        if self.state.sessions.pop(key, None) is None:
            return []
        return [{"key": key}]

    def _purge_sessions(self, params: Dict[str, Any]) -> Rows:
        expired = [
            key
            for key, session in self.state.sessions.items()
            if session["created_at"] < params["cutoff"]
        ]
        for key in expired:
            del self.state.sessions[key]
        return [{"purged": len(expired)}]


def build_config(**auth_overrides: Any) -> AppConfig:
    """Return a self-contained configuration for tests."""

    auth: Dict[str, Any] = {
        "client_id": "client-123",
        "client_secret": "client-secret",
        "tenant": "common",
        "public_base_url": "http://testserver",
        "cookie_secure": False,
    }
    auth.update(auth_overrides)
    return AppConfig(
        service=ServiceConfig(name="ir-topic-refs", version="test"),
        graph=GraphConfig(apply_schema_on_startup=False),
        api=APIConfig(),
        auth=AuthConfig(**auth),
    )


@pytest.fixture(name="graph_store")
def fixture_graph_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture(name="database")
def fixture_database(graph_store: InMemoryGraphStore) -> Database:
    return Database(graph_store)


@pytest.fixture(name="make_config")
def fixture_make_config() -> Callable[..., AppConfig]:
    return build_config
