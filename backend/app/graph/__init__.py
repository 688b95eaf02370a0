"""Graph persistence for topics, references and login sessions."""

from backend.app.graph.database import Database
from backend.app.graph.schema import ensure_schema
from backend.app.graph.store import GraphStore, GraphTransaction, Neo4jGraphStore, create_graph_store

__all__ = [
    "Database",
    "GraphStore",
    "GraphTransaction",
    "Neo4jGraphStore",
    "create_graph_store",
    "ensure_schema",
]
