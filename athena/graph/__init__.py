"""
Graph module: versioned property-graph store and pattern query engine.
"""

from .entity_store import EntityStore
from .pattern import Condition, EdgeClause, GraphPattern, NodeClause
from .query_engine import QueryEngine

__all__ = [
    'EntityStore',
    'QueryEngine',
    'GraphPattern',
    'NodeClause',
    'EdgeClause',
    'Condition',
]
