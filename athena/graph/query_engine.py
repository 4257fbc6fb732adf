from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union
import time

from ..errors import ValidationError
from ..types import Edge, GraphSnapshot, QueryResult
from ..utils.logger import app_logger
from .entity_store import EntityStore, detach_entity
from .pattern import EdgeClause, GraphPattern


class QueryEngine:
    """Evaluates graph patterns against a consistent store snapshot.

    Evaluation:
    - each node clause gets the snapshot nodes matching its label and filters
    - each edge clause gets the edges matching its label and filters whose
      endpoints sit in the candidate sets of its from/to node clauses
    - node candidates are pruned until a fixed point: a candidate of a clause
      used by edge clauses survives only if every one of those clauses still
      has an edge touching it at the matching end
    - the result is every surviving node and edge, once each, in store
      creation order; if any clause ends up empty the result is empty
    """

    def __init__(self, store: EntityStore, max_limit: Optional[int] = None):
        self.logger = app_logger.bind(component="query_engine")
        self.store = store
        self.max_limit = max_limit

    def execute(self, pattern: Union[GraphPattern, Mapping[str, Any], None]) -> QueryResult:
        """Run a pattern against the current graph."""
        if not isinstance(pattern, GraphPattern):
            pattern = GraphPattern.from_dict(pattern)
        if self.max_limit is not None and pattern.limit is not None and pattern.limit > self.max_limit:
            raise ValidationError(
                f"Pattern limit may not exceed {self.max_limit}",
                details={"limit": pattern.limit, "max_limit": self.max_limit},
            )

        start_time = time.time()
        snapshot = self.store.snapshot()
        result = self.evaluate(pattern, snapshot)

        nodes, edges = result.nodes, result.edges
        if pattern.limit is not None:
            nodes, edges = nodes[:pattern.limit], edges[:pattern.limit]
        result = QueryResult(
            nodes=[detach_entity(node) for node in nodes],
            edges=[detach_entity(edge) for edge in edges],
        )

        query_time_ms = (time.time() - start_time) * 1000
        self.logger.debug(
            f"Pattern with {len(pattern.nodes)} node / {len(pattern.edges)} edge clauses matched "
            f"{len(result.nodes)} nodes, {len(result.edges)} edges "
            f"at revision {snapshot.revision} in {query_time_ms:.2f}ms"
        )
        return result

    @staticmethod
    def evaluate(pattern: GraphPattern, snapshot: GraphSnapshot) -> QueryResult:
        """Match a pattern against a snapshot, ignoring the pattern limit."""
        live_ids = {node.id for node in snapshot.nodes}
        # Edges whose endpoints are not in the snapshot are never returned dangling
        live_edges = [edge for edge in snapshot.edges if edge.from_id in live_ids and edge.to_id in live_ids]

        if pattern.is_empty:
            return QueryResult(nodes=list(snapshot.nodes), edges=live_edges)

        candidates: Dict[str, Set[str]] = {
            clause.name: {node.id for node in snapshot.nodes if clause.matches(node)}
            for clause in pattern.nodes
        }
        edge_matches: Dict[str, List[Edge]] = {
            clause.name: [edge for edge in live_edges if clause.matches(edge)]
            for clause in pattern.edges
        }

        # node clause name -> (edge clause, end) pairs it takes part in
        participation: Dict[str, List[Tuple[EdgeClause, str]]] = {}
        for clause in pattern.edges:
            participation.setdefault(clause.from_clause, []).append((clause, "from"))
            participation.setdefault(clause.to_clause, []).append((clause, "to"))

        while True:
            edge_matches = {
                clause.name: [
                    edge for edge in edge_matches[clause.name]
                    if edge.from_id in candidates[clause.from_clause]
                    and edge.to_id in candidates[clause.to_clause]
                ]
                for clause in pattern.edges
            }

            changed = False
            for name, uses in participation.items():
                survivors = set(candidates[name])
                for clause, end in uses:
                    survivors &= {
                        edge.from_id if end == "from" else edge.to_id
                        for edge in edge_matches[clause.name]
                    }
                if survivors != candidates[name]:
                    candidates[name] = survivors
                    changed = True

            if not changed:
                break

        if any(not ids for ids in candidates.values()) or any(not edges for edges in edge_matches.values()):
            return QueryResult()

        node_ids = set().union(*candidates.values())
        edge_ids = {edge.id for edges in edge_matches.values() for edge in edges}

        return QueryResult(
            nodes=[node for node in snapshot.nodes if node.id in node_ids],
            edges=[edge for edge in snapshot.edges if edge.id in edge_ids],
        )
