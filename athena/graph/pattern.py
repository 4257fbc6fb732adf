"""Declarative graph patterns.

A pattern is a set of node clauses and edge clauses, composed conjunctively.
Edge clauses point at node clauses by name, by inline clause, or leave an
end open (any node). Patterns are parsed from their JSON form with
``GraphPattern.from_dict``, which raises ``ValidationError`` on any
malformed input, before they reach the query engine.

The filter form used by older clients is also accepted::

    {"node_filters": [{"property": "status", "operator": "Equals", "value": "done"}],
     "edge_filters": [{"from": "<node id>", "to": "<node id>", "label": "relates"}],
     "limit": 100}

All node filters apply to one node clause; a filter on ``label`` tests the
node label. Each edge filter becomes an edge clause whose ``from``/``to``
pin node ids.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import ValidationError
from ..types import Edge, Node, Properties, PropertyValue
from .values import STRING, kind_of, validate_properties, validate_value, values_equal, values_ordered


OPERATORS = ("eq", "ne", "contains", "starts_with", "ends_with", "gt", "gte", "lt", "lte")

# Operator names of the filter form
OPERATOR_ALIASES = {
    "equals": "eq",
    "notequals": "ne",
    "contains": "contains",
    "startswith": "starts_with",
    "endswith": "ends_with",
    "greaterthan": "gt",
    "lessthan": "lt",
}

_PATTERN_KEYS = {"nodes", "edges", "node_filters", "edge_filters", "limit"}
_NODE_CLAUSE_KEYS = {"name", "label", "properties", "where"}
_EDGE_CLAUSE_KEYS = {"name", "label", "properties", "where", "from", "to"}
_CONDITION_KEYS = {"property", "op", "operator", "value"}
_EDGE_FILTER_KEYS = {"from", "to", "label"}


@dataclass(frozen=True)
class Condition:
    """A comparison against one property."""
    property: str
    op: str
    value: PropertyValue

    def matches(self, properties: Properties) -> bool:
        """Check the condition. Missing properties never match."""
        if self.property not in properties:
            return False
        actual = properties[self.property]

        if self.op == "eq":
            return values_equal(actual, self.value)
        if self.op == "ne":
            return not values_equal(actual, self.value)
        if self.op == "contains":
            if isinstance(actual, list):
                return any(values_equal(item, self.value) for item in actual)
            return kind_of(actual) == STRING and kind_of(self.value) == STRING and self.value in actual
        if self.op in ("starts_with", "ends_with"):
            if kind_of(actual) != STRING or kind_of(self.value) != STRING:
                return False
            return actual.startswith(self.value) if self.op == "starts_with" else actual.endswith(self.value)

        order = values_ordered(actual, self.value)
        if order is None:
            return False
        return {
            "gt": order > 0,
            "gte": order >= 0,
            "lt": order < 0,
            "lte": order <= 0,
        }[self.op]


def _match_properties(properties: Properties, equals: Properties, where: Tuple[Condition, ...]) -> bool:
    for key, expected in equals.items():
        if key not in properties or not values_equal(properties[key], expected):
            return False
    return all(condition.matches(properties) for condition in where)


@dataclass(frozen=True)
class NodeClause:
    """Selects nodes by label, exact property values and conditions."""
    name: str
    label: Optional[str] = None
    properties: Properties = field(default_factory=dict)
    where: Tuple[Condition, ...] = ()
    node_id: Optional[str] = None
    # Conditions on the label itself, property name "label"
    label_where: Tuple[Condition, ...] = ()

    def matches(self, node: Node) -> bool:
        if self.node_id is not None and node.id != self.node_id:
            return False
        if self.label is not None and node.label != self.label:
            return False
        if not all(condition.matches({"label": node.label}) for condition in self.label_where):
            return False
        return _match_properties(node.properties, self.properties, self.where)


@dataclass(frozen=True)
class EdgeClause:
    """Selects edges by label and filters, between two node clauses."""
    name: str
    from_clause: str
    to_clause: str
    label: Optional[str] = None
    properties: Properties = field(default_factory=dict)
    where: Tuple[Condition, ...] = ()

    def matches(self, edge: Edge) -> bool:
        """Check the edge's own label and properties; endpoints are checked by the engine."""
        if self.label is not None and edge.label != self.label:
            return False
        return _match_properties(edge.properties, self.properties, self.where)


@dataclass(frozen=True)
class GraphPattern:
    """A conjunctive set of node and edge clauses."""
    nodes: Tuple[NodeClause, ...] = ()
    edges: Tuple[EdgeClause, ...] = ()
    limit: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.edges

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "GraphPattern":
        """Parse and validate the JSON form of a pattern."""
        return _PatternParser().parse(data)


def _expect_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{what} must be a JSON object")
    return value


def _reject_unknown_keys(data: Mapping[str, Any], allowed: set, what: str):
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValidationError(f"Unknown keys in {what}: {', '.join(unknown)}", details={"keys": unknown})


def _parse_label(value: Any, what: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} label filter must be a non-empty string")
    return value


def _parse_operator(raw: Any) -> str:
    if raw is None:
        return "eq"
    if not isinstance(raw, str):
        raise ValidationError(f"Unsupported operator: {raw!r}")
    if raw in OPERATORS:
        return raw
    alias = OPERATOR_ALIASES.get(raw.replace("_", "").lower())
    if alias is None:
        raise ValidationError(f"Unsupported operator: {raw}", details={"operators": list(OPERATORS)})
    return alias


def _parse_conditions(raw: Any, what: str) -> Tuple[Condition, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(f"{what} 'where' must be a list of conditions")

    conditions = []
    for item in raw:
        item = _expect_mapping(item, f"{what} condition")
        _reject_unknown_keys(item, _CONDITION_KEYS, f"{what} condition")
        prop = item.get("property")
        if not isinstance(prop, str) or not prop:
            raise ValidationError(f"{what} condition needs a property name")
        if "value" not in item:
            raise ValidationError(f"{what} condition on '{prop}' needs a value")
        conditions.append(
            Condition(
                property=prop,
                op=_parse_operator(item.get("op", item.get("operator"))),
                value=validate_value(item["value"], prop),
            )
        )
    return tuple(conditions)


class _PatternParser:
    """Builds a GraphPattern, assigning names to anonymous clauses."""

    def __init__(self):
        self.node_clauses: Dict[str, NodeClause] = {}

    def parse(self, data: Optional[Mapping[str, Any]]) -> GraphPattern:
        if data is None:
            return GraphPattern()
        data = _expect_mapping(data, "Pattern")
        _reject_unknown_keys(data, _PATTERN_KEYS, "pattern")

        if "node_filters" in data or "edge_filters" in data:
            if "nodes" in data or "edges" in data:
                raise ValidationError("Pattern cannot mix 'nodes'/'edges' with 'node_filters'/'edge_filters'")
            return self._parse_filters(data)

        raw_nodes = data.get("nodes") or []
        raw_edges = data.get("edges") or []

        if isinstance(raw_nodes, Mapping):
            raw_nodes = [
                dict(_expect_mapping(clause, "Node clause"), name=name)
                for name, clause in raw_nodes.items()
            ]
        if not isinstance(raw_nodes, list):
            raise ValidationError("Pattern 'nodes' must be a list of node clauses")
        if not isinstance(raw_edges, list):
            raise ValidationError("Pattern 'edges' must be a list of edge clauses")

        for index, raw in enumerate(raw_nodes):
            self._add_node_clause(raw, f"_node{index}")

        # Endpoint names are resolved once every inline clause is registered
        pending: List[Tuple[Dict[str, Any], str, str]] = []
        for index, raw in enumerate(raw_edges):
            pending.append(self._parse_edge_clause(raw, index))

        edges = []
        for fields, from_ref, to_ref in pending:
            for ref in (from_ref, to_ref):
                if ref not in self.node_clauses:
                    raise ValidationError(
                        f"Edge clause references unknown node clause '{ref}'",
                        details={"clause": ref},
                    )
            edges.append(EdgeClause(from_clause=from_ref, to_clause=to_ref, **fields))

        names = [edge.name for edge in edges]
        if len(set(names)) != len(names):
            raise ValidationError("Edge clause names must be unique")

        return GraphPattern(
            nodes=tuple(self.node_clauses.values()),
            edges=tuple(edges),
            limit=self._parse_limit(data.get("limit")),
        )

    def _parse_filters(self, data: Mapping[str, Any]) -> GraphPattern:
        raw_filters = data.get("node_filters") or []
        raw_edges = data.get("edge_filters") or []
        if not isinstance(raw_edges, list):
            raise ValidationError("Pattern 'edge_filters' must be a list of edge filters")

        conditions = _parse_conditions(raw_filters, "Node filter")
        if conditions:
            self.node_clauses["_node0"] = NodeClause(
                name="_node0",
                where=tuple(c for c in conditions if c.property != "label"),
                label_where=tuple(c for c in conditions if c.property == "label"),
            )

        edges = []
        for index, raw in enumerate(raw_edges):
            raw = _expect_mapping(raw, "Edge filter")
            _reject_unknown_keys(raw, _EDGE_FILTER_KEYS, "edge filter")
            edges.append(
                EdgeClause(
                    name=f"_edge{index}",
                    from_clause=self._pin_endpoint(raw.get("from"), f"_edge{index}_from"),
                    to_clause=self._pin_endpoint(raw.get("to"), f"_edge{index}_to"),
                    label=_parse_label(raw.get("label"), "Edge filter"),
                )
            )

        return GraphPattern(
            nodes=tuple(self.node_clauses.values()),
            edges=tuple(edges),
            limit=self._parse_limit(data.get("limit")),
        )

    def _pin_endpoint(self, node_id: Any, name: str) -> str:
        if node_id is not None and (not isinstance(node_id, str) or not node_id):
            raise ValidationError("Edge filter 'from'/'to' must be node ids")
        self.node_clauses[name] = NodeClause(name=name, node_id=node_id)
        return name

    def _add_node_clause(self, raw: Any, default_name: str) -> str:
        raw = _expect_mapping(raw, "Node clause")
        _reject_unknown_keys(raw, _NODE_CLAUSE_KEYS, "node clause")

        name = raw.get("name") or default_name
        if not isinstance(name, str):
            raise ValidationError("Node clause name must be a string")
        if name in self.node_clauses:
            raise ValidationError(f"Duplicate node clause name '{name}'", details={"clause": name})

        self.node_clauses[name] = NodeClause(
            name=name,
            label=_parse_label(raw.get("label"), "Node clause"),
            properties=validate_properties(raw.get("properties")),
            where=_parse_conditions(raw.get("where"), "Node clause"),
        )
        return name

    def _parse_endpoint(self, raw: Any, default_name: str) -> str:
        if raw is None:
            return self._add_node_clause({}, default_name)
        if isinstance(raw, str):
            return raw
        return self._add_node_clause(raw, default_name)

    def _parse_edge_clause(self, raw: Any, index: int) -> Tuple[Dict[str, Any], str, str]:
        raw = _expect_mapping(raw, "Edge clause")
        _reject_unknown_keys(raw, _EDGE_CLAUSE_KEYS, "edge clause")

        name = raw.get("name") or f"_edge{index}"
        if not isinstance(name, str):
            raise ValidationError("Edge clause name must be a string")

        fields = {
            "name": name,
            "label": _parse_label(raw.get("label"), "Edge clause"),
            "properties": validate_properties(raw.get("properties")),
            "where": _parse_conditions(raw.get("where"), "Edge clause"),
        }
        from_ref = self._parse_endpoint(raw.get("from"), f"_edge{index}_from")
        to_ref = self._parse_endpoint(raw.get("to"), f"_edge{index}_to")
        return fields, from_ref, to_ref

    @staticmethod
    def _parse_limit(raw: Any) -> Optional[int]:
        if raw is None:
            return None
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
            raise ValidationError("Pattern limit must be a positive integer", details={"limit": raw})
        return raw
