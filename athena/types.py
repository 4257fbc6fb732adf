from typing import List, Dict, Any, Optional, Union
from dataclasses import dataclass, field
import copy


# JSON-compatible property value: string | number | bool | null | list | mapping
PropertyValue = Union[None, bool, int, float, str, List["PropertyValue"], Dict[str, "PropertyValue"]]
Properties = Dict[str, PropertyValue]


@dataclass(frozen=True)
class Node:
    """Represents a node in the property graph."""
    id: str
    label: str
    properties: Properties
    created_at: int
    updated_at: int
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "label": self.label,
            "properties": copy.deepcopy(self.properties),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        """Build a node from its dictionary form."""
        return cls(
            id=data["id"],
            label=data["label"],
            properties=dict(data.get("properties") or {}),
            created_at=int(data["created_at"]),
            updated_at=int(data.get("updated_at", data["created_at"])),
            version=int(data.get("version", 1)),
        )


@dataclass(frozen=True)
class Edge:
    """Represents a directed edge in the property graph."""
    id: str
    from_id: str
    to_id: str
    label: str
    properties: Properties
    created_at: int
    updated_at: int
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "from": self.from_id,
            "to": self.to_id,
            "label": self.label,
            "properties": copy.deepcopy(self.properties),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        """Build an edge from its dictionary form."""
        return cls(
            id=data["id"],
            from_id=data["from"],
            to_id=data["to"],
            label=data["label"],
            properties=dict(data.get("properties") or {}),
            created_at=int(data["created_at"]),
            updated_at=int(data.get("updated_at", data["created_at"])),
            version=int(data.get("version", 1)),
        )


@dataclass(frozen=True)
class GraphSnapshot:
    """Point-in-time view of the store, in creation order."""
    nodes: List[Node]
    edges: List[Edge]
    revision: int


@dataclass
class QueryResult:
    """Represents a pattern query result."""
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


@dataclass(frozen=True)
class Checkpoint:
    """Identifies a store revision together with a content hash."""
    id: str
    revision: int
    timestamp: int
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "revision": self.revision,
            "timestamp": self.timestamp,
            "hash": self.hash,
        }
