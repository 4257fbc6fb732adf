from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Union
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
import copy
import hashlib
import json
import os
import threading
import time
import uuid

from ..errors import ConflictError, InternalError, NotFoundError, ValidationError
from ..types import Checkpoint, Edge, GraphSnapshot, Node
from ..utils.logger import app_logger
from .locks import KeyedLock
from .values import merge_properties, validate_properties


SNAPSHOT_FORMAT_VERSION = 1

Entity = Union[Node, Edge]


def _now() -> int:
    return int(time.time())


def detach_entity(entity: Entity) -> Entity:
    """Copy an entity so callers cannot mutate the stored property bag."""
    return replace(entity, properties=copy.deepcopy(entity.properties))


def _validate_label(label: Any, kind: str) -> str:
    if not isinstance(label, str) or not label.strip():
        raise ValidationError(f"{kind} label must be a non-empty string", details={"label": label})
    return label


class _GraphState:
    """Nodes, edges and bookkeeping for one revision of the graph."""

    def __init__(self):
        self.nodes: Dict[str, Node] = {}
        self.edges: Dict[str, Edge] = {}
        # node id -> incident edge ids, in edge creation order
        self.adjacency: Dict[str, Dict[str, None]] = {}
        self.retired_ids: Set[str] = set()
        self.revision = 0

    def copy(self) -> "_GraphState":
        # Records are frozen, so sharing them between states is safe
        state = _GraphState()
        state.nodes = dict(self.nodes)
        state.edges = dict(self.edges)
        state.adjacency = {node_id: dict(edge_ids) for node_id, edge_ids in self.adjacency.items()}
        state.retired_ids = set(self.retired_ids)
        state.revision = self.revision
        return state

    def new_id(self) -> str:
        while True:
            entity_id = uuid.uuid4().hex
            if entity_id not in self.nodes and entity_id not in self.edges and entity_id not in self.retired_ids:
                return entity_id

    def add_node(self, node: Node):
        self.nodes[node.id] = node
        self.adjacency[node.id] = {}

    def remove_node(self, node_id: str):
        del self.nodes[node_id]
        del self.adjacency[node_id]
        self.retired_ids.add(node_id)

    def link_edge(self, edge: Edge):
        self.edges[edge.id] = edge
        self.adjacency[edge.from_id][edge.id] = None
        self.adjacency[edge.to_id][edge.id] = None

    def unlink_edge(self, edge_id: str):
        edge = self.edges.pop(edge_id)
        self.adjacency[edge.from_id].pop(edge_id, None)
        self.adjacency[edge.to_id].pop(edge_id, None)
        self.retired_ids.add(edge_id)

    def lookup(self, entity_id: str) -> Entity:
        entity = self.nodes.get(entity_id) or self.edges.get(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity '{entity_id}' not found", details={"id": entity_id})
        return entity


class EntityStore:
    """Versioned in-memory property graph.

    The store is the only writer of ids, versions and timestamps. Mutations
    hold the per-entity sections of every entity they touch; the collection
    lock is only held for short structural updates and snapshots. Stored
    records are immutable and replaced on update, so a snapshot never sees a
    half-applied mutation.

    When ``storage_path`` is given the graph is loaded from and saved to a
    JSON snapshot file. Each mutation is staged on a copy of the graph, the
    copy is written to disk, and only then does it become visible. A failed
    write leaves the visible graph untouched. Writes run outside the
    collection lock, so readers never wait on disk I/O; mutations queue on
    the writer lock so snapshots land on disk in revision order.
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        lock_timeout: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.logger = app_logger.bind(component="entity_store")
        self.storage_path = Path(storage_path) if storage_path else None
        self._clock = clock or _now

        self._entity_locks = KeyedLock(timeout=lock_timeout)
        self._collection_lock = threading.RLock()
        self._writer_lock = threading.Lock()
        self._state = _GraphState()

        if self.storage_path is not None:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_data()

    # ------------------------------------------------------------------
    # Persistence

    def _load_data(self):
        """Load the graph from the snapshot file, if it exists."""
        if not self.storage_path.exists():
            self.logger.info(f"No graph snapshot at {self.storage_path}, starting empty")
            return

        try:
            with open(self.storage_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            nodes = [Node.from_dict(item) for item in data.get("nodes", [])]
            edges = [Edge.from_dict(item) for item in data.get("edges", [])]
            retired = set(data.get("retired_ids", []))
            revision = int(data.get("revision", 0))
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Error loading graph snapshot {self.storage_path}: {e}")
            raise InternalError(
                "Graph snapshot could not be loaded",
                details={"path": str(self.storage_path)},
            ) from e

        state = _GraphState()
        for node in nodes:
            state.add_node(node)
        for edge in edges:
            if edge.from_id not in state.nodes or edge.to_id not in state.nodes:
                raise InternalError(
                    "Graph snapshot contains an edge with a missing endpoint",
                    details={"path": str(self.storage_path), "edge_id": edge.id},
                )
            state.link_edge(edge)
        state.retired_ids = retired
        state.revision = revision
        self._state = state
        self.logger.info(
            f"Loaded graph snapshot from {self.storage_path}: "
            f"{len(state.nodes)} nodes, {len(state.edges)} edges"
        )

    def _save_data(self, state: _GraphState):
        """Write a staged graph to the snapshot file. Caller holds the writer lock."""
        data = {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "revision": state.revision,
            "saved_at": self._clock(),
            "nodes": [node.to_dict() for node in state.nodes.values()],
            "edges": [edge.to_dict() for edge in state.edges.values()],
            "retired_ids": sorted(state.retired_ids),
        }
        tmp_path = self.storage_path.with_name(self.storage_path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.storage_path)
        except OSError as e:
            self.logger.error(f"Error saving graph snapshot: {e}")
            raise InternalError(
                "Graph snapshot could not be written",
                details={"path": str(self.storage_path)},
            ) from e
        self.logger.debug(f"Saved graph snapshot to {self.storage_path} (revision {state.revision})")

    @contextmanager
    def _mutation(self) -> Iterator[_GraphState]:
        """Yield the state a mutation should change and commit it on exit.

        The body must validate before it changes anything. An exception from
        the body or from the snapshot write discards the change.
        """
        if self.storage_path is None:
            with self._collection_lock:
                state = self._state
                yield state
                state.revision += 1
            return

        with self._writer_lock:
            with self._collection_lock:
                staged = self._state.copy()
            yield staged
            staged.revision += 1
            self._save_data(staged)
            with self._collection_lock:
                self._state = staged

    # ------------------------------------------------------------------
    # Nodes

    def create_node(self, label: str, properties: Optional[Mapping[str, Any]] = None) -> Node:
        """Create a node with a fresh id at version 1."""
        label = _validate_label(label, "Node")
        props = validate_properties(properties)
        now = self._clock()

        with self._mutation() as state:
            node = Node(
                id=state.new_id(),
                label=label,
                properties=props,
                created_at=now,
                updated_at=now,
                version=1,
            )
            state.add_node(node)

        self.logger.info(f"Created node {node.id} ({label})")
        return detach_entity(node)

    def get_node(self, node_id: str) -> Node:
        """Get a node by id."""
        with self._collection_lock:
            node = self._state.nodes.get(node_id)
        if node is None:
            raise NotFoundError(f"Node '{node_id}' not found", details={"id": node_id})
        return detach_entity(node)

    def list_nodes(self) -> List[Node]:
        """Get all live nodes in creation order."""
        with self._collection_lock:
            nodes = list(self._state.nodes.values())
        return [detach_entity(node) for node in nodes]

    def delete_node(self, node_id: str, cascade: bool = False) -> List[str]:
        """Delete a node.

        Fails with ConflictError while incident edges exist, unless ``cascade``
        is set, in which case the node and its incident edges are removed in
        one atomic step. Returns the ids of the removed edges.
        """
        with self._entity_locks.hold(node_id):
            with self._mutation() as state:
                if node_id not in state.nodes:
                    raise NotFoundError(f"Node '{node_id}' not found", details={"id": node_id})

                incident = list(state.adjacency[node_id])
                if incident and not cascade:
                    self.logger.warning(f"Refused to delete node {node_id}: {len(incident)} incident edges")
                    raise ConflictError(
                        f"Node '{node_id}' has {len(incident)} incident edges",
                        details={"id": node_id, "incident_edges": incident},
                    )

                for edge_id in incident:
                    state.unlink_edge(edge_id)
                state.remove_node(node_id)

        self.logger.info(f"Deleted node {node_id} (cascaded {len(incident)} edges)")
        return incident

    def incident_edges(self, node_id: str) -> List[Edge]:
        """Get live edges touching a node, in creation order."""
        with self._collection_lock:
            state = self._state
            if node_id not in state.nodes:
                raise NotFoundError(f"Node '{node_id}' not found", details={"id": node_id})
            edges = [state.edges[edge_id] for edge_id in state.adjacency[node_id]]
        return [detach_entity(edge) for edge in edges]

    # ------------------------------------------------------------------
    # Edges

    def create_edge(
        self,
        from_id: str,
        to_id: str,
        label: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> Edge:
        """Create a directed edge between two live nodes."""
        label = _validate_label(label, "Edge")
        props = validate_properties(properties)
        now = self._clock()

        # Holding both endpoint sections keeps them from being deleted meanwhile
        with self._entity_locks.hold(from_id, to_id):
            with self._mutation() as state:
                missing = [node_id for node_id in (from_id, to_id) if node_id not in state.nodes]
                if missing:
                    raise NotFoundError(
                        f"Edge endpoint not found: {', '.join(missing)}",
                        details={"missing": missing},
                    )
                edge = Edge(
                    id=state.new_id(),
                    from_id=from_id,
                    to_id=to_id,
                    label=label,
                    properties=props,
                    created_at=now,
                    updated_at=now,
                    version=1,
                )
                state.link_edge(edge)

        self.logger.info(f"Created edge {edge.id} ({from_id} -[{label}]-> {to_id})")
        return detach_entity(edge)

    def get_edge(self, edge_id: str) -> Edge:
        """Get an edge by id."""
        with self._collection_lock:
            edge = self._state.edges.get(edge_id)
        if edge is None:
            raise NotFoundError(f"Edge '{edge_id}' not found", details={"id": edge_id})
        return detach_entity(edge)

    def list_edges(self) -> List[Edge]:
        """Get all live edges in creation order."""
        with self._collection_lock:
            edges = list(self._state.edges.values())
        return [detach_entity(edge) for edge in edges]

    def delete_edge(self, edge_id: str):
        """Delete an edge."""
        with self._entity_locks.hold(edge_id):
            with self._mutation() as state:
                if edge_id not in state.edges:
                    raise NotFoundError(f"Edge '{edge_id}' not found", details={"id": edge_id})
                state.unlink_edge(edge_id)

        self.logger.info(f"Deleted edge {edge_id}")

    # ------------------------------------------------------------------
    # Versioned updates

    def get_entity(self, entity_id: str) -> Entity:
        """Get a node or an edge by id."""
        with self._collection_lock:
            entity = self._state.lookup(entity_id)
        return detach_entity(entity)

    def update_properties(
        self,
        entity_id: str,
        expected_version: int,
        patch: Mapping[str, Any],
        unset: Optional[Iterable[str]] = None,
    ) -> Entity:
        """Merge a property patch into a node or edge.

        Applies only when the entity is still at ``expected_version``; on
        success the version goes up by one and ``updated_at`` is refreshed.
        """
        if isinstance(expected_version, bool) or not isinstance(expected_version, int) or expected_version < 1:
            raise ValidationError(
                "expected_version must be a positive integer",
                details={"expected_version": expected_version},
            )
        if not isinstance(patch, Mapping):
            raise ValidationError("Property patch must be a JSON object")
        unset_keys = list(unset or [])
        if not all(isinstance(key, str) for key in unset_keys):
            raise ValidationError("unset must list property names")

        with self._entity_locks.hold(entity_id):
            with self._mutation() as state:
                current = state.lookup(entity_id)
                if current.version != expected_version:
                    self.logger.warning(
                        f"Version conflict on {entity_id}: expected {expected_version}, current {current.version}"
                    )
                    raise ConflictError(
                        f"Version mismatch for '{entity_id}'",
                        details={
                            "id": entity_id,
                            "expected_version": expected_version,
                            "current_version": current.version,
                        },
                    )

                updated = replace(
                    current,
                    properties=merge_properties(current.properties, patch, unset_keys),
                    version=current.version + 1,
                    updated_at=self._clock(),
                )
                if isinstance(updated, Node):
                    state.nodes[entity_id] = updated
                else:
                    state.edges[entity_id] = updated

        self.logger.info(f"Updated {entity_id} to version {updated.version}")
        return detach_entity(updated)

    # ------------------------------------------------------------------
    # Whole-graph operations

    @property
    def revision(self) -> int:
        """Store-wide mutation counter."""
        with self._collection_lock:
            return self._state.revision

    def snapshot(self) -> GraphSnapshot:
        """Take a consistent point-in-time view of nodes and edges.

        The records are shared with the store and must be treated as read-only.
        """
        with self._collection_lock:
            state = self._state
            return GraphSnapshot(
                nodes=list(state.nodes.values()),
                edges=list(state.edges.values()),
                revision=state.revision,
            )

    def stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        snapshot = self.snapshot()

        # Count nodes by label
        node_counts: Dict[str, int] = {}
        for node in snapshot.nodes:
            node_counts[node.label] = node_counts.get(node.label, 0) + 1

        # Count edges by label
        edge_counts: Dict[str, int] = {}
        for edge in snapshot.edges:
            edge_counts[edge.label] = edge_counts.get(edge.label, 0) + 1

        return {
            "nodes": node_counts,
            "edges": edge_counts,
            "total_nodes": len(snapshot.nodes),
            "total_edges": len(snapshot.edges),
            "revision": snapshot.revision,
        }

    def checkpoint(self) -> Checkpoint:
        """Describe the current revision with a SHA-256 content hash."""
        snapshot = self.snapshot()
        payload = json.dumps(
            {
                "nodes": [node.to_dict() for node in snapshot.nodes],
                "edges": [edge.to_dict() for edge in snapshot.edges],
            },
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return Checkpoint(
            id=uuid.uuid4().hex,
            revision=snapshot.revision,
            timestamp=self._clock(),
            hash=hashlib.sha256(payload.encode("utf-8")).hexdigest(),
        )

    def clear(self):
        """Remove every node and edge. Their ids stay retired."""
        with self._mutation() as state:
            state.retired_ids.update(state.nodes)
            state.retired_ids.update(state.edges)
            state.nodes.clear()
            state.edges.clear()
            state.adjacency.clear()
        self.logger.info("Cleared all data from graph store")
