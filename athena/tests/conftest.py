import pytest
from pathlib import Path
from typing import Dict, Any, Generator

from fastapi.testclient import TestClient

from athena.config import Settings
from athena.graph.entity_store import EntityStore
from athena.graph.query_engine import QueryEngine


class FakeClock:
    """Deterministic clock in epoch seconds."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def tick(self, seconds: int = 1) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> EntityStore:
    """Create an in-memory store."""
    return EntityStore(clock=clock)


@pytest.fixture
def engine(store: EntityStore) -> QueryEngine:
    """Create a query engine over the store."""
    return QueryEngine(store)


@pytest.fixture
def storage_path(tmp_path: Path) -> Path:
    """Path for a graph snapshot file."""
    return tmp_path / "graph" / "graph.json"


@pytest.fixture
def test_settings() -> Settings:
    """Settings for the API under test."""
    return Settings(
        api_prefix="/api/v1",
        agents=["agent-email-importer", "agent-web-clipper"],
        graph_storage_path=None,
        query_max_limit=50,
        log_file=None,
    )


@pytest.fixture
def client(store: EntityStore, test_settings: Settings) -> Generator[TestClient, None, None]:
    """Create an API test client bound to the store."""
    from api_server import create_app

    app = create_app(store=store, config=test_settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def topic_graph(store: EntityStore) -> Dict[str, Any]:
    """Two topics linked by a 'relates' edge plus an unrelated task."""
    a = store.create_node("Topic", {"title": "Graphs"})
    b = store.create_node("Topic", {"title": "Queries"})
    task = store.create_node("Task", {"status": "done"})
    ab = store.create_edge(a.id, b.id, "relates")
    return {"a": a, "b": b, "task": task, "ab": ab}
