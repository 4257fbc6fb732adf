from fastapi import APIRouter, FastAPI, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from typing import List, Dict, Any, Optional
import uvicorn

from athena import __version__
from athena.config import Settings, settings
from athena.errors import GraphError
from athena.graph.entity_store import EntityStore
from athena.graph.query_engine import QueryEngine
from athena.utils.logger import app_logger


logger = app_logger.bind(component="api_server")


class CreateNodeRequest(BaseModel):
    label: str
    properties: Optional[Dict[str, Any]] = None


class CreateEdgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    label: str
    properties: Optional[Dict[str, Any]] = None


class UpdatePropertiesRequest(BaseModel):
    expected_version: StrictInt = Field(ge=1)
    properties: Dict[str, Any] = Field(default_factory=dict)
    unset: List[str] = Field(default_factory=list)


class QueryRequest(BaseModel):
    pattern: Optional[Dict[str, Any]] = None


def _error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def register_error_handlers(app: FastAPI):
    """Map typed graph errors and unexpected faults to JSON error bodies."""

    @app.exception_handler(GraphError)
    async def graph_error_handler(request: Request, exc: GraphError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            # Internal details stay in the log
            content = _error_body(exc.code, exc.message)
        else:
            content = {"error": exc.to_dict()}
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body("VALIDATION_ERROR", "Invalid request", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("INTERNAL_ERROR", "Internal server error"),
        )


def build_graph_router(store: EntityStore, engine: QueryEngine, config: Settings) -> APIRouter:
    r = APIRouter(tags=["graph"])

    @r.get("/health")
    def health():
        """Liveness check."""
        return {"status": "ok", "version": __version__}

    @r.get("/nodes")
    def list_nodes():
        """Get all nodes in creation order."""
        return {"nodes": [node.to_dict() for node in store.list_nodes()]}

    @r.post("/nodes", status_code=status.HTTP_201_CREATED)
    def create_node(payload: CreateNodeRequest):
        """Create a node."""
        return store.create_node(payload.label, payload.properties).to_dict()

    @r.get("/nodes/{node_id}")
    def get_node(node_id: str):
        """Get a node by id."""
        return store.get_node(node_id).to_dict()

    @r.patch("/nodes/{node_id}")
    def update_node(node_id: str, payload: UpdatePropertiesRequest):
        """Merge properties into a node at an expected version."""
        store.get_node(node_id)
        updated = store.update_properties(node_id, payload.expected_version, payload.properties, payload.unset)
        return updated.to_dict()

    @r.delete("/nodes/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_node(node_id: str, cascade: bool = Query(default=False)):
        """Delete a node, optionally with its incident edges."""
        store.delete_node(node_id, cascade=cascade)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @r.get("/nodes/{node_id}/edges")
    def list_incident_edges(node_id: str):
        """Get the edges touching a node."""
        return {"edges": [edge.to_dict() for edge in store.incident_edges(node_id)]}

    @r.get("/edges")
    def list_edges():
        """Get all edges in creation order."""
        return {"edges": [edge.to_dict() for edge in store.list_edges()]}

    @r.post("/edges", status_code=status.HTTP_201_CREATED)
    def create_edge(payload: CreateEdgeRequest):
        """Create an edge between two existing nodes."""
        return store.create_edge(payload.from_id, payload.to_id, payload.label, payload.properties).to_dict()

    @r.get("/edges/{edge_id}")
    def get_edge(edge_id: str):
        """Get an edge by id."""
        return store.get_edge(edge_id).to_dict()

    @r.patch("/edges/{edge_id}")
    def update_edge(edge_id: str, payload: UpdatePropertiesRequest):
        """Merge properties into an edge at an expected version."""
        store.get_edge(edge_id)
        updated = store.update_properties(edge_id, payload.expected_version, payload.properties, payload.unset)
        return updated.to_dict()

    @r.delete("/edges/{edge_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_edge(edge_id: str):
        """Delete an edge."""
        store.delete_edge(edge_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @r.post("/query")
    def query_graph(payload: QueryRequest):
        """Match a pattern and return the matching subgraph."""
        return engine.execute(payload.pattern).to_dict()

    @r.get("/stats")
    def get_stats():
        """Get store statistics."""
        return store.stats()

    @r.get("/checkpoint")
    def get_checkpoint():
        """Get the current revision and its content hash."""
        return store.checkpoint().to_dict()

    @r.get("/agents")
    def list_agents():
        """Get the configured agent ids."""
        return {"agents": list(config.agents)}

    return r


def create_app(store: Optional[EntityStore] = None, config: Optional[Settings] = None) -> FastAPI:
    """Build the API application around a store."""
    config = config or settings
    if store is None:
        store = EntityStore(config.graph_storage_path, lock_timeout=config.lock_timeout)
    engine = QueryEngine(store, max_limit=config.query_max_limit)

    app = FastAPI(title="Athena Graph API", version=__version__)
    app.state.store = store
    app.state.engine = engine

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(build_graph_router(store, engine, config), prefix=config.api_prefix)
    return app


def get_app() -> FastAPI:
    """Build the default app from settings, for ``uvicorn --factory api_server:get_app``."""
    return create_app()


if __name__ == "__main__":
    logger.info(f"Starting Athena Graph API server on {settings.api_host}:{settings.api_port}")

    uvicorn.run(
        "api_server:get_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
