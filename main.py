#!/usr/bin/env python3
"""
Athena Graph Service - Command Line Entry Point

Serves the property-graph HTTP API and offers a few direct operations
against the configured graph snapshot file.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn

from athena.config import settings
from athena.errors import GraphError
from athena.graph.entity_store import EntityStore
from athena.graph.query_engine import QueryEngine
from athena.utils.logger import app_logger


DEFAULT_STORAGE_PATH = "data/graph.json"


def _storage_path(args) -> str:
    return args.storage_path or settings.graph_storage_path or DEFAULT_STORAGE_PATH


def _parse_value(raw: str) -> Any:
    """Read a CLI property value as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_properties(items: Optional[List[str]]) -> Dict[str, Any]:
    """Turn repeated ``key=value`` arguments into a property dict."""
    properties: Dict[str, Any] = {}
    for item in items or []:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{item}'")
        properties[key] = _parse_value(raw)
    return properties


def cmd_serve(args) -> int:
    # Imported here so the other commands skip loading FastAPI
    from api_server import create_app

    store = EntityStore(_storage_path(args), lock_timeout=settings.lock_timeout)
    app = create_app(store=store)
    app_logger.info(f"Starting Athena Graph API on {args.host}:{args.port} (snapshot: {store.storage_path})")
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def cmd_init(args) -> int:
    path = Path(_storage_path(args))
    if path.exists():
        if not args.force:
            print(f"Athena graph already initialized at: {path}")
            return 0
        path.unlink()

    # Clearing an empty store writes an empty snapshot
    EntityStore(str(path)).clear()
    print(f"Initialized Athena graph at: {path}")
    return 0


def cmd_create_node(args) -> int:
    store = EntityStore(_storage_path(args))
    node = store.create_node(args.label, parse_properties(args.prop))
    print(f"Created node: {node.id}")
    return 0


def cmd_list_nodes(args) -> int:
    store = EntityStore(_storage_path(args))
    nodes = store.list_nodes()
    print(f"Found {len(nodes)} nodes:")
    for node in nodes:
        print(f"  - {node.id}: {node.label}")
    return 0


def cmd_query(args) -> int:
    try:
        pattern = json.loads(args.pattern)
    except ValueError as e:
        print(f"Invalid pattern JSON: {e}", file=sys.stderr)
        return 2

    store = EntityStore(_storage_path(args))
    result = QueryEngine(store, max_limit=settings.query_max_limit).execute(pattern)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0


def cmd_stats(args) -> int:
    store = EntityStore(_storage_path(args))
    print(json.dumps(store.stats(), indent=2, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="athena", description="Athena Graph Service")
    parser.add_argument("--storage-path", help="Graph snapshot file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Start the HTTP API server")
    serve.add_argument("--host", default=settings.api_host, help="Bind host")
    serve.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    serve.set_defaults(func=cmd_serve)

    init = subparsers.add_parser("init", help="Initialize a graph snapshot file")
    init.add_argument("--force", action="store_true", help="Clear an existing graph")
    init.set_defaults(func=cmd_init)

    create_node = subparsers.add_parser("create-node", help="Create a node in the graph")
    create_node.add_argument("--label", required=True, help="Node label")
    create_node.add_argument("--prop", action="append", metavar="KEY=VALUE", help="Property (repeatable)")
    create_node.set_defaults(func=cmd_create_node)

    list_nodes = subparsers.add_parser("list-nodes", help="List all nodes")
    list_nodes.set_defaults(func=cmd_list_nodes)

    query = subparsers.add_parser("query", help="Query the graph with a JSON pattern")
    query.add_argument("--pattern", required=True, help="Pattern as JSON")
    query.set_defaults(func=cmd_query)

    stats = subparsers.add_parser("stats", help="Show graph statistics")
    stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        return args.func(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except GraphError as e:
        app_logger.error(f"{args.command} failed: {e.message}")
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        app_logger.info("Shutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
