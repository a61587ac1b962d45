# backend/ingest.py
# Load a {"nodes": [...], "edges": [...]} graph dataset into Neo4j.
#
#   python ingest.py [supply_chain_graph.json] [--keep-existing] [--batch-size 25]

from __future__ import annotations
import argparse
import json
import logging
import sys
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import config
from config import ConfigError
from graph_store import GraphStoreError, Neo4jGraphStore
from models import InvalidRecord, NODE_LABELS, NODE_TYPES, RELATIONSHIP_TYPES

log = logging.getLogger("ingest")

DEFAULT_DATASET = "supply_chain_graph.json"
BATCH_SIZE = 25


class DatasetError(ValueError):
    pass


def batch(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def load_dataset(path: str) -> Dict[str, List[Dict[str, Any]]]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise DatasetError(f"Dataset not found at {path}")
    except json.JSONDecodeError as e:
        raise DatasetError(f"Dataset {path} is not valid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list) \
            or not isinstance(data.get("edges"), list):
        raise DatasetError("Dataset must be an object with 'nodes' and 'edges' arrays")
    return data


def group_nodes(nodes: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Validate nodes and group them by label as merge rows: {"id", "props"}."""
    out: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for n in nodes:
        label = n.get("type")
        if label not in NODE_LABELS:
            raise DatasetError(f"Unknown node type {label!r} for node {n.get('id')!r}")
        props = dict(n.get("properties") or {})
        props.setdefault("id", n.get("id"))
        try:
            record = NODE_TYPES[label].from_props(props)
        except InvalidRecord as e:
            raise DatasetError(str(e))
        props["id"] = record.id
        out[label].append({"id": record.id, "props": props})
    return out


def group_edges(edges: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for e in edges:
        rel_type = e.get("type")
        # computed edges are owned by compute_matches, not by the dataset
        if rel_type not in RELATIONSHIP_TYPES or rel_type == "POTENTIAL_MATCH":
            raise DatasetError(f"Unsupported edge type {rel_type!r}")
        if e.get("source") is None or e.get("target") is None:
            raise DatasetError(f"Edge {rel_type} is missing source/target: {e!r}")
        out[rel_type].append({
            "source": str(e["source"]),
            "target": str(e["target"]),
            "props": dict(e.get("properties") or {}),
        })
    return out


def ingest(store, data: Dict[str, List[Dict[str, Any]]], keep_existing: bool = False,
           batch_size: int = BATCH_SIZE) -> Tuple[int, int]:
    """Returns (nodes merged, edges merged). Validation happens before any write."""
    nodes = group_nodes(data["nodes"])
    edges = group_edges(data["edges"])

    if not keep_existing:
        print("Wiping existing data (DETACH DELETE)...")
        store.wipe()
    store.ensure_constraints()
    print("  Constraints ensured for " + ", ".join(NODE_LABELS) + ".")

    node_total = 0
    for label in NODE_LABELS:
        for chunk in batch(nodes.get(label, []), batch_size):
            node_total += store.merge_nodes(label, chunk)
        if nodes.get(label):
            print(f"  {label}: {len(nodes[label])} nodes")

    edge_total = 0
    for rel_type, rows in edges.items():
        merged = 0
        for chunk in batch(rows, batch_size):
            merged += store.merge_edges(rel_type, chunk)
        if merged < len(rows):
            log.warning("%s: %d of %d edges had a missing endpoint", rel_type, len(rows) - merged, len(rows))
        print(f"  {rel_type}: {merged} edges")
        edge_total += merged
    return node_total, edge_total


def main(argv: Optional[Sequence[str]] = None, store_factory=None) -> int:
    parser = argparse.ArgumentParser(description="Ingest a graph dataset into Neo4j.")
    parser.add_argument("path", nargs="?", default=DEFAULT_DATASET)
    parser.add_argument("--keep-existing", action="store_true", help="merge into the current graph instead of wiping it")
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE)
    args = parser.parse_args(argv)

    config.load_env()
    logging.basicConfig(level=config.log_level(), format="%(levelname)s %(name)s: %(message)s")

    try:
        data = load_dataset(args.path)
        print(f"Loaded {len(data['nodes'])} nodes and {len(data['edges'])} edges.")
        if store_factory is None:
            settings = config.neo4j_settings()
            store_factory = lambda: Neo4jGraphStore.connect(settings)
        with store_factory() as store:
            store.verify_connectivity()
            nodes, edges = ingest(store, data, keep_existing=args.keep_existing,
                                  batch_size=max(1, args.batch_size))
    except (ConfigError, DatasetError) as e:
        log.error("%s", e)
        return 1
    except GraphStoreError as e:
        log.exception("ingestion failed: %s", e)
        return 1

    print(f"=== Ingestion complete: {nodes} nodes, {edges} edges ===")
    return 0


if __name__ == "__main__":
    sys.exit(main())
