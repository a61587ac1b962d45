# backend/graph_store.py
# Neo4j access for the matcher, the ingestion job and the read API.
# One store per job/request; close it (or use `with`) to release the driver.

from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from neo4j import GraphDatabase
from neo4j.exceptions import AuthError, DriverError, Neo4jError, ServiceUnavailable

from config import Neo4jSettings
from models import NODE_LABELS, PotentialMatch, RELATIONSHIP_TYPES


class GraphStoreError(RuntimeError):
    pass


class GraphStoreUnavailable(GraphStoreError):
    pass


# ===================== Cypher =====================
PROFILE_QUERY = """
MATCH (c:Company)
OPTIONAL MATCH (c)-[:PRODUCES|CAN_UPCYCLE]->(w:WasteMaterial)
WITH c, collect(DISTINCT w) AS ws
RETURN properties(c) AS company, [w IN ws | properties(w)] AS materials
ORDER BY c.id
"""

DELETE_MATCHES_QUERY = """
MATCH ()-[r:POTENTIAL_MATCH]->()
DELETE r
RETURN count(r) AS deleted
"""

CREATE_MATCH_QUERY = """
MATCH (a:Company {id: $source_id})
MATCH (b:Company {id: $target_id})
MERGE (a)-[r:POTENTIAL_MATCH]->(b)
SET r.score = $score,
    r.shared_materials = $shared_materials,
    r.shared_names = $shared_names,
    r.computed_at = datetime($computed_at)
RETURN count(r) AS created
"""

SUMMARY_QUERY = """
MATCH ()-[r:POTENTIAL_MATCH]->()
RETURN count(r) AS total, avg(r.score) AS avg_score
"""

TOP_MATCHES_QUERY = """
MATCH (c1:Company)-[r:POTENTIAL_MATCH]->(c2:Company)
RETURN c1.name AS company1,
       c1.industry AS industry1,
       c1.location AS location1,
       c2.name AS company2,
       c2.industry AS industry2,
       c2.location AS location2,
       r.score AS score,
       r.shared_materials AS shared_materials,
       r.shared_names AS shared_names
ORDER BY r.score DESC, c1.id, c2.id
LIMIT $limit
"""

STATS_QUERIES = {
    "matches": "MATCH ()-[r:CAN_UPCYCLE]->() RETURN count(r) AS count",
    "co2_saved": "MATCH (c:Company) WHERE c.carbon_rating IN ['A', 'B'] RETURN count(c) AS count",
    "landfill_diverted": "MATCH (w:WasteMaterial) RETURN count(w) AS count",
}

# ---------- marketplace ----------
MATERIAL_FEED_QUERY = """
MATCH (c:Company)-[:PRODUCES]->(w:WasteMaterial)
WITH w, c ORDER BY w.name, c.name
WITH w, collect(c)[0] AS producer
RETURN w.id AS id,
       w.name AS name,
       w.toxicity_level AS toxicity,
       w.base_element AS base_element,
       w.category AS category,
       w.status AS status,
       producer.name AS producer,
       producer.id AS producer_id,
       producer.location AS location,
       w.price AS price,
       w.quantity AS quantity
ORDER BY w.name
"""

# A requested (ghost) node with the same name is taken over: it becomes available
# and its placeholder fields are replaced, real ones are kept.
ADD_LISTING_QUERY = """
MATCH (seller:Company {id: $company_id})
MERGE (m:WasteMaterial {name: $name})
ON CREATE SET m.id = $material_id,
              m.category = $category,
              m.toxicity_level = $toxicity,
              m.base_element = $base_element,
              m.description = $description,
              m.status = 'available',
              m.price = $price,
              m.quantity = $quantity
ON MATCH SET  m.status = 'available',
              m.category = CASE WHEN m.category = 'Requested' THEN $category ELSE m.category END,
              m.toxicity_level = CASE WHEN m.toxicity_level = 'unknown' THEN $toxicity ELSE m.toxicity_level END,
              m.base_element = CASE WHEN m.base_element = 'unknown' THEN $base_element ELSE m.base_element END,
              m.description = CASE WHEN m.description STARTS WITH 'Demand request:' THEN $description ELSE m.description END,
              m.price = coalesce($price, m.price),
              m.quantity = coalesce($quantity, m.quantity)
MERGE (seller)-[:PRODUCES]->(m)
RETURN m.id AS id
"""

SEEKERS_QUERY = """
MATCH (buyer:Company)-[r:IS_SEEKING]->(:WasteMaterial {name: $name})
RETURN buyer.id AS company_id,
       buyer.name AS company_name,
       toString(r.created_at) AS seeking_since
ORDER BY buyer.name
"""

SUPPLY_SEARCH_QUERY = """
MATCH (producer:Company)-[:PRODUCES]->(w:WasteMaterial)
WHERE toLower(w.name) CONTAINS toLower($query)
   OR toLower(coalesce(w.description, '')) CONTAINS toLower($query)
RETURN w.id AS id,
       w.name AS name,
       w.category AS category,
       w.toxicity_level AS toxicity,
       collect(DISTINCT producer.name) AS producers
ORDER BY w.name
LIMIT $limit
"""

REGISTER_DEMAND_QUERY = """
MATCH (c:Company {id: $company_id})
MERGE (m:WasteMaterial {name: $name})
ON CREATE SET m.id = $material_id,
              m.status = 'requested',
              m.category = 'Requested',
              m.toxicity_level = 'unknown',
              m.base_element = 'unknown',
              m.description = 'Demand request: ' + $name
MERGE (c)-[r:IS_SEEKING]->(m)
ON CREATE SET r.created_at = datetime()
RETURN m.id AS id, m.status AS status
"""

# ---------- exploration ----------
SUPPLY_ROUTES_QUERY = """
MATCH (producer:Company)-[:PRODUCES]->(w:WasteMaterial {name: $material})<-[:CAN_UPCYCLE]-(upcycler:Company)
WHERE producer <> upcycler
  AND producer.latitude IS NOT NULL
  AND upcycler.latitude IS NOT NULL
  AND coalesce(upcycler.capacity, 0) >= $min_capacity
WITH producer, w, upcycler,
     point.distance(
       point({latitude: producer.latitude, longitude: producer.longitude}),
       point({latitude: upcycler.latitude, longitude: upcycler.longitude})
     ) / 1000.0 AS dist_km
WHERE dist_km <= $max_distance_km
OPTIONAL MATCH (upcycler)-[:CAN_UPCYCLE]->(other:WasteMaterial)
WHERE other <> w
WITH producer, w, upcycler, dist_km,
     collect(DISTINCT other.name)[0..5] AS also_upcycles
RETURN producer.name AS producer,
       producer.location AS producer_location,
       producer.industry AS producer_industry,
       w.name AS material,
       w.category AS material_category,
       w.toxicity_level AS material_toxicity,
       upcycler.name AS upcycler,
       upcycler.location AS upcycler_location,
       upcycler.industry AS upcycler_industry,
       round(dist_km) AS distance_km,
       upcycler.capacity AS upcycler_capacity,
       also_upcycles
ORDER BY dist_km ASC, producer.name, upcycler.name
LIMIT $limit
"""

RECOMMENDATIONS_QUERY = """
MATCH (:WasteMaterial {name: $material_name})-[:COMPLEMENTS]->(rec:WasteMaterial)
OPTIONAL MATCH (upcycler:Company)-[:CAN_UPCYCLE]->(rec)
OPTIONAL MATCH (producer:Company)-[:PRODUCES]->(rec)
RETURN rec.id AS id,
       rec.name AS name,
       rec.category AS category,
       rec.toxicity_level AS toxicity,
       rec.base_element AS base_element,
       collect(DISTINCT upcycler.name)[0..5] AS upcyclers,
       collect(DISTINCT producer.name)[0..3] AS producers
ORDER BY rec.name
"""

WIPE_QUERY = "MATCH (n) DETACH DELETE n"
# label expression matching any ingested node
ANY_NODE_LABEL = "|".join(NODE_LABELS)


def _check_label(label: str) -> str:
    # labels/types are interpolated into Cypher, so only known ones get through
    if label not in NODE_LABELS:
        raise ValueError(f"Unknown node label: {label!r}")
    return label

def _check_rel_type(rel_type: str) -> str:
    if rel_type not in RELATIONSHIP_TYPES:
        raise ValueError(f"Unknown relationship type: {rel_type!r}")
    return rel_type

def new_node_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class Neo4jGraphStore:
    def __init__(self, driver, database: Optional[str] = None):
        self.driver = driver
        self.database = database

    @classmethod
    def connect(cls, settings: Neo4jSettings) -> "Neo4jGraphStore":
        try:
            driver = GraphDatabase.driver(settings.uri, auth=(settings.username, settings.password))
        except (DriverError, ValueError) as e:
            raise GraphStoreUnavailable(f"cannot create driver for {settings.uri}: {e}") from e
        return cls(driver, database=settings.database)

    def close(self) -> None:
        self.driver.close()

    def __enter__(self) -> "Neo4jGraphStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- plumbing ----------
    def _session(self):
        if self.database:
            return self.driver.session(database=self.database)
        return self.driver.session()

    def _records(self, query: str, **params) -> List[Any]:
        try:
            with self._session() as session:
                return list(session.run(query, **params))
        except (ServiceUnavailable, AuthError) as e:
            raise GraphStoreUnavailable(str(e)) from e
        except (Neo4jError, DriverError) as e:
            raise GraphStoreError(str(e)) from e

    def _single(self, query: str, **params):
        rows = self._records(query, **params)
        return rows[0] if rows else None

    def verify_connectivity(self) -> None:
        try:
            self.driver.verify_connectivity()
        except (ServiceUnavailable, AuthError, DriverError) as e:
            raise GraphStoreUnavailable(str(e)) from e

    # ---------- matcher ----------
    def fetch_company_profiles(self) -> List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        rows = self._records(PROFILE_QUERY)
        return [(dict(r["company"] or {}), [dict(m) for m in (r["materials"] or [])]) for r in rows]

    def delete_potential_matches(self) -> int:
        row = self._single(DELETE_MATCHES_QUERY)
        return int(row["deleted"]) if row else 0

    def create_potential_match(self, match: PotentialMatch, computed_at: str) -> bool:
        row = self._single(
            CREATE_MATCH_QUERY,
            source_id=match.source.node_key,
            target_id=match.target.node_key,
            computed_at=computed_at,
            **match.edge_properties(),
        )
        return bool(row and row["created"])

    def match_summary(self) -> Tuple[int, float]:
        row = self._single(SUMMARY_QUERY)
        if not row:
            return (0, 0.0)
        return (int(row["total"] or 0), float(row["avg_score"] or 0.0))

    # ---------- read API ----------
    def top_matches(self, limit: int = 30) -> List[Dict[str, Any]]:
        return [r.data() for r in self._records(TOP_MATCHES_QUERY, limit=int(limit))]

    def graph_stats(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for key, query in STATS_QUERIES.items():
            row = self._single(query)
            out[key] = int(row["count"]) if row else 0
        return out

    # ---------- marketplace ----------
    def material_feed(self) -> List[Dict[str, Any]]:
        """Every produced material with its first producer (by name)."""
        return [r.data() for r in self._records(MATERIAL_FEED_QUERY)]

    def add_material_listing(self, company_id: Any, listing: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        MERGE a WasteMaterial on its name and link it to the seller with PRODUCES.
        listing: name, category, toxicity, base_element, description, price, quantity.
        Returns {"id": ..., "buyers": [...]} with every company IS_SEEKING that
        material, or None when the seller company does not exist.
        """
        row = self._single(ADD_LISTING_QUERY, company_id=company_id,
                           material_id=new_node_id("mat"), **listing)
        if not row:
            return None
        buyers = [r.data() for r in self._records(SEEKERS_QUERY, name=listing["name"])]
        return {"id": row["id"], "buyers": buyers}

    def search_supply(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        return [r.data() for r in self._records(SUPPLY_SEARCH_QUERY, query=query, limit=int(limit))]

    def register_demand(self, company_id: Any, name: str) -> Optional[Dict[str, Any]]:
        """Ghost `requested` material (unless one exists) plus an IS_SEEKING edge.
        Returns {"id", "status"} of the sought material, or None for an unknown company."""
        row = self._single(REGISTER_DEMAND_QUERY, company_id=company_id, name=name,
                           material_id=new_node_id("demand"))
        return row.data() if row else None

    # ---------- exploration ----------
    def supply_routes(self, material: str, max_distance_km: float = 5000.0,
                      min_capacity: float = 0.0, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self._records(
            SUPPLY_ROUTES_QUERY,
            material=material,
            max_distance_km=float(max_distance_km),
            min_capacity=float(min_capacity),
            limit=int(limit),
        )
        return [r.data() for r in rows]

    def recommendations(self, material_name: str) -> List[Dict[str, Any]]:
        return [r.data() for r in self._records(RECOMMENDATIONS_QUERY, material_name=material_name)]

    # ---------- ingestion ----------
    def wipe(self) -> None:
        self._records(WIPE_QUERY)

    def ensure_constraints(self) -> None:
        for label in NODE_LABELS:
            self._records(
                f"CREATE CONSTRAINT IF NOT EXISTS FOR (n:{label}) REQUIRE n.id IS UNIQUE"
            )

    def merge_nodes(self, label: str, rows: Sequence[Dict[str, Any]]) -> int:
        """rows: [{"id": ..., "props": {...}}]; one transaction per call."""
        query = (f"UNWIND $rows AS row MERGE (n:{_check_label(label)} {{id: row.id}}) "
                 "SET n += row.props RETURN count(n) AS merged")
        row = self._single(query, rows=list(rows))
        return int(row["merged"]) if row else 0

    def merge_edges(self, rel_type: str, rows: Sequence[Dict[str, Any]]) -> int:
        """rows: [{"source": id, "target": id, "props": {...}}]; endpoints must exist."""
        query = (
            "UNWIND $rows AS row "
            f"MATCH (s:{ANY_NODE_LABEL} {{id: row.source}}) "
            f"MATCH (t:{ANY_NODE_LABEL} {{id: row.target}}) "
            f"MERGE (s)-[r:{_check_rel_type(rel_type)}]->(t) "
            "SET r += row.props RETURN count(r) AS merged"
        )
        row = self._single(query, rows=list(rows))
        return int(row["merged"]) if row else 0
