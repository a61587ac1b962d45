"""
Shared fixtures: an in-memory stand-in for Neo4jGraphStore.

FakeGraphStore implements the same methods the batch jobs and the API call,
over plain dicts, so the engine/materializer/routes run without a database.
"""

import math
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from graph_store import GraphStoreError, GraphStoreUnavailable, new_node_id
from models import NODE_LABELS, PROFILE_RELATIONSHIPS


def _haversine_km(a, b):
    lat1, lon1, lat2, lon2 = map(math.radians, (a["latitude"], a["longitude"], b["latitude"], b["longitude"]))
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    return 2 * 6371.0 * math.asin(math.sqrt(h))


class FakeGraphStore:
    def __init__(self):
        self.nodes: Dict[str, Dict[str, Any]] = {}          # id -> props (incl. "_label")
        self.edges: Set[Tuple[str, str, str]] = set()       # (source, rel_type, target)
        self.matches: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.unavailable = False
        self.fail_read = False
        self.fail_delete = False
        self.fail_pairs: Set[Tuple[str, str]] = set()
        self.closed = False
        self.calls: List[str] = []
        self.seeking_since: Dict[Tuple[str, str], str] = {}
        self.route_params = None

    # ---------- test helpers ----------
    def add_company(self, cid: str, industry: Optional[str] = None, produces=(), upcycles=(), **props):
        node = {"id": cid, "name": props.pop("name", cid), "_label": "Company"}
        if industry is not None:
            node["industry"] = industry
        node.update(props)
        self.nodes[cid] = node
        for m in produces:
            self.add_material(m)
            self.edges.add((cid, "PRODUCES", m))
        for m in upcycles:
            self.add_material(m)
            self.edges.add((cid, "CAN_UPCYCLE", m))
        return node

    def add_material(self, mid: str, name: Optional[str] = None, **props):
        node = self.nodes.setdefault(mid, {"id": mid, "name": name or mid, "_label": "WasteMaterial"})
        node.update(props)
        return node

    def delete_node(self, nid: str):
        self.nodes.pop(nid, None)
        self.edges = {e for e in self.edges if nid not in (e[0], e[2])}
        self.matches = {k: v for k, v in self.matches.items() if nid not in k}

    def match_tuples(self):
        return {(a, b, p["score"], p["shared_materials"]) for (a, b), p in self.matches.items()}

    def _props(self, nid):
        return {k: v for k, v in self.nodes[nid].items() if k != "_label"}

    # ---------- store interface ----------
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed = True

    def verify_connectivity(self):
        if self.unavailable:
            raise GraphStoreUnavailable("connection refused")

    def fetch_company_profiles(self):
        self.calls.append("read")
        if self.fail_read:
            raise GraphStoreError("query failed")
        rows = []
        for cid in sorted(n for n, p in self.nodes.items() if p["_label"] == "Company"):
            mids = sorted({t for s, rel, t in self.edges
                           if s == cid and rel in PROFILE_RELATIONSHIPS
                           and self.nodes.get(t, {}).get("_label") == "WasteMaterial"})
            rows.append((self._props(cid), [self._props(m) for m in mids]))
        return rows

    def delete_potential_matches(self):
        self.calls.append("delete")
        if self.fail_delete:
            raise GraphStoreError("delete failed")
        n = len(self.matches)
        self.matches.clear()
        return n

    def create_potential_match(self, match, computed_at):
        self.calls.append("write")
        a, b = match.source.id, match.target.id
        if (a, b) in self.fail_pairs:
            raise GraphStoreError("constraint violation")
        if a not in self.nodes or b not in self.nodes:
            return False
        props = match.edge_properties()
        props["computed_at"] = computed_at
        self.matches[(a, b)] = props
        return True

    def match_summary(self):
        if not self.matches:
            return (0, 0.0)
        scores = [p["score"] for p in self.matches.values()]
        return (len(scores), sum(scores) / len(scores))

    def top_matches(self, limit=30):
        if self.unavailable:
            raise GraphStoreUnavailable("connection refused")
        ordered = sorted(self.matches.items(), key=lambda kv: (-kv[1]["score"], kv[0]))
        out = []
        for (a, b), p in ordered[:limit]:
            ca, cb = self.nodes[a], self.nodes[b]
            out.append({
                "company1": ca.get("name"), "industry1": ca.get("industry"), "location1": ca.get("location"),
                "company2": cb.get("name"), "industry2": cb.get("industry"), "location2": cb.get("location"),
                "score": p["score"], "shared_materials": p["shared_materials"],
                "shared_names": p["shared_names"],
            })
        return out

    def graph_stats(self):
        if self.unavailable:
            raise GraphStoreUnavailable("connection refused")
        return {
            "matches": sum(1 for e in self.edges if e[1] == "CAN_UPCYCLE"),
            "co2_saved": sum(1 for p in self.nodes.values()
                             if p["_label"] == "Company" and p.get("carbon_rating") in ("A", "B")),
            "landfill_diverted": sum(1 for p in self.nodes.values() if p["_label"] == "WasteMaterial"),
        }

    # ---------- marketplace ----------
    def _check_up(self):
        if self.unavailable:
            raise GraphStoreUnavailable("connection refused")

    def _labelled(self, label):
        return [p for p in self.nodes.values() if p["_label"] == label]

    def _material_named(self, name):
        for p in self._labelled("WasteMaterial"):
            if p.get("name") == name:
                return p
        return None

    def _linked(self, rel, target):
        return [self.nodes[s] for s, r, t in self.edges if r == rel and t == target and s in self.nodes]

    def material_feed(self):
        self._check_up()
        out = []
        for w in sorted(self._labelled("WasteMaterial"), key=lambda p: p.get("name") or ""):
            producers = sorted(self._linked("PRODUCES", w["id"]), key=lambda p: p.get("name") or "")
            if not producers:
                continue
            first = producers[0]
            out.append({
                "id": w["id"], "name": w.get("name"), "toxicity": w.get("toxicity_level"),
                "base_element": w.get("base_element"), "category": w.get("category"),
                "status": w.get("status"), "producer": first.get("name"), "producer_id": first["id"],
                "location": first.get("location"), "price": w.get("price"), "quantity": w.get("quantity"),
            })
        return out

    def add_material_listing(self, company_id, listing):
        self._check_up()
        seller = self.nodes.get(company_id)
        if not seller or seller["_label"] != "Company":
            return None
        m = self._material_named(listing["name"])
        if m is None:
            mid = new_node_id("mat")
            m = self.add_material(
                mid, listing["name"], category=listing["category"], toxicity_level=listing["toxicity"],
                base_element=listing["base_element"], description=listing["description"],
                status="available", price=listing["price"], quantity=listing["quantity"],
            )
        else:
            m["status"] = "available"
            if m.get("category") == "Requested":
                m["category"] = listing["category"]
            if m.get("toxicity_level") == "unknown":
                m["toxicity_level"] = listing["toxicity"]
            if m.get("base_element") == "unknown":
                m["base_element"] = listing["base_element"]
            if (m.get("description") or "").startswith("Demand request:"):
                m["description"] = listing["description"]
            for key in ("price", "quantity"):
                if listing[key] is not None:
                    m[key] = listing[key]
        self.edges.add((company_id, "PRODUCES", m["id"]))
        buyers = sorted(self._linked("IS_SEEKING", m["id"]), key=lambda p: p.get("name") or "")
        return {"id": m["id"], "buyers": [
            {"company_id": b["id"], "company_name": b.get("name"),
             "seeking_since": self.seeking_since.get((b["id"], m["id"]))}
            for b in buyers
        ]}

    def search_supply(self, query, limit=5):
        self._check_up()
        q = query.lower()
        out = []
        for w in sorted(self._labelled("WasteMaterial"), key=lambda p: p.get("name") or ""):
            producers = self._linked("PRODUCES", w["id"])
            text = [(w.get("name") or "").lower(), (w.get("description") or "").lower()]
            if producers and any(q in t for t in text):
                out.append({"id": w["id"], "name": w.get("name"), "category": w.get("category"),
                            "toxicity": w.get("toxicity_level"),
                            "producers": sorted({p.get("name") for p in producers})})
        return out[:limit]

    def register_demand(self, company_id, name):
        self._check_up()
        buyer = self.nodes.get(company_id)
        if not buyer or buyer["_label"] != "Company":
            return None
        m = self._material_named(name)
        if m is None:
            m = self.add_material(
                new_node_id("demand"), name, status="requested", category="Requested",
                toxicity_level="unknown", base_element="unknown", description=f"Demand request: {name}",
            )
        self.edges.add((company_id, "IS_SEEKING", m["id"]))
        self.seeking_since.setdefault((company_id, m["id"]), "2026-01-01T00:00:00Z")
        return {"id": m["id"], "status": m.get("status")}

    # ---------- exploration ----------
    def supply_routes(self, material, max_distance_km=5000.0, min_capacity=0.0, limit=20):
        self._check_up()
        self.route_params = (material, max_distance_km, min_capacity, limit)
        w = self._material_named(material)
        if w is None:
            return []
        routes = []
        for producer in self._linked("PRODUCES", w["id"]):
            for upcycler in self._linked("CAN_UPCYCLE", w["id"]):
                if producer is upcycler or producer.get("latitude") is None or upcycler.get("latitude") is None:
                    continue
                if (upcycler.get("capacity") or 0) < min_capacity:
                    continue
                km = _haversine_km(producer, upcycler)
                if km > max_distance_km:
                    continue
                also = sorted({self.nodes[t].get("name") for s, r, t in self.edges
                               if s == upcycler["id"] and r == "CAN_UPCYCLE" and t != w["id"]})[:5]
                routes.append((km, {
                    "producer": producer.get("name"), "producer_location": producer.get("location"),
                    "producer_industry": producer.get("industry"), "material": w.get("name"),
                    "material_category": w.get("category"), "material_toxicity": w.get("toxicity_level"),
                    "upcycler": upcycler.get("name"), "upcycler_location": upcycler.get("location"),
                    "upcycler_industry": upcycler.get("industry"), "distance_km": float(round(km)),
                    "upcycler_capacity": upcycler.get("capacity"), "also_upcycles": also,
                }))
        routes.sort(key=lambda kv: (kv[0], kv[1]["producer"], kv[1]["upcycler"]))
        return [r for _, r in routes[:limit]]

    def recommendations(self, material_name):
        self._check_up()
        source = self._material_named(material_name)
        if source is None:
            return []
        out = []
        for s, r, t in self.edges:
            if s == source["id"] and r == "COMPLEMENTS" and t in self.nodes:
                rec = self.nodes[t]
                out.append({
                    "id": rec["id"], "name": rec.get("name"), "category": rec.get("category"),
                    "toxicity": rec.get("toxicity_level"), "base_element": rec.get("base_element"),
                    "upcyclers": sorted(p.get("name") for p in self._linked("CAN_UPCYCLE", t))[:5],
                    "producers": sorted(p.get("name") for p in self._linked("PRODUCES", t))[:3],
                })
        return sorted(out, key=lambda row: row["name"] or "")

    def wipe(self):
        self.calls.append("wipe")
        self.nodes.clear()
        self.edges.clear()
        self.matches.clear()
        self.seeking_since.clear()

    def ensure_constraints(self):
        self.calls.append("constraints")

    def merge_nodes(self, label, rows):
        assert label in NODE_LABELS
        for r in rows:
            node = self.nodes.setdefault(r["id"], {"_label": label})
            node.update(r["props"])
        return len(rows)

    def merge_edges(self, rel_type, rows):
        merged = 0
        for r in rows:
            if r["source"] in self.nodes and r["target"] in self.nodes:
                self.edges.add((r["source"], rel_type, r["target"]))
                merged += 1
        return merged


@pytest.fixture
def store():
    return FakeGraphStore()


@pytest.fixture
def scenario_store(store):
    """SteelCo / ChemCo / SteelCo2: two steel producers sharing slag with a chemicals plant."""
    store.add_company("c-steel-1", "Steel", produces=["SlagA", "SlagB"], name="SteelCo", location="Chennai")
    store.add_company("c-chem", "Chemicals", produces=["SlagA", "Acid1"], name="ChemCo", location="Pune")
    store.add_company("c-steel-2", "Steel", produces=["SlagA", "SlagB"], name="SteelCo2", location="Surat")
    return store


@pytest.fixture
def lock_env(tmp_path, monkeypatch):
    path = tmp_path / "compute-matches.lock"
    monkeypatch.setenv("MATCH_LOCK_PATH", str(path))
    return path
