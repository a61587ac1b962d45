# backend/app.py
import os
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, request, jsonify
from flask_cors import CORS

import config
from graph_store import GraphStoreError, Neo4jGraphStore

INSIGHTS_LIMIT = 30
INSIGHTS_MAX_LIMIT = 100
MULTI_HOP_MAX_KM = 5000


def _default_store_factory():
    return Neo4jGraphStore.connect(config.neo4j_settings())


def _as_number(v, cast=float):
    # scores/counts may come back as driver numeric types or be missing
    try:
        return cast(v) if v is not None else cast(0)
    except (TypeError, ValueError):
        return cast(0)


def insight_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "company1": row.get("company1"),
        "industry1": row.get("industry1"),
        "location1": row.get("location1"),
        "company2": row.get("company2"),
        "industry2": row.get("industry2"),
        "location2": row.get("location2"),
        "score": _as_number(row.get("score")),
        "sharedMaterials": _as_number(row.get("shared_materials"), int),
        "sharedNames": list(row.get("shared_names") or []),
    }


def _number_or_none(v):
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _body() -> Optional[Dict[str, Any]]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _text_field(data: Dict[str, Any], key: str) -> Optional[str]:
    val = data.get(key)
    if not isinstance(val, str):
        return None
    return val.strip() or None


def listing_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "toxicity": row.get("toxicity"),
        "baseElement": row.get("base_element"),
        "category": row.get("category"),
        "status": row.get("status"),
        "producer": row.get("producer"),
        "producerId": row.get("producer_id"),
        "location": row.get("location"),
        "price": _number_or_none(row.get("price")),
        "quantity": _number_or_none(row.get("quantity")),
    }


def route_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "producer": row.get("producer"),
        "producerLocation": row.get("producer_location"),
        "producerIndustry": row.get("producer_industry"),
        "material": row.get("material"),
        "materialCategory": row.get("material_category"),
        "materialToxicity": row.get("material_toxicity"),
        "upcycler": row.get("upcycler"),
        "upcyclerLocation": row.get("upcycler_location"),
        "upcyclerIndustry": row.get("upcycler_industry"),
        "distanceKm": _as_number(row.get("distance_km")),
        "upcyclerCapacity": _as_number(row.get("upcycler_capacity")),
        "alsoUpcycles": list(row.get("also_upcycles") or []),
    }


def recommendation_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "category": row.get("category"),
        "toxicity": row.get("toxicity"),
        "baseElement": row.get("base_element"),
        "upcyclers": [n for n in row.get("upcyclers") or [] if n],
        "producers": [n for n in row.get("producers") or [] if n],
    }


def create_app(store_factory: Optional[Callable[[], Any]] = None) -> Flask:
    config.load_env()
    app = Flask(__name__)
    app.config["STORE_FACTORY"] = store_factory or _default_store_factory

    CORS(
        app,
        resources={r"/*": {"origins": config.frontend_origins()}},
        supports_credentials=True,
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    def _open_store():
        return app.config["STORE_FACTORY"]()

    # =========================
    # Request logger
    # =========================
    @app.before_request
    def _dbg_log():
        app.logger.debug(">>> %s %s", request.method, request.path)

    # =========================
    # Basic routes
    # =========================
    @app.get("/health")
    def health():
        return {"status": "ok"}

    # =========================
    # Proactive insights
    # =========================
    @app.get("/api/insights")
    def insights():
        """
        Top POTENTIAL_MATCH edges, best score first.
        Query: ?limit=N (default 30, max 100).
        An empty graph (or one mid-recompute) is an empty list, not an error.
        """
        try:
            limit = int(request.args.get("limit", INSIGHTS_LIMIT))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        limit = max(1, min(limit, INSIGHTS_MAX_LIMIT))

        try:
            with _open_store() as store:
                rows = store.top_matches(limit)
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("insights query failed")
            return jsonify({"error": str(e)}), 500

        out: List[Dict[str, Any]] = [insight_from_row(r) for r in rows]
        return jsonify({"insights": out}), 200

    # =========================
    # Navbar stats
    # =========================
    @app.get("/api/stats")
    def stats():
        try:
            with _open_store() as store:
                s = store.graph_stats()
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("stats query failed")
            return jsonify({"error": str(e)}), 500
        return jsonify({
            "matches": s.get("matches", 0),
            "co2Saved": s.get("co2_saved", 0),
            "landfillDiverted": s.get("landfill_diverted", 0),
        }), 200

    # =========================
    # Marketplace feed & listings
    # =========================
    @app.get("/api/materials")
    def materials():
        try:
            with _open_store() as store:
                rows = store.material_feed()
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("materials query failed")
            return jsonify({"error": str(e)}), 500
        return jsonify([listing_from_row(r) for r in rows]), 200

    @app.post("/api/materials/add")
    def add_material():
        """
        Seller lists a material: {companyId, name, category?, toxicity?,
        baseElement?, description?, price?, quantity?}.
        Listing a name somebody is seeking turns their ghost node into supply;
        those buyers come back in matchedBuyers.
        """
        data = _body()
        if data is None:
            return jsonify({"error": "Invalid JSON body."}), 400
        company_id = data.get("companyId")
        name = _text_field(data, "name")
        if company_id in (None, ""):
            return jsonify({"error": "Missing required field: companyId"}), 400
        if not name:
            return jsonify({"error": "Missing required field: name"}), 400

        numbers = {}
        for key in ("price", "quantity"):
            raw = data.get(key)
            numbers[key] = _number_or_none(raw)
            if raw is not None and numbers[key] is None:
                return jsonify({"error": f"{key} must be a number"}), 400

        listing = {
            "name": name,
            "category": _text_field(data, "category") or "Uncategorized",
            "toxicity": _text_field(data, "toxicity") or "medium",
            "base_element": _text_field(data, "baseElement") or "Unknown",
            "description": _text_field(data, "description") or f"{name} - listed by seller",
            "price": numbers["price"],
            "quantity": numbers["quantity"],
        }
        try:
            with _open_store() as store:
                result = store.add_material_listing(company_id, listing)
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("material listing failed")
            return jsonify({"error": str(e)}), 500
        if result is None:
            return jsonify({"error": "Company not found"}), 404

        buyers = [{
            "companyId": b.get("company_id"),
            "companyName": b.get("company_name"),
            "seekingSince": b.get("seeking_since"),
        } for b in result["buyers"]]
        for b in buyers:
            app.logger.info("supply alert for %s: %r now listed by %s", b["companyId"], name, company_id)

        if buyers:
            message = f"Material listed! {len(buyers)} buyer(s) are seeking this material."
        else:
            message = "Material listed successfully. No pending demand yet."
        material = {
            "id": result["id"],
            "name": name,
            "category": listing["category"],
            "toxicity": listing["toxicity"],
            "baseElement": listing["base_element"],
            "description": listing["description"],
            "price": listing["price"],
            "quantity": listing["quantity"],
        }
        return jsonify({
            "success": True,
            "material": material,
            "matchedBuyers": buyers,
            "matchCount": len(buyers),
            "message": message,
        }), 200

    # =========================
    # Demand capture
    # =========================
    @app.post("/api/demand/search")
    def demand_search():
        """
        Buyer searches for a material: {companyId, query}.
        Existing supply is returned as-is; otherwise a `requested` ghost
        material and an IS_SEEKING edge record the demand.
        """
        data = _body()
        if data is None:
            return jsonify({"error": "Invalid JSON body."}), 400
        company_id = data.get("companyId")
        query = _text_field(data, "query")
        if company_id in (None, ""):
            return jsonify({"error": "Missing required field: companyId"}), 400
        if not query:
            return jsonify({"error": "Missing required field: query"}), 400

        try:
            with _open_store() as store:
                supply = store.search_supply(query)
                demand = None if supply else store.register_demand(company_id, query)
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("demand search failed")
            return jsonify({"error": str(e)}), 500

        if supply:
            return jsonify({
                "status": "supply_found",
                "message": f"Found {len(supply)} matching material(s) in the supply network.",
                "results": supply,
                "demandRegistered": False,
            }), 200
        if demand is None:
            return jsonify({"error": "Company not found"}), 404

        app.logger.info("demand registered: %s seeks %r", company_id, query)
        return jsonify({
            "status": "demand_registered",
            "message": f'No current supply found for "{query}". Your demand has been registered.',
            "results": [],
            "demandRegistered": True,
            "demandDetails": {
                "materialName": query,
                "companyId": company_id,
                "ghostNodeId": demand.get("id"),
            },
        }), 200

    # =========================
    # Multi-hop supply routes
    # =========================
    @app.post("/api/multi-hop")
    def multi_hop():
        """
        Producer -> material -> upcycler chains for one material name:
        {material, maxDistanceKm? (5000), minCapacity? (0)}. Nearest 20 first.
        """
        data = _body()
        if data is None:
            return jsonify({"error": "Invalid JSON body."}), 400
        material = _text_field(data, "material")
        if not material:
            return jsonify({"error": "Missing required field: material"}), 400
        raw_km, raw_cap = data.get("maxDistanceKm"), data.get("minCapacity")
        max_km = MULTI_HOP_MAX_KM if raw_km is None else _number_or_none(raw_km)
        min_cap = 0.0 if raw_cap is None else _number_or_none(raw_cap)
        if max_km is None or min_cap is None:
            return jsonify({"error": "maxDistanceKm and minCapacity must be numbers"}), 400

        try:
            with _open_store() as store:
                rows = store.supply_routes(material, max_distance_km=max_km, min_capacity=min_cap)
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("multi-hop query failed")
            return jsonify({"error": str(e)}), 500
        return jsonify({"routes": [route_from_row(r) for r in rows]}), 200

    # =========================
    # Complementary materials
    # =========================
    @app.post("/api/recommendations")
    def recommendations():
        data = _body()
        if data is None:
            return jsonify({"error": "Invalid JSON body."}), 400
        material_name = _text_field(data, "materialName")
        if not material_name:
            return jsonify({"error": "Missing required field: materialName"}), 400

        try:
            with _open_store() as store:
                rows = store.recommendations(material_name)
        except (GraphStoreError, config.ConfigError) as e:
            app.logger.exception("recommendations query failed")
            return jsonify({"error": str(e)}), 500
        return jsonify({
            "source": material_name,
            "recommendations": [recommendation_from_row(r) for r in rows],
        }), 200

    return app


app = create_app()


# =========================
# Run server
# =========================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5050"))
    debug = os.environ.get("DEBUG", "false").lower() == "true"
    app.run(host="0.0.0.0", port=port, debug=debug)
