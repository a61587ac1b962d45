# backend/models.py
# Typed records for the graph nodes the engine reads, plus the scored match it emits.

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

NODE_LABELS = ("Company", "WasteMaterial", "Regulation")
RELATIONSHIP_TYPES = (
    "PRODUCES",
    "CAN_UPCYCLE",
    "REQUIRES_COMPLIANCE",
    "COMPLEMENTS",
    "IS_SEEKING",
    "POTENTIAL_MATCH",
)
PROFILE_RELATIONSHIPS = ("PRODUCES", "CAN_UPCYCLE")
MATERIAL_STATUSES = ("available", "requested")

log = logging.getLogger(__name__)


class InvalidRecord(ValueError):
    """Raised when graph properties cannot be turned into a typed record."""


# ===================== Parsing helpers =====================
def _text(val: Any) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    return s or None

def _required_id(props: Mapping[str, Any], kind: str) -> str:
    ident = _text((props or {}).get("id"))
    if ident is None:
        raise InvalidRecord(f"{kind} is missing an id: {dict(props or {})!r}")
    return ident

def _float_or_none(val: Any) -> Optional[float]:
    if val is None or isinstance(val, bool):
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


# ===================== Nodes =====================
@dataclass(frozen=True)
class Company:
    id: str
    name: str
    industry: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    carbon_rating: Optional[str] = None
    capacity: Optional[float] = None
    # id as stored in the graph (may be an int); used to address the node on write-back
    graph_id: Any = field(default=None, compare=False, repr=False)

    @property
    def industry_key(self) -> Optional[str]:
        return self.industry.casefold() if self.industry else None

    @property
    def node_key(self) -> Any:
        return self.id if self.graph_id is None else self.graph_id

    @classmethod
    def from_props(cls, props: Mapping[str, Any]) -> "Company":
        ident = _required_id(props, "Company")
        return cls(
            id=ident,
            name=_text(props.get("name")) or ident,
            industry=_text(props.get("industry")),
            location=_text(props.get("location")),
            latitude=_float_or_none(props.get("latitude")),
            longitude=_float_or_none(props.get("longitude")),
            carbon_rating=_text(props.get("carbon_rating")),
            capacity=_float_or_none(props.get("capacity")),
            graph_id=props.get("id"),
        )


@dataclass(frozen=True)
class WasteMaterial:
    id: str
    name: str
    toxicity_level: Optional[str] = None
    base_element: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    status: Optional[str] = None

    @classmethod
    def from_props(cls, props: Mapping[str, Any]) -> "WasteMaterial":
        ident = _required_id(props, "WasteMaterial")
        status = _text(props.get("status"))
        if status is not None:
            status = status.lower()
            if status not in MATERIAL_STATUSES:
                log.warning("WasteMaterial %s has unknown status %r; treating as unset", ident, status)
                status = None
        return cls(
            id=ident,
            name=_text(props.get("name")) or ident,
            toxicity_level=_text(props.get("toxicity_level")),
            base_element=_text(props.get("base_element")),
            category=_text(props.get("category")),
            description=_text(props.get("description")),
            price=_float_or_none(props.get("price")),
            quantity=_float_or_none(props.get("quantity")),
            status=status,
        )


@dataclass(frozen=True)
class Regulation:
    id: str
    code: str
    description: Optional[str] = None

    @classmethod
    def from_props(cls, props: Mapping[str, Any]) -> "Regulation":
        ident = _required_id(props, "Regulation")
        return cls(
            id=ident,
            code=_text(props.get("code")) or ident,
            description=_text(props.get("description")),
        )


NODE_TYPES = {"Company": Company, "WasteMaterial": WasteMaterial, "Regulation": Regulation}


# ===================== Derived =====================
@dataclass(frozen=True)
class MaterialProfile:
    """Distinct materials a company produces or can upcycle, as of this run."""

    company: Company
    materials: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def size(self) -> int:
        return len(self.materials)


@dataclass(frozen=True)
class PotentialMatch:
    source: Company
    target: Company
    score: float
    shared_materials: int
    shared_names: Tuple[str, ...] = ()

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.source.id, self.target.id)

    def edge_properties(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "shared_materials": self.shared_materials,
            "shared_names": list(self.shared_names),
        }
