# Core partnership discovery: material profiles, Jaccard scoring, reporting helpers.
# Standard library only.

from __future__ import annotations
import logging
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from models import Company, InvalidRecord, MaterialProfile, PotentialMatch, WasteMaterial

log = logging.getLogger(__name__)

# ===================== Tunables =====================
JACCARD_THRESHOLD = 0.12      # minimum similarity for a persisted match
SHARED_NAMES_LIMIT = 5        # display sample of shared material names
SCORE_PLACES = Decimal("0.001")

ProfileRow = Tuple[Mapping[str, Any], Sequence[Mapping[str, Any]]]

# ===================== Profile extraction =====================
def build_profiles(rows: Iterable[ProfileRow]) -> Tuple[Dict[str, MaterialProfile], Dict[str, str]]:
    """
    rows: (company_props, [material_props, ...]) per company, materials reached
    through PRODUCES or CAN_UPCYCLE.
    Returns (profiles keyed by company id, material display names keyed by material id).
    Malformed companies/materials are logged and left out.
    """
    profiles: Dict[str, MaterialProfile] = {}
    names: Dict[str, str] = {}
    for company_props, material_props in rows:
        try:
            company = Company.from_props(company_props)
        except InvalidRecord as e:
            log.warning("skipping company: %s", e)
            continue
        materials: Set[str] = set()
        for props in material_props or []:
            try:
                material = WasteMaterial.from_props(props)
            except InvalidRecord as e:
                log.warning("skipping material of company %s: %s", company.id, e)
                continue
            materials.add(material.id)
            names.setdefault(material.id, material.name)
        if company.id in profiles:
            # same id seen twice: union the profiles, keep the first record
            materials |= profiles[company.id].materials
            company = profiles[company.id].company
        profiles[company.id] = MaterialProfile(company=company, materials=frozenset(materials))
    return profiles, names

# ===================== Candidate generation =====================
def candidate_pairs(profiles: Mapping[str, MaterialProfile]) -> List[Tuple[str, str]]:
    """Pairs (lower_id, higher_id) co-occurring under at least one material, each once."""
    by_material: Dict[str, List[str]] = defaultdict(list)
    for cid in sorted(profiles):
        for mid in profiles[cid].materials:
            by_material[mid].append(cid)

    seen: Set[Tuple[str, str]] = set()
    for members in by_material.values():
        for i, a in enumerate(members):
            for b in members[i + 1:]:
                seen.add((a, b) if a < b else (b, a))
    return sorted(seen)

def different_industries(a: Company, b: Company) -> bool:
    # A missing industry never matches anything, another missing one included.
    ka, kb = a.industry_key, b.industry_key
    if ka is None or kb is None:
        return False
    return ka != kb

# ===================== Similarity =====================
def jaccard(intersection: int, size_a: int, size_b: int) -> float:
    union = size_a + size_b - intersection
    if union <= 0:
        return 0.0
    return intersection / union

def round_score(value: float) -> float:
    return float(Decimal(repr(value)).quantize(SCORE_PLACES, rounding=ROUND_HALF_UP))

def _shared_sample(shared: Iterable[str], names: Mapping[str, str], limit: int) -> Tuple[str, ...]:
    ordered = sorted(shared, key=lambda mid: (names.get(mid, mid), mid))
    out: List[str] = []
    for mid in ordered:
        name = names.get(mid, mid)
        if name in out:
            continue
        out.append(name)
        if len(out) >= limit:
            break
    return tuple(out)

def score_pair(a: MaterialProfile, b: MaterialProfile, names: Mapping[str, str],
               threshold: float = JACCARD_THRESHOLD,
               sample_size: int = SHARED_NAMES_LIMIT) -> Optional[PotentialMatch]:
    if b.company.id < a.company.id:
        a, b = b, a
    if a.company.id == b.company.id:
        return None
    if not different_industries(a.company, b.company):
        return None
    shared = a.materials & b.materials
    if not shared:
        return None
    sim = jaccard(len(shared), a.size, b.size)
    if sim <= 0.0 or sim < threshold:
        return None
    return PotentialMatch(
        source=a.company,
        target=b.company,
        score=round_score(sim),
        shared_materials=len(shared),
        shared_names=_shared_sample(shared, names, sample_size),
    )

def score_pairs(profiles: Mapping[str, MaterialProfile], names: Mapping[str, str],
                threshold: float = JACCARD_THRESHOLD,
                sample_size: int = SHARED_NAMES_LIMIT) -> List[PotentialMatch]:
    """All cross-industry pairs with jaccard >= threshold, best first."""
    matches: List[PotentialMatch] = []
    for a_id, b_id in candidate_pairs(profiles):
        m = score_pair(profiles[a_id], profiles[b_id], names, threshold, sample_size)
        if m is not None:
            matches.append(m)
    matches.sort(key=lambda m: (-m.score, m.source.id, m.target.id))
    return matches

# ===================== Reporting =====================
def summarize(matches: Sequence[PotentialMatch]) -> Tuple[int, float]:
    if not matches:
        return (0, 0.0)
    return (len(matches), sum(m.score for m in matches) / len(matches))

def format_match(m: PotentialMatch) -> str:
    return (f"[{m.score:.3f}] {m.source.name} ({m.source.industry}) <-> "
            f"{m.target.name} ({m.target.industry}) - {m.shared_materials} shared materials")
