"""Fetch breadth, scoring, de-duplication and source filtering."""
import math
from typing import AbstractSet, List, Optional, Sequence, Tuple

from kbengine.config import SearchSettings
from kbengine.paths import normalize_path, sources_match
from kbengine.schemas.chunks import VectorHit

ScoredHit = Tuple[VectorHit, float]


def calculate_fetch_k(k: int, total_rows: int, scoped: bool, settings: SearchSettings) -> int:
    """
    Number of neighbours to fetch before filtering down to ``k``.

    Always at least ``10 * k``.
    """
    k = max(1, k)
    if scoped:
        fetch_k = max(k * settings.filtered_multiplier, settings.min_fetch_k)
    else:
        proportional = math.floor(max(0, total_rows) * settings.global_ratio)
        clamped = min(settings.max_fetch_k, max(settings.min_fetch_k, proportional))
        fetch_k = max(k * settings.global_multiplier, clamped)
    return max(fetch_k, k * 10)


def distance_to_score(distance: float) -> float:
    """``clamp01(1 / (1 + d))``: 1 at distance 0, decreasing towards 0."""
    if distance is None or math.isnan(distance):
        return 0.0
    distance = max(0.0, distance)
    return min(1.0, max(0.0, 1.0 / (1.0 + distance)))


def dedupe_by_text(hits: Sequence[VectorHit]) -> List[VectorHit]:
    """One hit per distinct chunk text, keeping the lowest distance. Sorted ascending."""
    best = {}
    for hit in hits:
        current = best.get(hit.text)
        if current is None or hit.distance < current.distance:
            best[hit.text] = hit
    return sorted(best.values(), key=lambda h: h.distance)


def filter_by_sources(hits: Sequence[VectorHit], keys: Optional[Sequence[str]], fuzzy_limit: int = 50) -> List[VectorHit]:
    """
    Keep hits whose source matches one of ``keys``.

    Exact normalized match always; suffix/prefix match only when fewer than
    ``fuzzy_limit`` keys are given.
    """
    if not keys:
        return list(hits)
    wanted = set(keys)
    fuzzy = len(wanted) < fuzzy_limit
    kept = []
    for hit in hits:
        stored = normalize_path(hit.source)
        if stored in wanted or (fuzzy and any(sources_match(stored, key) for key in wanted)):
            kept.append(hit)
    return kept


def drop_unknown_sources(hits: Sequence[VectorHit], known: Optional[AbstractSet[str]]) -> List[VectorHit]:
    """Drop rows whose source has no catalog record. ``None`` keeps everything."""
    if known is None:
        return list(hits)
    return [hit for hit in hits if normalize_path(hit.source) in known]


def rank_by_distance(hits: Sequence[VectorHit], k: int) -> List[ScoredHit]:
    scored = [(hit, distance_to_score(hit.distance)) for hit in hits]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:k]


def rank_by_position(hits: Sequence[VectorHit], k: int) -> List[ScoredHit]:
    """Pseudo-scores ``1 - i/N`` for hits that carry no usable distance."""
    n = max(len(hits), 1)
    return [(hit, 1.0 - i / n) for i, hit in enumerate(hits)][:k]
