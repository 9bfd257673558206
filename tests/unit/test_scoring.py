import pytest

from kbengine.config import SearchSettings
from kbengine.retrieval.scoring import (
    calculate_fetch_k,
    dedupe_by_text,
    distance_to_score,
    filter_by_sources,
    rank_by_distance,
    rank_by_position,
)
from kbengine.schemas.chunks import VectorHit


@pytest.fixture
def search_settings():
    return SearchSettings()


def hit(text, source="/docs/a.txt", distance=0.0):
    return VectorHit(text=text, source=source, distance=distance)


class TestFetchK:
    """Fetch breadth before filtering."""

    @pytest.mark.parametrize("k,rows,scoped", [
        (1, 0, False), (4, 10, False), (6, 100_000, False), (30, 5, True), (4, 1_000, True),
    ])
    def test_at_least_ten_times_k(self, k, rows, scoped, search_settings):
        assert calculate_fetch_k(k, rows, scoped, search_settings) >= 10 * k

    def test_global_uses_multiplier_and_row_share(self, search_settings):
        # max(4*50, clamp(100, 500, floor(1000*0.15))) = max(200, 150)
        assert calculate_fetch_k(4, 1_000, False, search_settings) == 200
        # max(1*50, clamp(100, 500, floor(100000*0.15))) = 500
        assert calculate_fetch_k(1, 100_000, False, search_settings) == 500

    def test_scoped_uses_filtered_multiplier(self, search_settings):
        assert calculate_fetch_k(4, 0, True, search_settings) == 100
        assert calculate_fetch_k(10, 0, True, search_settings) == 200


class TestScore:
    def test_zero_distance_scores_one(self):
        assert distance_to_score(0.0) == 1.0

    def test_monotonic_decreasing(self):
        scores = [distance_to_score(d) for d in (0.0, 0.1, 0.5, 1.0, 10.0, 1e6)]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_negative_and_nan_distances_are_clamped(self):
        assert distance_to_score(-3.0) == 1.0
        assert distance_to_score(float("nan")) == 0.0


def test_dedupe_keeps_lowest_distance():
    hits = [hit("same", distance=0.9), hit("other", distance=0.5), hit("same", distance=0.2)]
    result = dedupe_by_text(hits)
    assert [(h.text, h.distance) for h in result] == [("same", 0.2), ("other", 0.5)]


def test_filter_by_sources_exact_and_fuzzy():
    hits = [hit("a", source="/home/me/docs/a.txt"), hit("b", source="/home/me/docs/b.txt")]
    assert [h.text for h in filter_by_sources(hits, ["/home/me/docs/a.txt"])] == ["a"]
    assert [h.text for h in filter_by_sources(hits, ["docs/b.txt"])] == ["b"]
    assert filter_by_sources(hits, None) == hits


def test_filter_by_sources_exact_only_for_many_keys():
    hits = [hit("a", source="/home/me/docs/a.txt")]
    assert filter_by_sources(hits, ["docs/a.txt"], fuzzy_limit=1) == []


def test_rank_by_distance_orders_best_first():
    ranked = rank_by_distance([hit("far", distance=2.0), hit("near", distance=0.1)], k=1)
    assert [(h.text, round(s, 3)) for h, s in ranked] == [("near", 0.909)]


def test_rank_by_position_pseudo_scores():
    ranked = rank_by_position([hit("a"), hit("b"), hit("c"), hit("d")], k=3)
    assert [s for _, s in ranked] == [1.0, 0.75, 0.5]
