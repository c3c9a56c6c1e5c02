"""Tests for the per-session comparison cache."""
import asyncio
from unittest.mock import MagicMock
import pytest
from comparison_cache import DE_KIND, GSEA_KIND, CacheKey, ComparisonCache


def test_put_and_get():
    cache = ComparisonCache()
    cache.put("B_vs_A", DE_KIND, "result")
    assert cache.get("B_vs_A", DE_KIND) == "result"
    assert ("B_vs_A", DE_KIND, None) in cache
    assert cache.get("C_vs_A", DE_KIND) is None


def test_write_once():
    cache = ComparisonCache()
    cache.put("B_vs_A", GSEA_KIND, [1], database="GO")
    with pytest.raises(ValueError):
        cache.put("B_vs_A", GSEA_KIND, [2], database="GO")
    # Another database is a different key
    cache.put("B_vs_A", GSEA_KIND, [3], database="KEGG")
    assert len(cache) == 2


def test_get_or_compute_calls_factory_once():
    cache = ComparisonCache()
    factory = MagicMock(return_value="computed")
    assert cache.get_or_compute("B_vs_A", GSEA_KIND, factory, "GO") == "computed"
    assert cache.get_or_compute("B_vs_A", GSEA_KIND, factory, "GO") == "computed"
    factory.assert_called_once()
    assert cache.stats.hits == 1 and cache.stats.misses == 1


def test_get_or_compute_async_failure_not_cached():
    cache = ComparisonCache()
    calls = []

    async def failing():
        calls.append(1)
        raise RuntimeError("boom")

    async def succeeding():
        calls.append(2)
        return "ok"

    async def scenario():
        with pytest.raises(RuntimeError):
            await cache.get_or_compute_async("B_vs_A", GSEA_KIND, failing, "GO")
        first = await cache.get_or_compute_async("B_vs_A", GSEA_KIND, succeeding, "GO")
        second = await cache.get_or_compute_async("B_vs_A", GSEA_KIND, succeeding, "GO")
        return first, second

    assert asyncio.run(scenario()) == ("ok", "ok")
    assert calls == [1, 2]


def test_invalidate_comparison():
    cache = ComparisonCache()
    cache.put("B_vs_A", DE_KIND, 1)
    cache.put("B_vs_A", GSEA_KIND, 2, database="GO")
    cache.put("C_vs_A", DE_KIND, 3)
    assert cache.invalidate_comparison("B_vs_A") == 2
    assert cache.keys() == [CacheKey("C_vs_A", DE_KIND, None)]


def test_clear():
    cache = ComparisonCache()
    cache.put("B_vs_A", DE_KIND, 1)
    cache.clear()
    assert len(cache) == 0
    cache.put("B_vs_A", DE_KIND, 2)
    assert cache.get("B_vs_A", DE_KIND) == 2


def test_key_str():
    assert str(CacheKey("B_vs_A", GSEA_KIND, "GO")) == "B_vs_A/gsea/GO"
    assert str(CacheKey("B_vs_A", DE_KIND)) == "B_vs_A/de"
