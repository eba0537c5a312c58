from __future__ import annotations

import json

import pytest

from conftest import FakeEmbedder
from evolve.errors import ParseFailure
from evolve.models.memory import MemoryCandidate
from evolve.services.memory_store import JsonMemoryStore


def _store(tmp_path, vectors=None, **kwargs) -> tuple[JsonMemoryStore, FakeEmbedder]:
    embedder = FakeEmbedder(vectors, **kwargs)
    return JsonMemoryStore(tmp_path / "memory.json", embedder=embedder), embedder


@pytest.mark.asyncio
async def test_upsert_assigns_increasing_ids_and_persists_document(tmp_path):
    store, _ = _store(tmp_path, {"likes tea": [1.0, 0.0, 0.0], "lives in Oslo": [0.0, 1.0, 0.0]})

    inserted = await store.upsert(
        [MemoryCandidate("likes tea", tags=["preference"]), MemoryCandidate("lives in Oslo", tags=["identity"])]
    )

    assert [item.id for item in inserted] == [1, 2]
    document = json.loads((tmp_path / "memory.json").read_text())
    assert document["nextId"] == 3
    assert [item["content"] for item in document["longTerm"]] == ["likes tea", "lives in Oslo"]
    assert document["longTerm"][0]["tags"] == ["preference"]
    assert document["longTerm"][0]["embedding"] == [1.0, 0.0, 0.0]


@pytest.mark.asyncio
async def test_upsert_skips_empty_and_case_insensitive_duplicates(tmp_path):
    store, embedder = _store(tmp_path, {"Likes tea": [1.0, 0.0, 0.0]})
    await store.upsert([MemoryCandidate("Likes tea")])

    inserted = await store.upsert(
        [MemoryCandidate("  likes TEA "), MemoryCandidate("   ")]
    )

    assert inserted == []
    # only the first batch reached the embedder
    assert embedder.calls == [["Likes tea"]]


@pytest.mark.asyncio
async def test_near_duplicate_embedding_is_suppressed_not_merged(tmp_path):
    store, _ = _store(
        tmp_path,
        {
            "prefers metric units": [1.0, 0.0, 0.0],
            "uses the metric system": [0.99, 0.01, 0.0],
            "works as a nurse": [0.0, 1.0, 0.0],
        },
    )
    await store.upsert([MemoryCandidate("prefers metric units")])

    inserted = await store.upsert(
        [MemoryCandidate("uses the metric system"), MemoryCandidate("works as a nurse")]
    )

    assert [item.content for item in inserted] == ["works as a nurse"]
    collection = await store.load()
    assert [item.content for item in collection.items] == ["prefers metric units", "works as a nurse"]
    assert [item.id for item in collection.items] == [1, 2]


@pytest.mark.asyncio
async def test_near_duplicates_within_one_batch_keep_the_first(tmp_path):
    store, _ = _store(tmp_path, {"a": [0.0, 0.0, 1.0], "b": [0.0, 0.001, 1.0]})

    inserted = await store.upsert([MemoryCandidate("a"), MemoryCandidate("b")])

    assert [item.content for item in inserted] == ["a"]


@pytest.mark.asyncio
async def test_embedding_failure_stores_items_without_embeddings(tmp_path):
    store, _ = _store(tmp_path, fail=True)

    inserted = await store.upsert([MemoryCandidate("likes tea")])

    assert len(inserted) == 1
    assert inserted[0].embedding is None
    assert inserted[0].retrievable is False
    assert await store.retrieve("tea") == []


@pytest.mark.asyncio
async def test_retrieve_on_empty_store_does_not_embed(tmp_path):
    store, embedder = _store(tmp_path)

    assert await store.retrieve("anything") == []
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_retrieve_filters_by_threshold_sorts_and_bounds(tmp_path):
    store, _ = _store(
        tmp_path,
        {
            "far": [0.0, 1.0, 0.0],
            "close": [0.8, 0.6, 0.0],
            "exact": [1.0, 0.0, 0.0],
            "query": [1.0, 0.0, 0.0],
        },
    )
    await store.upsert([MemoryCandidate("far"), MemoryCandidate("close"), MemoryCandidate("exact")])

    hits = await store.retrieve("query", k=5, min_similarity=0.25)
    assert [hit.item.content for hit in hits] == ["exact", "close"]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-6)
    assert hits[1].similarity == pytest.approx(0.8, abs=1e-6)

    top = await store.retrieve("query", k=1, min_similarity=0.25)
    assert [hit.item.content for hit in top] == ["exact"]

    assert await store.retrieve("query", k=0) == []


@pytest.mark.asyncio
async def test_retrieve_ties_keep_insertion_order(tmp_path):
    store, _ = _store(
        tmp_path,
        {"first": [1.0, 1.0, 0.0], "second": [1.0, 0.0, 1.0], "query": [1.0, 0.0, 0.0]},
    )
    await store.upsert([MemoryCandidate("first"), MemoryCandidate("second")])

    hits = await store.retrieve("query", min_similarity=0.0)

    assert [hit.item.content for hit in hits] == ["first", "second"]
    assert hits[0].similarity == pytest.approx(hits[1].similarity)


@pytest.mark.asyncio
async def test_retrieve_skips_items_with_other_dimensions(tmp_path):
    store, _ = _store(tmp_path, {"old model": [1.0, 0.0], "new model": [1.0, 0.0, 0.0], "query": [1.0, 0.0, 0.0]})
    await store.upsert([MemoryCandidate("old model"), MemoryCandidate("new model")])

    hits = await store.retrieve("query")

    assert [hit.item.content for hit in hits] == ["new model"]


@pytest.mark.asyncio
async def test_query_embedding_failure_returns_no_hits_and_reports_it(tmp_path):
    store, embedder = _store(tmp_path, {"likes tea": [1.0, 0.0, 0.0]})
    await store.upsert([MemoryCandidate("likes tea")])
    embedder.fail = True

    assert await store.retrieve("tea") == []
    recall = await store.recall("tea")
    assert recall.hits == []
    assert "embedding backend down" in recall.error


@pytest.mark.asyncio
async def test_delete_never_rewinds_next_id(tmp_path):
    store, _ = _store(tmp_path, {"a": [1.0, 0.0, 0.0], "b": [0.0, 1.0, 0.0], "c": [0.0, 0.0, 1.0]})
    await store.upsert([MemoryCandidate("a"), MemoryCandidate("b")])

    assert await store.delete(2) is True
    assert await store.delete(2) is False
    inserted = await store.upsert([MemoryCandidate("c")])

    assert [item.id for item in inserted] == [3]


@pytest.mark.asyncio
async def test_clear_resets_document(tmp_path):
    store, _ = _store(tmp_path)
    await store.upsert([MemoryCandidate("a")])

    await store.clear()

    assert json.loads((tmp_path / "memory.json").read_text()) == {"longTerm": [], "nextId": 1}
    stats = await store.stats()
    assert stats["totalItems"] == 0
    assert stats["lastUpdated"] is None


@pytest.mark.asyncio
async def test_next_id_recovers_from_stale_document(tmp_path):
    (tmp_path / "memory.json").write_text(
        json.dumps({"longTerm": [{"id": 7, "content": "x", "tags": [], "embedding": None}], "nextId": 2})
    )
    store, _ = _store(tmp_path, {"y": [0.0, 1.0, 0.0]})

    inserted = await store.upsert([MemoryCandidate("y")])

    assert inserted[0].id == 8


@pytest.mark.asyncio
async def test_corrupt_document_raises_parse_failure(tmp_path):
    (tmp_path / "memory.json").write_text("{not json")
    store, _ = _store(tmp_path)

    with pytest.raises(ParseFailure):
        await store.load()
