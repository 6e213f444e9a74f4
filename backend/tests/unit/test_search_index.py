"""
Unit Tests — Search index backends and IndexProjector
══════════════════════════════════════════════════════
  • InMemorySearchIndex: fuzzy / prefix / folded matching, filters,
    highlights, subject listing, aggregations, rename
  • Elasticsearch: query DSL shape and client error wrapping (mocked client)
  • IndexProjector: retry policy on writes, degraded reads
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from elasticsearch import NotFoundError, TransportError

from courseindex.core.errors import SearchIndexError
from courseindex.models.documents import Document
from courseindex.search.base import SearchIndexBackend
from courseindex.search.elasticsearch_index import (
    INDEX_MAPPINGS,
    ElasticsearchIndex,
    build_search_body,
    keyword_path,
)
from courseindex.search.memory_index import InMemorySearchIndex, auto_fuzziness, within_distance
from courseindex.search.projector import IndexProjector, build_index_document

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _doc(
    original_filename: str,
    subject_name:      str = "Biology",
    category:          str = "Materialy",
    ext:               str = "txt",
    size:              int = 100,
    created_at:        datetime = T0,
) -> Document:
    doc_id = uuid.uuid4()
    return Document(
        id=doc_id,
        user_id=uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"),
        filename=f"{doc_id}.{ext}",
        original_filename=original_filename,
        filepath=f"uploads/{subject_name.lower()}/{category.lower()}/{doc_id}.{ext}",
        subject_name=subject_name,
        category=category,
        file_size=size,
        file_extension=ext,
        processing_status="completed",
        created_at=created_at,
        updated_at=created_at,
    )


async def _put(index: InMemorySearchIndex, doc: Document, text: str) -> str:
    body = build_index_document(doc, text)
    await index.upsert(body["file_id"], body)
    return body["file_id"]


@pytest.fixture
async def populated():
    index = InMemorySearchIndex()
    await index.ensure_index()
    ids = {
        "mitosis": await _put(
            index, _doc("Mitosis notes.txt"), "Mitosis is the division of a cell nucleus.",
        ),
        "krebs": await _put(
            index,
            _doc("Krebs cycle.pptx", category="Prednasky", ext="pptx", size=300,
                 created_at=T0 + timedelta(days=1)),
            "The citric acid cycle releases stored energy.",
        ),
        "organic": await _put(
            index, _doc("Alkány a alkény.pdf", subject_name="Chemistry", ext="pdf", size=50),
            "Uhľovodíky obsahujú iba uhlík a vodík.",
        ),
    }
    return index, ids


# ─────────────────────────────────────────────────────────────────────────────
# Matching helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestFuzzyHelpers:

    @pytest.mark.parametrize("term,expected", [("ab", 0), ("cell", 1), ("mitosis", 2)])
    def test_auto_fuzziness(self, term, expected):
        assert auto_fuzziness(term) == expected

    def test_within_distance(self):
        assert within_distance("mitosys", "mitosis", 1)
        assert not within_distance("meiosis", "mitosis", 1)
        assert within_distance("cell", "cell", 0)


# ─────────────────────────────────────────────────────────────────────────────
# InMemorySearchIndex
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestInMemorySearch:

    async def test_typo_still_matches(self, populated):
        index, ids = populated
        results = await index.search("mitosys")
        assert [hit.doc_id for hit in results.hits] == [ids["mitosis"]]

    async def test_filename_prefix_matches(self, populated):
        index, ids = populated
        results = await index.search("kreb")
        assert ids["krebs"] in [hit.doc_id for hit in results.hits]

    async def test_diacritics_folded(self, populated):
        index, ids = populated
        results = await index.search("uhlovodiky")
        assert [hit.doc_id for hit in results.hits] == [ids["organic"]]

    async def test_keyword_filters_are_exact(self, populated):
        index, ids = populated
        results = await index.search("", {"subject_name": "Biology", "category": "Prednasky"})
        assert [hit.doc_id for hit in results.hits] == [ids["krebs"]]

    async def test_empty_query_lists_newest_first(self, populated):
        index, ids = populated
        results = await index.search("", {"subject_name": "Biology"})
        assert results.total == 2
        assert results.hits[0].doc_id == ids["krebs"]

    async def test_content_highlight(self, populated):
        index, ids = populated
        hit = (await index.search("division")).hits[0]
        assert hit.doc_id == ids["mitosis"]
        assert any("<em>division</em>" in fragment for fragment in hit.highlight["content"])

    async def test_no_match(self, populated):
        index, _ = populated
        results = await index.search("thermodynamics")
        assert results.total == 0
        assert results.hits == []

    async def test_size_limits_hits_not_total(self, populated):
        index, _ = populated
        results = await index.search("", size=1)
        assert results.total == 3
        assert len(results.hits) == 1

    async def test_files_by_subject(self, populated):
        index, ids = populated
        results = await index.files_by_subject("Biology")
        assert {hit.doc_id for hit in results.hits} == {ids["mitosis"], ids["krebs"]}

    async def test_aggregate_sorted_by_key(self, populated):
        index, _ = populated
        assert await index.aggregate_by("subject_name") == [("Biology", 2), ("Chemistry", 1)]

    async def test_sum_and_count(self, populated):
        index, _ = populated
        assert await index.sum_field("file_size") == 450
        assert await index.count() == 3

    async def test_rename_field_value(self, populated):
        index, ids = populated
        assert await index.rename_field_value("subject_name", "Biology", "Cell Biology") == 2
        assert (await index.get(ids["mitosis"]))["subject_name"] == "Cell Biology"
        assert (await index.files_by_subject("Biology")).total == 0

    async def test_delete_is_idempotent(self, populated):
        index, ids = populated
        assert await index.delete(ids["mitosis"]) is True
        assert await index.delete(ids["mitosis"]) is False
        assert await index.get(ids["mitosis"]) is None

    async def test_returned_documents_are_copies(self, populated):
        index, ids = populated
        source = await index.get(ids["mitosis"])
        source["subject_name"] = "mutated"
        assert (await index.get(ids["mitosis"]))["subject_name"] == "Biology"


# ─────────────────────────────────────────────────────────────────────────────
# Elasticsearch
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def es_client():
    client = AsyncMock()
    client.indices = MagicMock()
    client.indices.exists = AsyncMock(return_value=False)
    client.indices.create = AsyncMock()
    return client


@pytest.mark.unit
class TestElasticsearchQueryBody:

    def test_fuzzy_weighted_multi_match(self):
        body = build_search_body("mitosis", None, 20)
        multi_match = body["query"]["bool"]["must"][0]["multi_match"]
        assert multi_match["fuzziness"] == "AUTO"
        assert "filename^3" in multi_match["fields"]
        assert "content" in multi_match["fields"]
        assert body["size"] == 20

    def test_empty_query_is_match_all(self):
        body = build_search_body("   ", None, 5)
        assert body["query"]["bool"]["must"] == [{"match_all": {}}]

    def test_filters_use_keyword_paths(self):
        body = build_search_body("x", {"subject_name": "Biology", "category": "Otazky", "unknown": "y"}, 10)
        assert body["query"]["bool"]["filter"] == [
            {"term": {"category": "Otazky"}},
            {"term": {"subject_name.keyword": "Biology"}},
        ]

    def test_highlight_fragments(self):
        content = build_search_body("x", None, 10)["highlight"]["fields"]["content"]
        assert content == {"fragment_size": 150, "number_of_fragments": 3}

    def test_keyword_path(self):
        assert keyword_path("subject_name") == "subject_name.keyword"
        assert keyword_path("category") == "category"

    def test_mapping_has_keyword_subject(self):
        assert INDEX_MAPPINGS["properties"]["subject_name"]["fields"]["keyword"]["type"] == "keyword"


@pytest.mark.unit
class TestElasticsearchIndex:

    async def test_ensure_index_creates_when_missing(self, es_client):
        index = ElasticsearchIndex(client=es_client, index_name="test_docs")
        await index.ensure_index()
        es_client.indices.create.assert_awaited_once()
        assert es_client.indices.create.call_args.kwargs["index"] == "test_docs"

    async def test_ensure_index_skips_existing(self, es_client):
        es_client.indices.exists = AsyncMock(return_value=True)
        await ElasticsearchIndex(client=es_client, index_name="test_docs").ensure_index()
        es_client.indices.create.assert_not_awaited()

    async def test_upsert_refreshes(self, es_client):
        index = ElasticsearchIndex(client=es_client, index_name="test_docs")
        await index.upsert("abc", {"file_id": "abc"})
        kwargs = es_client.index.call_args.kwargs
        assert kwargs["id"] == "abc"
        assert kwargs["refresh"] == "true"

    async def test_transport_error_wrapped(self, es_client):
        es_client.index = AsyncMock(side_effect=TransportError("connection refused"))
        index = ElasticsearchIndex(client=es_client, index_name="test_docs")
        with pytest.raises(SearchIndexError) as exc_info:
            await index.upsert("abc", {})
        assert exc_info.value.operation == "upsert"

    async def test_delete_missing_returns_false(self, es_client):
        es_client.delete = AsyncMock(
            side_effect=NotFoundError("not_found", meta=MagicMock(status=404), body={}),
        )
        index = ElasticsearchIndex(client=es_client, index_name="test_docs")
        assert await index.delete("abc") is False

    async def test_rename_uses_update_by_query(self, es_client):
        es_client.update_by_query = AsyncMock(return_value={"updated": 4})
        index = ElasticsearchIndex(client=es_client, index_name="test_docs")

        assert await index.rename_field_value("subject_name", "Bio", "Biology") == 4

        kwargs = es_client.update_by_query.call_args.kwargs
        assert kwargs["query"] == {"term": {"subject_name.keyword": "Bio"}}
        assert kwargs["script"]["params"] == {"new_value": "Biology"}
        assert kwargs["conflicts"] == "proceed"

    async def test_search_maps_hits(self, es_client):
        es_client.search = AsyncMock(return_value={
            "hits": {
                "total": {"value": 1},
                "hits": [{
                    "_id": "abc",
                    "_score": 2.5,
                    "_source": {"file_id": "abc"},
                    "highlight": {"content": ["<em>cell</em>"]},
                }],
            },
        })
        results = await ElasticsearchIndex(client=es_client, index_name="t").search("cell")
        assert results.total == 1
        assert results.hits[0].score == 2.5
        assert results.hits[0].highlight == {"content": ["<em>cell</em>"]}

    async def test_aggregate_buckets(self, es_client):
        es_client.search = AsyncMock(return_value={
            "aggregations": {"values": {"buckets": [
                {"key": "Biology", "doc_count": 2},
                {"key": "Chemistry", "doc_count": 1},
            ]}},
        })
        index = ElasticsearchIndex(client=es_client, index_name="t")
        assert await index.aggregate_by("subject_name") == [("Biology", 2), ("Chemistry", 1)]
        terms = es_client.search.call_args.kwargs["aggs"]["values"]["terms"]
        assert terms["field"] == "subject_name.keyword"

    async def test_ping_failure_is_false(self, es_client):
        es_client.ping = AsyncMock(side_effect=TransportError("down"))
        assert await ElasticsearchIndex(client=es_client, index_name="t").ping() is False


# ─────────────────────────────────────────────────────────────────────────────
# IndexProjector
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def flaky_backend():
    backend = MagicMock(spec=SearchIndexBackend)
    backend.upsert = AsyncMock()
    return backend


@pytest.mark.unit
class TestIndexProjector:

    def test_index_document_shape(self):
        doc = _doc("Mitosis notes.txt")
        body = build_index_document(doc, "text")
        assert body["file_id"] == str(doc.id)
        assert body["content"] == "text"
        assert body["created_at"] == T0.isoformat()

    async def test_upsert_retries_then_succeeds(self, flaky_backend):
        flaky_backend.upsert.side_effect = [SearchIndexError("upsert", "timeout"), None]
        projector = IndexProjector(flaky_backend, retries=3, base_delay=0)

        await projector.upsert(_doc("a.txt"), "text")

        assert flaky_backend.upsert.await_count == 2

    async def test_upsert_raises_after_last_attempt(self, flaky_backend):
        flaky_backend.upsert.side_effect = SearchIndexError("upsert", "down")
        projector = IndexProjector(flaky_backend, retries=3, base_delay=0)

        with pytest.raises(SearchIndexError):
            await projector.upsert(_doc("a.txt"), "text")
        assert flaky_backend.upsert.await_count == 3

    async def test_delete_failure_is_not_fatal(self, flaky_backend):
        flaky_backend.delete = AsyncMock(side_effect=SearchIndexError("delete", "down"))
        assert await IndexProjector(flaky_backend).delete("abc") is False

    async def test_reads_degrade_to_empty(self, flaky_backend):
        error = SearchIndexError("search", "down")
        flaky_backend.search = AsyncMock(side_effect=error)
        flaky_backend.files_by_subject = AsyncMock(side_effect=error)
        flaky_backend.aggregate_by = AsyncMock(side_effect=error)
        flaky_backend.count = AsyncMock(side_effect=error)
        projector = IndexProjector(flaky_backend)

        assert (await projector.search("x")).total == 0
        assert (await projector.files_by_subject("Biology")).hits == []
        assert await projector.aggregate_by("subject_name") == []
        assert (await projector.comprehensive_stats())["total_files"] == 0

    async def test_rename_failure_returns_zero(self, flaky_backend):
        flaky_backend.rename_field_value = AsyncMock(side_effect=SearchIndexError("rename", "down"))
        assert await IndexProjector(flaky_backend).rename_field_value("subject_name", "a", "b") == 0

    async def test_non_keyword_field_rejected(self, flaky_backend):
        with pytest.raises(ValueError):
            await IndexProjector(flaky_backend).aggregate_by("content")

    async def test_comprehensive_stats(self, populated):
        index, _ = populated
        stats = await IndexProjector(index).comprehensive_stats()
        assert stats["total_files"] == 3
        assert stats["total_subjects"] == 2
        assert stats["total_storage_bytes"] == 450
        assert {"category": "Materialy", "count": 2} in stats["files_by_category"]
        assert {"file_extension": "pdf", "count": 1} in stats["files_by_extension"]

    async def test_reindex_counts(self, flaky_backend):
        flaky_backend.upsert.side_effect = [None, SearchIndexError("upsert", "x")]
        projector = IndexProjector(flaky_backend, retries=1, base_delay=0)
        assert await projector.reindex([(_doc("a.txt"), "a"), (_doc("b.txt"), "b")]) == (1, 1)
