"""
Elasticsearch Search Index

Index layout:
  One index (settings.elasticsearch_index), one document per uploaded file,
  _id = file_id. Filenames are analysed with an edge-ngram filter (3..15) so
  partial words match; subject_name carries a keyword sub-field for exact
  filtering and aggregation.

Consistency:
  Every write passes refresh="true" so the next search sees it; the worker
  marks a record completed only after its upsert has been acknowledged.

All client errors are re-raised as SearchIndexError with the failing
operation name. The projector turns them into logged, non-fatal results.
"""

from __future__ import annotations

import logging
from typing import Any

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError

from courseindex.core.config import settings
from courseindex.core.errors import SearchIndexError
from courseindex.search.base import (
    HIGHLIGHT_FRAGMENT_SIZE,
    HIGHLIGHT_FRAGMENTS,
    KEYWORD_FIELDS,
    WEIGHTED_FIELDS,
    IndexHit,
    IndexResults,
    SearchIndexBackend,
)

logger = logging.getLogger(__name__)

_CLIENT_ERRORS = (ApiError, TransportError)

INDEX_SETTINGS: dict[str, Any] = {
    "number_of_shards":   1,
    "number_of_replicas": 0,
    "analysis": {
        "analyzer": {
            "folding_analyzer": {
                "type":      "custom",
                "tokenizer": "standard",
                "filter":    ["lowercase", "asciifolding"],
            },
            "edge_ngram_analyzer": {
                "type":      "custom",
                "tokenizer": "standard",
                "filter":    ["lowercase", "asciifolding", "edge_ngram_filter"],
            },
        },
        "filter": {
            "edge_ngram_filter": {"type": "edge_ngram", "min_gram": 3, "max_gram": 15},
        },
    },
}

INDEX_MAPPINGS: dict[str, Any] = {
    "properties": {
        "file_id": {"type": "keyword"},
        "user_id": {"type": "keyword"},
        "filename": {
            "type":            "text",
            "analyzer":        "edge_ngram_analyzer",
            "search_analyzer": "folding_analyzer",
            "fields":          {"keyword": {"type": "keyword"}},
        },
        "original_filename": {
            "type":            "text",
            "analyzer":        "edge_ngram_analyzer",
            "search_analyzer": "folding_analyzer",
        },
        "filepath": {"type": "keyword"},
        "subject_name": {
            "type":     "text",
            "analyzer": "folding_analyzer",
            "fields":   {"keyword": {"type": "keyword"}},
        },
        "category":       {"type": "keyword"},
        "file_extension": {"type": "keyword"},
        "file_size":      {"type": "long"},
        "content":        {"type": "text", "analyzer": "folding_analyzer"},
        "created_at":     {"type": "date"},
        "updated_at":     {"type": "date"},
    }
}


def keyword_path(field_name: str) -> str:
    """subject_name is a text field; its exact value lives in .keyword."""
    return "subject_name.keyword" if field_name == "subject_name" else field_name


def build_search_body(query: str, filters: dict[str, str] | None, size: int) -> dict[str, Any]:
    """Query DSL for search(). Kept separate so it can be asserted on directly."""
    must: list[dict[str, Any]] = []
    if query.strip():
        must.append({
            "multi_match": {
                "query":     query,
                "fields":    [f"{name}^{weight:g}" if weight != 1.0 else name
                              for name, weight in WEIGHTED_FIELDS.items()],
                "fuzziness": "AUTO",
                "operator":  "or",
            }
        })
    else:
        must.append({"match_all": {}})

    filter_clauses = [
        {"term": {keyword_path(name): value}}
        for name, value in sorted((filters or {}).items())
        if value and name in KEYWORD_FIELDS
    ]

    return {
        "query": {"bool": {"must": must, "filter": filter_clauses}},
        "size":  size,
        "sort": [
            {"_score":     {"order": "desc"}},
            {"created_at": {"order": "desc"}},
        ],
        "highlight": {
            "fields": {
                "filename": {},
                "content": {
                    "fragment_size":       HIGHLIGHT_FRAGMENT_SIZE,
                    "number_of_fragments": HIGHLIGHT_FRAGMENTS,
                },
            },
        },
    }


def _to_results(response: Any) -> IndexResults:
    hits = response["hits"]
    return IndexResults(
        total=int(hits["total"]["value"]),
        hits=[
            IndexHit(
                doc_id=hit["_id"],
                score=float(hit.get("_score") or 0.0),
                source=hit["_source"],
                highlight=hit.get("highlight", {}),
            )
            for hit in hits["hits"]
        ],
    )


class ElasticsearchIndex(SearchIndexBackend):
    """
    Search backend over the official async Elasticsearch client.

    The client is created once per process (API lifespan or worker) and
    shared; AsyncElasticsearch pools its own connections.
    """

    def __init__(
        self,
        client:     AsyncElasticsearch | None = None,
        index_name: str | None = None,
    ) -> None:
        self._client = client or AsyncElasticsearch(
            hosts=[settings.elasticsearch_url],
            request_timeout=settings.elasticsearch_timeout,
        )
        self._index = index_name or settings.elasticsearch_index

    @property
    def index_name(self) -> str:
        return self._index

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    async def ensure_index(self) -> None:
        try:
            if await self._client.indices.exists(index=self._index):
                logger.info("Elasticsearch index '%s' already exists", self._index)
                return
            await self._client.indices.create(
                index=self._index, settings=INDEX_SETTINGS, mappings=INDEX_MAPPINGS,
            )
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("ensure_index", str(exc)) from exc
        logger.info("Elasticsearch index '%s' created", self._index)

    async def drop_index(self) -> None:
        try:
            await self._client.indices.delete(index=self._index, ignore_unavailable=True)
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("drop_index", str(exc)) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, doc_id: str, document: dict[str, Any]) -> None:
        try:
            await self._client.index(index=self._index, id=doc_id, document=document, refresh="true")
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("upsert", str(exc)) from exc
        logger.debug("ES upsert | id=%s", doc_id)

    async def delete(self, doc_id: str) -> bool:
        try:
            await self._client.delete(index=self._index, id=doc_id, refresh="true")
        except NotFoundError:
            return False
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("delete", str(exc)) from exc
        return True

    async def rename_field_value(self, field_name: str, old_value: str, new_value: str) -> int:
        try:
            response = await self._client.update_by_query(
                index=self._index,
                query={"term": {keyword_path(field_name): old_value}},
                script={
                    "source": f"ctx._source.{field_name} = params.new_value",
                    "lang":   "painless",
                    "params": {"new_value": new_value},
                },
                conflicts="proceed",
                refresh=True,
            )
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("rename_field_value", str(exc)) from exc
        return int(response.get("updated", 0))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        try:
            response = await self._client.get(index=self._index, id=doc_id)
        except NotFoundError:
            return None
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("get", str(exc)) from exc
        return response["_source"]

    async def search(
        self,
        query:   str,
        filters: dict[str, str] | None = None,
        size:    int = 20,
    ) -> IndexResults:
        body = build_search_body(query, filters, size)
        try:
            response = await self._client.search(index=self._index, **body)
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("search", str(exc)) from exc
        return _to_results(response)

    async def files_by_subject(self, subject_name: str, size: int = 1000) -> IndexResults:
        try:
            response = await self._client.search(
                index=self._index,
                query={"term": {"subject_name.keyword": subject_name}},
                sort=[{"created_at": {"order": "desc"}}],
                size=size,
            )
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("files_by_subject", str(exc)) from exc
        return _to_results(response)

    async def aggregate_by(self, field_name: str, size: int = 1000) -> list[tuple[str, int]]:
        try:
            response = await self._client.search(
                index=self._index,
                size=0,
                aggs={
                    "values": {
                        "terms": {
                            "field": keyword_path(field_name),
                            "size":  size,
                            "order": {"_key": "asc"},
                        }
                    }
                },
            )
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("aggregate_by", str(exc)) from exc
        buckets = response["aggregations"]["values"]["buckets"]
        return [(str(b["key"]), int(b["doc_count"])) for b in buckets]

    async def sum_field(self, field_name: str) -> int:
        try:
            response = await self._client.search(
                index=self._index,
                size=0,
                aggs={"total": {"sum": {"field": field_name}}},
            )
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("sum_field", str(exc)) from exc
        return int(response["aggregations"]["total"]["value"] or 0)

    async def count(self) -> int:
        try:
            response = await self._client.count(index=self._index)
        except _CLIENT_ERRORS as exc:
            raise SearchIndexError("count", str(exc)) from exc
        return int(response["count"])

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except _CLIENT_ERRORS as exc:
            logger.warning("Elasticsearch ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._client.close()
