"""
Integration Tests — HTTP API
═════════════════════════════
Full request path through the FastAPI app (ASGITransport, no server):
routing, dependency wiring, error bodies, status codes.

The processing worker is driven in-process with services.processor.process()
right after the upload, standing in for the Celery task.

Scenario used throughout: a Biology lecture note uploaded to "Materialy".
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from courseindex.core.config import settings


def user_headers(user_id: uuid.UUID, role: str | None = None) -> dict[str, str]:
    headers = {"X-User-ID": str(user_id)}
    if role:
        headers["X-User-Role"] = role
    return headers


async def upload(client, owner_id, data: bytes, filename="mitosis.txt", subject="Biology", category="Materialy"):
    return await client.post(
        "/api/v1/files",
        files={"file": (filename, data, "application/octet-stream")},
        data={"subject_name": subject, "category": category},
        headers=user_headers(owner_id),
    )


async def upload_and_process(client, services, owner_id, data: bytes, **kwargs) -> str:
    resp = await upload(client, owner_id, data, **kwargs)
    assert resp.status_code == 202, resp.text
    doc_id = resp.json()["id"]
    await services.processor.process(uuid.UUID(doc_id))
    return doc_id


# ─────────────────────────────────────────────────────────────────────────────
# Upload
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestUploadEndpoint:

    async def test_upload_returns_202_pending(self, async_client, owner_id, sample_txt_bytes, mock_publisher):
        resp = await upload(async_client, owner_id, sample_txt_bytes)

        assert resp.status_code == 202
        body = resp.json()
        assert body["processing_status"] == "pending"
        assert body["subject_name"] == "Biology"
        assert body["category"] == "Materialy"
        assert body["file_extension"] == "txt"
        assert resp.headers["X-Document-ID"] == body["id"]
        assert resp.headers["Location"] == f"/api/v1/files/{body['id']}/status"
        mock_publisher.publish_processing_task.assert_awaited_once()

    async def test_unsupported_type_is_400(self, async_client, owner_id):
        resp = await upload(async_client, owner_id, b"MZ\x90\x00", filename="setup.exe")

        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "UNSUPPORTED_FILE_TYPE"
        assert body["request_id"]

    async def test_bad_category_is_400(self, async_client, owner_id, sample_txt_bytes):
        resp = await upload(async_client, owner_id, sample_txt_bytes, category="Homework")
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "INVALID_CATEGORY"

    async def test_oversized_is_413(self, async_client, owner_id, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 8)
        resp = await upload(async_client, owner_id, b"0123456789")
        assert resp.status_code == 413
        assert resp.json()["error_code"] == "FILE_TOO_LARGE"

    async def test_missing_identity_is_401(self, async_client, sample_txt_bytes):
        resp = await async_client.post(
            "/api/v1/files",
            files={"file": ("mitosis.txt", sample_txt_bytes, "text/plain")},
            data={"subject_name": "Biology", "category": "Materialy"},
        )
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "UNAUTHENTICATED"

    async def test_malformed_identity_is_401(self, async_client, sample_txt_bytes):
        resp = await async_client.post(
            "/api/v1/files",
            files={"file": ("mitosis.txt", sample_txt_bytes, "text/plain")},
            data={"subject_name": "Biology", "category": "Materialy"},
            headers={"X-User-ID": "not-a-uuid"},
        )
        assert resp.status_code == 401

    async def test_missing_form_field_is_422(self, async_client, owner_id, sample_txt_bytes):
        resp = await async_client.post(
            "/api/v1/files",
            files={"file": ("mitosis.txt", sample_txt_bytes, "text/plain")},
            data={"category": "Materialy"},
            headers=user_headers(owner_id),
        )
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Status / delete / reprocess
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFileLifecycle:

    async def test_status_owner_sees_completed(self, async_client, services, owner_id, sample_txt_bytes):
        doc_id = await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.get(f"/api/v1/files/{doc_id}/status", headers=user_headers(owner_id))

        assert resp.status_code == 200
        assert resp.json()["processing_status"] == "completed"

    async def test_status_hidden_from_other_users(self, async_client, owner_id, other_id, sample_txt_bytes):
        doc_id = (await upload(async_client, owner_id, sample_txt_bytes)).json()["id"]

        resp = await async_client.get(f"/api/v1/files/{doc_id}/status", headers=user_headers(other_id))

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_delete_by_stranger_is_403(self, async_client, owner_id, other_id, sample_txt_bytes):
        doc_id = (await upload(async_client, owner_id, sample_txt_bytes)).json()["id"]

        resp = await async_client.delete(f"/api/v1/files/{doc_id}", headers=user_headers(other_id))

        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"

    async def test_owner_delete_removes_from_search(self, async_client, services, owner_id, sample_txt_bytes):
        doc_id = await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.delete(f"/api/v1/files/{doc_id}", headers=user_headers(owner_id))
        assert resp.status_code == 204

        search = await async_client.get("/api/v1/search", params={"q": "mitosis"})
        assert search.json()["total"] == 0

    async def test_admin_delete(self, async_client, owner_id, admin_id, sample_txt_bytes):
        doc_id = (await upload(async_client, owner_id, sample_txt_bytes)).json()["id"]
        resp = await async_client.delete(f"/api/v1/files/{doc_id}", headers=user_headers(admin_id, "admin"))
        assert resp.status_code == 204

    async def test_reprocess_pending_is_409(self, async_client, owner_id, sample_txt_bytes):
        doc_id = (await upload(async_client, owner_id, sample_txt_bytes)).json()["id"]
        resp = await async_client.post(f"/api/v1/files/{doc_id}/reprocess", headers=user_headers(owner_id))
        assert resp.status_code == 409

    async def test_reprocess_completed_requeues(self, async_client, services, owner_id, sample_txt_bytes):
        doc_id = await upload_and_process(async_client, services, owner_id, sample_txt_bytes)
        resp = await async_client.post(f"/api/v1/files/{doc_id}/reprocess", headers=user_headers(owner_id))
        assert resp.status_code == 202
        assert resp.json()["processing_status"] == "pending"


# ─────────────────────────────────────────────────────────────────────────────
# Listings and search
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReadEndpoints:

    async def test_search_returns_highlighted_hit(self, async_client, services, owner_id, sample_txt_bytes):
        doc_id = await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.get("/api/v1/search", params={"q": "mitosis"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        hit = body["results"][0]
        assert hit["file_id"] == doc_id
        assert any("<em>" in fragment for fragment in hit["highlight"]["content"])

    async def test_search_typo_tolerated(self, async_client, services, owner_id, sample_txt_bytes):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)
        resp = await async_client.get("/api/v1/search", params={"q": "mitosys"})
        assert resp.json()["total"] == 1

    async def test_search_category_filter(self, async_client, services, owner_id, sample_txt_bytes):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.get("/api/v1/search", params={"q": "mitosis", "category": "Prednasky"})

        assert resp.json()["total"] == 0

    async def test_search_size_bounds(self, async_client):
        resp = await async_client.get("/api/v1/search", params={"size": 0})
        assert resp.status_code == 422

    async def test_list_files_by_subject_excludes_content(
        self, async_client, services, owner_id, sample_txt_bytes,
    ):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.get("/api/v1/files", params={"subject_name": "Biology"})

        body = resp.json()
        assert body["total"] == 1
        assert "content" not in body["data"][0]

    async def test_deep_subject_page_served_from_records(
        self, async_client, services, owner_id, sample_txt_bytes, monkeypatch,
    ):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)
        index_listing = AsyncMock()
        monkeypatch.setattr(services.projector, "files_by_subject", index_listing)

        resp = await async_client.get(
            "/api/v1/files", params={"subject_name": "Biology", "page": 11, "per_page": 1000},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["data"] == []
        assert body["page"] == 11
        index_listing.assert_not_awaited()

    async def test_list_files_from_records(self, async_client, owner_id, sample_txt_bytes):
        await upload(async_client, owner_id, sample_txt_bytes)
        await upload(async_client, owner_id, sample_txt_bytes, filename="b.txt", category="Prednasky")

        resp = await async_client.get("/api/v1/files", params={"category": "Prednasky"})

        body = resp.json()
        assert body["total"] == 1
        assert body["data"][0]["original_filename"] == "b.txt"

    async def test_subjects_with_counts(self, async_client, services, owner_id, sample_txt_bytes):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        names  = await async_client.get("/api/v1/subjects")
        counts = await async_client.get("/api/v1/subjects", params={"with_counts": "true"})

        assert names.json() == ["Biology"]
        assert counts.json() == [{"subject_name": "Biology", "file_count": 1}]

    async def test_subject_detail_lists_every_category(self, async_client, owner_id, sample_txt_bytes):
        await upload(async_client, owner_id, sample_txt_bytes)

        resp = await async_client.get("/api/v1/subjects/Biology")

        categories = {c["category"]: c["file_count"] for c in resp.json()["categories"]}
        assert categories == {"Prednasky": 0, "Otazky": 0, "Materialy": 1, "Seminare": 0}

    async def test_categories(self, async_client):
        resp = await async_client.get("/api/v1/categories")
        assert resp.json() == ["Materialy", "Otazky", "Prednasky", "Seminare"]

    async def test_stats(self, async_client, services, owner_id, sample_txt_bytes):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        body = (await async_client.get("/api/v1/stats")).json()

        assert body["total_files"] == 1
        assert body["total_subjects"] == 1
        assert body["total_storage_bytes"] == len(sample_txt_bytes)
        assert body["files_by_category"] == [{"category": "Materialy", "count": 1}]

    async def test_bypass_header_skips_fast_path(
        self, async_client, services, owner_id, sample_txt_bytes, search_backend, monkeypatch,
    ):
        monkeypatch.setattr(settings, "cache_bypass_token", "diag-token")
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)
        assert (await async_client.get("/api/v1/stats")).json()["total_files"] == 1

        # Written straight to the index: no invalidation happens
        await search_backend.upsert("ghost", {"subject_name": "Physics", "file_size": 1})

        cached = await async_client.get("/api/v1/stats")
        wrong  = await async_client.get("/api/v1/stats", headers={"X-Bypass-Cache": "guess"})
        live   = await async_client.get("/api/v1/stats", headers={"X-Bypass-Cache": "diag-token"})

        assert cached.json()["total_files"] == 1
        assert wrong.json()["total_files"] == 1
        assert live.json()["total_files"] == 2


# ─────────────────────────────────────────────────────────────────────────────
# Admin
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestAdminEndpoints:

    async def test_rename_subject(self, async_client, services, owner_id, admin_id, sample_txt_bytes):
        await upload_and_process(async_client, services, owner_id, sample_txt_bytes)

        resp = await async_client.patch(
            "/api/v1/admin/subjects/rename",
            json={"old_name": "Biology", "new_name": "Cell Biology"},
            headers=user_headers(admin_id, "admin"),
        )

        assert resp.status_code == 200
        assert resp.json()["records_updated"] == 1
        assert resp.json()["index_updated"] == 1
        assert (await async_client.get("/api/v1/subjects")).json() == ["Cell Biology"]
        hits = (await async_client.get("/api/v1/search", params={"subject_name": "Cell Biology"})).json()
        assert hits["total"] == 1
        old = (await async_client.get("/api/v1/search", params={"subject_name": "Biology"})).json()
        assert old["total"] == 0

    async def test_rename_requires_admin(self, async_client, owner_id):
        resp = await async_client.patch(
            "/api/v1/admin/subjects/rename",
            json={"old_name": "Biology", "new_name": "Cell Biology"},
            headers=user_headers(owner_id),
        )
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "ADMIN_REQUIRED"

    async def test_reindex_queued(self, async_client, admin_id, mock_publisher):
        resp = await async_client.post("/api/v1/admin/reindex", headers=user_headers(admin_id, "owner"))

        assert resp.status_code == 202
        assert resp.json() == {"task_id": "task-reindex", "queued": True}
        mock_publisher.publish_reindex_task.assert_awaited_once()

    async def test_reindex_broker_down(self, async_client, admin_id, mock_publisher):
        mock_publisher.publish_reindex_task.side_effect = ConnectionError("broker unavailable")
        resp = await async_client.post("/api/v1/admin/reindex", headers=user_headers(admin_id, "admin"))
        assert resp.json()["queued"] is False


# ─────────────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestOperations:

    async def test_health(self, async_client):
        resp = await async_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_ready(self, async_client):
        resp = await async_client.get("/ready")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["database"]["status"] == "ok"
        assert body["search_index"]["status"] == "ok"
        assert body["cache"]["status"] == "ok"

    async def test_request_id_header(self, async_client):
        resp = await async_client.get("/health", headers={"X-Request-ID": "trace-123"})
        assert resp.headers["X-Request-ID"] == "trace-123"
