from __future__ import annotations

import json

from fastapi.testclient import TestClient

from bundle_integrity.core.autofix import FixThresholds
from bundle_integrity.main import create_app
from bundle_integrity.services.bundle_service import BundleService, get_bundle_service
from bundle_integrity.services.document_store import InMemoryDocumentStore

H = {"X-Admin-Token": "t"}


def _client(monkeypatch):
    monkeypatch.setenv("ADMIN_API_ENABLED", "1")
    monkeypatch.setenv("ADMIN_TOKEN", "t")
    service = BundleService(InMemoryDocumentStore(), thresholds=FixThresholds())
    app = create_app()
    app.dependency_overrides[get_bundle_service] = lambda: service
    return TestClient(app), service


def _create_bundle(client: TestClient) -> str:
    r = client.post(
        "/api/v1/bundles",
        json={"title": "Geography", "subject": "social", "grade": 6, "tags": ["capitals"]},
        headers=H,
    )
    assert r.status_code == 201
    return r.json()["id"]


def test_admin_api_disabled_by_default(monkeypatch) -> None:
    monkeypatch.delenv("ADMIN_API_ENABLED", raising=False)
    client = TestClient(create_app())
    r = client.get("/api/v1/bundles")
    assert r.status_code == 404
    assert r.json()["code"] == "E4004"


def test_admin_token_required(monkeypatch) -> None:
    client, _ = _client(monkeypatch)
    r = client.get("/api/v1/bundles")
    assert r.status_code == 403
    assert r.json()["code"] == "E4030"
    assert client.get("/api/v1/bundles", headers={"X-Admin-Token": "wrong"}).status_code == 403
    assert client.get("/api/v1/bundles", headers=H).status_code == 200


def test_ingest_validate_repair_flow(monkeypatch) -> None:
    client, _ = _client(monkeypatch)
    bundle_id = _create_bundle(client)

    upload = {
        "questions": [
            {"id": "fr", "question": "Capital of France?", "options": ["Paris", "Lyon"], "answer": "paris."},
            {"id": "de", "question": "Capital of Germany?", "options": ["Berlin", "Bonn"], "answer": "Berlin"},
            {"id": "de2", "question": "capital of germany?", "options": ["Berlin", "Bonn"], "answer": "Berlin"},
        ]
    }
    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/preview",
        json={"raw": json.dumps(upload)},
        headers=H,
    )
    assert r.status_code == 200
    assert r.json()["invalid_ids"] == ["fr"]

    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/commit",
        json={"raw": json.dumps(upload)},
        headers=H,
    )
    assert r.status_code == 200
    assert r.json()["new_ids"] == ["fr", "de", "de2"]

    r = client.get(f"/api/v1/bundles/{bundle_id}/validation", headers=H)
    body = r.json()
    assert body["record_count"] == 3
    assert body["invalid_ids"] == ["fr"]
    assert body["duplicate_ids"] == ["de", "de2"]
    assert body["duplicate_groups"] == [["de", "de2"]]
    assert body["issues"] == {"fr": ["answer_not_in_options"]}
    assert body["fix_candidates"][0]["suggested_answer"] == "Paris"

    r = client.post(f"/api/v1/bundles/{bundle_id}/repairs/review", headers=H)
    assert r.status_code == 200
    assert r.json()["state"] == "reviewing"
    assert r.json()["selected_ids"] == ["fr"]

    r = client.post(f"/api/v1/bundles/{bundle_id}/repairs/apply", headers=H)
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "idle"
    assert body["applied_ids"] == ["fr"]
    assert body["validation"]["invalid_ids"] == []

    r = client.post(f"/api/v1/bundles/{bundle_id}/repairs/apply", headers=H)
    assert r.status_code == 409
    assert r.json()["code"] == "E4093"

    r = client.get(f"/api/v1/bundles/{bundle_id}", headers=H)
    assert r.json()["question_count"] == 3


def test_overwrite_requires_confirmation(monkeypatch) -> None:
    client, _ = _client(monkeypatch)
    bundle_id = _create_bundle(client)
    first = [{"id": "a", "question": "q", "options": ["1", "2"], "answer": "1"}]
    assert client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/commit", json={"questions": first}, headers=H
    ).status_code == 200

    again = first + [{"id": "b", "question": "q2", "options": ["1", "2"], "answer": "1"}]
    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/commit", json={"questions": again}, headers=H
    )
    assert r.status_code == 409
    assert r.json()["code"] == "E4091"
    assert r.json()["details"] == {"colliding_ids": ["a"]}

    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/commit",
        json={"questions": again, "confirm_overwrite": True},
        headers=H,
    )
    assert r.status_code == 200
    assert r.json()["new_ids"] == ["b"]


def test_malformed_upload_returns_format_error(monkeypatch) -> None:
    client, _ = _client(monkeypatch)
    bundle_id = _create_bundle(client)
    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/upload",
        files={"file": ("bank.json", b"{not json", "application/json")},
        headers=H,
    )
    assert r.status_code == 400
    assert r.json()["code"] == "E4001"
    assert r.headers.get("X-Request-Id")

    ok = json.dumps([{"question": "q", "options": ["1", "2"], "answer": "1"}]).encode("utf-8")
    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/upload",
        files={"file": ("bank.json", ok, "application/json")},
        headers=H,
    )
    assert r.status_code == 200
    assert r.json()["filename"] == "bank.json"
    assert len(r.json()["new_ids"]) == 1


def test_upload_size_limit(monkeypatch) -> None:
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "16")
    client, _ = _client(monkeypatch)
    bundle_id = _create_bundle(client)
    r = client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/upload",
        files={"file": ("bank.json", b"[" + b" " * 32 + b"]", "application/json")},
        headers=H,
    )
    assert r.status_code == 413


def test_edit_flag_export_and_recount(monkeypatch) -> None:
    client, service = _client(monkeypatch)
    bundle_id = _create_bundle(client)
    client.post(
        f"/api/v1/bundles/{bundle_id}/ingest/commit",
        json={"questions": [{"id": "a", "question": "2+2?", "options": ["3", "4"], "answer": "5"}]},
        headers=H,
    )

    r = client.get(f"/api/v1/bundles/{bundle_id}/export?view=invalid", headers=H)
    assert [q["id"] for q in r.json()["questions"]] == ["a"]

    r = client.put(
        f"/api/v1/bundles/{bundle_id}/records/a",
        json={"question": "2+2?", "options": ["3", "4"], "answer": "4"},
        headers=H,
    )
    assert r.status_code == 200
    assert r.json()["invalid_ids"] == []
    assert r.json()["record"]["answer"] == "4"

    r = client.post(f"/api/v1/bundles/{bundle_id}/records/a/flag", json={"reason": "check wording"}, headers=H)
    assert r.status_code == 201
    assert r.json()["item_id"].startswith("rev_")

    r = client.post(f"/api/v1/bundles/{bundle_id}/records/zz/flag", headers=H)
    assert r.status_code == 404

    r = client.get(f"/api/v1/bundles/{bundle_id}/export?view=template", headers=H)
    assert r.json()["count"] == 3
    assert client.get(f"/api/v1/bundles/{bundle_id}/export?view=all", headers=H).status_code == 422

    r = client.post(f"/api/v1/bundles/{bundle_id}/recount", headers=H)
    assert r.json()["question_count"] == 1


def test_unknown_bundle_is_404(monkeypatch) -> None:
    client, _ = _client(monkeypatch)
    r = client.get("/api/v1/bundles/missing/validation", headers=H)
    assert r.status_code == 404
    assert r.json()["code"] == "E4004"


def test_repair_endpoints_reject_unknown_bundle_without_a_session(monkeypatch) -> None:
    client, service = _client(monkeypatch)
    for method, path, body in (
        ("post", "/api/v1/bundles/missing/repairs/review", None),
        ("get", "/api/v1/bundles/missing/repairs", None),
        ("post", "/api/v1/bundles/missing/repairs/toggle", {"record_id": "q1"}),
        ("post", "/api/v1/bundles/missing/repairs/apply", {"record_ids": ["q1"]}),
    ):
        call = getattr(client, method)
        r = call(path, json=body, headers=H) if body else call(path, headers=H)
        assert r.status_code == 404, path
        assert r.json()["code"] == "E4004"
    assert service.repair_sessions == {}
