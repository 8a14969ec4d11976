import os

import pytest
from fastapi.testclient import TestClient

os.environ["SKIP_DB_INIT"] = "1"
from baseoff_import.main import app
from baseoff_import.api.dependencies import (
    get_db_engine,
    get_duplicate_guard,
    get_file_uploader,
    get_import_driver,
)
from baseoff_import.db.models import baseoff_clients
from baseoff_import.db.retry import NO_RETRY
from baseoff_import.domain.imports.duplicates import DuplicateFileGuard, calculate_file_hash
from baseoff_import.utils.cache import TTLCache
from tests.utils.import_files import build_csv, count_rows


@pytest.fixture
def client(engine, storage, make_driver):
    cache = TTLCache(ttl_seconds=60)
    app.dependency_overrides[get_db_engine] = lambda: engine
    app.dependency_overrides[get_file_uploader] = lambda: storage.upload
    app.dependency_overrides[get_duplicate_guard] = lambda: DuplicateFileGuard(
        engine, cache=cache, retry_policy=NO_RETRY
    )
    app.dependency_overrides[get_import_driver] = lambda: make_driver(chunk_size=2, duplicate_cache=cache)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, content, name="clientes.csv", **form):
    data = {key: str(value).lower() if isinstance(value, bool) else value for key, value in form.items()}
    return client.post("/import-jobs", files={"file": (name, content, "text/csv")}, data=data)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_upload_creates_uploaded_job(client, storage):
    content = build_csv(3)

    response = _upload(client, content)

    assert response.status_code == 201
    body = response.json()
    job = body["job"]
    assert body["success"] is True
    assert job["status"] == "uploaded"
    assert job["file_name"] == "clientes.csv"
    assert job["module"] == "baseoff"
    assert job["file_hash"] == calculate_file_hash(content)
    assert job["storage_path"].startswith("imports/")
    assert job["storage_path"].endswith("_clientes.csv")
    assert storage.objects[job["storage_path"]] == content
    assert body["duplicate"] is None
    assert body["first_chunk"] is None


def test_upload_rejects_legacy_xls(client, storage):
    response = _upload(client, b"\xd0\xcf\x11\xe0", name="antigo.xls")

    assert response.status_code == 422
    assert response.json()["code"] == "UNSUPPORTED_FORMAT"
    assert storage.objects == {}


def test_chunked_import_through_api(client, engine):
    created = _upload(client, build_csv(3), start=True).json()
    job_id = created["job"]["id"]

    assert created["first_chunk"]["processed_in_chunk"] == 2
    assert created["first_chunk"]["next_offset"] == 2
    assert created["job"]["status"] == "chunk_completed"

    response = client.post("/import-jobs/process", json={"job_id": job_id, "continue_from_offset": 2})
    assert response.status_code == 200
    result = response.json()
    assert result["success"] is True
    assert result["is_complete"] is True
    assert result["total_processed"] == 3
    assert result["next_offset"] is None

    job = client.get(f"/import-jobs/{job_id}").json()["job"]
    assert job["status"] == "completed"
    assert job["progress"] == 1.0
    assert job["total_rows"] == 3
    assert count_rows(engine, baseoff_clients) == 3


def test_duplicate_upload_requires_confirmation(client):
    content = build_csv(2)
    job_id = _upload(client, content, start=True).json()["job"]["id"]
    client.post("/import-jobs/process", json={"job_id": job_id})

    refused = _upload(client, content, name="clientes_copia.csv")
    assert refused.status_code == 409
    refused_body = refused.json()
    assert refused_body["code"] == "DUPLICATE_FILE"
    assert refused_body["duplicate"]["isDuplicate"] is True
    assert refused_body["duplicate"]["originalFileName"] == "clientes.csv"
    assert refused_body["duplicate"]["recordsImported"] == 2

    accepted = _upload(client, content, name="clientes_copia.csv", confirm_duplicate=True)
    assert accepted.status_code == 201
    assert accepted.json()["duplicate"]["isDuplicate"] is True


def test_check_duplicate_endpoint(client):
    content = build_csv(2)
    file_hash = calculate_file_hash(content)

    before = client.post("/imports/check-duplicate", json={"file_hash": file_hash, "module": "baseoff"})
    assert before.status_code == 200
    assert before.json() == {
        "isDuplicate": False,
        "originalImportDate": None,
        "originalFileName": None,
        "recordsImported": 0,
    }

    job_id = _upload(client, content, start=True).json()["job"]["id"]
    client.post("/import-jobs/process", json={"job_id": job_id})

    after = client.post("/imports/check-duplicate", json={"file_hash": file_hash.upper()}).json()
    assert after["isDuplicate"] is True
    assert after["originalFileName"] == "clientes.csv"


def test_check_duplicate_rejects_bad_hash(client):
    response = client.post("/imports/check-duplicate", json={"file_hash": "not-a-hash"})
    assert response.status_code == 422


def test_process_unknown_job(client):
    response = client.post("/import-jobs/process", json={"job_id": "missing"})

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "Import job 'missing' not found",
        "code": "JOB_NOT_FOUND",
        "job_id": "missing",
    }


def test_process_failed_job_conflicts(client, storage):
    job_id = _upload(client, build_csv(3)).json()["job"]["id"]
    storage.objects.clear()

    first = client.post("/import-jobs/process", json={"job_id": job_id})
    assert first.status_code == 502
    assert first.json()["code"] == "STORAGE_ERROR"

    second = client.post("/import-jobs/process", json={"job_id": job_id})
    assert second.status_code == 409
    assert second.json()["code"] == "JOB_NOT_RESUMABLE"

    job = client.get(f"/import-jobs/{job_id}").json()["job"]
    assert job["status"] == "failed"
    assert job["error_log"][-1]["code"] == "STORAGE_ERROR"


def test_malformed_file_is_unprocessable(client):
    job_id = _upload(client, build_csv(0)).json()["job"]["id"]

    response = client.post("/import-jobs/process", json={"job_id": job_id})

    assert response.status_code == 422
    assert response.json()["code"] == "MALFORMED_INPUT"


def test_negative_offset_is_rejected(client):
    response = client.post("/import-jobs/process", json={"job_id": "x", "continue_from_offset": -1})
    assert response.status_code == 422


def test_get_unknown_job(client):
    assert client.get("/import-jobs/missing").status_code == 404


def test_list_jobs(client):
    _upload(client, build_csv(1), name="a.csv")
    _upload(client, build_csv(2), name="b.csv", module="leads")

    response = client.get("/import-jobs", params={"module": "baseoff"})

    assert response.status_code == 200
    body = response.json()
    assert body["total_count"] == 1
    assert body["jobs"][0]["file_name"] == "a.csv"
    assert client.get("/import-jobs").json()["total_count"] == 2
