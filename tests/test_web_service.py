import io

import pytest

from conftest import BlockingGenerator, FakeGenerator, generated_for
from meta_generation import DEFAULT_AI_INSTRUCTIONS, QuotaExceeded
from session_store import MemoryBlobStore
from web_service import create_app

CSV = "Article Number,Name,Color\nA1,Shirt,red\nA2,Pants,blue\nA3,Hat,\n"


@pytest.fixture
def app():
    app = create_app(generator_factory=FakeGenerator, blob_store=MemoryBlobStore())
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def upload(client, text=CSV, name="catalog.csv"):
    return client.post("/upload", data={"file": (io.BytesIO(text.encode("utf-8")), name)},
                       content_type="multipart/form-data")


def run_job(app, client, path="/generate"):
    resp = client.post(path)
    assert resp.status_code == 202
    app.extensions["meta_seo"].thread.join(timeout=10)
    return client.get("/status").get_json()


def test_health(client):
    assert client.get("/health").get_json()["status"] == "healthy"


def test_upload_reports_rows_and_estimate(client):
    body = upload(client).get_json()
    assert body["total"] == 3
    assert body["columns"] == ["sku", "name", "Color"]
    assert body["estimated_tokens"] > 0


def test_upload_validation_error(client):
    resp = upload(client, text="sku,name\n,nameless\n")
    assert resp.status_code == 400
    assert "first product is missing a value in the 'sku' column" in resp.get_json()["error"]


def test_upload_unsupported_type(client):
    assert upload(client, name="catalog.txt").status_code == 400


def test_generate_without_upload(client):
    resp = client.post("/generate")
    assert resp.status_code == 400


def test_generate_then_download(app, client):
    upload(client)
    status = run_job(app, client)
    assert status["state"] == "completed"
    assert status["processed"] == 3
    assert status["resumable"] is False

    rows = client.get("/rows").get_json()
    assert [r["sku"] for r in rows] == ["A1", "A2", "A3"]

    resp = client.get("/download")
    assert resp.status_code == 200
    assert 'filename="processed_catalog.csv"' in resp.headers["Content-Disposition"]
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == "sku,name,Color,Meta Title EN,Meta Description EN,Meta Title AR,Meta Description AR"
    assert len(lines) == 4


def test_download_without_results(client):
    upload(client)
    resp = client.get("/download")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "No processed data to download."


def test_edit_and_regenerate_rows(app, client):
    upload(client)
    run_job(app, client)

    resp = client.patch("/rows/A2", json={"field": "Meta Title EN", "value": "Pants | Store"})
    assert resp.get_json()["changed"] is True
    assert resp.get_json()["row"]["Meta Title EN"] == "Pants | Store"
    assert client.patch("/rows/A2", json={"field": "Meta Title EN", "value": "Pants | Store"}).get_json()["changed"] is False
    assert client.patch("/rows/ZZ", json={"field": "Meta Title EN", "value": "x"}).status_code == 404
    assert client.patch("/rows/A2", json={"field": "Color", "value": "x"}).status_code == 400

    body = client.post("/rows/A1/regenerate").get_json()
    assert body["status"] == "ok"
    assert body["row"]["Meta Title AR"] == generated_for("A1", tag="regen")["Meta Title AR"]
    assert client.post("/rows/ZZ/regenerate").status_code == 404


def test_regenerate_quota_message(app, client):
    upload(client)
    run_job(app, client)
    state = app.extensions["meta_seo"]
    state.generator_factory = lambda: FakeGenerator(single_error=QuotaExceeded("quota"))

    body = client.post("/rows/A1/regenerate").get_json()
    assert body["status"] == "quota_exceeded"
    assert "SKU A1" in body["message"]


def test_quota_then_restore_and_resume(app, client):
    upload(client, text="sku,name\n" + "".join(f"p{i},Item {i}\n" for i in range(1, 18)))
    state = app.extensions["meta_seo"]
    state.generator_factory = lambda: FakeGenerator(failures={2: QuotaExceeded("quota")})
    status = run_job(app, client)
    assert status["state"] == "quota_exceeded"
    assert status["resumable"] is True
    assert "15 of 17" in status["error"]

    saved = client.get("/session").get_json()
    assert saved == {"file_name": "catalog.csv", "processed": 15, "total": 17, "resumable": True}

    restored = client.post("/session/restore").get_json()
    assert restored["processed"] == 15
    assert restored["resumable"] is True

    state.generator_factory = FakeGenerator
    status = run_job(app, client, "/resume")
    assert status["state"] == "completed"
    assert status["processed"] == 17

    assert client.delete("/session").get_json()["dismissed"] is True
    assert client.get("/session").status_code == 404


def test_instructions_update_and_reset(client):
    assert client.get("/instructions").get_json()["instructions"] == DEFAULT_AI_INSTRUCTIONS
    body = client.put("/instructions", json={"instructions": "Short and punchy."}).get_json()
    assert body == {"instructions": "Short and punchy.", "is_default": False}
    assert client.put("/instructions", json={"instructions": 5}).status_code == 400
    assert client.delete("/instructions").get_json()["is_default"] is True


def test_second_generate_while_running_conflicts(app, client):
    upload(client)
    blocking = BlockingGenerator()
    state = app.extensions["meta_seo"]
    state.generator_factory = lambda: blocking

    assert client.post("/generate").status_code == 202
    try:
        assert blocking.entered.wait(5)
        assert client.post("/generate").status_code == 409
        assert client.post("/resume").status_code == 409
        assert upload(client).status_code == 409
    finally:
        blocking.release.set()
        state.thread.join(timeout=10)

    status = client.get("/status").get_json()
    assert status["state"] == "completed"
    assert len(blocking.batch_calls) == 1


def test_regenerate_uses_a_fresh_generator_per_request(app, client):
    upload(client)
    run_job(app, client)
    state = app.extensions["meta_seo"]
    made = []

    def factory():
        made.append(FakeGenerator())
        return made[-1]

    state.generator_factory = factory
    client.post("/rows/A1/regenerate")
    client.post("/rows/A2/regenerate")
    assert [g.single_calls for g in made] == [["A1"], ["A2"]]
    assert client.get("/status").get_json()["regenerating"] == []
